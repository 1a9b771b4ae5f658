"""HealthSync API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator
from zoneinfo import ZoneInfo

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import Settings, get_settings
from src.middleware.identity import GatewayIdentityMiddleware
from src.pipeline.aggregation import AggregationEngine
from src.pipeline.catalog import MetricCatalog
from src.pipeline.config_loader import get_pipeline_config, reload_pipeline_config
from src.pipeline.postgres_store import PostgresHealthStore
from src.pipeline.store import HealthStore, InMemoryHealthStore
from src.routers import health, sync
from src.services.database import close_pool, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("healthsync")


# ---------- Lifespan ----------

async def _open_store(settings: Settings) -> HealthStore:
    if settings.database_url:
        pool = await init_pool(settings)
        return PostgresHealthStore(pool)
    logger.warning("DATABASE_URL not set, using the in-memory store")
    return InMemoryHealthStore()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting HealthSync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )

    if settings.pipeline_config_path:
        pipeline_config = reload_pipeline_config(Path(settings.pipeline_config_path))
    else:
        pipeline_config = get_pipeline_config()

    store: HealthStore | None = getattr(app.state, "store", None)
    owns_store = store is None
    if store is None:
        store = await _open_store(settings)

    catalog = MetricCatalog.from_config(pipeline_config)
    seeded = await catalog.seed(store)
    if seeded:
        logger.info("Seeded %d metric types", seeded)
    catalog = await MetricCatalog.load(store)

    app.state.store = store
    app.state.pipeline_config = pipeline_config
    app.state.engine = AggregationEngine(
        store, catalog, pipeline_config, tz=ZoneInfo(settings.timezone)
    )

    yield

    if owns_store:
        if settings.database_url:
            await close_pool()
        else:
            await store.close()
        app.state.store = None
    logger.info("HealthSync API shut down")


# ---------- App factory ----------

def create_app(store: HealthStore | None = None) -> FastAPI:
    """Build the application.

    Args:
        store: Pre-built store to serve from; the lifespan opens one from
               settings when omitted.
    """
    settings = get_settings()

    app = FastAPI(
        title="HealthSync API",
        description=(
            "Health data sync and aggregation: wearable and phone sources "
            "normalized into daily activity, sleep and readings."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.store = store

    # ---------- Middleware (last added runs first) ----------

    # Caller identity from the upstream gateway
    app.add_middleware(GatewayIdentityMiddleware)

    # CORS wraps the identity check so preflight never needs a user header
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside the v1 prefix) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(sync.router, prefix=v1_prefix)

    return app


app = create_app()
