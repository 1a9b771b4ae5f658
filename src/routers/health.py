"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from src.config import get_settings
from src.dependencies import Store

router = APIRouter(tags=["system"])
logger = logging.getLogger("healthsync.health")


@router.get("/health")
async def health_check(store: Store) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight storage connectivity check.
    """
    settings = get_settings()
    db_ok = await store.ping()
    if not db_ok:
        logger.warning("Health check storage probe failed")

    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
