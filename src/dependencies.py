"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.pipeline.adapters.manual_batch import ManualBatchAdapter
from src.pipeline.aggregation import AggregationEngine
from src.pipeline.config_loader import PipelineConfig
from src.pipeline.registry import DeviceRegistry
from src.pipeline.store import HealthStore


@dataclass(frozen=True)
class AuthContext:
    """Verified caller identity forwarded by the upstream auth layer."""

    user_id: uuid.UUID
    session_id: str | None = None


async def get_current_user(request: Request) -> AuthContext:
    """Extract the authenticated user from the request state.

    The identity middleware sets ``request.state.auth`` before routes run.
    """
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


def get_store(request: Request) -> HealthStore:
    return request.app.state.store


def get_engine(request: Request) -> AggregationEngine:
    return request.app.state.engine


def get_pipeline_settings(request: Request) -> PipelineConfig:
    return request.app.state.pipeline_config


def get_registry(
    user: Annotated[AuthContext, Depends(get_current_user)],
    store: Annotated[HealthStore, Depends(get_store)],
) -> DeviceRegistry:
    """A registry scoped to the caller; its cache lives for one request."""
    return DeviceRegistry(store, user.user_id)


def get_manual_adapter(
    engine: Annotated[AggregationEngine, Depends(get_engine)],
    pipeline: Annotated[PipelineConfig, Depends(get_pipeline_settings)],
) -> ManualBatchAdapter:
    return ManualBatchAdapter(
        tz=engine.tz, default_sleep_quality=pipeline.batch.default_sleep_quality
    )


# Annotated shortcuts for route signatures
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Store = Annotated[HealthStore, Depends(get_store)]
Engine = Annotated[AggregationEngine, Depends(get_engine)]
PipelineSettings = Annotated[PipelineConfig, Depends(get_pipeline_settings)]
Registry = Annotated[DeviceRegistry, Depends(get_registry)]
ManualAdapter = Annotated[ManualBatchAdapter, Depends(get_manual_adapter)]
