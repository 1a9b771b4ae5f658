"""HealthSync ingestion and aggregation pipeline.

This package pulls health data from wearable and phone sources, normalizes
it to canonical units and UTC timestamps, and persists it as point
readings, sleep sessions and one daily activity row per user and date.

Subpackages:
    adapters/ — Source adapters (Samsung Health, Google Fit, screen time, manual batch)
    sync/     — Per-session sync orchestrator, backfill planning, deduplication

Core modules:
    base           — SourceAdapter ABC, stored records and normalized record types
    aggregation    — AggregationEngine: the single write path and summary views
    catalog        — Metric catalog and range policies
    registry       — Per-session device registry
    device_status  — Last sync and data completeness per device
    store          — HealthStore ABC and the in-memory store
    postgres_store — asyncpg-backed HealthStore
    config_loader  — Load/validate/hot-reload pipeline_config.yaml
"""

from src.pipeline.base import (
    ActivityDelta,
    NormalizedRecord,
    ReadingRecord,
    SleepRecord,
    SourceAdapter,
)
from src.pipeline.config_loader import PipelineConfig, get_pipeline_config

__all__ = [
    "SourceAdapter",
    "ReadingRecord",
    "SleepRecord",
    "ActivityDelta",
    "NormalizedRecord",
    "PipelineConfig",
    "get_pipeline_config",
]
