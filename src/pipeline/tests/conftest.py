"""Shared fixtures for pipeline tests."""

from __future__ import annotations

import copy
import json
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any
from uuid import UUID

import pytest
import pytest_asyncio

from src.pipeline.aggregation import AggregationEngine
from src.pipeline.base import Device, DeviceClass
from src.pipeline.catalog import MetricCatalog
from src.pipeline.config_loader import PipelineConfig, build_pipeline_config, load_pipeline_config
from src.pipeline.registry import DeviceRegistry
from src.pipeline.store import InMemoryHealthStore

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Canonical test users
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
OTHER_USER_ID = UUID("87654321-4321-8765-4321-876543218765")
TEST_DATE = date(2024, 1, 15)

# Noon on TEST_DATE, used wherever a fixed "now" is needed
TEST_NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_config(**sections: dict[str, Any]) -> PipelineConfig:
    """Bundled config with the given top-level sections overridden.

    Usage::

        make_config(activity={"merge_policy": "replace"})
    """
    raw = copy.deepcopy(load_pipeline_config()._raw)
    for name, values in sections.items():
        raw.setdefault(name, {}).update(values)
    return build_pipeline_config(raw)


def load_fixture(name: str) -> dict:
    return json.loads((FIXTURES_DIR / name).read_text())


# ---------------------------------------------------------------------------
# Config / engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Load the real pipeline config for tests."""
    return load_pipeline_config()


@pytest.fixture
def store() -> InMemoryHealthStore:
    return InMemoryHealthStore()


@pytest.fixture
def catalog(pipeline_config: PipelineConfig) -> MetricCatalog:
    return MetricCatalog.from_config(pipeline_config)


@pytest.fixture
def engine(
    store: InMemoryHealthStore, catalog: MetricCatalog, pipeline_config: PipelineConfig
) -> AggregationEngine:
    return AggregationEngine(store, catalog, pipeline_config)


@pytest.fixture
def registry(store: InMemoryHealthStore) -> DeviceRegistry:
    return DeviceRegistry(store, TEST_USER_ID)


# ---------------------------------------------------------------------------
# Device fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def watch(registry: DeviceRegistry) -> Device:
    """The test user's Wear OS device."""
    return await registry.ensure_device(DeviceClass.WEARABLE)


@pytest_asyncio.fixture
async def phone(registry: DeviceRegistry) -> Device:
    """The test user's phone."""
    return await registry.ensure_device(DeviceClass.PHONE)


# ---------------------------------------------------------------------------
# Source payload fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def samsung_heart_rate_raw() -> list[dict]:
    return load_fixture("samsung_heart_rate.json")


@pytest.fixture
def samsung_sleep_raw() -> list[dict]:
    return load_fixture("samsung_sleep.json")


@pytest.fixture
def samsung_steps_raw() -> list[dict]:
    return load_fixture("samsung_steps.json")


@pytest.fixture
def google_fit_heart_rate_raw() -> dict:
    return load_fixture("google_fit_heart_rate.json")


@pytest.fixture
def google_fit_daily_raw() -> dict:
    return load_fixture("google_fit_daily.json")


@pytest.fixture
def google_fit_sessions_raw() -> dict:
    return load_fixture("google_fit_sessions.json")


@pytest.fixture
def google_fit_sleep_segments_raw() -> dict:
    return load_fixture("google_fit_sleep_segments.json")
