"""Tests for pipeline config loading/validation and the metric catalog."""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest
import yaml

from src.pipeline.base import MetricType
from src.pipeline.catalog import MetricCatalog, check_range
from src.pipeline.config_loader import (
    ConfigValidationError,
    PipelineConfig,
    build_pipeline_config,
    get_pipeline_config,
    load_pipeline_config,
    reload_pipeline_config,
)
from src.pipeline.errors import OutOfRangeValue, UnknownMetric
from src.pipeline.store import InMemoryHealthStore
from src.pipeline.tests.conftest import make_config

HEART_RATE = MetricType(
    name="heart_rate",
    display_name="Heart Rate",
    unit="bpm",
    min_value=Decimal("30"),
    max_value=Decimal("220"),
)


# ---------------------------------------------------------------------------
# Config loading
# ---------------------------------------------------------------------------


class TestConfigLoading:
    def test_bundled_config_loads(self, pipeline_config: PipelineConfig) -> None:
        assert pipeline_config.version == "1.2"
        assert pipeline_config.readings.deduplicate is True
        assert pipeline_config.readings.range_policy == "reject"
        assert pipeline_config.activity.merge_policy == "merge"
        assert pipeline_config.sync.adapter_timeout_seconds == 30.0

    def test_seed_metrics_present(self, pipeline_config: PipelineConfig) -> None:
        names = {m.name for m in pipeline_config.metrics}
        assert {"heart_rate", "blood_oxygen", "stress_level"} <= names
        heart_rate = pipeline_config.metric("heart_rate")
        assert heart_rate is not None
        assert heart_rate.min_value == Decimal("30")
        assert heart_rate.max_value == Decimal("220")

    def test_completeness_expected_scales_with_window(
        self, pipeline_config: PipelineConfig
    ) -> None:
        assert pipeline_config.completeness.expected("heart_rate") == 1440 * 7
        assert pipeline_config.completeness.expected("sleep") == 7

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_pipeline_config(tmp_path / "nope.yaml")

    def test_malformed_yaml_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("metrics: [unclosed\n")
        with pytest.raises(ConfigValidationError):
            load_pipeline_config(path)


class TestConfigValidation:
    def test_unknown_range_policy_rejected(self) -> None:
        with pytest.raises(ConfigValidationError, match="range_policy"):
            make_config(readings={"range_policy": "ignore"})

    def test_unknown_merge_policy_rejected(self) -> None:
        with pytest.raises(ConfigValidationError, match="merge_policy"):
            make_config(activity={"merge_policy": "sum"})

    def test_errors_are_aggregated(self) -> None:
        raw = {
            "metrics": [
                {"name": "heart_rate", "unit": "bpm", "min": 220, "max": 30},
                {"name": "heart_rate", "unit": "bpm"},
                {"unit": "bpm"},
            ],
            "sync": {"backfill_hours": 0},
        }
        with pytest.raises(ConfigValidationError) as exc_info:
            build_pipeline_config(raw)
        message = str(exc_info.value)
        assert "4 validation error(s)" in message
        assert "min 220 > max 30" in message
        assert "duplicate metric name" in message

    def test_empty_metrics_rejected(self) -> None:
        with pytest.raises(ConfigValidationError, match="metrics"):
            build_pipeline_config({"metrics": []})

    def test_stage_quality_out_of_range_rejected(self) -> None:
        with pytest.raises(ConfigValidationError, match="stage_quality.deep"):
            make_config(sleep={"stage_quality": {"deep": 150}})

    def test_overrides_apply(self) -> None:
        config = make_config(sync={"backfill_hours": 72}, readings={"deduplicate": False})
        assert config.sync.backfill_hours == 72
        assert config.readings.deduplicate is False


class TestConfigSingleton:
    def test_singleton_is_cached(self) -> None:
        assert get_pipeline_config() is get_pipeline_config()

    def test_reload_replaces_singleton(self, tmp_path: Path) -> None:
        raw = load_pipeline_config()._raw
        path = tmp_path / "pipeline_config.yaml"
        path.write_text(yaml.safe_dump({**raw, "version": "9.9"}))
        try:
            reloaded = reload_pipeline_config(path)
            assert reloaded.version == "9.9"
            assert get_pipeline_config() is reloaded
        finally:
            reload_pipeline_config()

    def test_failed_reload_keeps_old_config(self, tmp_path: Path) -> None:
        before = get_pipeline_config()
        path = tmp_path / "invalid.yaml"
        path.write_text(yaml.safe_dump({"metrics": []}))
        with pytest.raises(ConfigValidationError):
            reload_pipeline_config(path)
        assert get_pipeline_config() is before


# ---------------------------------------------------------------------------
# Metric catalog
# ---------------------------------------------------------------------------


class TestMetricCatalog:
    def test_resolve_known_metric(self, pipeline_config: PipelineConfig) -> None:
        catalog = MetricCatalog.from_config(pipeline_config)
        assert catalog.resolve("heart_rate").unit == "bpm"
        assert "blood_oxygen" in catalog
        assert len(catalog) == len(pipeline_config.metrics)

    def test_resolve_unknown_metric(self, pipeline_config: PipelineConfig) -> None:
        catalog = MetricCatalog.from_config(pipeline_config)
        with pytest.raises(UnknownMetric) as exc_info:
            catalog.resolve("blood_glucose")
        assert exc_info.value.name == "blood_glucose"

    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self, pipeline_config: PipelineConfig) -> None:
        store = InMemoryHealthStore()
        catalog = MetricCatalog.from_config(pipeline_config)

        assert await catalog.seed(store) == len(pipeline_config.metrics)
        assert await catalog.seed(store) == 0

        loaded = await MetricCatalog.load(store)
        assert loaded.names() == catalog.names()


class TestCheckRange:
    def test_in_range_value_returned_as_decimal(self) -> None:
        assert check_range(HEART_RATE, 72) == Decimal("72")

    def test_bounds_are_inclusive(self) -> None:
        assert check_range(HEART_RATE, 30) == Decimal("30")
        assert check_range(HEART_RATE, 220) == Decimal("220")

    def test_reject_policy(self) -> None:
        with pytest.raises(OutOfRangeValue):
            check_range(HEART_RATE, 29.9)

    def test_clamp_policy(self) -> None:
        assert check_range(HEART_RATE, 10, "clamp") == Decimal("30")
        assert check_range(HEART_RATE, 300, "clamp") == Decimal("220")

    def test_informational_policy(self) -> None:
        assert check_range(HEART_RATE, 300, "informational") == Decimal("300")

    def test_non_numeric_rejected_under_any_policy(self) -> None:
        with pytest.raises(OutOfRangeValue):
            check_range(HEART_RATE, "fast", "clamp")

    def test_unbounded_metric_accepts_anything(self) -> None:
        steps = MetricType(name="steps", display_name="Steps", unit="count")
        assert check_range(steps, 10**7) == Decimal(10**7)
