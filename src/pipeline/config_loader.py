"""Load, validate, and hot-reload the HealthSync pipeline configuration.

The config lives in ``pipeline_config.yaml`` alongside this module.  At
startup it is loaded once and cached.  Call ``reload_pipeline_config()`` to
re-read from disk after an admin update — no restart required.

Usage::

    from src.pipeline.config_loader import get_pipeline_config

    config = get_pipeline_config()
    config.sync.backfill_hours              # 24
    config.completeness.expected("sleep")   # 7 (1 per day over 7 days)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from src.pipeline.base import MetricType

logger = logging.getLogger("healthsync.pipeline.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "pipeline_config.yaml"

RANGE_POLICIES = ("reject", "clamp", "informational")
MERGE_POLICIES = ("merge", "replace")


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class ReadingsConfig:
    """Write-time rules for point readings."""

    deduplicate: bool = True
    range_policy: str = "reject"


@dataclass
class ActivityConfig:
    """How repeated deltas for the same (user, date) combine."""

    merge_policy: str = "merge"


@dataclass
class SleepConfig:
    """Sleep-stage grouping and quality scoring."""

    deduplicate: bool = True
    session_gap_minutes: int = 30
    stage_quality: dict[str, int] = field(
        default_factory=lambda: {"deep": 90, "rem": 85, "light": 75, "awake": 40}
    )


@dataclass
class SyncConfig:
    """Sync cycle windows and watchdog."""

    backfill_hours: int = 24
    sync_window_hours: int = 24
    adapter_timeout_seconds: float = 30.0


@dataclass
class CompletenessConfig:
    """Expected data points per day for the device status score."""

    window_days: int = 7
    expected_per_day: dict[str, int] = field(
        default_factory=lambda: {"heart_rate": 1440, "sleep": 1, "activity": 1}
    )

    def expected(self, kind: str) -> int:
        return self.expected_per_day.get(kind, 1) * self.window_days


@dataclass
class BatchConfig:
    """Batch ingestion defaults."""

    default_sleep_quality: int = 75


@dataclass
class PipelineConfig:
    """Complete, validated pipeline configuration.

    This is the single in-memory representation of pipeline_config.yaml.

    Attributes:
        version:      Config schema version string.
        metrics:      Metric catalog seed entries.
        readings:     Reading dedup / range rules.
        activity:     Daily activity merge policy.
        sleep:        Sleep-stage grouping and quality weights.
        sync:         Backfill / sync windows and adapter timeout.
        completeness: Device status expectations.
        batch:        Batch ingestion defaults.
    """

    version: str
    metrics: list[MetricType]
    readings: ReadingsConfig = field(default_factory=ReadingsConfig)
    activity: ActivityConfig = field(default_factory=ActivityConfig)
    sleep: SleepConfig = field(default_factory=SleepConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    completeness: CompletenessConfig = field(default_factory=CompletenessConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    _raw: dict = field(default_factory=dict, repr=False)

    def metric(self, name: str) -> MetricType | None:
        for metric in self.metrics:
            if metric.name == name:
                return metric
        return None


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when pipeline_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Pipeline config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _decimal_or_none(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def _validate_and_build(raw: dict) -> PipelineConfig:
    """Validate the raw YAML dict and construct a PipelineConfig.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    # ── Metric catalog ──
    metrics: list[MetricType] = []
    seen: set[str] = set()
    metrics_raw = raw.get("metrics") or []
    if not metrics_raw:
        errors.append("'metrics' section is missing or empty")
    for i, entry in enumerate(metrics_raw):
        if not isinstance(entry, dict):
            errors.append(f"metrics[{i}] must be a mapping")
            continue
        name = entry.get("name")
        unit = entry.get("unit")
        if not name or not unit:
            errors.append(f"metrics[{i}] requires 'name' and 'unit'")
            continue
        if name in seen:
            errors.append(f"metrics[{i}]: duplicate metric name '{name}'")
            continue
        try:
            min_value = _decimal_or_none(entry.get("min"))
            max_value = _decimal_or_none(entry.get("max"))
        except InvalidOperation:
            errors.append(f"metrics.{name}: min/max must be numbers")
            continue
        if min_value is not None and max_value is not None and min_value > max_value:
            errors.append(f"metrics.{name}: min {min_value} > max {max_value}")
        seen.add(name)
        metrics.append(
            MetricType(
                name=name,
                display_name=entry.get("display_name", name.replace("_", " ").title()),
                unit=unit,
                min_value=min_value,
                max_value=max_value,
                description=entry.get("description", ""),
                category=entry.get("category", "other"),
            )
        )

    # ── Readings ──
    rd_raw = raw.get("readings", {}) or {}
    readings = ReadingsConfig(
        deduplicate=bool(rd_raw.get("deduplicate", True)),
        range_policy=str(rd_raw.get("range_policy", "reject")),
    )
    if readings.range_policy not in RANGE_POLICIES:
        errors.append(
            f"readings.range_policy must be one of {RANGE_POLICIES}, got {readings.range_policy!r}"
        )

    # ── Activity ──
    act_raw = raw.get("activity", {}) or {}
    activity = ActivityConfig(merge_policy=str(act_raw.get("merge_policy", "merge")))
    if activity.merge_policy not in MERGE_POLICIES:
        errors.append(
            f"activity.merge_policy must be one of {MERGE_POLICIES}, got {activity.merge_policy!r}"
        )

    # ── Sleep ──
    sl_raw = raw.get("sleep", {}) or {}
    stage_quality = SleepConfig().stage_quality
    for stage, score in (sl_raw.get("stage_quality") or {}).items():
        try:
            score = int(score)
        except (TypeError, ValueError):
            errors.append(f"sleep.stage_quality.{stage} must be an integer, got {score!r}")
            continue
        if not 0 <= score <= 100:
            errors.append(f"sleep.stage_quality.{stage} = {score} is out of range [0, 100]")
        stage_quality[stage] = score
    sleep = SleepConfig(
        deduplicate=bool(sl_raw.get("deduplicate", True)),
        session_gap_minutes=int(sl_raw.get("session_gap_minutes", 30)),
        stage_quality=stage_quality,
    )

    # ── Sync ──
    sy_raw = raw.get("sync", {}) or {}
    sync = SyncConfig(
        backfill_hours=int(sy_raw.get("backfill_hours", 24)),
        sync_window_hours=int(sy_raw.get("sync_window_hours", 24)),
        adapter_timeout_seconds=float(sy_raw.get("adapter_timeout_seconds", 30)),
    )
    if sync.backfill_hours <= 0 or sync.sync_window_hours <= 0:
        errors.append("sync.backfill_hours and sync.sync_window_hours must be positive")

    # ── Completeness ──
    cp_raw = raw.get("completeness", {}) or {}
    expected = CompletenessConfig().expected_per_day
    for kind, count in (cp_raw.get("expected_per_day") or {}).items():
        try:
            count = int(count)
        except (TypeError, ValueError):
            errors.append(f"completeness.expected_per_day.{kind} must be an integer")
            continue
        if count <= 0:
            errors.append(f"completeness.expected_per_day.{kind} must be positive")
        expected[kind] = count
    completeness = CompletenessConfig(
        window_days=int(cp_raw.get("window_days", 7)),
        expected_per_day=expected,
    )

    # ── Batch ──
    bt_raw = raw.get("batch", {}) or {}
    batch = BatchConfig(
        default_sleep_quality=int(bt_raw.get("default_sleep_quality", 75)),
    )

    if errors:
        raise ConfigValidationError(
            f"pipeline_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return PipelineConfig(
        version=version,
        metrics=metrics,
        readings=readings,
        activity=activity,
        sleep=sleep,
        sync=sync,
        completeness=completeness,
        batch=batch,
        _raw=raw,
    )


def build_pipeline_config(raw: dict) -> PipelineConfig:
    """Validate an already-parsed config dict (used by tests and overrides)."""
    return _validate_and_build(raw)


def load_pipeline_config(path: Path | None = None) -> PipelineConfig:
    """Load and validate the pipeline config from disk.

    Args:
        path: Override path to YAML. Uses the bundled pipeline_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded pipeline config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: PipelineConfig | None = None
_config_lock = threading.Lock()


def get_pipeline_config() -> PipelineConfig:
    """Return the global PipelineConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_pipeline_config()
    return _config


def reload_pipeline_config(path: Path | None = None) -> PipelineConfig:
    """Reload the config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_pipeline_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded pipeline config: %s → %s", old_version, new_config.version)
    return new_config
