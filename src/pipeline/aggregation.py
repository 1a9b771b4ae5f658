"""HealthSync Aggregation Engine.

The engine is the only write path into the canonical stores.  It:

1. Resolves each reading's metric against the catalog (UnknownMetric).
2. Applies the configured range policy (reject / clamp / informational).
3. Confirms the target device exists and belongs to the user.
4. Skips readings whose natural key (user, metric, device, recorded_at)
   is already stored, when dedup is enabled.
5. Inserts sleep sessions with a derived duration, skipping exact repeats
   of (user, device, start, end) when dedup is enabled.
6. Upserts one daily activity row per (user, date) under the configured
   merge policy, in a single atomic store call.

Batch operations never raise for per-item problems.  Each failing item is
counted and described in a ``BatchResult``; only fatal errors
(``StorageFailure``) propagate.

Summaries are derived on read by ``compute_summary`` and never persisted.

Usage::

    engine = AggregationEngine(store, catalog, config)
    result = await engine.ingest_batch(records)
    summary = await engine.compute_summary(user_id, date(2024, 1, 15))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Mapping, Sequence
from uuid import UUID
from zoneinfo import ZoneInfo

from src.pipeline.base import (
    ACTIVITY_FIELDS,
    ActivityDelta,
    DailyActivityRecord,
    HealthSummary,
    NormalizedRecord,
    Reading,
    ReadingRecord,
    SleepRecord,
    SleepSession,
    SleepStages,
    new_id,
)
from src.pipeline.catalog import MetricCatalog, check_range
from src.pipeline.config_loader import PipelineConfig, get_pipeline_config
from src.pipeline.errors import DeviceNotFound, PipelineError, ValidationError
from src.pipeline.store import HealthStore
from src.pipeline.sync.dedup import InMemoryDedupCache, reading_key, sleep_key
from src.pipeline.units import (
    day_bounds,
    ensure_utc,
    minutes_between,
    normalize_date,
    to_decimal,
    utc_now,
)

logger = logging.getLogger("healthsync.pipeline.aggregation")

HEART_RATE = "heart_rate"

_INT_ACTIVITY_FIELDS = ("steps", "active_minutes", "floors_climbed", "screen_time_minutes")
_DECIMAL_ACTIVITY_FIELDS = ("distance_meters", "calories_burned")


# ---------------------------------------------------------------------------
# Batch result
# ---------------------------------------------------------------------------


@dataclass
class BatchResult:
    """Outcome of a batch write.

    Attributes:
        succeeded: Items written (or already present and not deduplicated).
        failed:    Items rejected with a per-item error.
        skipped:   Items dropped as duplicates of stored rows.
        errors:    One human-readable message per failed item.
    """

    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.skipped

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 100.0
        return round((self.succeeded + self.skipped) / self.total * 100, 2)

    def add_failure(self, label: str, exc: Exception) -> None:
        self.failed += 1
        self.errors.append(f"{label}: {exc}")

    def merge(self, other: BatchResult) -> None:
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.skipped += other.skipped
        self.errors.extend(other.errors)

    def to_response(self) -> dict[str, Any]:
        """Render the batch-sync response body.

        ``success`` is true whenever the envelope was processed, even if
        some items failed; callers inspect ``results`` for partial failure.
        """
        return {
            "success": True,
            "results": {
                "success": self.succeeded + self.skipped,
                "failed": self.failed,
                "skipped": self.skipped,
                "errors": list(self.errors),
            },
            "summary": {
                "totalItems": self.total,
                "successCount": self.succeeded + self.skipped,
                "failedCount": self.failed,
                "successRate": f"{self.success_rate:.2f}%",
            },
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class AggregationEngine:
    """Validate, deduplicate and persist normalized records for any user.

    One engine may serve many users; it holds no per-user state.  The
    per-(user, date) activity upsert is one atomic store call, so engines in
    different workers cannot race on the same row.

    Args:
        store:   Persistence backend.
        catalog: Metric catalog used to resolve reading metric names.
        config:  Pipeline config; defaults to the global singleton.
        tz:      Timezone that defines "a day" for summaries and dates.
    """

    def __init__(
        self,
        store: HealthStore,
        catalog: MetricCatalog,
        config: PipelineConfig | None = None,
        tz: ZoneInfo | timezone = timezone.utc,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._config = config or get_pipeline_config()
        self._tz = tz

    @property
    def store(self) -> HealthStore:
        return self._store

    @property
    def catalog(self) -> MetricCatalog:
        return self._catalog

    @property
    def tz(self) -> ZoneInfo | timezone:
        return self._tz

    # ── Readings ─────────────────────────────────────────────────────────────

    async def record_reading(self, record: ReadingRecord) -> Reading:
        """Validate and append one reading.

        When dedup is enabled and a reading with the same natural key is
        already stored, the stored reading is returned and nothing is written.

        Raises:
            UnknownMetric:   Metric name not in the catalog.
            OutOfRangeValue: Value outside [min, max] under the reject policy.
            DeviceNotFound:  Device missing or owned by another user.
            StorageFailure:  Persistence failed.
        """
        reading, _ = await self._record_reading(record)
        return reading

    async def _record_reading(
        self, record: ReadingRecord, seen: InMemoryDedupCache | None = None
    ) -> tuple[Reading | None, bool]:
        metric_type = self._catalog.resolve(record.metric)
        value = check_range(metric_type, record.value, self._config.readings.range_policy)
        recorded_at = ensure_utc(record.recorded_at)
        await self._require_device(record.user_id, record.device_id)

        key = reading_key(record.user_id, metric_type.name, record.device_id, recorded_at)
        if self._config.readings.deduplicate:
            if seen is not None and seen.is_seen(key):
                return None, False
            existing = await self._store.find_reading(
                record.user_id, metric_type.name, record.device_id, recorded_at
            )
            if existing is not None:
                logger.debug("Duplicate reading skipped: %s", key)
                if seen is not None:
                    seen.mark_seen(key)
                return existing, False

        reading = await self._store.insert_reading(
            Reading(
                id=new_id(),
                user_id=record.user_id,
                device_id=record.device_id,
                metric=metric_type.name,
                value=value,
                recorded_at=recorded_at,
                metadata={**record.metadata, "source": record.source},
            )
        )
        if seen is not None:
            seen.mark_seen(key)
        return reading, True

    async def record_reading_batch(self, records: Sequence[ReadingRecord]) -> BatchResult:
        """Apply ``record_reading`` to each item independently.

        Per-item pipeline errors are counted, never raised.

        Raises:
            StorageFailure: Persistence failed; the batch stops.
        """
        result = BatchResult()
        seen = InMemoryDedupCache()
        for index, record in enumerate(records, start=1):
            try:
                _, created = await self._record_reading(record, seen)
            except PipelineError as exc:
                if exc.fatal:
                    raise
                result.add_failure(f"item {index} ({record.metric})", exc)
                continue
            if created:
                result.succeeded += 1
            else:
                result.skipped += 1

        logger.info(
            "Reading batch: %d succeeded, %d failed, %d skipped",
            result.succeeded, result.failed, result.skipped,
        )
        return result

    # ── Sleep ────────────────────────────────────────────────────────────────

    async def upsert_sleep_session(
        self,
        user_id: UUID,
        device_id: UUID,
        start: datetime,
        end: datetime,
        stages: SleepStages | None = None,
        quality_score: int | None = None,
        source: str = "manual",
        metadata: Mapping[str, Any] | None = None,
    ) -> SleepSession:
        """Insert a sleep session unless it is already stored.

        ``total_duration_minutes`` is always floor((end - start) / 1 min),
        whatever the stage minutes add up to.  When dedup is enabled a
        session with the same (user, device, start, end) is returned as
        stored and nothing is written.  Sessions that merely overlap are
        separate rows.

        Raises:
            ValidationError: ``end <= start``, negative stages, or a quality
                             score outside 0..100.
            DeviceNotFound:  Device missing or owned by another user.
        """
        session, _ = await self._upsert_sleep_session(
            SleepRecord(
                user_id=user_id,
                device_id=device_id,
                start=start,
                end=end,
                stages=stages or SleepStages(),
                quality_score=quality_score,
                source=source,
                metadata=dict(metadata or {}),
            )
        )
        return session

    async def _upsert_sleep_session(
        self, record: SleepRecord, seen: InMemoryDedupCache | None = None
    ) -> tuple[SleepSession | None, bool]:
        start = ensure_utc(record.start)
        end = ensure_utc(record.end)
        if end <= start:
            raise ValidationError(f"Sleep end {end.isoformat()} is not after start {start.isoformat()}")
        stages = record.stages or SleepStages()
        if min(stages.deep, stages.light, stages.rem, stages.awake) < 0:
            raise ValidationError("Sleep stage minutes must be non-negative")
        quality_score = record.quality_score
        if quality_score is not None and not 0 <= quality_score <= 100:
            raise ValidationError(f"Sleep quality score {quality_score} outside 0..100")
        await self._require_device(record.user_id, record.device_id)

        key = sleep_key(record.user_id, record.device_id, start, end)
        if self._config.sleep.deduplicate:
            if seen is not None and seen.is_seen(key):
                return None, False
            existing = await self._store.find_sleep_session(
                record.user_id, record.device_id, start, end
            )
            if existing is not None:
                logger.debug("Duplicate sleep session skipped: %s", key)
                if seen is not None:
                    seen.mark_seen(key)
                return existing, False

        session = await self._store.insert_sleep_session(
            SleepSession(
                id=new_id(),
                user_id=record.user_id,
                device_id=record.device_id,
                sleep_start=start,
                sleep_end=end,
                total_duration_minutes=minutes_between(start, end),
                deep_minutes=stages.deep,
                light_minutes=stages.light,
                rem_minutes=stages.rem,
                awake_minutes=stages.awake,
                quality_score=quality_score,
                metadata={**record.metadata, "source": record.source},
            )
        )
        if seen is not None:
            seen.mark_seen(key)
        logger.debug(
            "Sleep session saved: %dmin for user %s",
            session.total_duration_minutes, record.user_id,
        )
        return session, True

    # ── Daily activity ───────────────────────────────────────────────────────

    async def upsert_daily_activity(
        self,
        user_id: UUID,
        device_id: UUID,
        activity_date: date | datetime | str,
        delta: ActivityDelta | Mapping[str, Any],
    ) -> DailyActivityRecord:
        """Create or update the single activity row for (user, date).

        Under ``merge`` fields present in the delta overwrite stored values
        and absent fields keep theirs.  Under ``replace`` absent fields are
        reset to None.  The row keeps the device that created it in
        ``device_id``; every writing device is added to ``device_ids``.

        Raises:
            ValidationError: Unparseable date or negative / non-numeric values.
            DeviceNotFound:  Device missing or owned by another user.
        """
        try:
            day = normalize_date(activity_date, self._tz)
        except ValueError as exc:
            raise ValidationError(f"Invalid activity date {activity_date!r}") from exc

        fields = delta.present_fields() if isinstance(delta, ActivityDelta) else dict(delta)
        values = self._coerce_activity(fields)
        await self._require_device(user_id, device_id)

        if self._config.activity.merge_policy == "replace":
            columns = list(ACTIVITY_FIELDS)
        else:
            columns = list(values)

        record = await self._store.upsert_daily_activity(
            DailyActivityRecord(
                id=new_id(),
                user_id=user_id,
                device_id=device_id,
                activity_date=day,
                device_ids=[device_id],
                **values,
            ),
            columns,
        )
        logger.debug(
            "Activity row %s upserted (%s) for user %s on %s",
            record.id, self._config.activity.merge_policy, user_id, day,
        )
        return record

    @staticmethod
    def _coerce_activity(fields: Mapping[str, Any]) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for name, raw in fields.items():
            if name not in ACTIVITY_FIELDS:
                raise ValidationError(f"Unknown activity field {name!r}")
            if raw is None:
                continue
            amount = to_decimal(raw)
            if amount is None or not amount.is_finite():
                raise ValidationError(f"{name} must be numeric, got {raw!r}")
            if amount < 0:
                raise ValidationError(f"{name} must be non-negative, got {raw!r}")
            values[name] = amount if name in _DECIMAL_ACTIVITY_FIELDS else int(amount)
        return values

    # ── Tagged-record dispatch ───────────────────────────────────────────────

    async def ingest(
        self, record: NormalizedRecord
    ) -> Reading | SleepSession | DailyActivityRecord:
        """Persist one normalized record according to its ``kind`` tag."""
        if record.kind == "reading":
            return await self.record_reading(record)
        if record.kind == "sleep":
            session, _ = await self._upsert_sleep_session(record)
            return session
        if record.kind == "activity":
            return await self.upsert_daily_activity(
                record.user_id, record.device_id, record.date, record
            )
        raise ValidationError(f"Unsupported record kind {record.kind!r}")

    async def ingest_batch(
        self,
        records: Sequence[NormalizedRecord],
        positions: Sequence[int] | None = None,
    ) -> BatchResult:
        """Persist a mixed batch with the same partial-failure contract as
        ``record_reading_batch``.

        ``positions`` gives the item number used in each error label and
        defaults to 1..n.
        """
        result = BatchResult()
        seen = InMemoryDedupCache()
        numbers = positions if positions is not None else range(1, len(records) + 1)
        for index, record in zip(numbers, records):
            try:
                if isinstance(record, ReadingRecord):
                    _, created = await self._record_reading(record, seen)
                elif isinstance(record, SleepRecord):
                    _, created = await self._upsert_sleep_session(record, seen)
                else:
                    await self.ingest(record)
                    created = True
            except PipelineError as exc:
                if exc.fatal:
                    raise
                result.add_failure(f"item {index} ({record.kind})", exc)
                continue
            if created:
                result.succeeded += 1
            else:
                result.skipped += 1
        return result

    # ── Derived views ────────────────────────────────────────────────────────

    async def compute_summary(self, user_id: UUID, day: date | datetime | str) -> HealthSummary:
        """Derive the daily summary for (user, day).

        Any missing input yields its 0 / None default; absent data never
        raises.

        Sleep is attributed to the day it ends on.  When several sessions
        end that day the longest one supplies both the duration and the
        quality, so a nap or a second device's copy of the night is not
        added on top.
        """
        day = normalize_date(day, self._tz)
        start, end = day_bounds(day, self._tz)
        summary = HealthSummary(date=day)

        activity = await self._store.get_daily_activity(user_id, day)
        if activity is not None:
            summary.steps = activity.steps or 0
            summary.distance_meters = activity.distance_meters or Decimal("0")
            summary.calories_burned = activity.calories_burned or Decimal("0")
            summary.screen_time_minutes = activity.screen_time_minutes or 0

        sessions = [
            s for s in await self._store.list_sleep_sessions(user_id, start, end)
            if start < s.sleep_end <= end
        ]
        if sessions:
            main = max(sessions, key=lambda s: s.total_duration_minutes)
            summary.sleep_duration_hours = round(main.total_duration_minutes / 60, 2)
            summary.sleep_quality = main.quality_score

        readings = await self._store.list_readings(user_id, start, end, metric=HEART_RATE)
        if readings:
            values = [r.value for r in readings]
            mean = sum(values, Decimal("0")) / len(values)
            summary.avg_heart_rate = float(round(mean, 1))
            summary.max_heart_rate = float(max(values))
            summary.min_heart_rate = float(min(values))
            summary.heart_rate_samples = len(values)

        return summary

    async def sleep_history(
        self, user_id: UUID, days: int = 7, now: datetime | None = None
    ) -> list[SleepSession]:
        """Sessions that started in the last ``days`` days, newest first."""
        now = ensure_utc(now) if now else utc_now()
        cutoff = now - timedelta(days=days)
        sessions = await self._store.list_sleep_sessions(user_id, cutoff, now)
        return [s for s in sessions if s.sleep_start >= cutoff]

    async def activity_history(
        self, user_id: UUID, days: int = 7, now: datetime | None = None
    ) -> list[DailyActivityRecord]:
        """Activity rows for the last ``days`` days, newest first."""
        now = ensure_utc(now) if now else utc_now()
        today = now.astimezone(self._tz).date()
        return await self._store.list_daily_activity(
            user_id, today - timedelta(days=days), today
        )

    async def history(
        self, user_id: UUID, days: int = 7, now: datetime | None = None
    ) -> list[dict[str, Any]]:
        """Combined, newest-first timeline of activity, sleep and readings.

        Each entry is ``{"type", "timestamp", "data"}`` where ``type`` is
        ``activity``, ``sleep`` or the reading's metric name.
        """
        now = ensure_utc(now) if now else utc_now()
        cutoff = now - timedelta(days=days)
        entries: list[dict[str, Any]] = []

        for record in await self.activity_history(user_id, days, now):
            day_start, _ = day_bounds(record.activity_date, self._tz)
            entries.append({"type": "activity", "timestamp": day_start, "data": record})
        for session in await self.sleep_history(user_id, days, now):
            entries.append({"type": "sleep", "timestamp": session.sleep_start, "data": session})
        for reading in await self._store.list_readings(user_id, cutoff, now):
            entries.append({"type": reading.metric, "timestamp": reading.recorded_at, "data": reading})

        entries.sort(key=lambda e: e["timestamp"], reverse=True)
        return entries

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _require_device(self, user_id: UUID, device_id: UUID) -> None:
        device = await self._store.get_device(device_id)
        if device is None or device.user_id != user_id:
            raise DeviceNotFound(f"Device {device_id} not found for user {user_id}")
