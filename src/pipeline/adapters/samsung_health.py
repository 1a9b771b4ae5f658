"""Samsung Health adapter (Galaxy Watch via the Samsung Health SDK).

The native SDK binding is consumed through the ``SamsungHealthClient``
protocol; any object exposing these coroutines works (the mobile bridge in
production, a mock in tests).

SDK payloads:
    heart rate  — {"heartRate": 72, "timestamp": <epoch ms>, "accuracy": 95}
    sleep       — {"startTime": <ms>, "endTime": <ms>, "sleepStage": "deep", "duration": <min>}
                  one event per stage segment; segments are grouped into sessions
    steps       — {"stepCount": 1200, "timestamp": <ms>, "distance": <m>, "calories": <kcal>}
                  several samples per day; summed into one delta per local date
    devices     — {"devices": [{"type": "watch", "name": ..., "model": ..., "batteryLevel": ...}]}

Push events (``onHeartRateChanged``, ``onSleepDataChanged``,
``onStepDataChanged``) carry a single SDK item each.  Heart-rate and sleep
events are normalized by ``normalize_event`` with
``metadata["real_time"] = True``.  A step event is one sample rather than
the day's total, so it yields nothing and the next pull writes the day.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID
from zoneinfo import ZoneInfo

from src.pipeline.base import (
    ActivityDelta,
    DeviceClass,
    NormalizedRecord,
    ReadingRecord,
    SleepRecord,
    SleepStages,
    SourceAdapter,
)
from src.pipeline.config_loader import PipelineConfig, get_pipeline_config
from src.pipeline.errors import AdapterUnavailable, ValidationError
from src.pipeline.units import (
    local_date,
    minutes_between,
    parse_timestamp,
    safe_int,
    to_decimal,
    to_epoch_ms,
)

logger = logging.getLogger("healthsync.pipeline.samsung_health")

SLEEP_STAGES = ("deep", "light", "rem", "awake")

PUSH_EVENTS = ("onHeartRateChanged", "onSleepDataChanged", "onStepDataChanged")


class SamsungHealthClient(Protocol):
    """The subset of the Samsung Health SDK bridge the adapter calls."""

    async def initialize(self) -> dict[str, Any]: ...

    async def get_heart_rate_data(self, start_ms: int, end_ms: int) -> list[dict[str, Any]]: ...

    async def get_sleep_data(self, start_ms: int, end_ms: int) -> list[dict[str, Any]]: ...

    async def get_step_data(self, start_ms: int, end_ms: int) -> list[dict[str, Any]]: ...

    async def get_connected_devices(self) -> dict[str, Any]: ...


@dataclass
class WatchConnection:
    """Result of ``check_watch_connection``."""

    is_connected: bool
    name: str | None = None
    model: str | None = None
    battery_level: int = 0


class SamsungHealthAdapter(SourceAdapter):
    """Samsung Health SDK adapter.

    Heart rate arrives already in bpm; step distance in meters and calories
    in kcal.  Timestamps are epoch milliseconds, which are absolute, so no
    source-timezone correction is needed.  ``tz`` only decides which
    calendar day a step sample belongs to.
    """

    SOURCE_ID = "samsung_health"
    DISPLAY_NAME = "Samsung Health"
    DEVICE_CLASS = DeviceClass.WEARABLE

    def __init__(
        self,
        client: SamsungHealthClient | None = None,
        config: PipelineConfig | None = None,
        tz: ZoneInfo | timezone = timezone.utc,
    ) -> None:
        self._client = client
        self._config = config or get_pipeline_config()
        self._tz = tz
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> bool:
        """Initialize the SDK.  Returns False (never raises) when unavailable."""
        if self._client is None:
            logger.warning("Samsung Health SDK binding not installed")
            return False
        try:
            result = await self._client.initialize()
        except Exception as exc:
            logger.warning("Samsung Health SDK initialization failed: %s", exc)
            return False
        if not result.get("success"):
            logger.warning("Samsung Health SDK initialization refused: %s", result.get("error"))
            return False
        self._initialized = True
        logger.info("Samsung Health SDK initialized")
        return True

    def cleanup(self) -> None:
        self._initialized = False

    # ------------------------------------------------------------------
    # Historical pull
    # ------------------------------------------------------------------

    async def fetch(
        self, user_id: UUID, device_id: UUID, start: datetime, end: datetime
    ) -> list[NormalizedRecord]:
        if not self._initialized and not await self.initialize():
            raise AdapterUnavailable("Samsung Health SDK not initialized")

        start_ms, end_ms = to_epoch_ms(start), to_epoch_ms(end)
        heart_rate, sleep, steps = await asyncio.gather(
            self._client.get_heart_rate_data(start_ms, end_ms),
            self._client.get_sleep_data(start_ms, end_ms),
            self._client.get_step_data(start_ms, end_ms),
        )

        records: list[NormalizedRecord] = []
        records.extend(self.normalize_heart_rate(heart_rate or [], user_id, device_id))
        records.extend(self.group_sleep_stages(sleep or [], user_id, device_id))
        records.extend(self.normalize_steps(steps or [], user_id, device_id))
        logger.info(
            "Samsung Health: %d heart-rate, %d sleep-stage, %d step items for user %s",
            len(heart_rate or []), len(sleep or []), len(steps or []), user_id,
        )
        return records

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize_heart_rate(
        self,
        items: list[dict[str, Any]],
        user_id: UUID,
        device_id: UUID,
        real_time: bool = False,
    ) -> list[ReadingRecord]:
        records: list[ReadingRecord] = []
        for item in items:
            recorded_at = parse_timestamp(item.get("timestamp"))
            value = to_decimal(item.get("heartRate"))
            if recorded_at is None or value is None:
                logger.warning("Samsung Health: skipping malformed heart-rate item %r", item)
                continue
            records.append(
                ReadingRecord(
                    user_id=user_id,
                    device_id=device_id,
                    metric="heart_rate",
                    value=value,
                    recorded_at=recorded_at,
                    source=self.SOURCE_ID,
                    metadata={
                        "accuracy": item.get("accuracy") or 100,
                        "real_time": real_time,
                    },
                )
            )
        return records

    def group_sleep_stages(
        self,
        events: list[dict[str, Any]],
        user_id: UUID,
        device_id: UUID,
        real_time: bool = False,
    ) -> list[SleepRecord]:
        """Group per-stage sleep events into sessions.

        Events are sorted by start; an event beginning more than
        ``sleep.session_gap_minutes`` after the current session's end
        opens a new session.  Stage minutes are summed per stage.
        """
        segments: list[tuple[datetime, datetime, str, int]] = []
        for event in events:
            start = parse_timestamp(event.get("startTime"))
            end = parse_timestamp(event.get("endTime"))
            stage = str(event.get("sleepStage", "")).lower()
            if start is None or end is None or end <= start or stage not in SLEEP_STAGES:
                logger.warning("Samsung Health: skipping malformed sleep event %r", event)
                continue
            minutes = safe_int(event.get("duration"))
            if minutes is None or minutes < 0:
                minutes = minutes_between(start, end)
            segments.append((start, end, stage, minutes))

        segments.sort(key=lambda s: s[0])
        gap = timedelta(minutes=self._config.sleep.session_gap_minutes)
        groups: list[list[tuple[datetime, datetime, str, int]]] = []
        for segment in segments:
            if groups and segment[0] - max(s[1] for s in groups[-1]) <= gap:
                groups[-1].append(segment)
            else:
                groups.append([segment])

        records: list[SleepRecord] = []
        for group in groups:
            totals: dict[str, int] = defaultdict(int)
            for _, _, stage, minutes in group:
                totals[stage] += minutes
            stages = SleepStages(**{stage: totals[stage] for stage in SLEEP_STAGES})
            records.append(
                SleepRecord(
                    user_id=user_id,
                    device_id=device_id,
                    start=group[0][0],
                    end=max(s[1] for s in group),
                    source=self.SOURCE_ID,
                    stages=stages,
                    quality_score=self.stage_quality(stages),
                    metadata={"segments": len(group), "real_time": real_time},
                )
            )
        return records

    def stage_quality(self, stages: SleepStages) -> int | None:
        """Minute-weighted quality from the per-stage quality table.

        Returns None when the session has no stage minutes.
        """
        weights = self._config.sleep.stage_quality
        total = stages.total_minutes
        if total <= 0:
            return None
        score = sum(getattr(stages, stage) * weights.get(stage, 0) for stage in SLEEP_STAGES)
        return round(score / total)

    def normalize_steps(
        self,
        items: list[dict[str, Any]],
        user_id: UUID,
        device_id: UUID,
    ) -> list[ActivityDelta]:
        """Sum step samples into one delta per local day.

        Distance and calories are only set for days where at least one
        sample reports them, so a merge never zeroes stored values.
        """
        steps: dict = defaultdict(int)
        distance: dict = {}
        calories: dict = {}
        for item in items:
            at = parse_timestamp(item.get("timestamp"))
            count = safe_int(item.get("stepCount"))
            if at is None or count is None or count < 0:
                logger.warning("Samsung Health: skipping malformed step item %r", item)
                continue
            day = local_date(at, self._tz)
            steps[day] += count
            if item.get("distance") is not None:
                distance[day] = distance.get(day, Decimal("0")) + (
                    to_decimal(item["distance"]) or Decimal("0")
                )
            if item.get("calories") is not None:
                calories[day] = calories.get(day, Decimal("0")) + (
                    to_decimal(item["calories"]) or Decimal("0")
                )

        return [
            ActivityDelta(
                user_id=user_id,
                device_id=device_id,
                date=day,
                source=self.SOURCE_ID,
                steps=steps[day],
                distance_meters=distance.get(day),
                calories_burned=calories.get(day),
            )
            for day in sorted(steps)
        ]

    def normalize_event(
        self, name: str, payload: dict[str, Any], user_id: UUID, device_id: UUID
    ) -> list[NormalizedRecord]:
        """Normalize one real-time push event from the watch.

        A step event carries one sample, not the day's total, so it is not
        written; the next pull sums every sample for the day.

        Raises:
            ValidationError: For an unknown event name.
        """
        if name == "onHeartRateChanged":
            return list(self.normalize_heart_rate([payload], user_id, device_id, real_time=True))
        if name == "onSleepDataChanged":
            return list(self.group_sleep_stages([payload], user_id, device_id, real_time=True))
        if name == "onStepDataChanged":
            logger.debug("Samsung Health: step sample deferred to next pull: %r", payload)
            return []
        raise ValidationError(f"Unknown Samsung Health event {name!r}")

    # ------------------------------------------------------------------
    # Device
    # ------------------------------------------------------------------

    async def check_watch_connection(self) -> WatchConnection:
        """Report whether a Galaxy Watch is paired and reachable."""
        if not self._initialized or self._client is None:
            return WatchConnection(is_connected=False)
        try:
            result = await self._client.get_connected_devices()
        except Exception as exc:
            logger.warning("Samsung Health: watch connection check failed: %s", exc)
            return WatchConnection(is_connected=False)

        for device in result.get("devices") or []:
            name = str(device.get("name", ""))
            if device.get("type") == "watch" or "watch" in name.lower():
                return WatchConnection(
                    is_connected=True,
                    name=name,
                    model=device.get("model"),
                    battery_level=safe_int(device.get("batteryLevel")) or 0,
                )
        return WatchConnection(is_connected=False)
