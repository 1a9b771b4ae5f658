"""Canonical data models and the source adapter ABC for the HealthSync pipeline.

Every source adapter subclasses SourceAdapter and returns the tagged
normalized records defined here (ReadingRecord / SleepRecord /
ActivityDelta).  The stored shapes (Reading, SleepSession,
DailyActivityRecord) are produced only by the aggregation engine.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal, Union
from uuid import UUID, uuid4

from src.pipeline.errors import AdapterUnavailable
from src.pipeline.units import utc_now

logger = logging.getLogger("healthsync.pipeline")


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


class DeviceType(str, Enum):
    WEAR_OS = "wear_os"
    ANDROID_PHONE = "android_phone"
    IPHONE = "iphone"
    FITNESS_TRACKER = "fitness_tracker"
    OTHER = "other"


class DeviceClass(str, Enum):
    """Coarse device grouping used when ensuring a device per session."""

    WEARABLE = "wearable"
    PHONE = "phone"
    OTHER = "other"


DEVICE_CLASS_TYPES: dict[DeviceClass, tuple[DeviceType, ...]] = {
    DeviceClass.PHONE: (DeviceType.ANDROID_PHONE, DeviceType.IPHONE),
    DeviceClass.WEARABLE: (DeviceType.WEAR_OS, DeviceType.FITNESS_TRACKER),
    DeviceClass.OTHER: (DeviceType.OTHER,),
}

# Type given to a lazily created device of each class
DEFAULT_DEVICE_TYPE: dict[DeviceClass, DeviceType] = {
    DeviceClass.PHONE: DeviceType.ANDROID_PHONE,
    DeviceClass.WEARABLE: DeviceType.WEAR_OS,
    DeviceClass.OTHER: DeviceType.OTHER,
}


@dataclass
class Device:
    """A data-source device owned by one user.

    Attributes:
        id:           Device UUID.
        user_id:      Owning user.
        device_type:  Concrete device type.
        device_name:  Display name ("Mobile Device", "Wear OS Device").
        device_model: Model string, "Unknown" until the SDK reports one.
        manufacturer: Manufacturer string, "Unknown" until reported.
        is_active:    False once the user unregisters the device.
        last_sync:    UTC time of the last successful sync cycle.
        created_at:   UTC creation time.
    """

    id: UUID
    user_id: UUID
    device_type: DeviceType
    device_name: str
    device_model: str = "Unknown"
    manufacturer: str = "Unknown"
    is_active: bool = True
    last_sync: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def device_class(self) -> DeviceClass:
        for device_class, types in DEVICE_CLASS_TYPES.items():
            if self.device_type in types:
                return device_class
        return DeviceClass.OTHER


# ---------------------------------------------------------------------------
# Metric catalog entries
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricType:
    """Catalog entry describing one point-reading metric.

    Attributes:
        name:         Unique key, e.g. "heart_rate".
        display_name: Human-readable name.
        unit:         Canonical unit readings are stored in.
        min_value:    Lower bound of the valid range (inclusive).
        max_value:    Upper bound of the valid range (inclusive).
        description:  Free text.
        category:     cardiovascular | activity | sleep | mental_health | other.
    """

    name: str
    display_name: str
    unit: str
    min_value: Decimal | None = None
    max_value: Decimal | None = None
    description: str = ""
    category: str = "other"


# ---------------------------------------------------------------------------
# Stored canonical records
# ---------------------------------------------------------------------------


@dataclass
class Reading:
    """A stored point-in-time metric observation (append-only)."""

    id: UUID
    user_id: UUID
    device_id: UUID
    metric: str
    value: Decimal
    recorded_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class SleepStages:
    """Minutes spent in each sleep stage."""

    deep: int = 0
    light: int = 0
    rem: int = 0
    awake: int = 0

    @property
    def asleep_minutes(self) -> int:
        return self.deep + self.light + self.rem

    @property
    def total_minutes(self) -> int:
        return self.asleep_minutes + self.awake

    def __add__(self, other: SleepStages) -> SleepStages:
        return SleepStages(
            deep=self.deep + other.deep,
            light=self.light + other.light,
            rem=self.rem + other.rem,
            awake=self.awake + other.awake,
        )


@dataclass
class SleepSession:
    """A stored sleep interval.  ``total_duration_minutes`` is always
    derived from start/end by the engine, never taken from a source."""

    id: UUID
    user_id: UUID
    device_id: UUID
    sleep_start: datetime
    sleep_end: datetime
    total_duration_minutes: int
    deep_minutes: int = 0
    light_minutes: int = 0
    rem_minutes: int = 0
    awake_minutes: int = 0
    quality_score: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


#: Numeric fields of a daily activity record, in storage order.
ACTIVITY_FIELDS: tuple[str, ...] = (
    "steps",
    "distance_meters",
    "calories_burned",
    "active_minutes",
    "floors_climbed",
    "screen_time_minutes",
)


@dataclass
class DailyActivityRecord:
    """One logical activity rollup per (user, date).

    ``device_id`` is the device that created the row.  ``device_ids`` lists
    every device that has written to it, in first-write order.
    """

    id: UUID
    user_id: UUID
    device_id: UUID
    activity_date: date
    steps: int | None = None
    distance_meters: Decimal | None = None
    calories_burned: Decimal | None = None
    active_minutes: int | None = None
    floors_climbed: int | None = None
    screen_time_minutes: int | None = None
    device_ids: list[UUID] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class HealthSummary:
    """Derived, never-persisted daily view.  Missing inputs stay 0 / None."""

    date: date
    steps: int = 0
    distance_meters: Decimal = Decimal("0")
    calories_burned: Decimal = Decimal("0")
    screen_time_minutes: int = 0
    sleep_duration_hours: float = 0.0
    sleep_quality: int | None = None
    avg_heart_rate: float | None = None
    max_heart_rate: float | None = None
    min_heart_rate: float | None = None
    heart_rate_samples: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Normalized records (adapter output) — a tagged union on ``kind``
# ---------------------------------------------------------------------------


@dataclass
class ReadingRecord:
    """One normalized point reading."""

    user_id: UUID
    device_id: UUID
    metric: str
    value: Decimal | float | int
    recorded_at: datetime
    source: str
    metadata: dict[str, Any] = field(default_factory=dict)
    kind: Literal["reading"] = field(default="reading", init=False)


@dataclass
class SleepRecord:
    """One normalized sleep interval with stage minutes."""

    user_id: UUID
    device_id: UUID
    start: datetime
    end: datetime
    source: str
    stages: SleepStages = field(default_factory=SleepStages)
    quality_score: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    kind: Literal["sleep"] = field(default="sleep", init=False)


@dataclass
class ActivityDelta:
    """Activity values for one (user, date).  ``None`` means "not reported"."""

    user_id: UUID
    device_id: UUID
    date: date
    source: str
    steps: int | None = None
    distance_meters: Decimal | None = None
    calories_burned: Decimal | None = None
    active_minutes: int | None = None
    floors_climbed: int | None = None
    screen_time_minutes: int | None = None
    kind: Literal["activity"] = field(default="activity", init=False)

    def present_fields(self) -> dict[str, Any]:
        """Return only the activity fields this delta actually reports."""
        return {
            name: getattr(self, name)
            for name in ACTIVITY_FIELDS
            if getattr(self, name) is not None
        }


NormalizedRecord = Union[ReadingRecord, SleepRecord, ActivityDelta]


# ---------------------------------------------------------------------------
# Adapter result
# ---------------------------------------------------------------------------


@dataclass
class AdapterResult:
    """Outcome of one adapter pull.

    Distinguishes "the source had no data" (ok, empty records) from "the
    source failed" (error set, empty records).

    Attributes:
        source:     Adapter SOURCE_ID.
        records:    Normalized records produced.
        error:      Error message when the pull failed.
        error_type: Exception class name of the failure.
        elapsed_ms: Wall time of the pull.
    """

    source: str
    records: list[NormalizedRecord] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, source: str, exc: BaseException, elapsed_ms: int = 0) -> AdapterResult:
        return cls(
            source=source,
            error=str(exc) or exc.__class__.__name__,
            error_type=exc.__class__.__name__,
            elapsed_ms=elapsed_ms,
        )


# ---------------------------------------------------------------------------
# Abstract base adapter
# ---------------------------------------------------------------------------


class SourceAdapter(ABC):
    """Abstract base class for all ingestion adapters.

    Subclasses implement ``fetch()``, which may raise freely.  Callers use
    ``pull()``, which turns any adapter-side failure (SDK missing, HTTP
    error, timeout) into an ``AdapterResult`` with ``error`` set so one
    failing source never aborts its siblings.
    """

    #: Unique slug written to each record's ``source`` tag.
    SOURCE_ID: str = "unknown"

    #: Human-readable name for logging and UI.
    DISPLAY_NAME: str = "Unknown Source"

    #: Which device class this source's records belong to.
    DEVICE_CLASS: DeviceClass = DeviceClass.OTHER

    @abstractmethod
    async def fetch(
        self, user_id: UUID, device_id: UUID, start: datetime, end: datetime
    ) -> list[NormalizedRecord]:
        """Fetch and normalize everything the source has for [start, end).

        Args:
            user_id:   Internal user UUID.
            device_id: Device the produced records are attributed to.
            start:     Window start (aware UTC).
            end:       Window end (aware UTC).

        Returns:
            Normalized records.

        Raises:
            AdapterUnavailable: If the source is not initialized or reachable.
        """

    async def pull(
        self,
        user_id: UUID,
        device_id: UUID,
        start: datetime,
        end: datetime,
        timeout: float | None = None,
    ) -> AdapterResult:
        """Run ``fetch()`` and capture failures in the result."""
        started = time.monotonic()
        try:
            if timeout:
                records = await asyncio.wait_for(
                    self.fetch(user_id, device_id, start, end), timeout=timeout
                )
            else:
                records = await self.fetch(user_id, device_id, start, end)
        except asyncio.TimeoutError:
            elapsed = int((time.monotonic() - started) * 1000)
            logger.warning(
                "%s: fetch timed out after %.1fs for user %s", self.SOURCE_ID, timeout, user_id
            )
            return AdapterResult.failure(
                self.SOURCE_ID,
                AdapterUnavailable(f"{self.DISPLAY_NAME} timed out after {timeout}s"),
                elapsed,
            )
        except Exception as exc:
            elapsed = int((time.monotonic() - started) * 1000)
            logger.warning("%s: fetch failed for user %s: %s", self.SOURCE_ID, user_id, exc)
            return AdapterResult.failure(self.SOURCE_ID, exc, elapsed)

        elapsed = int((time.monotonic() - started) * 1000)
        logger.debug(
            "%s: %d records for user %s in %dms", self.SOURCE_ID, len(records), user_id, elapsed
        )
        return AdapterResult(source=self.SOURCE_ID, records=list(records), elapsed_ms=elapsed)


def new_id() -> UUID:
    return uuid4()
