"""Pydantic models for ingestion payloads and pipeline read views.

Item models validate one heart-rate sample, sleep session, activity delta
or generic reading.  They are used both by the single-item sync routes and
per item inside a batch envelope, so an invalid item in a batch becomes a
per-item error rather than rejecting the envelope.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator

from src.models.base import HealthSyncBase, utc_now

BATCH_MAX_ITEMS = 1000

BatchDataType = Literal["heartRate", "sleep", "steps", "mixed"]


# ---------- Inbound items ----------


class HeartRateItem(HealthSyncBase):
    value: Decimal = Field(ge=30, le=220)
    timestamp: datetime
    accuracy: Decimal = Field(default=Decimal("100"), ge=0, le=100)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SleepStagesIn(HealthSyncBase):
    deep: int = Field(default=0, ge=0)
    light: int = Field(default=0, ge=0)
    rem: int = Field(default=0, ge=0)
    awake: int = Field(default=0, ge=0)


class SleepItem(HealthSyncBase):
    sleep_start: datetime = Field(alias="sleepStart")
    sleep_end: datetime = Field(alias="sleepEnd")
    stages: SleepStagesIn = Field(default_factory=SleepStagesIn)
    quality_score: int | None = Field(default=None, ge=0, le=100, alias="qualityScore")
    heart_rate_variability: Decimal | None = Field(
        default=None, ge=0, alias="heartRateVariability"
    )
    restlessness: Decimal | None = Field(default=None, ge=0, le=100)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _end_after_start(self) -> SleepItem:
        if self.sleep_end <= self.sleep_start:
            raise ValueError("sleepEnd must be after sleepStart")
        return self


class StepsItem(HealthSyncBase):
    """One day's activity.  Omitted fields are "not reported", not zero."""

    activity_date: date | datetime = Field(alias="date")
    steps: int | None = Field(default=None, ge=0)
    distance: Decimal | None = Field(default=None, ge=0)
    distance_unit: Literal["m", "km", "mi"] = Field(default="m", alias="distanceUnit")
    calories: Decimal | None = Field(default=None, ge=0)
    active_minutes: int | None = Field(default=None, ge=0, le=1440, alias="activeMinutes")
    floors_climbed: int | None = Field(default=None, ge=0, alias="floorsClimbed")
    screen_time_minutes: int | None = Field(
        default=None, ge=0, le=1440, alias="screenTimeMinutes"
    )
    metadata: dict[str, Any] = Field(default_factory=dict)


class ReadingItem(HealthSyncBase):
    """Any catalogued metric; the name is resolved by the engine."""

    metric: str = Field(min_length=1, max_length=100)
    value: Decimal
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class BatchSyncRequest(HealthSyncBase):
    """Batch envelope.  Only envelope-level problems reject the request."""

    device_id: uuid.UUID | None = Field(default=None, alias="deviceId")
    data_type: BatchDataType = Field(alias="dataType")
    data: list[dict[str, Any]] = Field(min_length=1, max_length=BATCH_MAX_ITEMS)
    sync_timestamp: datetime = Field(default_factory=utc_now, alias="syncTimestamp")

    @field_validator("data")
    @classmethod
    def _items_are_objects(cls, v: list[Any]) -> list[Any]:
        for i, item in enumerate(v, start=1):
            if not isinstance(item, dict):
                raise ValueError(f"item {i} must be an object")
        return v


class SingleItemRequest(HealthSyncBase):
    """Wrapper fields shared by the single-item routes."""

    device_id: uuid.UUID | None = Field(default=None, alias="deviceId")


class HeartRateSyncRequest(HeartRateItem, SingleItemRequest):
    pass


class SleepSyncRequest(SleepItem, SingleItemRequest):
    pass


class StepsSyncRequest(StepsItem, SingleItemRequest):
    pass


# ---------- Read views ----------


class DeviceRead(HealthSyncBase):
    id: uuid.UUID
    device_type: str
    device_class: str
    device_name: str
    device_model: str
    manufacturer: str
    is_active: bool
    last_sync: datetime | None = None
    created_at: datetime


class ReadingRead(HealthSyncBase):
    id: uuid.UUID
    device_id: uuid.UUID
    metric: str
    value: Decimal
    recorded_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class SleepSessionRead(HealthSyncBase):
    id: uuid.UUID
    device_id: uuid.UUID
    sleep_start: datetime
    sleep_end: datetime
    total_duration_minutes: int
    deep_minutes: int
    light_minutes: int
    rem_minutes: int
    awake_minutes: int
    quality_score: int | None = None


class DailyActivityRead(HealthSyncBase):
    id: uuid.UUID
    device_id: uuid.UUID
    activity_date: date
    steps: int | None = None
    distance_meters: Decimal | None = None
    calories_burned: Decimal | None = None
    active_minutes: int | None = None
    floors_climbed: int | None = None
    screen_time_minutes: int | None = None
    device_ids: list[uuid.UUID] = []
    updated_at: datetime


class HealthSummaryRead(HealthSyncBase):
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


class HistoryEntry(HealthSyncBase):
    type: str
    timestamp: datetime
    data: dict[str, Any]
