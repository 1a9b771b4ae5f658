"""Manual / batch upload adapter.

Converts a batch envelope (``dataType`` heartRate | sleep | steps | mixed,
up to 1000 items) into normalized records.  Every item is validated on its
own with the pydantic item models; an invalid item becomes a per-item
error message and never rejects the rest of the batch.

In a ``mixed`` batch each item names its own ``type``: ``heartRate``,
``sleep``, ``steps`` or ``reading`` (any catalogued metric).

Envelopes may also be queued with ``submit`` and drained through the
regular ``fetch`` interface so the orchestrator can treat manual uploads
like any other source.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo

from pydantic import ValidationError as PydanticValidationError

from src.models.ingest import (
    BatchSyncRequest,
    HeartRateItem,
    ReadingItem,
    SleepItem,
    StepsItem,
)
from src.pipeline.base import (
    ActivityDelta,
    DeviceClass,
    NormalizedRecord,
    ReadingRecord,
    SleepRecord,
    SleepStages,
    SourceAdapter,
)
from src.pipeline.errors import ValidationError
from src.pipeline.units import ensure_utc, normalize_date, to_meters

logger = logging.getLogger("healthsync.pipeline.manual_batch")

_ITEM_LABELS = {
    "heartRate": "Heart rate",
    "sleep": "Sleep",
    "steps": "Steps",
    "reading": "Reading",
}


@dataclass
class Conversion:
    """Records produced from an envelope plus the items that failed validation.

    Attributes:
        records:   Normalized records, in item order.
        positions: 1-based envelope position of each record.
        errors:    One message per invalid item.
        total:     Number of items in the envelope.
    """

    records: list[NormalizedRecord] = field(default_factory=list)
    positions: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    total: int = 0


def _describe(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "item"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


class ManualBatchAdapter(SourceAdapter):
    """Batch envelope → normalized records."""

    SOURCE_ID = "manual_batch"
    DISPLAY_NAME = "Manual Upload"
    DEVICE_CLASS = DeviceClass.WEARABLE

    def __init__(
        self, tz: ZoneInfo | timezone = timezone.utc, default_sleep_quality: int = 75
    ) -> None:
        self._tz = tz
        self._default_sleep_quality = default_sleep_quality
        self._pending: list[NormalizedRecord] = []

    # ------------------------------------------------------------------
    # Queue interface
    # ------------------------------------------------------------------

    def submit(self, envelope: BatchSyncRequest, user_id: UUID, device_id: UUID) -> Conversion:
        """Convert an envelope and queue its valid records for the next ``fetch``."""
        conversion = self.convert(envelope, user_id, device_id)
        self._pending.extend(conversion.records)
        return conversion

    async def fetch(
        self, user_id: UUID, device_id: UUID, start: datetime, end: datetime
    ) -> list[NormalizedRecord]:
        # uploads are explicit, so queued records are drained regardless of window
        drained = [r for r in self._pending if r.user_id == user_id]
        self._pending = [r for r in self._pending if r.user_id != user_id]
        return drained

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def convert(self, envelope: BatchSyncRequest, user_id: UUID, device_id: UUID) -> Conversion:
        conversion = Conversion(total=len(envelope.data))
        for index, item in enumerate(envelope.data, start=1):
            item_type = envelope.data_type
            if item_type == "mixed":
                item_type = str(item.get("type", ""))
            label = _ITEM_LABELS.get(item_type)
            if label is None:
                conversion.errors.append(f"item {index}: Unknown data type: {item_type!r}")
                continue
            try:
                record = self.convert_item(
                    item_type, item, user_id, device_id, batch_sync_at=envelope.sync_timestamp
                )
            except PydanticValidationError as exc:
                conversion.errors.append(f"item {index}: {label} validation: {_describe(exc)}")
                continue
            except ValidationError as exc:
                conversion.errors.append(f"item {index}: {label} validation: {exc}")
                continue
            conversion.records.append(record)
            conversion.positions.append(index)

        if conversion.errors:
            logger.info(
                "Batch conversion: %d of %d items invalid", len(conversion.errors), conversion.total
            )
        return conversion

    def convert_item(
        self,
        item_type: str,
        item: dict[str, Any],
        user_id: UUID,
        device_id: UUID,
        batch_sync_at: datetime | None = None,
    ) -> NormalizedRecord:
        """Validate and normalize one item.

        Raises:
            pydantic.ValidationError: The item does not match its schema.
            ValidationError:          Unknown type or unsupported unit.
        """
        extra: dict[str, Any] = {}
        if batch_sync_at is not None:
            extra["batch_sync_at"] = ensure_utc(batch_sync_at).isoformat()

        if item_type == "heartRate":
            return self.from_heart_rate(HeartRateItem.model_validate(item), user_id, device_id, extra)
        if item_type == "sleep":
            return self.from_sleep(SleepItem.model_validate(item), user_id, device_id, extra)
        if item_type == "steps":
            return self.from_steps(StepsItem.model_validate(item), user_id, device_id)
        if item_type == "reading":
            parsed = ReadingItem.model_validate(item)
            return ReadingRecord(
                user_id=user_id,
                device_id=device_id,
                metric=parsed.metric,
                value=parsed.value,
                recorded_at=ensure_utc(parsed.timestamp, self._tz),
                source=self.SOURCE_ID,
                metadata={**parsed.metadata, **extra},
            )
        raise ValidationError(f"Unknown data type: {item_type!r}")

    def from_heart_rate(
        self, item: HeartRateItem, user_id: UUID, device_id: UUID, extra: dict[str, Any] | None = None
    ) -> ReadingRecord:
        return ReadingRecord(
            user_id=user_id,
            device_id=device_id,
            metric="heart_rate",
            value=item.value,
            recorded_at=ensure_utc(item.timestamp, self._tz),
            source=self.SOURCE_ID,
            metadata={**item.metadata, "accuracy": float(item.accuracy), **(extra or {})},
        )

    def from_sleep(
        self, item: SleepItem, user_id: UUID, device_id: UUID, extra: dict[str, Any] | None = None
    ) -> SleepRecord:
        metadata = {**item.metadata, **(extra or {})}
        if item.heart_rate_variability is not None:
            metadata["heart_rate_variability"] = float(item.heart_rate_variability)
        if item.restlessness is not None:
            metadata["restlessness"] = float(item.restlessness)
        return SleepRecord(
            user_id=user_id,
            device_id=device_id,
            start=ensure_utc(item.sleep_start, self._tz),
            end=ensure_utc(item.sleep_end, self._tz),
            source=self.SOURCE_ID,
            stages=SleepStages(
                deep=item.stages.deep,
                light=item.stages.light,
                rem=item.stages.rem,
                awake=item.stages.awake,
            ),
            quality_score=(
                item.quality_score
                if item.quality_score is not None
                else self._default_sleep_quality
            ),
            metadata=metadata,
        )

    def from_steps(self, item: StepsItem, user_id: UUID, device_id: UUID) -> ActivityDelta:
        try:
            distance = (
                to_meters(item.distance, item.distance_unit) if item.distance is not None else None
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        return ActivityDelta(
            user_id=user_id,
            device_id=device_id,
            date=normalize_date(item.activity_date, self._tz),
            source=self.SOURCE_ID,
            steps=item.steps,
            distance_meters=distance,
            calories_burned=item.calories,
            active_minutes=item.active_minutes,
            floors_climbed=item.floors_climbed,
            screen_time_minutes=item.screen_time_minutes,
        )
