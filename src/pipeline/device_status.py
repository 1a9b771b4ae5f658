"""Per-device sync status and data completeness.

Completeness compares how many data points a device produced over the
trailing window with how many a fully-worn device would have produced:

    score(kind) = min(100, actual / (expected_per_day * window_days) * 100)
    overall     = mean of the per-kind scores

Expected per day defaults to heart_rate 1440 (one per minute), sleep 1,
activity 1 over a 7-day window.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo

from src.pipeline.base import Device
from src.pipeline.config_loader import CompletenessConfig
from src.pipeline.registry import DeviceRegistry
from src.pipeline.store import HealthStore
from src.pipeline.units import ensure_utc, local_date, utc_now

logger = logging.getLogger("healthsync.pipeline.device_status")

KINDS = ("heart_rate", "sleep", "activity")


@dataclass
class KindStatus:
    """Last data time and trailing-window count for one data kind."""

    last_sync: datetime | None
    recent_count: int


@dataclass
class DeviceStatus:
    """Sync status of one device.

    Attributes:
        device:       The device.
        kinds:        Per-kind status keyed by heart_rate / sleep / activity.
        completeness: Per-kind rounded scores plus ``overall``.
    """

    device: Device
    kinds: dict[str, KindStatus] = field(default_factory=dict)
    completeness: dict[str, int] = field(default_factory=dict)

    @property
    def total_recent(self) -> int:
        return sum(k.recent_count for k in self.kinds.values())

    @property
    def is_active(self) -> bool:
        return self.total_recent > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "device": {
                "id": str(self.device.id),
                "name": self.device.device_name,
                "type": self.device.device_type.value,
                "last_sync": self.device.last_sync.isoformat() if self.device.last_sync else None,
            },
            "sync_status": {
                kind: {
                    "last_sync": status.last_sync.isoformat() if status.last_sync else None,
                    "recent_count": status.recent_count,
                }
                for kind, status in self.kinds.items()
            },
            "summary": {
                "total_recent_records": self.total_recent,
                "is_active": self.is_active,
                "data_completeness": self.completeness,
            },
        }


def completeness_scores(counts: dict[str, int], config: CompletenessConfig) -> dict[str, int]:
    """Compute rounded per-kind completeness and the overall average.

    Args:
        counts: Actual data points per kind over the window.
        config: Expected-per-day figures and window length.

    Returns:
        ``{"overall": int, "heart_rate": int, "sleep": int, "activity": int}``
    """
    raw: dict[str, float] = {}
    for kind in KINDS:
        expected = config.expected(kind)
        raw[kind] = min(100.0, counts.get(kind, 0) / expected * 100) if expected else 0.0

    scores = {"overall": round(sum(raw.values()) / len(raw))}
    scores.update({kind: round(value) for kind, value in raw.items()})
    return scores


async def device_status(
    store: HealthStore,
    registry: DeviceRegistry,
    device_id: UUID,
    config: CompletenessConfig,
    now: datetime | None = None,
    tz: ZoneInfo | timezone = timezone.utc,
) -> DeviceStatus:
    """Build the status report for one of the registry user's devices.

    Activity rows are bucketed by local date, so ``tz`` must match the
    engine that wrote them.

    Raises:
        DeviceNotFound: If the device does not belong to the user.
    """
    device = await registry.get_device(device_id)
    user_id = registry.user_id
    now = ensure_utc(now) if now else utc_now()
    since = now - timedelta(days=config.window_days)

    heart_rate = await store.list_readings(user_id, since, now, metric="heart_rate", device_id=device_id)
    sleep = [
        s for s in await store.list_sleep_sessions(user_id, since, now, device_id=device_id)
        if s.sleep_start >= since
    ]
    activity = await store.list_daily_activity(
        user_id, local_date(since, tz), local_date(now, tz), device_id=device_id
    )

    counts = {"heart_rate": len(heart_rate), "sleep": len(sleep), "activity": len(activity)}
    status = DeviceStatus(
        device=device,
        kinds={
            "heart_rate": KindStatus(
                await store.last_reading_at(user_id, device_id, "heart_rate"), counts["heart_rate"]
            ),
            "sleep": KindStatus(await store.last_sleep_at(user_id, device_id), counts["sleep"]),
            "activity": KindStatus(
                await store.last_activity_at(user_id, device_id), counts["activity"]
            ),
        },
        completeness=completeness_scores(counts, config),
    )
    logger.debug("Device %s status: %s", device_id, status.completeness)
    return status
