"""Deduplication keys for HealthSync ingestion.

Overlapping backfills and push events replaying recent data would otherwise
store the same instant twice.  Natural keys:

    readings:        (user_id, metric, device_id, recorded_at), checked by the engine
    sleep_sessions:  (user_id, device_id, sleep_start, sleep_end), checked by the engine
    daily_activity:  (user_id, activity_date), UNIQUE constraint

Sleep sessions that overlap without matching exactly are separate rows.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from uuid import UUID

from src.pipeline.units import to_epoch_ms

logger = logging.getLogger("healthsync.pipeline.sync.dedup")


def reading_key(user_id: UUID, metric: str, device_id: UUID, recorded_at: datetime) -> str:
    """Generate the dedup key for a point reading.

    Matches the natural-key index on health_readings:
    (user_id, metric, device_id, recorded_at).  The instant is rendered as
    epoch milliseconds so equal instants in different zones collide.

    Returns:
        Colon-separated dedup key string.
    """
    return f"{user_id}:{metric}:{device_id}:{to_epoch_ms(recorded_at)}"


def sleep_key(user_id: UUID, device_id: UUID, start: datetime, end: datetime) -> str:
    """Generate the dedup key for a sleep session (bounds as epoch ms)."""
    return f"{user_id}:{device_id}:{to_epoch_ms(start)}:{to_epoch_ms(end)}"


def activity_key(user_id: UUID, activity_date: date) -> str:
    """Generate the dedup key for a daily activity row."""
    return f"{user_id}:{activity_date.isoformat()}"


class InMemoryDedupCache:
    """In-process dedup cache for one ingestion batch or sync run.

    Not a replacement for the store's natural-key lookup; it only saves a
    storage round-trip for keys already written in the same run.

    Usage::

        cache = InMemoryDedupCache()
        if cache.is_seen(key):
            logger.debug("Skipping duplicate: %s", key)
        else:
            cache.mark_seen(key)
    """

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def is_seen(self, key: str) -> bool:
        return key in self._seen

    def mark_seen(self, key: str) -> None:
        self._seen.add(key)

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)
