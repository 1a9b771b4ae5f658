"""Sync window planning and resumable backfill state.

A window is the [start, end) range one adapter is asked for.  Windows are
aligned to local midnight: adapters that report daily totals (steps,
screen time) must see whole days, otherwise a partial-day total would
overwrite the full-day value already stored.

Backfill runs once per session over the configured look-back
(``sync.backfill_hours``).  ``BackfillState`` remembers, per source, how far
back-filling has already reached so a later session only asks for the
part that is still missing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable
from zoneinfo import ZoneInfo

from src.pipeline.units import day_bounds, ensure_utc, local_date, parse_timestamp

logger = logging.getLogger("healthsync.pipeline.sync.backfill")


@dataclass
class SyncWindow:
    """The range one source is pulled over.

    Attributes:
        source: Adapter SOURCE_ID.
        start:  Window start (aware UTC, inclusive).
        end:    Window end (aware UTC, exclusive).
    """

    source: str
    start: datetime
    end: datetime

    @property
    def hours(self) -> float:
        return round((self.end - self.start).total_seconds() / 3600, 2)


@dataclass
class BackfillState:
    """Persistent per-source backfill progress.

    Attributes:
        completed_through: Source → end of the last successfully backfilled window.
        errors:            Recent backfill error messages.
    """

    completed_through: dict[str, datetime] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def mark(self, source: str, through: datetime) -> None:
        through = ensure_utc(through)
        current = self.completed_through.get(source)
        if current is None or through > current:
            self.completed_through[source] = through

    def to_json(self) -> dict:
        return {
            "completed_through": {
                source: at.isoformat() for source, at in self.completed_through.items()
            },
            "errors": self.errors[-50:],  # keep last 50 errors
        }

    @classmethod
    def from_json(cls, data: dict) -> BackfillState:
        state = cls()
        for source, raw in (data.get("completed_through") or {}).items():
            at = parse_timestamp(raw)
            if at is not None:
                state.completed_through[source] = at
        state.errors = list(data.get("errors", []))
        return state


def window_start(
    now: datetime, hours: int, tz: ZoneInfo | timezone = timezone.utc
) -> datetime:
    """Local midnight of the day ``hours`` before ``now``, as UTC."""
    earliest = ensure_utc(now) - timedelta(hours=hours)
    start, _ = day_bounds(local_date(earliest, tz), tz)
    return start


def plan_backfill(
    sources: Iterable[str],
    now: datetime,
    lookback_hours: int,
    state: BackfillState | None = None,
    tz: ZoneInfo | timezone = timezone.utc,
) -> list[SyncWindow]:
    """Plan the first-run look-back window for each source.

    A source already backfilled up to ``now`` is skipped.  A partially
    backfilled source resumes at the start of the day its last window
    ended in.
    """
    now = ensure_utc(now)
    start = window_start(now, lookback_hours, tz)
    windows: list[SyncWindow] = []
    for source in sources:
        source_start = start
        done = state.completed_through.get(source) if state else None
        if done is not None and done >= now:
            logger.debug("Backfill already complete for %s", source)
            continue
        if done is not None and done > source_start:
            # restart at the beginning of that day so daily totals stay whole
            source_start = max(start, day_bounds(local_date(done, tz), tz)[0])
        windows.append(SyncWindow(source=source, start=source_start, end=now))
    return windows


def plan_sync(
    sources: Iterable[str],
    now: datetime,
    window_hours: int,
    tz: ZoneInfo | timezone = timezone.utc,
) -> list[SyncWindow]:
    """Plan the steady-state window for each source.

    Overlap with earlier windows is expected; reading dedup and the daily
    activity upsert make re-pulled data idempotent.
    """
    now = ensure_utc(now)
    start = window_start(now, window_hours, tz)
    return [SyncWindow(source=source, start=start, end=now) for source in sources]
