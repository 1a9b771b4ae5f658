"""Phone screen-time tracking.

``ScreenTimeTracker`` turns app-state transitions into per-day foreground
minutes:

    "active"                  → a foreground session starts
    "background" / "inactive" → the open session stops and is banked

Each banked session is floored to whole minutes.  A session that crosses
local midnight is split so each day receives only its own part.  The
tracker's state round-trips through ``to_json`` / ``from_json`` so the
mobile bridge can persist it between launches.

``ScreenTimeAdapter`` exposes the tracker as a pull source, emitting one
``ActivityDelta(screen_time_minutes=...)`` per day in the sync window.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable
from uuid import UUID
from zoneinfo import ZoneInfo

from src.pipeline.base import ActivityDelta, DeviceClass, NormalizedRecord, SourceAdapter
from src.pipeline.units import day_bounds, ensure_utc, local_date, parse_timestamp, utc_now

logger = logging.getLogger("healthsync.pipeline.screen_time")

FOREGROUND_STATES = ("active",)
BACKGROUND_STATES = ("background", "inactive")

# Days of history kept in persisted state
RETENTION_DAYS = 30


class ScreenTimeTracker:
    """Accumulates foreground minutes per local calendar day.

    Args:
        tz:    Timezone whose midnight splits sessions.
        clock: Returns "now"; injectable for tests.
    """

    def __init__(
        self,
        tz: ZoneInfo | timezone = timezone.utc,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._tz = tz
        self._clock = clock
        self._session_start: datetime | None = None
        self._daily: dict[date, int] = {}

    @property
    def tz(self) -> ZoneInfo | timezone:
        return self._tz

    def now(self) -> datetime:
        return self._clock()

    @property
    def is_tracking(self) -> bool:
        return self._session_start is not None

    def handle_app_state(self, state: str, at: datetime | None = None) -> None:
        """Feed one app-state transition.  Unknown states are ignored."""
        if state in FOREGROUND_STATES:
            self.start(at)
        elif state in BACKGROUND_STATES:
            self.stop(at)
        else:
            logger.debug("Ignoring app state %r", state)

    def start(self, at: datetime | None = None) -> None:
        # a second "active" keeps the original start
        if self._session_start is None:
            self._session_start = ensure_utc(at) if at else self._clock()

    def stop(self, at: datetime | None = None) -> int:
        """Close the open session and bank it.

        Returns:
            Minutes banked (0 if no session was open).
        """
        if self._session_start is None:
            return 0
        end = ensure_utc(at) if at else self._clock()
        banked = 0
        for day, minutes in self._split(self._session_start, end):
            self._daily[day] = self._daily.get(day, 0) + minutes
            banked += minutes
        self._session_start = None
        self._prune(end)
        return banked

    def minutes_for(self, day: date, now: datetime | None = None) -> int:
        """Banked minutes for ``day`` plus the open session's share of it."""
        total = self._daily.get(day, 0)
        if self._session_start is not None:
            now = ensure_utc(now) if now else self._clock()
            for session_day, minutes in self._split(self._session_start, now):
                if session_day == day:
                    total += minutes
        return total

    def current_minutes(self, now: datetime | None = None) -> int:
        """Today's screen time including the session in progress."""
        now = ensure_utc(now) if now else self._clock()
        return self.minutes_for(local_date(now, self._tz), now)

    def days(self) -> list[date]:
        return sorted(self._daily)

    def _split(self, start: datetime, end: datetime) -> list[tuple[date, int]]:
        if end <= start:
            return []
        parts: list[tuple[date, int]] = []
        cursor = start
        while cursor < end:
            day = local_date(cursor, self._tz)
            _, day_end = day_bounds(day, self._tz)
            part_end = min(end, day_end)
            parts.append((day, int((part_end - cursor).total_seconds() // 60)))
            cursor = part_end
        return parts

    def _prune(self, now: datetime) -> None:
        cutoff = local_date(now, self._tz) - timedelta(days=RETENTION_DAYS)
        for day in [d for d in self._daily if d < cutoff]:
            del self._daily[day]

    # ── Persistence ──

    def to_json(self) -> dict[str, Any]:
        return {
            "session_start": self._session_start.isoformat() if self._session_start else None,
            "daily": {day.isoformat(): minutes for day, minutes in sorted(self._daily.items())},
        }

    @classmethod
    def from_json(
        cls,
        data: dict[str, Any],
        tz: ZoneInfo | timezone = timezone.utc,
        clock: Callable[[], datetime] = utc_now,
    ) -> ScreenTimeTracker:
        tracker = cls(tz=tz, clock=clock)
        tracker._session_start = parse_timestamp(data.get("session_start"))
        for key, minutes in (data.get("daily") or {}).items():
            try:
                tracker._daily[date.fromisoformat(key)] = int(minutes)
            except (TypeError, ValueError):
                logger.warning("Dropping unreadable screen-time entry %r=%r", key, minutes)
        return tracker


class ScreenTimeAdapter(SourceAdapter):
    """Pull source over a ``ScreenTimeTracker``."""

    SOURCE_ID = "screen_time"
    DISPLAY_NAME = "Screen Time"
    DEVICE_CLASS = DeviceClass.PHONE

    def __init__(self, tracker: ScreenTimeTracker) -> None:
        self.tracker = tracker

    async def fetch(
        self, user_id: UUID, device_id: UUID, start: datetime, end: datetime
    ) -> list[NormalizedRecord]:
        tz = self.tracker.tz
        first = local_date(start, tz)
        last = local_date(end - timedelta(microseconds=1), tz)
        now = min(ensure_utc(end), self.tracker.now())

        deltas: list[NormalizedRecord] = []
        day = first
        while day <= last:
            minutes = self.tracker.minutes_for(day, now)
            if minutes > 0:
                deltas.append(
                    ActivityDelta(
                        user_id=user_id,
                        device_id=device_id,
                        date=day,
                        source=self.SOURCE_ID,
                        screen_time_minutes=minutes,
                    )
                )
            day += timedelta(days=1)
        return deltas
