"""Unit and timestamp normalization shared by all source adapters.

Everything leaving an adapter uses metric units (meters, kcal, minutes,
bpm) and timezone-aware UTC datetimes.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from zoneinfo import ZoneInfo

logger = logging.getLogger("healthsync.pipeline.units")

_METERS_PER_UNIT: dict[str, Decimal] = {
    "m": Decimal("1"),
    "meter": Decimal("1"),
    "meters": Decimal("1"),
    "km": Decimal("1000"),
    "kilometer": Decimal("1000"),
    "kilometers": Decimal("1000"),
    "mi": Decimal("1609.344"),
    "mile": Decimal("1609.344"),
    "miles": Decimal("1609.344"),
    "ft": Decimal("0.3048"),
    "feet": Decimal("0.3048"),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def safe_int(value: object) -> int | None:
    """Coerce a value to int, returning None on failure."""
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def to_decimal(value: object) -> Decimal | None:
    """Coerce a number or numeric string to Decimal via its string form.

    Going through ``str`` keeps ``0.1`` as ``Decimal('0.1')`` instead of the
    binary float expansion, so repeated upserts do not drift.
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def to_meters(value: object, unit: str = "m") -> Decimal | None:
    """Convert a distance to meters.

    Raises:
        ValueError: If the unit is not recognized.
    """
    amount = to_decimal(value)
    if amount is None:
        return None
    factor = _METERS_PER_UNIT.get(unit.strip().lower())
    if factor is None:
        raise ValueError(f"Unsupported distance unit: {unit!r}")
    return amount * factor


def ensure_utc(value: datetime, source_tz: ZoneInfo | timezone | None = None) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    Naive datetimes are interpreted in ``source_tz`` (the source's local
    clock) or UTC when no zone is given.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=source_tz or timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(
    value: str | int | float | datetime | None,
    source_tz: ZoneInfo | timezone | None = None,
) -> datetime | None:
    """Parse an ISO-8601 string, epoch-milliseconds number or datetime to UTC.

    Returns None if the value is None or unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value, source_tz)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return from_epoch_ms(value)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        logger.warning("Could not parse datetime string: %r", value)
        return None
    return ensure_utc(parsed, source_tz)


def from_epoch_ms(value: int | float | str) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def from_epoch_ns(value: int | str) -> datetime:
    # integer division keeps microsecond precision without float rounding
    micros = int(value) // 1000
    return datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(microseconds=micros)


def to_epoch_ms(value: datetime) -> int:
    return int(ensure_utc(value).timestamp() * 1000)


def day_bounds(day: date, tz: ZoneInfo | timezone = timezone.utc) -> tuple[datetime, datetime]:
    """Return the half-open UTC window [start, end) covering ``day`` in ``tz``."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def local_date(value: datetime, tz: ZoneInfo | timezone = timezone.utc) -> date:
    """Calendar date of an instant in ``tz`` (time-of-day stripped)."""
    return ensure_utc(value).astimezone(tz).date()


def normalize_date(value: date | datetime | str, tz: ZoneInfo | timezone = timezone.utc) -> date:
    """Normalize a date-like value to a date-only boundary.

    Raises:
        ValueError: If a string cannot be parsed.
    """
    if isinstance(value, datetime):
        return local_date(value, tz)
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if "T" in text or " " in text:
        parsed = parse_timestamp(text)
        if parsed is None:
            raise ValueError(f"Invalid date: {value!r}")
        return local_date(parsed, tz)
    return date.fromisoformat(text)


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from start to end, floored."""
    return int((end - start).total_seconds() // 60)
