"""Google Fit REST adapter (Wear OS watches and Android phones).

Environment variables:
    GOOGLE_FIT_ACCESS_TOKEN — OAuth2 access token for single-user / dev use

API base: https://www.googleapis.com/fitness/v1/users/me

Endpoints used:
    POST /dataset:aggregate                   — heart rate (1-min buckets),
                                                steps / distance / calories /
                                                active minutes (1-day buckets),
                                                sleep segments per session
    GET  /sessions?activityType=72            — sleep sessions

Timestamps come back as epoch milliseconds (buckets, sessions) or epoch
nanoseconds (data points); both are converted to aware UTC.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo

import httpx

from src.pipeline.base import (
    ActivityDelta,
    DeviceClass,
    NormalizedRecord,
    ReadingRecord,
    SleepRecord,
    SleepStages,
    SourceAdapter,
)
from src.pipeline.errors import AdapterUnavailable
from src.pipeline.units import (
    from_epoch_ms,
    from_epoch_ns,
    local_date,
    minutes_between,
    to_decimal,
    to_epoch_ms,
)

logger = logging.getLogger("healthsync.pipeline.google_fit")

_FIT_API_BASE = "https://www.googleapis.com/fitness/v1/users/me"
_AGGREGATE_URL = f"{_FIT_API_BASE}/dataset:aggregate"
_SESSIONS_URL = f"{_FIT_API_BASE}/sessions"

SLEEP_ACTIVITY_TYPE = 72
_MINUTE_MS = 60_000
_DAY_MS = 86_400_000

# com.google.sleep.segment values → stage
_SLEEP_SEGMENT_STAGES: dict[int, str] = {
    1: "awake",
    2: "light",   # generic "sleeping"
    3: "awake",   # out of bed
    4: "light",
    5: "deep",
    6: "rem",
}

# Data source fragments of the daily aggregate → activity field
_DAILY_TYPES: dict[str, str] = {
    "com.google.step_count.delta": "steps",
    "com.google.distance.delta": "distance_meters",
    "com.google.calories.expended": "calories_burned",
    "com.google.active_minutes": "active_minutes",
}


class GoogleFitAdapter(SourceAdapter):
    """Google Fit adapter.

    Distances arrive in meters and calories in kcal, so only type and
    timestamp conversion is needed.  ``tz`` decides which calendar day a
    daily bucket belongs to.
    """

    SOURCE_ID = "google_fit"
    DISPLAY_NAME = "Google Fit"
    DEVICE_CLASS = DeviceClass.WEARABLE

    def __init__(
        self,
        access_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        tz: ZoneInfo | timezone = timezone.utc,
    ) -> None:
        """Initialize the Google Fit adapter.

        Args:
            access_token: OAuth2 bearer token (GOOGLE_FIT_ACCESS_TOKEN env var).
            http_client:  Optional pre-configured httpx client (for testing).
            tz:           Timezone for daily bucket dates.
        """
        self._access_token = access_token or os.environ.get("GOOGLE_FIT_ACCESS_TOKEN", "")
        self._http_client = http_client
        self._tz = tz

    async def fetch(
        self, user_id: UUID, device_id: UUID, start: datetime, end: datetime
    ) -> list[NormalizedRecord]:
        if not self._access_token:
            raise AdapterUnavailable("Google Fit access token not configured")

        start_ms, end_ms = to_epoch_ms(start), to_epoch_ms(end)
        records: list[NormalizedRecord] = []

        heart_rate = await self._aggregate(
            ["com.google.heart_rate.bpm"], start_ms, end_ms, _MINUTE_MS
        )
        records.extend(self.normalize_heart_rate(heart_rate, user_id, device_id))

        daily = await self._aggregate(list(_DAILY_TYPES), start_ms, end_ms, _DAY_MS)
        records.extend(self.normalize_daily(daily, user_id, device_id))

        sessions = await self._get(
            _SESSIONS_URL,
            params={
                "startTime": start.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
                "endTime": end.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
                "activityType": SLEEP_ACTIVITY_TYPE,
            },
        )
        for session in sessions.get("session", []):
            session_start = int(session["startTimeMillis"])
            session_end = int(session["endTimeMillis"])
            segments = await self._aggregate(
                ["com.google.sleep.segment"],
                session_start,
                session_end,
                max(session_end - session_start, 1),
            )
            record = self.normalize_sleep_session(session, segments, user_id, device_id)
            if record is not None:
                records.append(record)

        logger.info("Google Fit: %d records for user %s", len(records), user_id)
        return records

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize_heart_rate(
        self, response: dict[str, Any], user_id: UUID, device_id: UUID
    ) -> list[ReadingRecord]:
        """One reading per non-empty per-minute bucket (the bucket average)."""
        records: list[ReadingRecord] = []
        for bucket in response.get("bucket", []):
            for dataset in bucket.get("dataset", []):
                for point in dataset.get("point", []):
                    values = point.get("value") or []
                    bpm = to_decimal(values[0].get("fpVal")) if values else None
                    if bpm is None:
                        continue
                    if "startTimeNanos" in point:
                        recorded_at = from_epoch_ns(point["startTimeNanos"])
                    else:
                        recorded_at = from_epoch_ms(bucket["startTimeMillis"])
                    records.append(
                        ReadingRecord(
                            user_id=user_id,
                            device_id=device_id,
                            metric="heart_rate",
                            value=round(bpm, 1),
                            recorded_at=recorded_at,
                            source=self.SOURCE_ID,
                            metadata={"data_source": dataset.get("dataSourceId", "")},
                        )
                    )
        return records

    def normalize_daily(
        self, response: dict[str, Any], user_id: UUID, device_id: UUID
    ) -> list[ActivityDelta]:
        deltas: list[ActivityDelta] = []
        for bucket in response.get("bucket", []):
            day = local_date(from_epoch_ms(bucket["startTimeMillis"]), self._tz)
            fields: dict[str, Any] = {}
            for dataset in bucket.get("dataset", []):
                field_name = _daily_field(dataset.get("dataSourceId", ""))
                if field_name is None:
                    continue
                total = Decimal("0")
                seen = False
                for point in dataset.get("point", []):
                    for value in point.get("value") or []:
                        amount = value.get("intVal", value.get("fpVal"))
                        if amount is not None:
                            total += to_decimal(amount) or Decimal("0")
                            seen = True
                if seen:
                    fields[field_name] = total
            if not fields:
                continue
            deltas.append(
                ActivityDelta(
                    user_id=user_id,
                    device_id=device_id,
                    date=day,
                    source=self.SOURCE_ID,
                    steps=int(fields["steps"]) if "steps" in fields else None,
                    distance_meters=fields.get("distance_meters"),
                    calories_burned=fields.get("calories_burned"),
                    active_minutes=(
                        int(fields["active_minutes"]) if "active_minutes" in fields else None
                    ),
                )
            )
        return deltas

    def normalize_sleep_session(
        self,
        session: dict[str, Any],
        segments: dict[str, Any],
        user_id: UUID,
        device_id: UUID,
    ) -> SleepRecord | None:
        start = from_epoch_ms(session["startTimeMillis"])
        end = from_epoch_ms(session["endTimeMillis"])
        if end <= start:
            logger.warning("Google Fit: skipping sleep session with end <= start: %r", session)
            return None

        totals = {"deep": 0, "light": 0, "rem": 0, "awake": 0}
        for bucket in segments.get("bucket", []):
            for dataset in bucket.get("dataset", []):
                for point in dataset.get("point", []):
                    values = point.get("value") or []
                    stage = _SLEEP_SEGMENT_STAGES.get(values[0].get("intVal")) if values else None
                    if stage is None:
                        continue
                    totals[stage] += minutes_between(
                        from_epoch_ns(point["startTimeNanos"]),
                        from_epoch_ns(point["endTimeNanos"]),
                    )

        return SleepRecord(
            user_id=user_id,
            device_id=device_id,
            start=start,
            end=end,
            source=self.SOURCE_ID,
            stages=SleepStages(**totals),
            metadata={"session_id": session.get("id"), "name": session.get("name")},
        )

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _build_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    async def _aggregate(
        self, data_types: list[str], start_ms: int, end_ms: int, bucket_ms: int
    ) -> dict:
        body = {
            "aggregateBy": [{"dataTypeName": name} for name in data_types],
            "bucketByTime": {"durationMillis": bucket_ms},
            "startTimeMillis": start_ms,
            "endTimeMillis": end_ms,
        }
        return await self._post(_AGGREGATE_URL, body)

    async def _get(self, url: str, params: dict) -> dict:
        """Make an authenticated GET request to the Fitness API.

        Raises:
            httpx.HTTPStatusError: On non-2xx responses.
        """
        headers = self._build_headers()
        if self._http_client:
            response = await self._http_client.get(url, params=params, headers=headers)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.get(url, params=params, headers=headers)
        response.raise_for_status()
        return response.json()

    async def _post(self, url: str, body: dict) -> dict:
        headers = self._build_headers()
        if self._http_client:
            response = await self._http_client.post(url, json=body, headers=headers)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(url, json=body, headers=headers)
        response.raise_for_status()
        return response.json()


def _daily_field(data_source_id: str) -> str | None:
    for fragment, field_name in _DAILY_TYPES.items():
        if fragment in data_source_id:
            return field_name
    return None
