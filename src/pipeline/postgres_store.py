"""asyncpg-backed ``HealthStore``.

Tables are defined in ``schema.sql``.  Every call runs in its own
transaction through ``src.services.database.get_connection``; connection,
protocol and server errors are re-raised as ``StorageFailure`` so the
orchestrator can treat them as fatal.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, AsyncGenerator, Sequence
from uuid import UUID

import asyncpg

from src.pipeline.base import (
    ACTIVITY_FIELDS,
    DailyActivityRecord,
    Device,
    DeviceType,
    MetricType,
    Reading,
    SleepSession,
)
from src.pipeline.errors import StorageFailure
from src.pipeline.store import HealthStore
from src.services.database import get_connection

logger = logging.getLogger("healthsync.pipeline.postgres_store")

_STORAGE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

_DEVICE_COLUMNS = (
    "id, user_id, device_type, device_name, device_model, manufacturer, "
    "is_active, last_sync, created_at"
)
_READING_COLUMNS = "id, user_id, device_id, metric, value, recorded_at, metadata, created_at"
_SLEEP_COLUMNS = (
    "id, user_id, device_id, sleep_start, sleep_end, total_duration_minutes, "
    "deep_minutes, light_minutes, rem_minutes, awake_minutes, quality_score, "
    "metadata, created_at"
)
_ACTIVITY_COLUMNS = (
    "id, user_id, device_id, activity_date, " + ", ".join(ACTIVITY_FIELDS)
    + ", device_ids, created_at, updated_at"
)


def _dumps(value: dict[str, Any]) -> str:
    return json.dumps(value, default=str)


def _loads(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _device(row: asyncpg.Record) -> Device:
    return Device(
        id=row["id"],
        user_id=row["user_id"],
        device_type=DeviceType(row["device_type"]),
        device_name=row["device_name"],
        device_model=row["device_model"],
        manufacturer=row["manufacturer"],
        is_active=row["is_active"],
        last_sync=row["last_sync"],
        created_at=row["created_at"],
    )


def _reading(row: asyncpg.Record) -> Reading:
    return Reading(
        id=row["id"],
        user_id=row["user_id"],
        device_id=row["device_id"],
        metric=row["metric"],
        value=row["value"],
        recorded_at=row["recorded_at"],
        metadata=_loads(row["metadata"]),
        created_at=row["created_at"],
    )


def _sleep(row: asyncpg.Record) -> SleepSession:
    return SleepSession(
        id=row["id"],
        user_id=row["user_id"],
        device_id=row["device_id"],
        sleep_start=row["sleep_start"],
        sleep_end=row["sleep_end"],
        total_duration_minutes=row["total_duration_minutes"],
        deep_minutes=row["deep_minutes"],
        light_minutes=row["light_minutes"],
        rem_minutes=row["rem_minutes"],
        awake_minutes=row["awake_minutes"],
        quality_score=row["quality_score"],
        metadata=_loads(row["metadata"]),
        created_at=row["created_at"],
    )


def _activity(row: asyncpg.Record) -> DailyActivityRecord:
    return DailyActivityRecord(
        id=row["id"],
        user_id=row["user_id"],
        device_id=row["device_id"],
        activity_date=row["activity_date"],
        **{name: row[name] for name in ACTIVITY_FIELDS},
        device_ids=list(row["device_ids"] or []),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresHealthStore(HealthStore):
    """HealthStore over an asyncpg pool.

    Args:
        pool: Pool created by ``src.services.database.init_pool``.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @asynccontextmanager
    async def _conn(self, user_id: UUID | None = None) -> AsyncGenerator[asyncpg.Connection, None]:
        try:
            async with get_connection(user_id=user_id, pool=self._pool) as conn:
                yield conn
        except _STORAGE_ERRORS as exc:
            logger.error("Storage operation failed: %s", exc)
            raise StorageFailure(f"Storage unavailable: {exc}") from exc

    async def ping(self) -> bool:
        try:
            async with self._conn() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except StorageFailure:
            return False

    async def close(self) -> None:
        await self._pool.close()

    # ── Metric catalog ──

    async def list_metric_types(self) -> list[MetricType]:
        async with self._conn() as conn:
            rows = await conn.fetch(
                "SELECT name, display_name, unit, min_value, max_value, description, category "
                "FROM health_metric_types ORDER BY name"
            )
        return [MetricType(**dict(row)) for row in rows]

    async def insert_metric_type(self, metric_type: MetricType) -> bool:
        async with self._conn() as conn:
            status = await conn.execute(
                "INSERT INTO health_metric_types "
                "(name, display_name, unit, min_value, max_value, description, category) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7) ON CONFLICT (name) DO NOTHING",
                metric_type.name,
                metric_type.display_name,
                metric_type.unit,
                metric_type.min_value,
                metric_type.max_value,
                metric_type.description,
                metric_type.category,
            )
        # asyncpg status is "INSERT 0 <rows>"
        return status.endswith(" 1")

    # ── Devices ──

    async def list_devices(self, user_id: UUID) -> list[Device]:
        async with self._conn(user_id) as conn:
            rows = await conn.fetch(
                f"SELECT {_DEVICE_COLUMNS} FROM devices WHERE user_id = $1 ORDER BY created_at",
                user_id,
            )
        return [_device(row) for row in rows]

    async def get_device(self, device_id: UUID) -> Device | None:
        async with self._conn() as conn:
            row = await conn.fetchrow(
                f"SELECT {_DEVICE_COLUMNS} FROM devices WHERE id = $1", device_id
            )
        return _device(row) if row else None

    async def insert_device(self, device: Device) -> Device:
        async with self._conn(device.user_id) as conn:
            row = await conn.fetchrow(
                "INSERT INTO devices (id, user_id, device_type, device_name, device_model, "
                "manufacturer, is_active, last_sync, created_at) "
                f"VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9) RETURNING {_DEVICE_COLUMNS}",
                device.id,
                device.user_id,
                device.device_type.value,
                device.device_name,
                device.device_model,
                device.manufacturer,
                device.is_active,
                device.last_sync,
                device.created_at,
            )
        return _device(row)

    async def update_last_sync(self, device_id: UUID, at: datetime) -> Device | None:
        async with self._conn() as conn:
            row = await conn.fetchrow(
                "UPDATE devices SET last_sync = GREATEST(COALESCE(last_sync, $2), $2) "
                f"WHERE id = $1 RETURNING {_DEVICE_COLUMNS}",
                device_id,
                at,
            )
        return _device(row) if row else None

    # ── Readings ──

    async def insert_reading(self, reading: Reading) -> Reading:
        async with self._conn(reading.user_id) as conn:
            row = await conn.fetchrow(
                "INSERT INTO health_readings "
                "(id, user_id, device_id, metric, value, recorded_at, metadata, created_at) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8) "
                f"RETURNING {_READING_COLUMNS}",
                reading.id,
                reading.user_id,
                reading.device_id,
                reading.metric,
                reading.value,
                reading.recorded_at,
                _dumps(reading.metadata),
                reading.created_at,
            )
        return _reading(row)

    async def find_reading(
        self, user_id: UUID, metric: str, device_id: UUID, recorded_at: datetime
    ) -> Reading | None:
        async with self._conn(user_id) as conn:
            row = await conn.fetchrow(
                f"SELECT {_READING_COLUMNS} FROM health_readings "
                "WHERE user_id = $1 AND metric = $2 AND device_id = $3 AND recorded_at = $4 "
                "LIMIT 1",
                user_id,
                metric,
                device_id,
                recorded_at,
            )
        return _reading(row) if row else None

    async def list_readings(
        self,
        user_id: UUID,
        start: datetime,
        end: datetime,
        metric: str | None = None,
        device_id: UUID | None = None,
    ) -> list[Reading]:
        async with self._conn(user_id) as conn:
            rows = await conn.fetch(
                f"SELECT {_READING_COLUMNS} FROM health_readings "
                "WHERE user_id = $1 AND recorded_at >= $2 AND recorded_at < $3 "
                "AND ($4::text IS NULL OR metric = $4) "
                "AND ($5::uuid IS NULL OR device_id = $5) "
                "ORDER BY recorded_at DESC",
                user_id,
                start,
                end,
                metric,
                device_id,
            )
        return [_reading(row) for row in rows]

    async def last_reading_at(
        self, user_id: UUID, device_id: UUID, metric: str
    ) -> datetime | None:
        async with self._conn(user_id) as conn:
            return await conn.fetchval(
                "SELECT max(recorded_at) FROM health_readings "
                "WHERE user_id = $1 AND device_id = $2 AND metric = $3",
                user_id,
                device_id,
                metric,
            )

    # ── Sleep ──

    async def insert_sleep_session(self, session: SleepSession) -> SleepSession:
        async with self._conn(session.user_id) as conn:
            row = await conn.fetchrow(
                f"INSERT INTO sleep_sessions ({_SLEEP_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, $13) "
                f"RETURNING {_SLEEP_COLUMNS}",
                session.id,
                session.user_id,
                session.device_id,
                session.sleep_start,
                session.sleep_end,
                session.total_duration_minutes,
                session.deep_minutes,
                session.light_minutes,
                session.rem_minutes,
                session.awake_minutes,
                session.quality_score,
                _dumps(session.metadata),
                session.created_at,
            )
        return _sleep(row)

    async def find_sleep_session(
        self, user_id: UUID, device_id: UUID, start: datetime, end: datetime
    ) -> SleepSession | None:
        async with self._conn(user_id) as conn:
            row = await conn.fetchrow(
                f"SELECT {_SLEEP_COLUMNS} FROM sleep_sessions "
                "WHERE user_id = $1 AND device_id = $2 AND sleep_start = $3 AND sleep_end = $4 "
                "LIMIT 1",
                user_id,
                device_id,
                start,
                end,
            )
        return _sleep(row) if row else None

    async def list_sleep_sessions(
        self,
        user_id: UUID,
        start: datetime,
        end: datetime,
        device_id: UUID | None = None,
    ) -> list[SleepSession]:
        async with self._conn(user_id) as conn:
            rows = await conn.fetch(
                f"SELECT {_SLEEP_COLUMNS} FROM sleep_sessions "
                "WHERE user_id = $1 AND sleep_start < $3 AND sleep_end > $2 "
                "AND ($4::uuid IS NULL OR device_id = $4) "
                "ORDER BY sleep_start DESC",
                user_id,
                start,
                end,
                device_id,
            )
        return [_sleep(row) for row in rows]

    async def last_sleep_at(self, user_id: UUID, device_id: UUID) -> datetime | None:
        async with self._conn(user_id) as conn:
            return await conn.fetchval(
                "SELECT max(sleep_end) FROM sleep_sessions WHERE user_id = $1 AND device_id = $2",
                user_id,
                device_id,
            )

    # ── Daily activity ──

    async def get_daily_activity(
        self, user_id: UUID, activity_date: date
    ) -> DailyActivityRecord | None:
        async with self._conn(user_id) as conn:
            row = await conn.fetchrow(
                f"SELECT {_ACTIVITY_COLUMNS} FROM daily_activity "
                "WHERE user_id = $1 AND activity_date = $2",
                user_id,
                activity_date,
            )
        return _activity(row) if row else None

    async def upsert_daily_activity(
        self, record: DailyActivityRecord, columns: Sequence[str]
    ) -> DailyActivityRecord:
        insert_columns = ["id", "user_id", "device_id", "activity_date", *ACTIVITY_FIELDS,
                          "device_ids", "created_at", "updated_at"]
        device_ids = list(record.device_ids)
        if record.device_id not in device_ids:
            device_ids.append(record.device_id)
        values = [
            device_ids if c == "device_ids" else getattr(record, c) for c in insert_columns
        ]
        placeholders = ", ".join(f"${i + 1}" for i in range(len(insert_columns)))

        # Column names come from ACTIVITY_FIELDS only; values stay parameters.
        assignments = [f"{name} = EXCLUDED.{name}" for name in columns if name in ACTIVITY_FIELDS]
        assignments.append(
            "device_ids = CASE WHEN EXCLUDED.device_id = ANY(daily_activity.device_ids) "
            "THEN daily_activity.device_ids "
            "ELSE array_append(daily_activity.device_ids, EXCLUDED.device_id) END"
        )
        assignments.append("updated_at = now()")

        async with self._conn(record.user_id) as conn:
            row = await conn.fetchrow(
                f"INSERT INTO daily_activity ({', '.join(insert_columns)}) "
                f"VALUES ({placeholders}) "
                "ON CONFLICT (user_id, activity_date) DO UPDATE SET "
                f"{', '.join(assignments)} "
                f"RETURNING {_ACTIVITY_COLUMNS}",
                *values,
            )
        return _activity(row)

    async def list_daily_activity(
        self,
        user_id: UUID,
        start_date: date,
        end_date: date,
        device_id: UUID | None = None,
    ) -> list[DailyActivityRecord]:
        async with self._conn(user_id) as conn:
            rows = await conn.fetch(
                f"SELECT {_ACTIVITY_COLUMNS} FROM daily_activity "
                "WHERE user_id = $1 AND activity_date BETWEEN $2 AND $3 "
                "AND ($4::uuid IS NULL OR $4 = ANY(device_ids)) "
                "ORDER BY activity_date DESC",
                user_id,
                start_date,
                end_date,
                device_id,
            )
        return [_activity(row) for row in rows]

    async def last_activity_at(self, user_id: UUID, device_id: UUID) -> datetime | None:
        async with self._conn(user_id) as conn:
            return await conn.fetchval(
                "SELECT max(updated_at) FROM daily_activity "
                "WHERE user_id = $1 AND $2 = ANY(device_ids)",
                user_id,
                device_id,
            )
