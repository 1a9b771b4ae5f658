"""Tests for the asyncpg-backed store, against a mocked pool."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from src.pipeline.base import ACTIVITY_FIELDS, DailyActivityRecord, MetricType
from src.pipeline.errors import StorageFailure
from src.pipeline.postgres_store import PostgresHealthStore
from src.pipeline.tests.conftest import TEST_DATE, TEST_NOW, TEST_USER_ID


@pytest.fixture
def conn() -> MagicMock:
    connection = MagicMock()
    connection.execute = AsyncMock(return_value="INSERT 0 1")
    connection.fetch = AsyncMock(return_value=[])
    connection.fetchrow = AsyncMock(return_value=None)
    connection.fetchval = AsyncMock(return_value=1)
    return connection


@pytest.fixture
def pool(conn: MagicMock) -> MagicMock:
    mock_pool = MagicMock()
    mock_pool.acquire.return_value.__aenter__.return_value = conn
    mock_pool.close = AsyncMock()
    return mock_pool


@pytest.fixture
def pg_store(pool: MagicMock) -> PostgresHealthStore:
    return PostgresHealthStore(pool)


HEART_RATE = MetricType(
    name="heart_rate",
    display_name="Heart Rate",
    unit="bpm",
    min_value=Decimal("30"),
    max_value=Decimal("220"),
)


class TestPostgresHealthStore:
    @pytest.mark.asyncio
    async def test_ping(self, pg_store: PostgresHealthStore) -> None:
        assert await pg_store.ping() is True

    @pytest.mark.asyncio
    async def test_ping_when_unreachable(
        self, pg_store: PostgresHealthStore, pool: MagicMock
    ) -> None:
        pool.acquire.side_effect = OSError("connection refused")
        assert await pg_store.ping() is False

    @pytest.mark.asyncio
    async def test_errors_become_storage_failure(
        self, pg_store: PostgresHealthStore, conn: MagicMock
    ) -> None:
        conn.fetch.side_effect = OSError("connection reset")
        with pytest.raises(StorageFailure):
            await pg_store.list_devices(TEST_USER_ID)

    @pytest.mark.asyncio
    async def test_user_context_set_for_user_queries(
        self, pg_store: PostgresHealthStore, conn: MagicMock
    ) -> None:
        await pg_store.list_devices(TEST_USER_ID)

        conn.execute.assert_awaited_once_with(
            "SELECT set_config('app.current_user_id', $1, true)", str(TEST_USER_ID)
        )

    @pytest.mark.asyncio
    async def test_metric_seed_reports_insert(
        self, pg_store: PostgresHealthStore, conn: MagicMock
    ) -> None:
        assert await pg_store.insert_metric_type(HEART_RATE) is True

        conn.execute.return_value = "INSERT 0 0"
        assert await pg_store.insert_metric_type(HEART_RATE) is False

    @pytest.mark.asyncio
    async def test_missing_device_is_none(self, pg_store: PostgresHealthStore) -> None:
        assert await pg_store.get_device(uuid4()) is None

    @pytest.mark.asyncio
    async def test_close_drains_pool(self, pg_store: PostgresHealthStore, pool: MagicMock) -> None:
        await pg_store.close()
        pool.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_activity_upsert_is_one_statement(
        self, pg_store: PostgresHealthStore, conn: MagicMock
    ) -> None:
        device_id = uuid4()
        record = DailyActivityRecord(
            id=uuid4(),
            user_id=TEST_USER_ID,
            device_id=device_id,
            activity_date=TEST_DATE,
            steps=8500,
        )
        conn.fetchrow.return_value = {
            "id": record.id,
            "user_id": TEST_USER_ID,
            "device_id": device_id,
            "activity_date": TEST_DATE,
            **{name: None for name in ACTIVITY_FIELDS},
            "steps": 8500,
            "device_ids": [device_id],
            "created_at": TEST_NOW,
            "updated_at": TEST_NOW,
        }

        stored = await pg_store.upsert_daily_activity(record, ["steps"])

        sql = conn.fetchrow.await_args.args[0]
        assert "ON CONFLICT (user_id, activity_date) DO UPDATE SET" in sql
        assert "steps = EXCLUDED.steps" in sql
        assert "calories_burned = EXCLUDED" not in sql
        assert stored.steps == 8500
        assert stored.device_ids == [device_id]
        conn.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_replace_upsert_sets_every_field(
        self, pg_store: PostgresHealthStore, conn: MagicMock
    ) -> None:
        record = DailyActivityRecord(
            id=uuid4(), user_id=TEST_USER_ID, device_id=uuid4(), activity_date=TEST_DATE
        )
        conn.fetchrow.return_value = {
            "id": record.id,
            "user_id": TEST_USER_ID,
            "device_id": record.device_id,
            "activity_date": TEST_DATE,
            **{name: None for name in ACTIVITY_FIELDS},
            "device_ids": [record.device_id],
            "created_at": TEST_NOW,
            "updated_at": TEST_NOW,
        }

        await pg_store.upsert_daily_activity(record, ACTIVITY_FIELDS)

        sql = conn.fetchrow.await_args.args[0]
        for name in ACTIVITY_FIELDS:
            assert f"{name} = EXCLUDED.{name}" in sql

    @pytest.mark.asyncio
    async def test_sleep_lookup_uses_natural_key(
        self, pg_store: PostgresHealthStore, conn: MagicMock
    ) -> None:
        device_id = uuid4()
        end = TEST_NOW - timedelta(hours=4)
        start = end - timedelta(hours=8)

        assert await pg_store.find_sleep_session(TEST_USER_ID, device_id, start, end) is None

        args = conn.fetchrow.await_args.args
        assert "sleep_start = $3 AND sleep_end = $4" in args[0]
        assert args[1:] == (TEST_USER_ID, device_id, start, end)
