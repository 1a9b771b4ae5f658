"""Tests for the device registry and per-device sync status."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from src.pipeline.base import (
    ACTIVITY_FIELDS,
    DailyActivityRecord,
    Device,
    DeviceClass,
    DeviceType,
    Reading,
    SleepSession,
    new_id,
)
from src.pipeline.config_loader import CompletenessConfig
from src.pipeline.device_status import completeness_scores, device_status
from src.pipeline.errors import DeviceNotFound
from src.pipeline.registry import DeviceRegistry
from src.pipeline.store import InMemoryHealthStore
from src.pipeline.tests.conftest import OTHER_USER_ID, TEST_NOW, TEST_USER_ID


class TestEnsureDevice:
    @pytest.mark.asyncio
    async def test_creates_placeholder_device(
        self, registry: DeviceRegistry, store: InMemoryHealthStore
    ) -> None:
        device = await registry.ensure_device(DeviceClass.PHONE)

        assert device.user_id == TEST_USER_ID
        assert device.device_type == DeviceType.ANDROID_PHONE
        assert device.device_name == "Mobile Device"
        assert device.is_active is True
        assert await store.get_device(device.id) is not None

    @pytest.mark.asyncio
    async def test_is_idempotent(
        self, registry: DeviceRegistry, store: InMemoryHealthStore
    ) -> None:
        first = await registry.ensure_device(DeviceClass.WEARABLE)
        second = await registry.ensure_device("wearable")

        assert first.id == second.id
        assert len(await store.list_devices(TEST_USER_ID)) == 1

    @pytest.mark.asyncio
    async def test_new_session_reuses_stored_device(self, store: InMemoryHealthStore) -> None:
        first = await DeviceRegistry(store, TEST_USER_ID).ensure_device(DeviceClass.WEARABLE)
        second = await DeviceRegistry(store, TEST_USER_ID).ensure_device(DeviceClass.WEARABLE)
        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_any_type_of_the_class_is_accepted(self, store: InMemoryHealthStore) -> None:
        iphone = await store.insert_device(
            Device(
                id=new_id(),
                user_id=TEST_USER_ID,
                device_type=DeviceType.IPHONE,
                device_name="iPhone",
            )
        )
        device = await DeviceRegistry(store, TEST_USER_ID).ensure_device(DeviceClass.PHONE)
        assert device.id == iphone.id

    @pytest.mark.asyncio
    async def test_inactive_device_not_reused(self, store: InMemoryHealthStore) -> None:
        retired = await store.insert_device(
            Device(
                id=new_id(),
                user_id=TEST_USER_ID,
                device_type=DeviceType.WEAR_OS,
                device_name="Old Watch",
                is_active=False,
            )
        )
        device = await DeviceRegistry(store, TEST_USER_ID).ensure_device(DeviceClass.WEARABLE)
        assert device.id != retired.id

    @pytest.mark.asyncio
    async def test_users_never_share_devices(self, store: InMemoryHealthStore) -> None:
        mine = await DeviceRegistry(store, TEST_USER_ID).ensure_device(DeviceClass.PHONE)
        theirs = await DeviceRegistry(store, OTHER_USER_ID).ensure_device(DeviceClass.PHONE)
        assert mine.id != theirs.id

    @pytest.mark.asyncio
    async def test_cache_cleared(self, registry: DeviceRegistry) -> None:
        await registry.ensure_device(DeviceClass.PHONE)
        assert registry.cached(DeviceClass.PHONE) is not None
        registry.clear()
        assert registry.cached(DeviceClass.PHONE) is None


class TestLastSync:
    @pytest.mark.asyncio
    async def test_touch_sets_last_sync(self, registry: DeviceRegistry, watch: Device) -> None:
        updated = await registry.touch_last_sync(watch.id, TEST_NOW)
        assert updated.last_sync == TEST_NOW

    @pytest.mark.asyncio
    async def test_last_sync_never_moves_backwards(
        self, registry: DeviceRegistry, store: InMemoryHealthStore, watch: Device
    ) -> None:
        await registry.touch_last_sync(watch.id, TEST_NOW)
        await registry.touch_last_sync(watch.id, TEST_NOW - timedelta(hours=3))

        stored = await store.get_device(watch.id)
        assert stored.last_sync == TEST_NOW

    @pytest.mark.asyncio
    async def test_touch_refreshes_cached_device(
        self, registry: DeviceRegistry, watch: Device
    ) -> None:
        await registry.touch_last_sync(watch.id, TEST_NOW)
        assert registry.cached(DeviceClass.WEARABLE).last_sync == TEST_NOW

    @pytest.mark.asyncio
    async def test_touch_unknown_device(self, registry: DeviceRegistry) -> None:
        with pytest.raises(DeviceNotFound):
            await registry.touch_last_sync(new_id(), TEST_NOW)

    @pytest.mark.asyncio
    async def test_get_device_of_other_user(
        self, store: InMemoryHealthStore, watch: Device
    ) -> None:
        with pytest.raises(DeviceNotFound):
            await DeviceRegistry(store, OTHER_USER_ID).get_device(watch.id)


# ---------------------------------------------------------------------------
# Device status
# ---------------------------------------------------------------------------


class TestCompletenessScores:
    def test_scores_capped_at_100(self) -> None:
        scores = completeness_scores(
            {"heart_rate": 10080, "sleep": 14, "activity": 3}, CompletenessConfig()
        )
        assert scores["heart_rate"] == 100
        assert scores["sleep"] == 100
        assert scores["activity"] == 43
        assert scores["overall"] == 81

    def test_no_data_scores_zero(self) -> None:
        scores = completeness_scores({}, CompletenessConfig())
        assert scores == {"overall": 0, "heart_rate": 0, "sleep": 0, "activity": 0}


class TestDeviceStatus:
    @pytest.mark.asyncio
    async def test_status_reports_counts_and_completeness(
        self, store: InMemoryHealthStore, registry: DeviceRegistry, watch: Device
    ) -> None:
        for hours in (1, 2):
            await store.insert_reading(
                Reading(
                    id=new_id(),
                    user_id=TEST_USER_ID,
                    device_id=watch.id,
                    metric="heart_rate",
                    value=Decimal("70"),
                    recorded_at=TEST_NOW - timedelta(hours=hours),
                )
            )
        night = datetime(2024, 1, 14, 23, 0, tzinfo=timezone.utc)
        await store.insert_sleep_session(
            SleepSession(
                id=new_id(),
                user_id=TEST_USER_ID,
                device_id=watch.id,
                sleep_start=night,
                sleep_end=night + timedelta(hours=8),
                total_duration_minutes=480,
            )
        )
        config = CompletenessConfig(
            window_days=1, expected_per_day={"heart_rate": 4, "sleep": 1, "activity": 1}
        )

        status = await device_status(store, registry, watch.id, config, now=TEST_NOW)

        assert status.kinds["heart_rate"].recent_count == 2
        assert status.kinds["heart_rate"].last_sync == TEST_NOW - timedelta(hours=1)
        assert status.kinds["sleep"].recent_count == 1
        assert status.kinds["activity"].last_sync is None
        assert status.completeness == {
            "overall": 50, "heart_rate": 50, "sleep": 100, "activity": 0
        }
        assert status.is_active is True

    @pytest.mark.asyncio
    async def test_status_dict_shape(
        self, store: InMemoryHealthStore, registry: DeviceRegistry, phone: Device
    ) -> None:
        status = await device_status(store, registry, phone.id, CompletenessConfig(), now=TEST_NOW)
        body = status.to_dict()

        assert body["device"]["id"] == str(phone.id)
        assert body["device"]["type"] == "android_phone"
        assert set(body["sync_status"]) == {"heart_rate", "sleep", "activity"}
        assert body["summary"]["total_recent_records"] == 0
        assert body["summary"]["is_active"] is False
        assert body["summary"]["data_completeness"]["overall"] == 0

    @pytest.mark.asyncio
    async def test_status_for_other_users_device(
        self, store: InMemoryHealthStore, watch: Device
    ) -> None:
        with pytest.raises(DeviceNotFound):
            await device_status(
                store, DeviceRegistry(store, OTHER_USER_ID), watch.id, CompletenessConfig()
            )

    @pytest.mark.asyncio
    async def test_activity_window_uses_local_dates(
        self, store: InMemoryHealthStore, registry: DeviceRegistry, phone: Device
    ) -> None:
        # 20:00 UTC on Jan 15 is already Jan 16 in Tokyo.
        now = datetime(2024, 1, 15, 20, 0, tzinfo=timezone.utc)
        await store.upsert_daily_activity(
            DailyActivityRecord(
                id=new_id(),
                user_id=TEST_USER_ID,
                device_id=phone.id,
                activity_date=date(2024, 1, 16),
                steps=1000,
            ),
            ACTIVITY_FIELDS,
        )
        config = CompletenessConfig(window_days=1)

        utc_status = await device_status(store, registry, phone.id, config, now=now)
        tokyo_status = await device_status(
            store, registry, phone.id, config, now=now, tz=ZoneInfo("Asia/Tokyo")
        )

        assert utc_status.kinds["activity"].recent_count == 0
        assert tokyo_status.kinds["activity"].recent_count == 1
