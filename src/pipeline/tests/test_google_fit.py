"""Tests for the Google Fit adapter — REST responses with a mocked httpx client."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID

import httpx
import pytest

from src.pipeline.adapters.google_fit import SLEEP_ACTIVITY_TYPE, GoogleFitAdapter
from src.pipeline.errors import AdapterUnavailable
from src.pipeline.tests.conftest import TEST_USER_ID

DEVICE_ID = UUID("aaaaaaaa-0000-0000-0000-000000000002")
WINDOW_START = datetime(2024, 1, 14, tzinfo=timezone.utc)
WINDOW_END = datetime(2024, 1, 16, tzinfo=timezone.utc)


def _response(payload: dict) -> MagicMock:
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status = MagicMock()
    return response


@pytest.fixture
def http_client(
    google_fit_heart_rate_raw: dict,
    google_fit_daily_raw: dict,
    google_fit_sessions_raw: dict,
    google_fit_sleep_segments_raw: dict,
) -> AsyncMock:
    """httpx client mock answering the aggregate calls in fetch order."""
    client = AsyncMock()
    client.post = AsyncMock(
        side_effect=[
            _response(google_fit_heart_rate_raw),
            _response(google_fit_daily_raw),
            _response(google_fit_sleep_segments_raw),
        ]
    )
    client.get = AsyncMock(return_value=_response(google_fit_sessions_raw))
    return client


@pytest.fixture
def adapter(http_client: AsyncMock) -> GoogleFitAdapter:
    return GoogleFitAdapter(access_token="test_token", http_client=http_client)


class TestGoogleFitHeartRate:
    def test_one_reading_per_non_empty_bucket(
        self, adapter: GoogleFitAdapter, google_fit_heart_rate_raw: dict
    ) -> None:
        records = adapter.normalize_heart_rate(google_fit_heart_rate_raw, TEST_USER_ID, DEVICE_ID)

        assert len(records) == 2
        assert records[0].value == Decimal("71.5")
        assert records[1].value == Decimal("68.4")

    def test_nanosecond_timestamps_converted(
        self, adapter: GoogleFitAdapter, google_fit_heart_rate_raw: dict
    ) -> None:
        records = adapter.normalize_heart_rate(google_fit_heart_rate_raw, TEST_USER_ID, DEVICE_ID)
        assert records[0].recorded_at == datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc)
        assert records[1].recorded_at == datetime(2024, 1, 15, 8, 1, tzinfo=timezone.utc)
        assert records[0].source == "google_fit"


class TestGoogleFitDaily:
    def test_daily_bucket_becomes_activity_delta(
        self, adapter: GoogleFitAdapter, google_fit_daily_raw: dict
    ) -> None:
        deltas = adapter.normalize_daily(google_fit_daily_raw, TEST_USER_ID, DEVICE_ID)

        assert len(deltas) == 1
        delta = deltas[0]
        assert delta.date == date(2024, 1, 15)
        assert delta.steps == 7200
        assert delta.distance_meters == Decimal("4800.5")
        assert delta.calories_burned == Decimal("1850.75")
        assert delta.active_minutes == 45

    def test_unreported_fields_stay_none(self, adapter: GoogleFitAdapter) -> None:
        response = {
            "bucket": [{
                "startTimeMillis": "1705276800000",
                "dataset": [{
                    "dataSourceId": "derived:com.google.step_count.delta:com.google.android.gms:aggregated",
                    "point": [{"value": [{"intVal": 300}]}],
                }],
            }]
        }
        delta = adapter.normalize_daily(response, TEST_USER_ID, DEVICE_ID)[0]
        assert delta.steps == 300
        assert delta.calories_burned is None
        assert delta.present_fields() == {"steps": 300}


class TestGoogleFitSleep:
    def test_segments_mapped_to_stages(
        self,
        adapter: GoogleFitAdapter,
        google_fit_sessions_raw: dict,
        google_fit_sleep_segments_raw: dict,
    ) -> None:
        session = google_fit_sessions_raw["session"][0]
        record = adapter.normalize_sleep_session(
            session, google_fit_sleep_segments_raw, TEST_USER_ID, DEVICE_ID
        )

        assert record is not None
        assert record.start == datetime(2024, 1, 14, 23, 0, tzinfo=timezone.utc)
        assert record.end == datetime(2024, 1, 15, 7, 0, tzinfo=timezone.utc)
        assert record.stages.light == 280
        assert record.stages.deep == 90
        assert record.stages.rem == 90
        assert record.stages.awake == 20
        assert record.metadata["session_id"] == "sleep-1705273200000"

    def test_inverted_session_skipped(self, adapter: GoogleFitAdapter) -> None:
        session = {"startTimeMillis": "1705302000000", "endTimeMillis": "1705273200000"}
        assert adapter.normalize_sleep_session(session, {}, TEST_USER_ID, DEVICE_ID) is None


class TestGoogleFitFetch:
    @pytest.mark.asyncio
    async def test_fetch_returns_all_record_kinds(
        self, adapter: GoogleFitAdapter, http_client: AsyncMock
    ) -> None:
        records = await adapter.fetch(TEST_USER_ID, DEVICE_ID, WINDOW_START, WINDOW_END)

        kinds = [r.kind for r in records]
        assert kinds.count("reading") == 2
        assert kinds.count("activity") == 1
        assert kinds.count("sleep") == 1
        assert http_client.post.await_count == 3

    @pytest.mark.asyncio
    async def test_requests_are_authenticated(
        self, adapter: GoogleFitAdapter, http_client: AsyncMock
    ) -> None:
        await adapter.fetch(TEST_USER_ID, DEVICE_ID, WINDOW_START, WINDOW_END)

        _, kwargs = http_client.post.call_args_list[0]
        assert kwargs["headers"] == {"Authorization": "Bearer test_token"}
        assert kwargs["json"]["aggregateBy"] == [{"dataTypeName": "com.google.heart_rate.bpm"}]
        assert kwargs["json"]["bucketByTime"] == {"durationMillis": 60_000}

        _, kwargs = http_client.get.call_args
        assert kwargs["params"]["activityType"] == SLEEP_ACTIVITY_TYPE
        assert kwargs["params"]["startTime"] == "2024-01-14T00:00:00Z"

    @pytest.mark.asyncio
    async def test_missing_token_raises(
        self, http_client: AsyncMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("GOOGLE_FIT_ACCESS_TOKEN", raising=False)
        adapter = GoogleFitAdapter(http_client=http_client)
        with pytest.raises(AdapterUnavailable):
            await adapter.fetch(TEST_USER_ID, DEVICE_ID, WINDOW_START, WINDOW_END)
        http_client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_http_error_reported_by_pull(self) -> None:
        failing = _response({})
        failing.raise_for_status.side_effect = httpx.HTTPStatusError(
            "401 Unauthorized", request=MagicMock(), response=MagicMock()
        )
        client = AsyncMock()
        client.post = AsyncMock(return_value=failing)
        adapter = GoogleFitAdapter(access_token="expired", http_client=client)

        result = await adapter.pull(TEST_USER_ID, DEVICE_ID, WINDOW_START, WINDOW_END)

        assert not result.ok
        assert result.error_type == "HTTPStatusError"
        assert result.records == []
