"""Tests for the sync API routes, served from an in-memory store."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from src.config import Settings, get_settings
from src.main import create_app
from src.pipeline.store import InMemoryHealthStore

USER_ID = uuid.UUID("12345678-1234-5678-1234-567812345678")
HEADERS = {"X-User-Id": str(USER_ID)}


def _iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


@pytest.fixture
def store() -> InMemoryHealthStore:
    return InMemoryHealthStore()


@pytest.fixture
def client(store: InMemoryHealthStore):
    app = create_app(store=store)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


class TestIdentity:
    def test_missing_header_rejected(self, client: TestClient) -> None:
        response = client.get("/api/v1/sync/devices")
        assert response.status_code == 401
        assert response.json() == {"detail": "Missing user identity"}

    def test_malformed_header_rejected(self, client: TestClient) -> None:
        response = client.get("/api/v1/sync/devices", headers={"X-User-Id": "not-a-uuid"})
        assert response.status_code == 401

    def test_health_is_public(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"


class TestSingleItemRoutes:
    def test_heart_rate_created(self, client: TestClient, now: datetime) -> None:
        response = client.post(
            "/api/v1/sync/heart-rate",
            json={"value": 72, "timestamp": _iso(now - timedelta(minutes=5))},
            headers=HEADERS,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["metric"] == "heart_rate"
        assert float(body["value"]) == 72.0

    def test_heart_rate_out_of_bounds(self, client: TestClient, now: datetime) -> None:
        response = client.post(
            "/api/v1/sync/heart-rate",
            json={"value": 20, "timestamp": _iso(now)},
            headers=HEADERS,
        )
        assert response.status_code == 422

    def test_heart_rate_above_catalog_max(self, client: TestClient, now: datetime) -> None:
        response = client.post(
            "/api/v1/sync/heart-rate",
            json={"value": 221, "timestamp": _iso(now)},
            headers=HEADERS,
        )
        assert response.status_code == 422

    def test_sleep_duration_derived(self, client: TestClient, now: datetime) -> None:
        end = now - timedelta(hours=1)
        response = client.post(
            "/api/v1/sync/sleep",
            json={
                "sleepStart": _iso(end - timedelta(hours=8)),
                "sleepEnd": _iso(end),
                "stages": {"deep": 120, "light": 300, "rem": 60, "awake": 0},
                "qualityScore": 82,
            },
            headers=HEADERS,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["total_duration_minutes"] == 480
        assert body["quality_score"] == 82

    def test_steps_create_daily_row(self, client: TestClient, now: datetime) -> None:
        response = client.post(
            "/api/v1/sync/steps",
            json={"date": now.date().isoformat(), "steps": 8500},
            headers=HEADERS,
        )

        assert response.status_code == 201
        assert response.json()["steps"] == 8500
        assert response.json()["screen_time_minutes"] is None

    def test_unknown_device_is_404(self, client: TestClient, now: datetime) -> None:
        response = client.post(
            "/api/v1/sync/heart-rate",
            json={"value": 72, "timestamp": _iso(now), "deviceId": str(uuid.uuid4())},
            headers=HEADERS,
        )
        assert response.status_code == 404


class TestBatchRoute:
    def test_all_items_stored(self, client: TestClient, now: datetime) -> None:
        data = [
            {"value": 70 + i, "timestamp": _iso(now - timedelta(minutes=i + 1))}
            for i in range(3)
        ]
        response = client.post(
            "/api/v1/sync/batch",
            json={"dataType": "heartRate", "data": data},
            headers=HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["results"]["success"] == 3
        assert body["summary"]["successRate"] == "100.00%"

    def test_partial_failure_is_207(self, client: TestClient, now: datetime) -> None:
        data = [
            {"value": 72, "timestamp": _iso(now - timedelta(minutes=1))},
            {"value": 400, "timestamp": _iso(now - timedelta(minutes=2))},
            {"value": 74, "timestamp": _iso(now - timedelta(minutes=3))},
        ]
        response = client.post(
            "/api/v1/sync/batch",
            json={"dataType": "heartRate", "data": data},
            headers=HEADERS,
        )

        assert response.status_code == 207
        results = response.json()["results"]
        assert results["success"] == 2
        assert results["failed"] == 1
        assert results["errors"][0].startswith("item 2")

    def test_replayed_batch_counts_as_skipped(self, client: TestClient, now: datetime) -> None:
        payload = {
            "dataType": "heartRate",
            "data": [{"value": 72, "timestamp": _iso(now - timedelta(minutes=1))}],
        }
        client.post("/api/v1/sync/batch", json=payload, headers=HEADERS)

        response = client.post("/api/v1/sync/batch", json=payload, headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["results"]["skipped"] == 1

    def test_empty_envelope_rejected(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/sync/batch", json={"dataType": "heartRate", "data": []}, headers=HEADERS
        )
        assert response.status_code == 422

    def test_configured_item_limit(self, client: TestClient, now: datetime) -> None:
        client.app.dependency_overrides[get_settings] = lambda: Settings(batch_max_items=2)
        data = [{"value": 72, "timestamp": _iso(now - timedelta(minutes=i))} for i in range(3)]

        response = client.post(
            "/api/v1/sync/batch", json={"dataType": "heartRate", "data": data}, headers=HEADERS
        )

        client.app.dependency_overrides.clear()
        assert response.status_code == 422
        assert response.json()["detail"] == "Batch exceeds 2 items"


class TestReadRoutes:
    def test_summary_combines_sources(self, client: TestClient, now: datetime) -> None:
        today = now.replace(hour=12, minute=0, second=0)
        client.post(
            "/api/v1/sync/heart-rate",
            json={"value": 72, "timestamp": _iso(today)},
            headers=HEADERS,
        )
        client.post(
            "/api/v1/sync/steps",
            json={"date": today.date().isoformat(), "steps": 8500},
            headers=HEADERS,
        )

        response = client.get(f"/api/v1/sync/summary/{today.date().isoformat()}", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["steps"] == 8500
        assert body["avg_heart_rate"] == 72.0
        assert body["sleep_duration_hours"] == 0.0
        assert body["sleep_quality"] is None

    def test_empty_summary(self, client: TestClient) -> None:
        response = client.get("/api/v1/sync/summary/2020-01-01", headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["steps"] == 0
        assert response.json()["avg_heart_rate"] is None

    def test_devices_listed(self, client: TestClient, now: datetime) -> None:
        client.post(
            "/api/v1/sync/heart-rate",
            json={"value": 72, "timestamp": _iso(now)},
            headers=HEADERS,
        )

        devices = client.get("/api/v1/sync/devices", headers=HEADERS).json()

        assert len(devices) == 1
        assert devices[0]["device_class"] == "wearable"
        assert devices[0]["last_sync"] is not None

    def test_device_status(self, client: TestClient, now: datetime) -> None:
        client.post(
            "/api/v1/sync/heart-rate",
            json={"value": 72, "timestamp": _iso(now - timedelta(minutes=1))},
            headers=HEADERS,
        )
        device_id = client.get("/api/v1/sync/devices", headers=HEADERS).json()[0]["id"]

        response = client.get(f"/api/v1/sync/devices/{device_id}/status", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["sync_status"]["heart_rate"]["recent_count"] == 1
        assert body["summary"]["is_active"] is True

    def test_unknown_device_status_is_404(self, client: TestClient) -> None:
        response = client.get(
            f"/api/v1/sync/devices/{uuid.uuid4()}/status", headers=HEADERS
        )
        assert response.status_code == 404

    def test_other_users_device_is_404(self, client: TestClient, now: datetime) -> None:
        client.post(
            "/api/v1/sync/heart-rate",
            json={"value": 72, "timestamp": _iso(now)},
            headers=HEADERS,
        )
        device_id = client.get("/api/v1/sync/devices", headers=HEADERS).json()[0]["id"]

        response = client.get(
            f"/api/v1/sync/devices/{device_id}/status",
            headers={"X-User-Id": str(uuid.uuid4())},
        )

        assert response.status_code == 404

    def test_history_newest_first(self, client: TestClient, now: datetime) -> None:
        for minutes, value in ((30, 70), (10, 75)):
            client.post(
                "/api/v1/sync/heart-rate",
                json={"value": value, "timestamp": _iso(now - timedelta(minutes=minutes))},
                headers=HEADERS,
            )

        response = client.get("/api/v1/sync/history?days=1", headers=HEADERS)

        assert response.status_code == 200
        entries = response.json()
        assert [e["type"] for e in entries] == ["heart_rate", "heart_rate"]
        assert float(entries[0]["data"]["value"]) == 75.0

    def test_history_days_bounds(self, client: TestClient) -> None:
        response = client.get("/api/v1/sync/history?days=0", headers=HEADERS)
        assert response.status_code == 422
