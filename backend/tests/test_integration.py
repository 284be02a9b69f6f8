"""
Integration tests for the Crop Health API.
Storage is redirected to a per-test SQLite database through dependency
overrides; no CDSE credentials are configured, so provider calls fall back.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from crophealth.cache_store import CacheStore
from crophealth.errors import TransportError
from crophealth.health_composer import HealthComposer
from crophealth.main_api import app, get_orchestrator, get_profile_store, get_snapshot_store
from crophealth.orchestrator import HealthOrchestrator
from crophealth.profile_store import ProfileStore
from crophealth.snapshot_store import SnapshotStore

from conftest import FakeClock

# Test client
client = TestClient(app)


@pytest.fixture
def api(session_maker, fake_search):
    """Wire the app to the test database and a stubbed catalog."""
    clock = FakeClock()
    orchestrator = HealthOrchestrator(
        cache_store=CacheStore(session_maker),
        profile_store=ProfileStore(session_maker),
        composer=HealthComposer(search=fake_search, clock=clock),
        clock=clock,
    )
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_snapshot_store] = lambda: SnapshotStore(session_maker)
    app.dependency_overrides[get_profile_store] = lambda: ProfileStore(session_maker)
    yield client
    app.dependency_overrides.clear()


class TestHealthEndpoint:
    """Tests for /health endpoint."""

    def test_health_returns_200(self):
        response = client.get("/health")
        assert response.status_code == 200

    def test_health_response_structure(self):
        data = client.get("/health").json()

        assert "status" in data
        assert "services" in data
        assert "timestamp" in data
        assert isinstance(data["services"], list)

    def test_missing_credentials_is_degraded(self):
        data = client.get("/health").json()
        services = {s["name"]: s for s in data["services"]}

        assert set(services) == {"database", "cdse_sentinel_hub"}
        assert services["database"]["status"] == "healthy"
        assert services["cdse_sentinel_hub"]["status"] == "degraded"
        assert "CDSE_CLIENT_ID" in services["cdse_sentinel_hub"]["message"]
        assert data["status"] == "degraded"

    def test_database_down_is_unhealthy(self):
        with patch("crophealth.main_api.check_database_health", new=AsyncMock(return_value=(False, "db down"))):
            data = client.get("/health").json()

        services = {s["name"]: s for s in data["services"]}
        assert services["database"]["status"] == "unhealthy"
        assert services["database"]["message"] == "db down"
        assert data["status"] == "unhealthy"


class TestSatelliteHealthEndpoint:
    """Tests for /satellite/health endpoint."""

    def test_default_request(self, api):
        response = api.get("/satellite/health")
        assert response.status_code == 200

        body = response.json()
        assert body["success"] is True
        assert body["error"] is None
        assert body["data"]["dataSource"] == "fallback_sample"

        health = body["data"]["health"]
        assert health["normalizedHealthScore"] == 80
        assert health["scoreLabel"] == "excellent"
        assert health["mapOverlay"]["strategy"] == "estimated_zones"
        assert health["mapOverlay"]["imageDataUrl"] is None
        assert health["highAccuracyUnavailableReason"] == "CDSE_CLIENT_ID is missing in environment."

        metadata = body["data"]["metadata"]
        assert metadata["precisionMode"] == "high_accuracy"
        assert metadata["aoiSource"] == "demo_fallback"
        assert metadata["cache"]["hit"] is False
        assert metadata["cache"]["key"].startswith("sat-health|anonymous|85.200000:20.100000")

    def test_second_request_is_a_hit(self, api):
        first = api.get("/satellite/health?precisionMode=estimated").json()
        second = api.get("/satellite/health?precisionMode=estimated").json()

        assert second["data"]["metadata"]["cache"]["hit"] is True
        assert second["data"]["health"] == first["data"]["health"]

    def test_parameter_order_does_not_change_key(self, api):
        first = api.get("/satellite/health?bbox=85.2,20.1,85.45,20.35&precisionMode=estimated&maxResults=2").json()
        second = api.get("/satellite/health?maxResults=2&precisionMode=estimated&bbox=85.2,20.1,85.45,20.35").json()

        assert second["data"]["metadata"]["cache"]["key"] == first["data"]["metadata"]["cache"]["key"]
        assert second["data"]["metadata"]["cache"]["hit"] is True

    def test_post_body_overrides_query(self, api):
        response = api.post(
            "/satellite/health?precisionMode=high_accuracy",
            json={"precisionMode": "estimated", "bbox": "77.5,12.9,77.6,13.0", "aoiName": "Test Plot"},
        )
        assert response.status_code == 200

        metadata = response.json()["data"]["metadata"]
        assert metadata["precisionMode"] == "estimated"
        assert metadata["aoiSource"] == "query_bbox"
        assert metadata["aoi"]["name"] == "Test Plot"
        assert metadata["aoi"]["bbox"] == [77.5, 12.9, 77.6, 13.0]

    def test_post_bbox_array(self, api):
        response = api.post(
            "/satellite/health",
            json={"precisionMode": "estimated", "bbox": [85.2, 20.1, 85.45, 20.35]},
        )
        assert response.status_code == 200

        metadata = response.json()["data"]["metadata"]
        assert metadata["aoiSource"] == "query_bbox"
        assert metadata["aoi"]["bbox"] == [85.2, 20.1, 85.45, 20.35]

    def test_invalid_parameter(self, api):
        response = api.get("/satellite/health?maxCloudCover=150")
        assert response.status_code == 400

        body = response.json()
        assert body["success"] is False
        assert body["data"] is None
        assert "maxCloudCover" in body["error"]

    def test_non_object_body(self, api):
        response = api.post("/satellite/health", json=["not", "an", "object"])
        assert response.status_code == 400

    def test_provider_failure_without_fallback(self, api, fake_search):
        fake_search.error = TransportError("CDSE catalog search failed (502): bad gateway", status=502)
        response = api.get("/satellite/health?allowFallback=false")

        assert response.status_code == 502
        body = response.json()
        assert body["success"] is False
        assert body["data"]["metadata"]["cache"]["hit"] is False
        assert "bad gateway" in body["error"]


class TestIngestEndpoint:
    """Tests for /satellite/ingest endpoint."""

    def test_ingest_falls_back_and_persists(self, api):
        response = api.get("/satellite/ingest?maxResults=1&startDate=2026-01-01&endDate=2026-02-28")
        assert response.status_code == 200

        data = response.json()["data"]
        ingest = data["ingest"]
        assert ingest["dataSource"] == "fallback_sample"
        assert len(ingest["scenes"]) == 1
        assert ingest["metadata"]["maxCloudCover"] == 25
        assert ingest["metadata"]["requestedRange"] == {"startDate": "2026-01-01", "endDate": "2026-02-28"}
        assert ingest["metadata"]["sampleSetVersion"]
        assert isinstance(data["persistedSnapshotId"], int)

    def test_history(self, api):
        api.get("/satellite/ingest?userId=u1&maxResults=1")
        api.post("/satellite/ingest", json={"userId": "u1", "maxResults": 2})
        api.get("/satellite/ingest?userId=u2")

        response = api.get("/satellite/ingest?action=history&userId=u1")
        assert response.status_code == 200

        history = response.json()["data"]["history"]
        assert len(history) == 2
        assert [item["sceneCount"] for item in history] == [2, 1]
        assert all(item["userId"] == "u1" for item in history)
        assert history[0]["id"] > history[1]["id"]

    def test_snapshot_write_failure_still_returns_ingest(self, api):
        failing_store = MagicMock()
        failing_store.save = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("disk full")))
        app.dependency_overrides[get_snapshot_store] = lambda: failing_store

        response = api.get("/satellite/ingest")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["persistedSnapshotId"] is None
        assert data["ingest"]["dataSource"] == "fallback_sample"
        failing_store.save.assert_awaited_once()

    def test_no_fallback_surfaces_configuration_error(self, api):
        response = api.get("/satellite/ingest?allowFallback=false")

        assert response.status_code == 503
        body = response.json()
        assert body["success"] is False
        assert "CDSE_CLIENT_ID" in body["error"]

    def test_invalid_date(self, api):
        response = api.get("/satellite/ingest?startDate=yesterday")
        assert response.status_code == 400

    def test_reversed_dates(self, api):
        response = api.get("/satellite/ingest?startDate=2026-03-01&endDate=2026-02-01")
        assert response.status_code == 400
        assert "startDate" in response.json()["error"]
