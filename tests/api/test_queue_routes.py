from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from portal.config import load_config
from portal.main import create_app
from portal.orchestrator.bootstrap import BackgroundRuntime
from tests.helpers import StubPlexClient, seed_global_config

ADMIN_HEADERS = {"X-Portal-User": "admin-1", "X-Portal-Role": "admin"}
USER_HEADERS = {"X-Portal-User": "user-1"}


@pytest.fixture
def client(redis_client) -> Iterator[TestClient]:
    config = load_config()
    runtime = BackgroundRuntime.from_config(config, redis=redis_client, plex_client=StubPlexClient())
    with TestClient(create_app(config, runtime=runtime)) as test_client:
        yield test_client


@pytest.fixture
def client_without_redis() -> Iterator[TestClient]:
    with TestClient(create_app(load_config())) as test_client:
        yield test_client


def test_dashboard_requires_admin(client: TestClient) -> None:
    anonymous = client.get("/api/admin/queue/dashboard")
    regular = client.get("/api/admin/queue/dashboard", headers=USER_HEADERS)

    assert anonymous.status_code == 403
    assert anonymous.json() == {"success": False, "error": "Unauthorized", "code": "UNAUTHORIZED"}
    assert regular.status_code == 403


def test_dashboard_for_admin(client: TestClient) -> None:
    response = client.get("/api/admin/queue/dashboard", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["redisConnected"] is True
    assert body["data"]["workerRunning"] is False
    assert response.headers["X-Request-ID"]


def test_request_id_is_echoed(client: TestClient) -> None:
    response = client.get(
        "/api/admin/queue/health", headers={**ADMIN_HEADERS, "X-Request-ID": "req-123"}
    )

    assert response.headers["X-Request-ID"] == "req-123"


def test_trigger_then_inspect_and_remove_job(client: TestClient) -> None:
    seed_global_config(enabled=True)
    triggered = client.post(
        "/api/admin/queue/watchlist-sync", json={"userId": "user-9"}, headers=ADMIN_HEADERS
    )
    assert triggered.status_code == 200
    job_id = triggered.json()["data"]["jobId"]

    listing = client.get(
        "/api/admin/queue/jobs", params={"status": "waiting"}, headers=ADMIN_HEADERS
    )
    assert [job["id"] for job in listing.json()["data"]["jobs"]] == [job_id]

    detail = client.get(f"/api/admin/queue/jobs/{job_id}", headers=ADMIN_HEADERS)
    assert detail.json()["data"]["data"] == {"userId": "user-9", "triggeredBy": "manual"}

    retry = client.post(f"/api/admin/queue/jobs/{job_id}/retry", headers=ADMIN_HEADERS)
    assert retry.status_code == 404

    removed = client.delete(f"/api/admin/queue/jobs/{job_id}", headers=ADMIN_HEADERS)
    assert removed.status_code == 200
    missing = client.get(f"/api/admin/queue/jobs/{job_id}", headers=ADMIN_HEADERS)
    assert missing.status_code == 404
    assert missing.json()["code"] == "NOT_FOUND"


def test_trigger_without_body_syncs_everyone(client: TestClient) -> None:
    seed_global_config(enabled=True)
    response = client.post("/api/admin/queue/watchlist-sync", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    assert response.json()["data"]["jobId"]


def test_pause_and_resume(client: TestClient) -> None:
    paused = client.post("/api/admin/queue/pause", headers=ADMIN_HEADERS)
    health = client.get("/api/admin/queue/health", headers=ADMIN_HEADERS)
    resumed = client.post("/api/admin/queue/resume", headers=ADMIN_HEADERS)

    assert paused.json()["data"] == {"isPaused": True}
    assert health.json()["data"]["isPaused"] is True
    assert resumed.json()["data"] == {"isPaused": False}


def test_invalid_filters_are_rejected(client: TestClient) -> None:
    response = client.get(
        "/api/admin/queue/jobs", params={"limit": "1000"}, headers=ADMIN_HEADERS
    )

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "error": "Invalid input",
        "code": "VALIDATION_ERROR",
    }


def test_schedule_update_and_status(client: TestClient) -> None:
    seed_global_config(enabled=True, interval_minutes=60)

    invalid = client.put(
        "/api/admin/queue/watchlist-sync/schedule",
        json={"intervalMinutes": 5000},
        headers=ADMIN_HEADERS,
    )
    updated = client.put(
        "/api/admin/queue/watchlist-sync/schedule",
        json={"intervalMinutes": 120},
        headers=ADMIN_HEADERS,
    )
    status = client.get("/api/admin/queue/watchlist-sync/schedule", headers=ADMIN_HEADERS)

    assert invalid.status_code == 400
    assert invalid.json()["error"] == "Invalid interval"
    assert updated.status_code == 200
    data = status.json()["data"]
    assert data["enabled"] is True
    assert data["intervalMinutes"] == 120
    assert data["nextRun"] is not None


def test_without_redis_dashboard_degrades_and_actions_fail(
    client_without_redis: TestClient,
) -> None:
    dashboard = client_without_redis.get("/api/admin/queue/dashboard", headers=ADMIN_HEADERS)
    jobs = client_without_redis.get("/api/admin/queue/jobs", headers=ADMIN_HEADERS)

    assert dashboard.status_code == 200
    assert dashboard.json()["data"]["redisConnected"] is False
    assert jobs.status_code == 503
    assert jobs.json()["error"] == "Redis is not configured"
