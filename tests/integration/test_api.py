"""End-to-end tests through the HTTP API."""

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from fleet.api.main import create_app
from fleet.coordinator import Coordinator


@pytest.fixture
def client(coordinator: Coordinator) -> Iterator[TestClient]:
    with TestClient(create_app(coordinator, run_loop=False)) as test_client:
        yield test_client


def register(client: TestClient, capacity: int = 1) -> tuple[str, dict[str, str]]:
    response = client.post("/workers", json={"name": "vps-1", "maxConcurrentJobs": capacity})
    assert response.status_code == 201
    body = response.json()
    return body["workerId"], {"Authorization": f"Bearer {body['apiKey']}"}


def create_job(client: TestClient, **fields: object) -> dict:
    payload = {"name": "Test", "url": "https://example.com", **fields}
    response = client.post("/jobs", json=payload)
    assert response.status_code == 201
    return response.json()


def test_job_runs_end_to_end(client: TestClient) -> None:
    worker_id, headers = register(client)
    job = create_job(client, priority=7, tags=["smoke"])
    assert job["status"] == "queued"
    assert job["metadata"]["tags"] == ["smoke"]

    pulled = client.get("/jobs/next", params={"workerId": worker_id}, headers=headers).json()
    assert pulled["success"] is True
    assert pulled["data"]["id"] == job["id"]
    assert pulled["data"]["status"] == "running"
    assert pulled["data"]["assignedWorker"] == worker_id

    empty = client.get("/jobs/next", params={"workerId": worker_id}, headers=headers).json()
    assert empty["data"] is None

    response = client.put(
        f"/jobs/{job['id']}",
        json={"status": "completed", "execution": {"results": {"logs": ["done"]}}},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert response.json()["execution"]["results"]["logs"] == ["done"]

    worker = client.get(f"/workers/{worker_id}").json()
    assert worker["status"] == "online"
    assert worker["resources"]["currentJobs"] == 0
    assert worker["resources"]["totalJobsProcessed"] == 1
    assert "security" not in worker

    stats = client.get("/jobs/stats").json()
    assert stats["statusStats"]["completed"] == 1
    assert stats["total"] == 1


def test_worker_calls_require_credentials(client: TestClient) -> None:
    worker_id, _ = register(client)

    missing = client.get("/jobs/next", params={"workerId": worker_id})
    assert missing.status_code == 401
    assert missing.json() == {
        "success": False,
        "error": "Invalid or missing worker API key",
        "code": "unauthorized",
    }

    malformed = client.get(
        "/jobs/next", params={"workerId": worker_id}, headers={"Authorization": "Token abc"}
    )
    assert malformed.status_code == 401

    wrong = client.post(
        f"/workers/{worker_id}/heartbeat", json={}, headers={"Authorization": "Bearer nope"}
    )
    assert wrong.status_code == 401


def test_unknown_worker_is_told_to_reregister(client: TestClient) -> None:
    response = client.post(
        "/workers/wk-ghost/heartbeat", json={}, headers={"Authorization": "Bearer x"}
    )

    assert response.status_code == 404
    assert response.json()["code"] == "unknown_worker"


def test_validation_errors(client: TestClient) -> None:
    bad_url = client.post("/jobs", json={"name": "Test", "url": "not a url"})
    assert bad_url.status_code == 400
    assert bad_url.json()["code"] == "validation_error"

    no_name = client.post("/jobs", json={"url": "https://example.com"})
    assert no_name.status_code == 400

    payload = {"name": "Test", "url": "https://a.com", "priority": "x"}
    bad_schema = client.post("/jobs", json=payload)
    assert bad_schema.status_code == 400
    assert bad_schema.json()["code"] == "validation_error"

    assert client.get("/jobs").json()["total"] == 0


def test_missing_job_and_invalid_transition(client: TestClient) -> None:
    missing = client.get("/jobs/nope")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"

    job = create_job(client)
    response = client.put(f"/jobs/{job['id']}", json={"status": "completed"})
    assert response.status_code == 409
    assert response.json()["code"] == "invalid_transition"


def test_cancel_job(client: TestClient) -> None:
    job = create_job(client)

    response = client.delete(f"/jobs/{job['id']}", params={"reason": "no longer needed"})
    assert response.json() == {"success": True, "message": "Job cancelled"}
    assert client.get(f"/jobs/{job['id']}").json()["status"] == "cancelled"

    again = client.delete(f"/jobs/{job['id']}")
    assert again.status_code == 404


def test_retry_failed_job(client: TestClient) -> None:
    worker_id, headers = register(client)
    job = create_job(client)
    client.get("/jobs/next", params={"workerId": worker_id}, headers=headers)
    client.put(f"/jobs/{job['id']}", json={"status": "failed", "error": "boom"}, headers=headers)

    retried = client.post(f"/jobs/{job['id']}/retry")

    assert retried.status_code == 200
    assert retried.json()["status"] == "queued"
    assert retried.json()["assignedWorker"] is None


def test_list_jobs_with_filters(client: TestClient) -> None:
    first = create_job(client, tags=["a"])
    create_job(client, tags=["b"], createdBy="scheduler")
    client.delete(f"/jobs/{first['id']}")

    queued = client.get("/jobs", params={"status": "queued"}).json()
    assert queued["total"] == 1

    tagged = client.get("/jobs", params={"tags": "a, c"}).json()
    assert [job["id"] for job in tagged["jobs"]] == [first["id"]]

    by_creator = client.get("/jobs", params={"createdBy": "scheduler"}).json()
    assert by_creator["total"] == 1

    paged = client.get("/jobs", params={"limit": 1, "page": 2}).json()
    assert paged["pages"] == 2
    assert len(paged["jobs"]) == 1

    assert client.get("/jobs", params={"limit": 500}).status_code == 400

    since = client.get("/jobs", params={"createdAfter": "2020-01-01T00:00:00"})
    assert since.status_code == 200
    assert since.json()["total"] == 2
    until = client.get("/jobs", params={"createdBefore": "2020-01-01T00:00:00"})
    assert until.json()["total"] == 0


def test_batch_creation(client: TestClient) -> None:
    response = client.post(
        "/jobs/batch",
        json={
            "baseJob": {"name": "Shop", "url": "https://shop.example.com"},
            "quantity": 3,
            "urlPattern": {"type": "sequential", "pattern": "https://shop.example.com/p/{number}"},
            "namePattern": {"type": "sequential", "prefix": "Shop"},
        },
    )

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["totalCreated"] == 3
    assert [job["url"] for job in body["jobs"]] == [
        "https://shop.example.com/p/1",
        "https://shop.example.com/p/2",
        "https://shop.example.com/p/3",
    ]
    assert all(job["type"] == "batch" and job["status"] == "pending" for job in body["jobs"])

    too_many = client.post(
        "/jobs/batch",
        json={"baseJob": {"name": "x", "url": "https://a.com"}, "quantity": 1001},
    )
    assert too_many.status_code == 400


def test_batch_templates(client: TestClient) -> None:
    templates = client.get("/jobs/batch/templates").json()

    assert {template["id"] for template in templates} >= {"ecommerce-daily", "news-hourly"}


def test_heartbeat_and_worker_management(client: TestClient) -> None:
    worker_id, headers = register(client, capacity=2)
    assert client.get(f"/workers/{worker_id}").json()["status"] == "offline"

    beat = client.post(
        f"/workers/{worker_id}/heartbeat",
        json={"status": "online", "currentJobs": 0, "metrics": {"cpuUsage": 12.5}},
        headers=headers,
    )
    assert beat.status_code == 200
    assert beat.json()["instructions"]["maxConcurrentJobs"] == 2
    assert beat.json()["instructions"]["abortJobs"] == []
    assert beat.json()["stats"]["onlineWorkers"] == 1

    metrics = client.put(
        f"/workers/{worker_id}/metrics", json={"metrics": {"memoryUsage": 512}}, headers=headers
    )
    assert metrics.status_code == 200

    view = client.get(f"/workers/{worker_id}").json()
    assert view["status"] == "online"
    assert view["metrics"]["memoryUsage"] == 512

    held = client.put(f"/workers/{worker_id}", json={"status": "maintenance"}).json()
    assert held["status"] == "maintenance"

    listing = client.get("/workers", params={"status": "maintenance"}).json()
    assert listing["total"] == 1
    assert listing["summary"]["total"] == 1

    assert client.delete(f"/workers/{worker_id}").json()["success"] is True
    assert client.get(f"/workers/{worker_id}").status_code == 404


def test_heartbeat_keeps_implausible_metrics(client: TestClient) -> None:
    worker_id, headers = register(client)

    beat = client.post(
        f"/workers/{worker_id}/heartbeat",
        json={"metrics": {"cpuUsage": 250, "memoryUsage": -512}},
        headers=headers,
    )

    assert beat.status_code == 200
    metrics = client.get(f"/workers/{worker_id}").json()["metrics"]
    assert metrics["cpuUsage"] == 250
    assert metrics["memoryUsage"] == -512


def test_health(client: TestClient) -> None:
    create_job(client)

    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["jobs"] == 1
    assert body["queued"] == 1
    assert body["workers"] == 0
