from __future__ import annotations

import asyncio
from typing import Any

from fastapi.testclient import TestClient

from review_bot.core.config import Settings
from review_bot.main import create_app
from review_bot.services.queue import RetryPolicy
from review_bot.services.store import InMemoryQueue, InMemoryRecordStore

ADMIN_KEY = "admin-key"


def _build(**settings_overrides: Any) -> tuple[TestClient, InMemoryRecordStore, InMemoryQueue]:
    overrides: dict[str, Any] = {"admin_api_key": ADMIN_KEY, "otel_enabled": False}
    overrides.update(settings_overrides)
    store = InMemoryRecordStore()
    queue = InMemoryQueue(retry_policy=RetryPolicy(max_attempts=1))
    app = create_app(Settings(**overrides), record_store=store, queue=queue)
    return TestClient(app), store, queue


def _seed_job(store: InMemoryRecordStore, job_key: str = "review:42:7") -> int:
    async def run() -> int:
        job = await store.upsert_job_pending(change_request_id=1, job_key=job_key)
        return job.id

    return asyncio.run(run())


def test_root_and_health() -> None:
    client, _, _ = _build()
    assert client.get("/").json()["status"] == "ok"

    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["checks"]["queue"]["waiting"] == 0

    assert client.get("/ready").json() == {"status": "ready"}


def test_health_reports_degraded_store() -> None:
    client, store, _ = _build()
    store.available = False

    response = client.get("/health")
    assert response.status_code == 503
    assert response.json()["checks"]["record_store"] == "unavailable"
    assert client.get("/ready").status_code == 503


def test_admin_routes_require_key() -> None:
    client, _, _ = _build()
    assert client.get("/jobs").status_code == 401
    assert client.get("/jobs", headers={"X-API-Key": "nope"}).status_code == 401
    assert client.get("/queue/stats", headers={"X-API-Key": ADMIN_KEY}).status_code == 200


def test_admin_routes_unavailable_without_configured_key() -> None:
    client, _, _ = _build(admin_api_key=None)
    assert client.get("/jobs", headers={"X-API-Key": ADMIN_KEY}).status_code == 503


def test_list_and_get_jobs() -> None:
    client, store, _ = _build()
    job_id = _seed_job(store)
    headers = {"X-API-Key": ADMIN_KEY}

    listed = client.get("/jobs", headers=headers, params={"status": "pending"})
    assert listed.status_code == 200
    assert [job["job_key"] for job in listed.json()] == ["review:42:7"]

    fetched = client.get(f"/jobs/{job_id}", headers=headers)
    assert fetched.status_code == 200
    assert fetched.json()["status"] == "pending"
    assert fetched.json()["attempts"] == 0

    assert client.get("/jobs/999", headers=headers).status_code == 404
    assert client.get("/jobs", headers=headers, params={"status": "bogus"}).status_code == 422


def test_retry_dead_lettered_entry() -> None:
    client, _, queue = _build()
    headers = {"X-API-Key": ADMIN_KEY}

    async def dead_letter() -> None:
        await queue.enqueue("review:42:7", {})
        delivery = await queue.try_dequeue()
        assert delivery is not None
        await queue.fail(delivery.lease, "boom")

    asyncio.run(dead_letter())
    assert client.get("/queue/stats", headers=headers).json()["failed"] == 1

    response = client.post("/queue/review:42:7/retry", headers=headers)
    assert response.status_code == 200
    assert response.json() == {"job_key": "review:42:7", "retried": True}
    assert client.post("/queue/review:42:7/retry", headers=headers).status_code == 409
    assert client.post("/queue/review:1:1/retry", headers=headers).status_code == 404
