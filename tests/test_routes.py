from datetime import timedelta

import httpx
import pytest
import pytest_asyncio

from hookrelay.dependencies.retry_engine import get_delivery_client, get_session_factory
from hookrelay.main import app
from hookrelay.models.base import utcnow
from hookrelay.services.delivery_client import DeliveryClient
from support import FakeEndpoint, enqueue

BASE = "/api/webhook-retries"


@pytest_asyncio.fixture
async def endpoint():
    return FakeEndpoint()


@pytest_asyncio.fixture
async def client(session_factory, endpoint):
    delivery_http = endpoint.client()
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_delivery_client] = lambda: DeliveryClient(delivery_http, timeout_seconds=30)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as api:
        yield api
    app.dependency_overrides.clear()
    await delivery_http.aclose()


@pytest_asyncio.fixture
async def broken_client(broken_session_factory):
    app.dependency_overrides[get_session_factory] = lambda: broken_session_factory
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as api:
        yield api
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_run_pass_returns_counts(client, store, endpoint):
    await enqueue(store, now=utcnow() - timedelta(seconds=1))

    response = await client.post(f"{BASE}/run")

    assert response.status_code == 200
    assert response.json() == {
        "processed": 1,
        "succeeded": 1,
        "failed_retrying": 0,
        "abandoned": 0,
        "skipped": 0,
    }
    assert len(endpoint.requests) == 1


@pytest.mark.asyncio
async def test_run_pass_with_failing_deliveries_is_still_200(client, store, endpoint):
    endpoint.replies = [500]
    await enqueue(store, now=utcnow() - timedelta(seconds=1))

    response = await client.post(f"{BASE}/run")

    assert response.status_code == 200
    assert response.json()["failed_retrying"] == 1


@pytest.mark.asyncio
async def test_run_pass_store_outage_is_503(broken_client):
    response = await broken_client.post(f"{BASE}/run")

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_list_store_outage_is_503(broken_client):
    response = await broken_client.get(BASE)

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_list_and_get_tasks(client, store):
    task = await enqueue(store)

    listed = await client.get(BASE, params={"status": "active"})
    assert listed.status_code == 200
    assert [t["id"] for t in listed.json()] == [task.id]
    assert listed.json()[0]["status"] == "pending"

    fetched = await client.get(f"{BASE}/{task.id}")
    assert fetched.status_code == 200
    assert fetched.json()["webhook_name"] == "Zapier discharge"


@pytest.mark.asyncio
async def test_list_rejects_unknown_status(client):
    response = await client.get(BASE, params={"status": "exploded"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_missing_task_is_404(client):
    assert (await client.get(f"{BASE}/missing")).status_code == 404
    assert (await client.get(f"{BASE}/missing/activity")).status_code == 404
    assert (await client.post(f"{BASE}/missing/retry-now")).status_code == 404


@pytest.mark.asyncio
async def test_retry_now_and_activity(client, store, endpoint):
    endpoint.replies = [503]
    task = await enqueue(store, now=utcnow() - timedelta(seconds=1))
    await client.post(f"{BASE}/run")

    waiting = await client.get(f"{BASE}/{task.id}")
    assert waiting.json()["retry_count"] == 1

    expedited = await client.post(f"{BASE}/{task.id}/retry-now")
    assert expedited.status_code == 200

    second = await client.post(f"{BASE}/run")
    assert second.json()["succeeded"] == 1

    activity = await client.get(f"{BASE}/{task.id}/activity")
    assert [e["outcome"] for e in activity.json()] == ["http_error", "success"]
    assert activity.json()[0]["error_message"] == "Retry attempt 1: HTTP 503: reply 503"


@pytest.mark.asyncio
async def test_retry_now_rejects_finished_tasks(client, store):
    task = await enqueue(store, now=utcnow() - timedelta(seconds=1))
    await client.post(f"{BASE}/run")

    response = await client.post(f"{BASE}/{task.id}/retry-now")

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_stats(client, store):
    await enqueue(store)
    await enqueue(store)

    response = await client.get(f"{BASE}/stats")

    assert response.status_code == 200
    assert response.json() == {
        "counts": {"pending": 2, "claimed": 0, "succeeded": 0, "abandoned": 0},
        "total": 2,
    }


@pytest.mark.asyncio
async def test_metrics_exposes_retry_counters(client):
    response = await client.get("/metrics")

    assert response.status_code == 200
    assert "webhook_delivery_attempts_total" in response.text


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get("/health", headers={"X-Request-ID": "req-42"})

    assert response.headers["X-Request-ID"] == "req-42"
