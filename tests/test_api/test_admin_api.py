import httpx
import pytest
import pytest_asyncio

from conftest import FakeGA4, batch_body, make_request
from ga4_relay.api import deps
from ga4_relay.api.v1.endpoints import admin as admin_endpoint
from ga4_relay.core.config import settings
from ga4_relay.main import app
from ga4_relay.services.batch_processor import LEASE_NAME, BatchProcessor
from ga4_relay.services.ingestion_guard import IngestionGuard

TOKEN = "admin-secret"


@pytest.fixture
def fake_ga4(monkeypatch):
    fake = FakeGA4()
    monkeypatch.setattr(admin_endpoint, "build_processor",
                        lambda s, c: BatchProcessor(s, c, strategy_factory=fake, metrics=deps.run_metrics))
    return fake


@pytest_asyncio.fixture
async def admin(store, relay_config, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_TOKEN", TOKEN)
    deps.run_metrics.clear()
    app.dependency_overrides[deps.get_event_store] = lambda: store
    app.dependency_overrides[deps.get_config] = lambda: relay_config
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver",
                                 headers={"X-Admin-Token": TOKEN}) as client:
        yield client
    app.dependency_overrides.clear()
    deps.run_metrics.clear()


async def queue_events(store, limiter, relay_config, count):
    result = await IngestionGuard(store, limiter, relay_config).admit(make_request(batch_body(count)))
    return result.event_ids


@pytest.mark.asyncio
async def test_admin_requires_token(admin):
    response = await admin.get("/api/v1/admin/queue/stats", headers={"X-Admin-Token": "wrong"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_admin_disabled_without_configured_token(admin, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_TOKEN", None)
    response = await admin.get("/api/v1/admin/queue/stats")
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_queue_stats(admin, store, limiter, relay_config):
    await queue_events(store, limiter, relay_config, 2)
    response = await admin.get("/api/v1/admin/queue/stats")
    assert response.status_code == 200
    body = response.json()
    assert body["pending"] == 2
    assert body["lease"] is None


@pytest.mark.asyncio
async def test_manual_run_and_metrics(admin, fake_ga4, store, limiter, relay_config):
    await queue_events(store, limiter, relay_config, 3)

    response = await admin.post("/api/v1/admin/queue/process")

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert response.json()["succeeded"] == 3
    assert fake_ga4.collect.await_count == 3

    metrics = (await admin.get("/api/v1/admin/queue/metrics")).json()
    assert len(metrics["runs"]) == 1
    assert metrics["runs"][0]["trigger"] == "manual"


@pytest.mark.asyncio
async def test_manual_run_is_skipped_while_lease_is_held(admin, fake_ga4, store):
    await store.acquire_lease(LEASE_NAME, "scheduler", 300)
    response = await admin.post("/api/v1/admin/queue/process")
    assert response.json()["status"] == "skipped"

    released = await admin.delete("/api/v1/admin/queue/lease")
    assert released.json() == {"released": True}
    assert await store.lease_info(LEASE_NAME) is None


@pytest.mark.asyncio
async def test_reprocess_failed_events(admin, store, limiter, relay_config):
    ids = await queue_events(store, limiter, relay_config, 2)
    await store.mark_failed(ids[0], "HTTP 500")

    response = await admin.post("/api/v1/admin/queue/reprocess", json={"ids": [ids[0]]})

    assert response.json() == {"requeued": 1}
    assert (await store.get(ids[0])).queue_status == "pending"


@pytest.mark.asyncio
async def test_event_listing_filters(admin, store, limiter, relay_config):
    ids = await queue_events(store, limiter, relay_config, 2)
    await store.mark_failed(ids[1], "HTTP 500")

    response = await admin.get("/api/v1/admin/events", params={"queue_status": "failed"})

    assert response.status_code == 200
    page = response.json()
    assert page["total"] == 1
    assert page["items"][0]["id"] == ids[1]
    assert page["items"][0]["error_message"] == "HTTP 500"
    assert "original_payload" not in page["items"][0]


@pytest.mark.asyncio
async def test_event_listing_rejects_unknown_status(admin):
    response = await admin.get("/api/v1/admin/events", params={"queue_status": "lost"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_cleanup_reports_counts(admin):
    response = await admin.post("/api/v1/admin/queue/cleanup", json={})
    assert response.status_code == 200
    assert response.json() == {"terminal": 0, "unqueued": 0, "trimmed": 0}
