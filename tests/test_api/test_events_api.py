import dataclasses
import json

import httpx
import pytest
import pytest_asyncio

from conftest import SITE_URL, FakeGA4, batch_body, browser_headers
from ga4_relay.api import deps
from ga4_relay.api.v1.endpoints import events as events_endpoint
from ga4_relay.core.crypto import create_site_time_token
from ga4_relay.main import app
from ga4_relay.models.event import GA4Event
from ga4_relay.services.batch_processor import BatchProcessor
from ga4_relay.services.event_store import EventStore
from ga4_relay.services.rate_limiter import SlidingWindowRateLimiter

CLIENT_IP = "203.0.113.10"


@pytest.fixture
def overrides(store, limiter, relay_config):
    state = {"config": relay_config, "limiter": limiter, "store": store}
    app.dependency_overrides[deps.get_event_store] = lambda: state["store"]
    app.dependency_overrides[deps.get_rate_limiter] = lambda: state["limiter"]
    app.dependency_overrides[deps.get_config] = lambda: state["config"]
    yield state
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def api(overrides):
    transport = httpx.ASGITransport(app=app, client=(CLIENT_IP, 50123))
    async with httpx.AsyncClient(transport=transport, base_url=SITE_URL) as client:
        yield client


async def post_events(client, body, path="/api/v1/send-events", **headers):
    return await client.post(path, content=json.dumps(body), headers=browser_headers(**headers))


@pytest.mark.asyncio
async def test_send_events_queues_batch(api, store):
    response = await post_events(api, batch_body(2))

    assert response.status_code == 200
    assert response.json()["events_queued"] == 2
    rows, total = await store.list_events(queue_status="pending")
    assert total == 2
    assert rows[0].ip_address == CLIENT_IP


@pytest.mark.asyncio
async def test_rate_limit_sets_retry_after_header(api, overrides):
    overrides["limiter"] = SlidingWindowRateLimiter(max_requests=1, window_seconds=60)
    assert (await post_events(api, batch_body())).status_code == 200

    response = await post_events(api, batch_body())

    assert response.status_code == 429
    assert int(response.headers["retry-after"]) > 0


@pytest.mark.asyncio
async def test_foreign_referer_is_forbidden(api):
    response = await post_events(api, batch_body(), referer="https://other.example.org/", origin=None)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_encrypted_endpoint_rejects_plain_body(api, store):
    response = await post_events(api, batch_body(), path="/api/v1/send-events/encrypted")
    assert response.status_code == 400
    rows, _ = await store.list_events(monitor_status="error")
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_encrypted_endpoint_accepts_time_token(api):
    token = create_site_time_token(json.dumps(batch_body(3)), SITE_URL)
    response = await post_events(api, {"time_jwt": token}, path="/api/v1/send-events/encrypted")
    assert response.status_code == 200
    assert response.json()["events_queued"] == 3


@pytest.mark.asyncio
async def test_queue_disabled_forwards_immediately_in_debug(api, overrides, store, monkeypatch):
    overrides["config"] = dataclasses.replace(overrides["config"], queue_enabled=False, debug=True)
    fake = FakeGA4()
    monkeypatch.setattr(events_endpoint, "build_processor",
                        lambda s, c: BatchProcessor(s, c, strategy_factory=fake))

    response = await post_events(api, batch_body(2))

    assert response.status_code == 200
    assert response.json()["forwarded"] == {"method": "ga4_direct", "succeeded": 2, "failed": {}}
    assert fake.collect.await_count == 2
    rows, total = await store.list_events(queue_status="completed")
    assert total == 2


@pytest.mark.asyncio
async def test_store_outage_returns_processing_error(api, overrides, session_factory):
    async with session_factory() as session, session.begin():
        await session.run_sync(lambda s: GA4Event.__table__.drop(s.connection()))
    overrides["store"] = EventStore(session_factory)

    response = await post_events(api, batch_body())

    assert response.status_code == 500
    assert response.json() == {"error": "Processing error"}
