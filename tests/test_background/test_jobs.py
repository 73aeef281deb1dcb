from datetime import timedelta

import pytest
from sqlalchemy import update

from conftest import FakeGA4, batch_body, make_request
from ga4_relay.background import jobs
from ga4_relay.core.config import settings
from ga4_relay.db.base_class import utcnow
from ga4_relay.models.event import GA4Event, QueueStatus
from ga4_relay.services.batch_processor import BatchProcessor
from ga4_relay.services.ingestion_guard import IngestionGuard


@pytest.fixture
def wired(store, relay_config, monkeypatch):
    fake = FakeGA4()
    monkeypatch.setattr(jobs, "get_event_store", lambda: store)
    monkeypatch.setattr(jobs, "get_relay_config", lambda: relay_config)
    monkeypatch.setattr(jobs, "build_processor", lambda s, c: BatchProcessor(s, c, strategy_factory=fake))
    return fake


@pytest.mark.asyncio
async def test_queue_job_runs_one_batch(wired, store, limiter, relay_config):
    admitted = await IngestionGuard(store, limiter, relay_config).admit(make_request(batch_body(2)))

    result = await jobs.process_event_queue_job()

    assert result.trigger == "scheduled"
    assert result.succeeded == 2
    assert wired.collect.await_count == 2
    for event_id in admitted.event_ids:
        assert (await store.get(event_id)).queue_status == "completed"


@pytest.mark.asyncio
async def test_cleanup_job_removes_old_terminal_rows(wired, store, session_factory, limiter, relay_config, monkeypatch):
    monkeypatch.setattr(settings, "CLEANUP_COMPLETED_DAYS", 7)
    admitted = await IngestionGuard(store, limiter, relay_config).admit(make_request(batch_body(2)))
    old, fresh = admitted.event_ids
    await store.update_status([old, fresh], QueueStatus.COMPLETED)
    async with session_factory() as session, session.begin():
        await session.execute(
            update(GA4Event).where(GA4Event.id == old).values(created_at=utcnow() - timedelta(days=30))
        )

    removed = await jobs.cleanup_events_job()

    assert removed["terminal"] == 1
    assert await store.get(old) is None
    assert await store.get(fresh) is not None


@pytest.mark.asyncio
async def test_cleanup_job_survives_store_outage(wired, store, session_factory):
    async with session_factory() as session, session.begin():
        await session.run_sync(lambda s: GA4Event.__table__.drop(s.connection()))
    assert await jobs.cleanup_events_job() is None
