import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from ga4_relay.api.deps import build_processor, get_config, get_event_store, run_metrics
from ga4_relay.core.config import RelayConfig, settings
from ga4_relay.core.errors import StoreUnavailable
from ga4_relay.core.logging import set_request_id
from ga4_relay.models.event import MonitorStatus, QueueStatus
from ga4_relay.schemas.events import CleanupRequest, EventPage, EventSummary, ReprocessRequest
from ga4_relay.services.batch_processor import LEASE_NAME
from ga4_relay.services.event_store import EventStore

logger = logging.getLogger(__name__)


def _auth(x_admin_token: str | None = Header(default=None)):
    if not settings.ADMIN_TOKEN:
        raise HTTPException(403, "Admin API disabled")
    if x_admin_token != settings.ADMIN_TOKEN:
        raise HTTPException(401, "Invalid token")
    set_request_id(None)


router = APIRouter(prefix="/admin", dependencies=[Depends(_auth)])


def _store_error(e: StoreUnavailable) -> HTTPException:
    logger.error("Admin request failed: %s", e)
    return HTTPException(status_code=503, detail={"db": "error"})


@router.get("/queue/stats", summary="Состояние очереди")
async def queue_stats(store: EventStore = Depends(get_event_store)):
    try:
        stats = await store.queue_stats()
        lease = await store.lease_info(LEASE_NAME)
    except StoreUnavailable as e:
        raise _store_error(e) from e
    return {**stats, "lease": lease}


@router.get("/events", response_model=EventPage, summary="Журнал событий")
async def list_events(
    monitor_status: MonitorStatus | None = Query(default=None),
    queue_status: QueueStatus | None = Query(default=None),
    search: str | None = Query(default=None, max_length=200),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    store: EventStore = Depends(get_event_store),
):
    try:
        rows, total = await store.list_events(
            monitor_status=monitor_status.value if monitor_status else None,
            queue_status=queue_status.value if queue_status else None,
            search=search,
            limit=limit,
            offset=offset,
        )
    except StoreUnavailable as e:
        raise _store_error(e) from e
    return EventPage(items=[EventSummary.model_validate(r) for r in rows], total=total, limit=limit, offset=offset)


@router.post("/queue/process", summary="Запустить обработку очереди вручную")
async def process_queue(
    store: EventStore = Depends(get_event_store),
    config: RelayConfig = Depends(get_config),
):
    """Runs one batch now. Returns `skipped` when a scheduled run holds the lease."""
    result = await build_processor(store, config).run(trigger="manual")
    return result.as_dict()


@router.post("/queue/reprocess", summary="Вернуть упавшие события в очередь")
async def reprocess_failed(body: ReprocessRequest, store: EventStore = Depends(get_event_store)):
    try:
        requeued = await store.requeue_failed(body.ids)
    except StoreUnavailable as e:
        raise _store_error(e) from e
    logger.info("Requeued %d failed event(s)", requeued, extra={"extra": {"ids": body.ids}})
    return {"requeued": requeued}


@router.post("/queue/cleanup", summary="Очистка старых событий")
async def cleanup(body: CleanupRequest, store: EventStore = Depends(get_event_store)):
    try:
        return {
            "terminal": await store.cleanup_older_than(body.completed_days or settings.CLEANUP_COMPLETED_DAYS),
            "unqueued": await store.cleanup_unqueued_older_than(body.unqueued_days or settings.CLEANUP_UNQUEUED_DAYS),
            "trimmed": await store.trim_completed(body.max_completed_rows or settings.MAX_COMPLETED_ROWS),
        }
    except StoreUnavailable as e:
        raise _store_error(e) from e


@router.delete("/queue/lease", summary="Снять зависшую блокировку очереди")
async def release_lease(store: EventStore = Depends(get_event_store)):
    try:
        released = await store.release_lease(LEASE_NAME)
    except StoreUnavailable as e:
        raise _store_error(e) from e
    logger.warning("Queue lease released manually", extra={"extra": {"released": released}})
    return {"released": released}


@router.get("/queue/metrics", summary="Метрики последних прогонов")
async def queue_metrics():
    runs = list(run_metrics)
    rates = [r["events_per_second"] for r in runs if r.get("events_per_second")]
    return {
        "runs": runs,
        "average_events_per_second": round(sum(rates) / len(rates), 2) if rates else None,
    }
