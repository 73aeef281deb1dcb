import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from ga4_relay.api.deps import build_processor, get_config, get_event_store, get_rate_limiter
from ga4_relay.core.config import RelayConfig
from ga4_relay.core.errors import StoreUnavailable
from ga4_relay.core.logging import set_request_id
from ga4_relay.services.event_store import EventStore
from ga4_relay.services.ingestion_guard import IngestionGuard, IngestionResult
from ga4_relay.services.rate_limiter import SlidingWindowRateLimiter
from ga4_relay.services.request_context import InboundRequest
from ga4_relay.services.transmission import BatchItem

logger = logging.getLogger(__name__)
router = APIRouter()


async def _ingest(
    request: Request,
    background_tasks: BackgroundTasks,
    store: EventStore,
    limiter: SlidingWindowRateLimiter,
    config: RelayConfig,
    *,
    require_time_token: bool,
) -> JSONResponse:
    set_request_id(request.headers.get("x-request-id"))
    body = await request.body()
    inbound = InboundRequest.build(
        body, request.headers, request.client.host if request.client else None, str(request.url))

    guard = IngestionGuard(store, limiter, config)
    try:
        result = await guard.admit(inbound, require_time_token=require_time_token)
    except StoreUnavailable:
        return JSONResponse({"error": "Processing error"}, status_code=500)

    if result.accepted and result.admitted and not config.queue_enabled:
        await _forward_directly(result, background_tasks, store, config)

    return JSONResponse(result.body, status_code=result.status_code, headers=result.headers)


async def _forward_directly(result: IngestionResult, background_tasks: BackgroundTasks,
                            store: EventStore, config: RelayConfig) -> None:
    """Queue disabled: rows are already claimed, send them now."""
    items = [BatchItem(a.event_id, a.event, a.consent, a.headers) for a in result.admitted]
    processor = build_processor(store, config)
    if not config.debug:
        background_tasks.add_task(processor.deliver, items)
        return
    try:
        outcome = await processor.deliver(items)
    except StoreUnavailable:
        result.body["forwarded"] = {"error": "store unavailable"}
        return
    result.body["forwarded"] = {
        "method": config.transmission_method,
        "succeeded": len(outcome.succeeded),
        "failed": outcome.failed,
    }


@router.post("/send-events", summary="Принять события трекинга")
async def send_events(
    request: Request,
    background_tasks: BackgroundTasks,
    store: EventStore = Depends(get_event_store),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
    config: RelayConfig = Depends(get_config),
):
    """
    Plain or encrypted (`jwt`, `X-Encrypted: true`, `time_jwt`) single or batched events.

    Every request leaves a row: rejected ones an audit row, admitted ones a queued row per event.
    """
    return await _ingest(request, background_tasks, store, limiter, config, require_time_token=False)


@router.post("/send-events/encrypted", summary="Принять события, зашифрованные ключом сайта")
async def send_events_encrypted(
    request: Request,
    background_tasks: BackgroundTasks,
    store: EventStore = Depends(get_event_store),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
    config: RelayConfig = Depends(get_config),
):
    """Same pipeline, but only `time_jwt` bodies are accepted."""
    return await _ingest(request, background_tasks, store, limiter, config, require_time_token=True)
