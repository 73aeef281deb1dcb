import logging
import uuid

from ga4_relay.api.deps import build_processor, get_event_store
from ga4_relay.core.config import get_relay_config, settings
from ga4_relay.core.errors import StoreUnavailable
from ga4_relay.core.logging import set_job_id, set_job_name

logger = logging.getLogger(__name__)


async def process_event_queue_job():
    """
    Job-функция для APScheduler: один прогон очереди событий.
    """
    set_job_id(str(uuid.uuid4()))
    set_job_name("process_event_queue_job")
    processor = build_processor(get_event_store(), get_relay_config())
    return await processor.run(trigger="scheduled")


async def cleanup_events_job():
    """
    Ежедневная очистка: завершённые/упавшие, аудиторские строки и лимит completed.
    """
    set_job_id(str(uuid.uuid4()))
    set_job_name("cleanup_events_job")
    store = get_event_store()
    try:
        removed = {
            "terminal": await store.cleanup_older_than(settings.CLEANUP_COMPLETED_DAYS),
            "unqueued": await store.cleanup_unqueued_older_than(settings.CLEANUP_UNQUEUED_DAYS),
            "trimmed": await store.trim_completed(settings.MAX_COMPLETED_ROWS),
        }
    except StoreUnavailable:
        logger.error("Cleanup skipped: store unavailable")
        return None
    logger.info("Cleanup finished", extra={"extra": removed})
    return removed
