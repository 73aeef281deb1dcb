import asyncio
import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ga4_relay.api.v1.endpoints import admin, events
from ga4_relay.background.jobs import cleanup_events_job, process_event_queue_job
from ga4_relay.core.config import settings
from ga4_relay.core.logging import configure_logging, set_run_id
from ga4_relay.core.migrations_health import (
    assert_single_head_or_explain,
    log_migration_status,
    upgrade_to_head,
)
from ga4_relay.db.session import async_session_factory

# Initialize logging before anything else
configure_logging()
set_run_id()

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler(timezone="UTC")


def start_scheduler() -> None:
    # max_instances=1: a slow run is never overlapped by the next tick in this process
    scheduler.add_job(
        process_event_queue_job,
        "interval",
        seconds=settings.QUEUE_INTERVAL_SECONDS,
        id="process_event_queue",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        cleanup_events_job,
        "interval",
        days=1,
        id="cleanup_events",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Scheduler started", extra={"extra": {"queue_interval_seconds": settings.QUEUE_INTERVAL_SECONDS}})


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.RUN_MIGRATIONS_ON_STARTUP:
        logger.info("Performing migration health check...")
        await asyncio.to_thread(log_migration_status)
        await asyncio.to_thread(assert_single_head_or_explain)
        await asyncio.to_thread(upgrade_to_head)
    if settings.SCHEDULER_ENABLED:
        start_scheduler()
    yield
    if scheduler.running:
        logger.info("Shutting down scheduler...")
        scheduler.shutdown(wait=False)


app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/", tags=["Health Check"])
def read_root():
    return {"status": "ok", "project_name": settings.PROJECT_NAME}


@app.get("/health/db", tags=["Health Check"])
async def health_db():
    """Проверка подключения к базе данных."""
    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        raise HTTPException(status_code=503, detail={"db": "error", "message": str(e)}) from e
    return {"db": "ok"}


app.include_router(events.router, prefix="/api/v1", tags=["Events"])
app.include_router(admin.router, prefix="/api/v1", tags=["Admin"])
