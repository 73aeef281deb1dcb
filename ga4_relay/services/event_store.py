import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, fields
from datetime import timedelta
from typing import Any, AsyncIterator, Dict, Iterable, List, Sequence, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ga4_relay.core.errors import StoreUnavailable
from ga4_relay.core.observability import log_step
from ga4_relay.db.base_class import utcnow
from ga4_relay.models.event import (
    TERMINAL_QUEUE_STATUSES,
    GA4Event,
    JobLease,
    MonitorStatus,
    QueueStatus,
)

logger = logging.getLogger(__name__)

_IMMUTABLE_COLUMNS = {"id", "monitor_status", "created_at"}


@dataclass
class NewEvent:
    """Row to be written at ingestion time."""

    monitor_status: MonitorStatus
    event_name: str = ""
    original_payload: str | None = None
    original_headers: str | None = None
    was_originally_encrypted: bool = False
    error_message: str | None = None
    reason: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    url: str | None = None
    referrer: str | None = None
    consent_given: bool | None = None
    # Only meaningful for allowed rows; anything else is stored without a queue status
    queue_status: QueueStatus = QueueStatus.PENDING
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_row(self) -> GA4Event:
        values = {f.name: getattr(self, f.name) for f in fields(self) if f.name not in ("extra", "monitor_status", "queue_status")}
        values.update(self.extra)
        monitor = MonitorStatus(self.monitor_status)
        if monitor is MonitorStatus.ALLOWED:
            queue = QueueStatus(self.queue_status)
            if queue not in (QueueStatus.PENDING, QueueStatus.PROCESSING):
                raise ValueError(f"New events cannot start in queue status {queue.value!r}")
            values["queue_status"] = queue.value
            if queue is QueueStatus.PROCESSING:
                values["claimed_at"] = utcnow()
        else:
            values["queue_status"] = None
        return GA4Event(monitor_status=monitor.value, **values)


class EventStore:
    """Persistence contract for GA4 event rows. Every call is its own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("Event store unavailable: %s", e,
                         extra={"extra": {"error_type": type(e).__name__}})
            raise StoreUnavailable(str(e)) from e

    # --- writes -----------------------------------------------------------

    async def insert(self, event: NewEvent) -> int:
        ids = await self.insert_many([event])
        return ids[0]

    async def insert_many(self, events: Sequence[NewEvent]) -> List[int]:
        """Insert rows in one transaction; either all are stored or none."""
        rows = [e.to_row() for e in events]
        async with self._transaction() as session:
            session.add_all(rows)
            await session.flush()
            return [row.id for row in rows]

    async def update_status(self, ids: Iterable[int], new_status: QueueStatus | str, **extra_fields: Any) -> int:
        ids = list(ids)
        if not ids:
            return 0
        forbidden = _IMMUTABLE_COLUMNS.intersection(extra_fields)
        if forbidden:
            raise ValueError(f"Columns {sorted(forbidden)} cannot be changed after insert")
        status = QueueStatus(new_status)
        values: Dict[str, Any] = dict(extra_fields)
        values["queue_status"] = status.value
        if status is QueueStatus.COMPLETED:
            values.setdefault("processed_at", utcnow())
        elif status is QueueStatus.PROCESSING:
            values.setdefault("claimed_at", utcnow())
        stmt = (
            update(GA4Event)
            .where(GA4Event.id.in_(ids), GA4Event.queue_status.is_not(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount

    async def update_final_data(
        self,
        event_id: int,
        *,
        final_payload: str,
        final_headers: str | None,
        transmission_method: str,
        final_payload_encrypted: bool,
    ) -> None:
        stmt = (
            update(GA4Event)
            .where(GA4Event.id == event_id)
            .values(
                final_payload=final_payload,
                final_headers=final_headers,
                transmission_method=transmission_method,
                final_payload_encrypted=final_payload_encrypted,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            await session.execute(stmt)

    async def mark_failed(self, event_id: int, error_message: str) -> None:
        # retry_count is incremented by the database, never read-modify-write here
        stmt = (
            update(GA4Event)
            .where(GA4Event.id == event_id, GA4Event.queue_status.is_not(None))
            .values(
                queue_status=QueueStatus.FAILED.value,
                error_message=error_message,
                retry_count=GA4Event.retry_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            await session.execute(stmt)

    async def requeue_failed(self, ids: Iterable[int] | None = None) -> int:
        """Manual reprocessing: failed rows go back to pending, retry_count is kept."""
        stmt = update(GA4Event).where(GA4Event.queue_status == QueueStatus.FAILED.value)
        if ids is not None:
            stmt = stmt.where(GA4Event.id.in_(list(ids)))
        stmt = stmt.values(
            queue_status=QueueStatus.PENDING.value,
            error_message=None,
            processed_at=None,
            claimed_at=None,
        ).execution_options(synchronize_session=False)
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount

    async def recover_stale_claims(self, older_than_seconds: int) -> int:
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        stmt = (
            update(GA4Event)
            .where(
                GA4Event.queue_status == QueueStatus.PROCESSING.value,
                or_(GA4Event.claimed_at.is_(None), GA4Event.claimed_at < cutoff),
            )
            .values(queue_status=QueueStatus.PENDING.value, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount

    # --- reads ------------------------------------------------------------

    async def get(self, event_id: int) -> GA4Event | None:
        async with self._transaction() as session:
            return await session.get(GA4Event, event_id)

    async def select_pending(self, limit: int = 1000) -> List[GA4Event]:
        stmt = (
            select(GA4Event)
            .where(GA4Event.queue_status == QueueStatus.PENDING.value)
            .order_by(GA4Event.created_at.asc(), GA4Event.id.asc())
            .limit(limit)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def queue_stats(self) -> Dict[str, Any]:
        async with self._transaction() as session:
            queue_rows = (await session.execute(
                select(GA4Event.queue_status, func.count()).group_by(GA4Event.queue_status)
            )).all()
            monitor_rows = (await session.execute(
                select(GA4Event.monitor_status, func.count()).group_by(GA4Event.monitor_status)
            )).all()
            oldest_pending = await session.scalar(
                select(func.min(GA4Event.created_at)).where(GA4Event.queue_status == QueueStatus.PENDING.value)
            )

        queue = {s.value: 0 for s in QueueStatus}
        for status, count in queue_rows:
            if status is not None:
                queue[status] = count
        monitor = {s.value: 0 for s in MonitorStatus}
        for status, count in monitor_rows:
            monitor[status] = count
        return {
            **queue,
            "total": sum(monitor.values()),
            "monitor": monitor,
            "oldest_pending_at": oldest_pending.isoformat() if oldest_pending else None,
        }

    async def list_events(
        self,
        *,
        monitor_status: str | None = None,
        queue_status: str | None = None,
        search: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[GA4Event], int]:
        conditions = []
        if monitor_status:
            conditions.append(GA4Event.monitor_status == MonitorStatus(monitor_status).value)
        if queue_status:
            conditions.append(GA4Event.queue_status == QueueStatus(queue_status).value)
        if search:
            pattern = f"%{search}%"
            conditions.append(or_(
                GA4Event.event_name.ilike(pattern),
                GA4Event.ip_address.ilike(pattern),
                GA4Event.url.ilike(pattern),
                GA4Event.reason.ilike(pattern),
            ))

        page = (
            select(GA4Event)
            .where(*conditions)
            .order_by(GA4Event.created_at.desc(), GA4Event.id.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self._transaction() as session:
            total = await session.scalar(select(func.count()).select_from(GA4Event).where(*conditions))
            rows = (await session.execute(page)).scalars().all()
        return list(rows), int(total or 0)

    # --- maintenance ------------------------------------------------------

    @log_step("store.cleanup_older_than")
    async def cleanup_older_than(self, days: int) -> int:
        """Delete completed/failed rows older than ``days``. Pending and processing rows are never touched."""
        cutoff = utcnow() - timedelta(days=days)
        stmt = delete(GA4Event).where(
            GA4Event.queue_status.in_(TERMINAL_QUEUE_STATUSES),
            GA4Event.created_at < cutoff,
        ).execution_options(synchronize_session=False)
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount

    @log_step("store.cleanup_unqueued_older_than")
    async def cleanup_unqueued_older_than(self, days: int) -> int:
        cutoff = utcnow() - timedelta(days=days)
        stmt = delete(GA4Event).where(
            GA4Event.queue_status.is_(None),
            GA4Event.created_at < cutoff,
        ).execution_options(synchronize_session=False)
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount

    @log_step("store.trim_completed")
    async def trim_completed(self, keep: int) -> int:
        """Keep only the newest ``keep`` completed rows."""
        surplus = (
            select(GA4Event.id)
            .where(GA4Event.queue_status == QueueStatus.COMPLETED.value)
            .order_by(GA4Event.created_at.desc(), GA4Event.id.desc())
            .offset(keep)
        )
        stmt = delete(GA4Event).where(GA4Event.id.in_(surplus)).execution_options(synchronize_session=False)
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount

    # --- leases -----------------------------------------------------------

    async def acquire_lease(self, name: str, holder: str, ttl_seconds: int) -> bool:
        now = utcnow()
        expires = now + timedelta(seconds=ttl_seconds)
        async with self._transaction() as session:
            taken = await session.execute(
                update(JobLease)
                .where(JobLease.name == name, JobLease.expires_at < now)
                .values(holder=holder, acquired_at=now, expires_at=expires)
                .execution_options(synchronize_session=False)
            )
            if taken.rowcount:
                return True
            exists = await session.scalar(select(JobLease.name).where(JobLease.name == name))
        if exists is not None:
            return False

        try:
            async with self._session_factory() as session, session.begin():
                session.add(JobLease(name=name, holder=holder, acquired_at=now, expires_at=expires))
        except IntegrityError:
            # another worker inserted the lease first
            return False
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e)) from e
        return True

    async def release_lease(self, name: str, holder: str | None = None) -> bool:
        stmt = delete(JobLease).where(JobLease.name == name)
        if holder is not None:
            stmt = stmt.where(JobLease.holder == holder)
        async with self._transaction() as session:
            result = await session.execute(stmt.execution_options(synchronize_session=False))
            return bool(result.rowcount)

    async def lease_info(self, name: str) -> Dict[str, Any] | None:
        async with self._transaction() as session:
            lease = await session.get(JobLease, name)
            if lease is None:
                return None
            return {
                "name": lease.name,
                "holder": lease.holder,
                "acquired_at": lease.acquired_at.isoformat(),
                "expires_at": lease.expires_at.isoformat(),
            }
