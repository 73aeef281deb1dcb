"""
Periodic delivery of queued events.

One run: take the lease, recover claims abandoned by a crashed run, claim
up to ``batch_size`` pending rows, open their envelopes, hand them to the
transmission strategy and write every outcome back. The lease keeps runs
from overlapping across processes.
"""
import json
import logging
import os
import socket
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Sequence

from ga4_relay.core.config import RelayConfig
from ga4_relay.core.crypto import open_stored, seal_for_storage
from ga4_relay.core.errors import CryptoError, StoreUnavailable
from ga4_relay.core.logging import _redact
from ga4_relay.core.observability import log_step
from ga4_relay.models.event import GA4Event, QueueStatus
from ga4_relay.services.event_store import EventStore
from ga4_relay.services.transmission import (
    BatchItem,
    DispatchOutcome,
    PreparedDispatch,
    TransmissionStrategy,
    build_strategy,
)

logger = logging.getLogger(__name__)

LEASE_NAME = "ga4_queue_processing"
METRICS_HISTORY = 10


@dataclass
class BatchRunResult:
    trigger: str
    status: str = "completed"  # completed | empty | skipped | aborted
    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    undecodable: int = 0
    recovered: int = 0
    method: str | None = None
    duration_ms: float = 0.0
    error: str | None = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class BatchProcessor:
    def __init__(
        self,
        store: EventStore,
        config: RelayConfig,
        strategy_factory: Callable[[RelayConfig], TransmissionStrategy] = build_strategy,
        metrics: Deque[Dict[str, Any]] | None = None,
        holder: str | None = None,
    ):
        self.store = store
        self.config = config
        self.strategy_factory = strategy_factory
        self.metrics = metrics if metrics is not None else deque(maxlen=METRICS_HISTORY)
        self.holder = holder or default_holder()

    @log_step("batch.run")
    async def run(self, trigger: str = "scheduled") -> BatchRunResult:
        t0 = time.perf_counter()
        result = BatchRunResult(trigger)

        try:
            acquired = await self.store.acquire_lease(LEASE_NAME, self.holder, self.config.lease_seconds)
        except StoreUnavailable as e:
            result.status, result.error = "aborted", str(e)
            return result
        if not acquired:
            logger.info("Queue run skipped, lease held elsewhere", extra={"extra": {"trigger": trigger}})
            result.status = "skipped"
            return result

        try:
            await self._claim_and_deliver(result)
        except StoreUnavailable as e:
            # claimed rows stay in processing and are recovered by a later run
            result.status, result.error = "aborted", str(e)
            logger.error("Queue run aborted: store unavailable", extra={"extra": {"trigger": trigger}})
        finally:
            try:
                await self.store.release_lease(LEASE_NAME, self.holder)
            except StoreUnavailable:
                logger.warning("Could not release queue lease, it expires in %ss", self.config.lease_seconds)

        result.duration_ms = round((time.perf_counter() - t0) * 1000, 2)
        if result.claimed:
            self._record_metrics(result)
        logger.info("Queue run %s", result.status, extra={"extra": result.as_dict()})
        return result

    async def _claim_and_deliver(self, result: BatchRunResult) -> None:
        result.recovered = await self.store.recover_stale_claims(self.config.lease_seconds)
        if result.recovered:
            logger.warning("Recovered %d stale claim(s)", result.recovered)

        rows = await self.store.select_pending(self.config.batch_size)
        if not rows:
            result.status = "empty"
            return
        ids = [row.id for row in rows]
        await self.store.update_status(ids, QueueStatus.PROCESSING)
        result.claimed = len(ids)

        items = await self.open_rows(rows)
        result.undecodable = len(rows) - len(items)
        outcome = await self.deliver(items)
        result.method = self.config.transmission_method
        result.succeeded = len(outcome.succeeded)
        result.failed = len(outcome.failed) + result.undecodable

    # --- transforming -------------------------------------------------------

    def _open_json(self, raw: str | None) -> Any:
        text = open_stored(raw, self.config.storage_key, self.config.site_url)
        return json.loads(text) if text is not None else None

    async def open_rows(self, rows: Sequence[GA4Event]) -> List[BatchItem]:
        """Decode stored rows; rows that cannot be opened are failed on the spot."""
        items = []
        for row in rows:
            try:
                record = self._open_json(row.original_payload)
                if not isinstance(record, dict):
                    raise ValueError("stored payload is not an object")
            except (CryptoError, ValueError) as e:
                logger.error("Event %s could not be decoded", row.id,
                             extra={"extra": {"event_id": row.id, "error_type": type(e).__name__}})
                await self.store.mark_failed(row.id, f"decryption failed: {e}")
                continue

            if isinstance(record.get("event"), dict):
                event, consent = record["event"], record.get("consent")
            else:
                # rows written before the queue record format carried the event itself
                event, consent = record, record.pop("consent", None)
            items.append(BatchItem(row.id, event, consent, self._open_headers(row)))
        return items

    def _open_headers(self, row: GA4Event) -> Dict[str, str]:
        try:
            headers = self._open_json(row.original_headers)
        except (CryptoError, ValueError) as e:
            logger.warning("Original headers of event %s unreadable, sending without them", row.id,
                           extra={"extra": {"event_id": row.id, "error_type": type(e).__name__}})
            return {}
        return headers if isinstance(headers, dict) else {}

    # --- dispatching and reconciling ---------------------------------------

    async def deliver(self, items: Sequence[BatchItem]) -> DispatchOutcome:
        """Send already claimed items and write the outcome back."""
        if not items:
            return DispatchOutcome()
        t0 = time.perf_counter()
        strategy = self.strategy_factory(self.config)
        try:
            prepared = strategy.prepare(items)
            await self._persist_final(prepared)
            outcome = await strategy.send(prepared)
        finally:
            await strategy.close()
        elapsed_ms = round((time.perf_counter() - t0) * 1000)
        await self._reconcile(outcome, len(items), elapsed_ms)
        return outcome

    async def _persist_final(self, prepared: PreparedDispatch) -> None:
        for request in prepared.requests:
            sealed = seal_for_storage(request.body, self.config.storage_key)
            payload = sealed.to_storage()
            headers = seal_for_storage(_redact(request.headers), self.config.storage_key).to_storage()
            for event_id in request.event_ids:
                await self.store.update_final_data(
                    event_id,
                    final_payload=payload,
                    final_headers=headers,
                    transmission_method=prepared.method,
                    final_payload_encrypted=prepared.encrypted or sealed.encrypted,
                )

    async def _reconcile(self, outcome: DispatchOutcome, batch_size: int, elapsed_ms: int) -> None:
        if outcome.succeeded:
            await self.store.update_status(
                outcome.succeeded, QueueStatus.COMPLETED,
                batch_size=batch_size, processing_time_ms=elapsed_ms,
            )
        for event_id, error in outcome.failed.items():
            await self.store.mark_failed(event_id, error)
        if outcome.failed:
            logger.warning("%d of %d event(s) failed", len(outcome.failed), batch_size,
                           extra={"extra": {"failed_ids": list(outcome.failed)[:50],
                                            "batch_level": outcome.batch_level}})

    def _record_metrics(self, result: BatchRunResult) -> None:
        seconds = result.duration_ms / 1000
        self.metrics.append({
            "at": datetime.now(timezone.utc).isoformat(),
            "trigger": result.trigger,
            "events": result.claimed,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "duration_ms": result.duration_ms,
            "events_per_second": round(result.claimed / seconds, 2) if seconds > 0 else None,
        })
