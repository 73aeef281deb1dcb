"""
Admission control for inbound tracking requests.

Every request ends in event rows: rejected requests get one audit row with
the matching monitor status, admitted requests get one ``allowed`` row per
event, queued as ``pending``.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from ga4_relay.core.config import RelayConfig
from ga4_relay.core.crypto import (
    decrypt_permanent_token,
    seal_for_storage,
    verify_site_time_token,
)
from ga4_relay.core.errors import (
    BotDetected,
    CryptoError,
    DecryptionFailed,
    IngestionError,
    MalformedPayload,
    OriginRejected,
    RateLimited,
)
from ga4_relay.core.logging import mask_ip
from ga4_relay.core.observability import log_step
from ga4_relay.models.event import MonitorStatus, QueueStatus
from ga4_relay.services.bot_detection import (
    BotVerdict,
    RequestBotDetector,
    RequestSignals,
    analyze_client_signals,
)
from ga4_relay.services.event_store import EventStore, NewEvent
from ga4_relay.services.rate_limiter import SlidingWindowRateLimiter
from ga4_relay.services.request_context import (
    InboundRequest,
    extract_consent_given,
    origin_matches,
)

logger = logging.getLogger(__name__)

MISSING_CONSENT = {"consent_mode": "DENIED", "consent_reason": "missing_data"}
_SINGLE_EVENT_RESERVED = ("event_name", "name", "consent", "timestamp", "page_origin")
STORED_BODY_MAX = 10000


@dataclass
class NormalizedPayload:
    events: List[Dict[str, Any]]
    consent: Dict[str, Any] | None
    batch: bool


@dataclass
class AdmittedEvent:
    event_id: int
    event: Dict[str, Any]
    consent: Dict[str, Any] | None
    headers: Dict[str, str]


@dataclass
class IngestionResult:
    status_code: int
    body: Dict[str, Any]
    event_ids: List[int] = field(default_factory=list)
    admitted: List[AdmittedEvent] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.status_code == 200


def normalize_payload(data: Dict[str, Any], now_ms: int | None = None) -> NormalizedPayload:
    """Bring batch and single-event bodies to the batch shape."""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)

    if "events" in data:
        raw_events = data["events"]
        if not isinstance(raw_events, list) or not raw_events:
            raise MalformedPayload("Empty events array received")
        events = []
        for index, raw in enumerate(raw_events):
            if not isinstance(raw, dict):
                raise MalformedPayload(f"Event at index {index} is not an object")
            name = raw.get("name")
            if not isinstance(name, str) or not name.strip():
                raise MalformedPayload(f"Missing event name at index {index}")
            event = dict(raw)
            params = raw.get("params")
            event["params"] = dict(params) if isinstance(params, dict) else {}
            events.append(event)
        consent = data.get("consent") if isinstance(data.get("consent"), dict) else None
        return NormalizedPayload(events, consent, bool(data.get("batch", False)))

    name = data.get("event_name") or data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise MalformedPayload("Missing events array or single event data")
    if isinstance(data.get("params"), dict):
        params = dict(data["params"])
    else:
        params = {k: v for k, v in data.items() if k not in _SINGLE_EVENT_RESERVED}
    consent = data.get("consent")
    if not isinstance(consent, dict):
        consent = params.get("consent") if isinstance(params.get("consent"), dict) else None
    for key in ("event_name", "name", "consent", "timestamp"):
        params.pop(key, None)
    event = {
        "name": name,
        "params": params,
        "isCompleteData": True,
        "timestamp": data.get("timestamp") or now_ms,
    }
    return NormalizedPayload([event], consent, False)


def strip_client_signals(events: List[Dict[str, Any]]) -> None:
    for event in events:
        event.get("params", {}).pop("botData", None)


class IngestionGuard:
    def __init__(
        self,
        store: EventStore,
        rate_limiter: SlidingWindowRateLimiter,
        config: RelayConfig,
        bot_detector: RequestBotDetector | None = None,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.config = config
        self.bot_detector = bot_detector or RequestBotDetector()

    @log_step("ingestion.admit")
    async def admit(self, request: InboundRequest, *, require_time_token: bool = False) -> IngestionResult:
        t0 = time.perf_counter()
        try:
            verdict = await self._screen(request, require_time_token)
            data, was_encrypted = self._decrypt(request)
            payload = normalize_payload(data)
        except IngestionError as e:
            await self._record_rejection(request, e)
            return self._rejection_response(e)

        if payload.consent is None:
            payload.consent = dict(MISSING_CONSENT)

        if verdict is not None:
            client_verdict = analyze_client_signals(verdict, payload.events, request.user_agent)
            if client_verdict.is_bot:
                ids = await self._record_client_bots(request, payload, client_verdict.checks, client_verdict.score)
                return IngestionResult(200, {
                    "success": True,
                    "events_processed": len(payload.events),
                    "filtered": True,
                    "message": "Events processed successfully",
                }, event_ids=ids)

        strip_client_signals(payload.events)
        admitted = await self._queue(request, payload, was_encrypted)
        elapsed = round((time.perf_counter() - t0) * 1000, 2)
        return IngestionResult(200, {
            "success": True,
            "events_queued": len(admitted),
            "events_processed": len(admitted),
            "processing_time_ms": elapsed,
        }, event_ids=[a.event_id for a in admitted], admitted=admitted)

    # --- pipeline steps ---------------------------------------------------

    async def _screen(self, request: InboundRequest, require_time_token: bool) -> BotVerdict | None:
        if require_time_token and not request.body_dict.get("time_jwt"):
            raise MalformedPayload("endpoint_access_violation", {"detail": "time_jwt required"})

        decision = await self.rate_limiter.hit(request.client_ip)
        if not decision.allowed:
            raise RateLimited(decision.retry_after, {"limit": decision.limit})

        if not origin_matches(request, self.config.site_host):
            raise OriginRejected("Origin validation failed", {"expected_host": self.config.site_host})

        if not self.config.bot_detection_enabled:
            return None
        verdict = self.bot_detector.evaluate(RequestSignals(request.user_agent, request.client_ip, request.headers))
        if verdict.is_bot:
            raise BotDetected(verdict.checks, {"positive_checks": verdict.positive})
        return verdict

    def _decrypt(self, request: InboundRequest) -> Tuple[Dict[str, Any], bool]:
        if request.json_error is not None or not isinstance(request.json_body, dict):
            raise MalformedPayload("Request body is not a JSON object")
        body = request.json_body

        if body.get("time_jwt"):
            try:
                plain = verify_site_time_token(body["time_jwt"], self.config.site_url)
            except CryptoError as e:
                raise DecryptionFailed(f"Time-based token rejected: {type(e).__name__}") from e
            return self._decoded_object(plain), True

        if request.headers.get("x-encrypted", "").lower() == "true" or "encrypted" in body:
            token = body.get("jwt") or body.get("encrypted")
            if not isinstance(token, str):
                raise DecryptionFailed("Encrypted request carries no token")
            if not self.config.encryption_key:
                raise DecryptionFailed("Encryption key not configured")
            try:
                plain = decrypt_permanent_token(token, self.config.encryption_key)
            except CryptoError as e:
                raise DecryptionFailed(f"Encrypted payload rejected: {type(e).__name__}") from e
            return self._decoded_object(plain), True

        return body, False

    @staticmethod
    def _decoded_object(plain: str) -> Dict[str, Any]:
        try:
            data = json.loads(plain)
        except json.JSONDecodeError as e:
            raise DecryptionFailed("Decrypted payload is not JSON") from e
        if not isinstance(data, dict):
            raise DecryptionFailed("Decrypted payload is not an object")
        return data

    # --- persistence ------------------------------------------------------

    def _context_fields(self, request: InboundRequest) -> Dict[str, Any]:
        return {
            "ip_address": request.client_ip,
            "user_agent": request.user_agent or None,
            "url": request.headers.get("origin") or request.url or None,
            "referrer": request.referer or None,
        }

    def _sealed_headers(self, request: InboundRequest) -> str:
        return seal_for_storage(request.stored_headers(), self.config.storage_key).to_storage()

    async def _queue(self, request: InboundRequest, payload: NormalizedPayload, was_encrypted: bool) -> List[AdmittedEvent]:
        headers = request.stored_headers()
        sealed_headers = self._sealed_headers(request)
        queue_status = QueueStatus.PENDING if self.config.queue_enabled else QueueStatus.PROCESSING
        consent_given = extract_consent_given(payload.consent)
        stored_at = int(time.time())

        rows = []
        for event in payload.events:
            record = {"event": event, "consent": payload.consent, "batch": payload.batch, "timestamp": stored_at}
            rows.append(NewEvent(
                monitor_status=MonitorStatus.ALLOWED,
                queue_status=queue_status,
                event_name=event["name"],
                original_payload=seal_for_storage(record, self.config.storage_key).to_storage(),
                original_headers=sealed_headers,
                was_originally_encrypted=was_encrypted,
                reason="Queued for batch processing" if self.config.queue_enabled else "Forwarded directly",
                consent_given=consent_given,
                **self._context_fields(request),
            ))
        ids = await self.store.insert_many(rows)
        logger.info("Queued %d event(s)", len(ids), extra={"extra": {
            "event_ids": ids, "ip": mask_ip(request.client_ip), "encrypted": was_encrypted,
            "queue_status": queue_status.value}})
        return [AdmittedEvent(i, e, payload.consent, headers) for i, e in zip(ids, payload.events)]

    async def _record_rejection(self, request: InboundRequest, error: IngestionError) -> int:
        body = request.body if len(request.body) <= STORED_BODY_MAX else request.body[:STORED_BODY_MAX] + "..."
        diagnostic = {"type": type(error).__name__, "reason": error.reason, **error.details}
        if isinstance(error, BotDetected):
            diagnostic["bot_detection_rules"] = error.checks
        if isinstance(error, RateLimited):
            diagnostic["retry_after"] = error.retry_after

        event_id = await self.store.insert(NewEvent(
            monitor_status=MonitorStatus(error.monitor_status),
            event_name=self._guess_event_name(request),
            original_payload=seal_for_storage(body, self.config.storage_key).to_storage(),
            original_headers=self._sealed_headers(request),
            error_message=json.dumps(diagnostic, ensure_ascii=False, default=str),
            reason=error.reason,
            consent_given=extract_consent_given(request.body_dict.get("consent")),
            **self._context_fields(request),
        ))
        logger.warning("Request rejected: %s", error.reason, extra={"extra": {
            "event_id": event_id, "monitor_status": error.monitor_status,
            "ip": mask_ip(request.client_ip), "error_type": type(error).__name__}})
        return event_id

    async def _record_client_bots(self, request: InboundRequest, payload: NormalizedPayload,
                                  checks: Dict[str, bool], score: int) -> List[int]:
        diagnostic = json.dumps({"type": "BotDetected", "reason": "client_signals",
                                 "bot_detection_rules": checks, "score": score})
        record = seal_for_storage({"events": payload.events, "consent": payload.consent},
                                  self.config.storage_key).to_storage()
        rows = [
            NewEvent(
                monitor_status=MonitorStatus.BOT_DETECTED,
                event_name=event["name"],
                original_payload=record,
                original_headers=self._sealed_headers(request),
                error_message=diagnostic,
                reason=f"Client signal bot detection: score {score}",
                consent_given=extract_consent_given(payload.consent),
                **self._context_fields(request),
            )
            for event in payload.events
        ]
        ids = await self.store.insert_many(rows)
        logger.warning("Events filtered as bot traffic", extra={"extra": {
            "event_ids": ids, "score": score, "checks": checks, "ip": mask_ip(request.client_ip)}})
        return ids

    @staticmethod
    def _guess_event_name(request: InboundRequest) -> str:
        body = request.body_dict
        events = body.get("events")
        if isinstance(events, list) and events and isinstance(events[0], dict):
            name = events[0].get("name")
            if isinstance(name, str):
                return name[:255]
        name = body.get("event_name") or body.get("name")
        return name[:255] if isinstance(name, str) else ""

    @staticmethod
    def _rejection_response(error: IngestionError) -> IngestionResult:
        body: Dict[str, Any] = {"error": error.public_error}
        headers: Dict[str, str] = {}
        if isinstance(error, RateLimited):
            body["details"] = "Too many requests from this address"
            body["retry_after"] = error.retry_after
            headers["Retry-After"] = str(error.retry_after)
        elif isinstance(error, BotDetected):
            body["details"] = "Automated requests are not allowed"
        return IngestionResult(error.status_code, body, headers=headers)
