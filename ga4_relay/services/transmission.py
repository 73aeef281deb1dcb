"""
Outbound delivery of claimed events.

A strategy works in two steps so the processor can persist what is about
to be sent before anything leaves the process: ``prepare`` builds the
outbound requests, ``send`` performs them and reports a result per event.
"""
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from ga4_relay.core.config import RelayConfig
from ga4_relay.core.crypto import create_permanent_token
from ga4_relay.core.errors import TransmissionConfigError, TransmissionError
from ga4_relay.integrations.cloudflare_client import CloudflareWorkerClient
from ga4_relay.integrations.ga4_client import GA4MeasurementClient
from ga4_relay.services.ga4_payload import build_ga4_payload

logger = logging.getLogger(__name__)

# stored original header key -> header forwarded to GA4
FORWARDED_HEADERS = {
    "user_agent": "User-Agent",
    "accept_language": "Accept-Language",
    "accept": "Accept",
    "referer": "Referer",
    "accept_encoding": "Accept-Encoding",
    "x_forwarded_for": "X-Forwarded-For",
    "x_real_ip": "X-Real-IP",
}

CLOUDFLARE_FAILURE = "Failed to send events to Cloudflare Worker"
GA4_FAILURE = "Direct GA4 transmission failed"


@dataclass
class BatchItem:
    event_id: int
    event: Dict[str, Any]
    consent: Dict[str, Any] | None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class OutboundRequest:
    event_ids: List[int]
    body: Dict[str, Any]
    headers: Dict[str, str]


@dataclass
class PreparedDispatch:
    method: str
    requests: List[OutboundRequest] = field(default_factory=list)
    encrypted: bool = False
    # event id -> error found while preparing, such events are never sent
    failures: Dict[int, str] = field(default_factory=dict)


@dataclass
class DeliveryResult:
    success: bool
    error: str | None = None


@dataclass
class DispatchOutcome:
    results: Dict[int, DeliveryResult] = field(default_factory=dict)
    batch_level: bool = False

    @property
    def succeeded(self) -> List[int]:
        return [i for i, r in self.results.items() if r.success]

    @property
    def failed(self) -> Dict[int, str]:
        return {i: r.error or "unknown error" for i, r in self.results.items() if not r.success}


class TransmissionStrategy(ABC):
    method: str

    @abstractmethod
    def prepare(self, batch: Sequence[BatchItem]) -> PreparedDispatch:
        ...

    @abstractmethod
    async def send(self, prepared: PreparedDispatch) -> DispatchOutcome:
        ...

    async def dispatch(self, batch: Sequence[BatchItem]) -> DispatchOutcome:
        return await self.send(self.prepare(batch))

    async def close(self) -> None:
        pass


def _first_consent(batch: Sequence[BatchItem]) -> Dict[str, Any] | None:
    return next((item.consent for item in batch if item.consent), None)


class DirectGA4Strategy(TransmissionStrategy):
    """One Measurement Protocol call per event; events fail independently."""

    method = "ga4_direct"

    def __init__(self, client: GA4MeasurementClient):
        self.client = client

    @staticmethod
    def forwarded_headers(original: Dict[str, str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": GA4MeasurementClient.USER_AGENT}
        for key, name in FORWARDED_HEADERS.items():
            if original.get(key):
                headers[name] = original[key]
        return headers

    def prepare(self, batch: Sequence[BatchItem]) -> PreparedDispatch:
        prepared = PreparedDispatch(self.method)
        if not self.client.configured:
            message = f"{GA4_FAILURE}: GA4 measurement id or API secret not configured"
            prepared.failures = {item.event_id: message for item in batch}
            return prepared

        fallback = _first_consent(batch)
        for item in batch:
            try:
                body = build_ga4_payload(item.event, item.consent or fallback, item.headers)
            except (TypeError, ValueError, AttributeError, KeyError) as e:
                logger.warning("GA4 payload could not be built for event %s", item.event_id,
                               extra={"extra": {"event_id": item.event_id, "error_type": type(e).__name__}})
                prepared.failures[item.event_id] = f"{GA4_FAILURE}: payload could not be built: {e}"
                continue
            prepared.requests.append(OutboundRequest([item.event_id], body, self.forwarded_headers(item.headers)))
        return prepared

    async def send(self, prepared: PreparedDispatch) -> DispatchOutcome:
        outcome = DispatchOutcome(batch_level=False)
        for event_id, error in prepared.failures.items():
            outcome.results[event_id] = DeliveryResult(False, error)

        for request in prepared.requests:
            event_id = request.event_ids[0]
            try:
                await self.client.collect(request.body, request.headers)
            except TransmissionError as e:
                logger.warning("GA4 delivery failed for event %s", event_id,
                               extra={"extra": {"event_id": event_id, "error_type": type(e).__name__}})
                outcome.results[event_id] = DeliveryResult(False, f"{GA4_FAILURE}: {e}")
            else:
                outcome.results[event_id] = DeliveryResult(True)
        return outcome

    async def close(self) -> None:
        await self.client.close()


class CloudflareWorkerStrategy(TransmissionStrategy):
    """Whole batch in one POST to the worker: all events succeed or fail together."""

    method = "cloudflare"

    def __init__(self, client: CloudflareWorkerClient, encryption_key: str | None = None):
        self.client = client
        self.encryption_key = encryption_key

    def prepare(self, batch: Sequence[BatchItem]) -> PreparedDispatch:
        prepared = PreparedDispatch(self.method)
        try:
            self.client.validate_url()
        except TransmissionConfigError as e:
            prepared.failures = {item.event_id: f"{CLOUDFLARE_FAILURE}: {e}" for item in batch}
            return prepared

        body: Dict[str, Any] = {
            "events": [{**item.event, "headers": item.headers} for item in batch],
            "batch": True,
            "timestamp": int(time.time() * 1000),
        }
        consent = _first_consent(batch)
        if consent:
            body["consent"] = consent

        if self.encryption_key:
            token = create_permanent_token(json.dumps(body, ensure_ascii=False), self.encryption_key)
            body = {"encrypted": True, "jwt": token}
            prepared.encrypted = True

        prepared.requests.append(OutboundRequest([item.event_id for item in batch], body, self.client.request_headers()))
        return prepared

    async def send(self, prepared: PreparedDispatch) -> DispatchOutcome:
        outcome = DispatchOutcome(batch_level=True)
        for event_id, error in prepared.failures.items():
            outcome.results[event_id] = DeliveryResult(False, error)

        for request in prepared.requests:
            try:
                await self.client.send_batch(request.body, request.headers)
            except TransmissionError as e:
                logger.error("Cloudflare Worker rejected batch of %d", len(request.event_ids),
                             extra={"extra": {"batch_size": len(request.event_ids), "error_type": type(e).__name__}})
                result = DeliveryResult(False, f"{CLOUDFLARE_FAILURE}: {e}")
            else:
                result = DeliveryResult(True)
            for event_id in request.event_ids:
                outcome.results[event_id] = result
        return outcome

    async def close(self) -> None:
        await self.client.close()


def build_strategy(config: RelayConfig) -> TransmissionStrategy:
    if config.bypass_cloudflare:
        client = GA4MeasurementClient(config.ga4_measurement_id, config.ga4_api_secret,
                                      tries=config.http_retry_attempts)
        return DirectGA4Strategy(client)
    worker = CloudflareWorkerClient(config.cloudflare_worker_url, config.worker_api_key,
                                    tries=config.http_retry_attempts)
    return CloudflareWorkerStrategy(worker, config.storage_key)
