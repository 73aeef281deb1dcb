from collections import deque
from functools import lru_cache
from typing import Any, Deque, Dict

from ga4_relay.core.config import RelayConfig, get_relay_config, settings
from ga4_relay.db.session import async_session_factory
from ga4_relay.services.batch_processor import METRICS_HISTORY, BatchProcessor
from ga4_relay.services.event_store import EventStore
from ga4_relay.services.rate_limiter import SlidingWindowRateLimiter, build_rate_limiter

# metrics of the last queue runs, shared by scheduled and manual runs
run_metrics: Deque[Dict[str, Any]] = deque(maxlen=METRICS_HISTORY)


@lru_cache
def get_event_store() -> EventStore:
    return EventStore(async_session_factory)


@lru_cache
def get_rate_limiter() -> SlidingWindowRateLimiter:
    return build_rate_limiter(settings)


def get_config() -> RelayConfig:
    return get_relay_config()


def build_processor(store: EventStore, config: RelayConfig) -> BatchProcessor:
    return BatchProcessor(store, config, metrics=run_metrics)
