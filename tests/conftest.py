import json
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ga4_relay.core.config import RelayConfig
from ga4_relay.db.base_class import Base
from ga4_relay.integrations.ga4_client import GA4MeasurementClient
from ga4_relay.services.event_store import EventStore
from ga4_relay.services.rate_limiter import SlidingWindowRateLimiter
from ga4_relay.services.request_context import InboundRequest
from ga4_relay.services.transmission import DirectGA4Strategy

SITE_URL = "https://shop.example.com"
TEST_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.6367.91 Safari/537.36"
)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_factory):
    return EventStore(session_factory)


@pytest.fixture
def relay_config():
    return RelayConfig(
        site_url=SITE_URL,
        bypass_cloudflare=True,
        ga4_measurement_id="G-TEST123",
        ga4_api_secret="test-secret",
    )


@pytest.fixture
def limiter():
    return SlidingWindowRateLimiter(max_requests=100, window_seconds=60)


def browser_headers(**overrides):
    headers = {
        "user-agent": CHROME_UA,
        "referer": f"{SITE_URL}/products/42",
        "origin": SITE_URL,
        "accept": "application/json, text/plain",
        "accept-language": "nl-NL,nl;q=0.9,en;q=0.8",
        "accept-encoding": "gzip, deflate, br",
        "content-type": "application/json",
    }
    headers.update(overrides)
    return {k: v for k, v in headers.items() if v is not None}


def make_request(body, *, ip="203.0.113.10", **header_overrides):
    text = body if isinstance(body, str) else json.dumps(body)
    return InboundRequest(text, browser_headers(**header_overrides), ip, f"{SITE_URL}/api/v1/send-events")


def batch_body(count=1, consent=None):
    return {
        "events": [
            {"name": f"event_{i}", "client_id": f"cid.{i}", "params": {"page_location": f"{SITE_URL}/p/{i}"}}
            for i in range(count)
        ],
        "consent": consent or {"ad_user_data": "GRANTED", "ad_personalization": "GRANTED"},
        "batch": count > 1,
    }


class FakeGA4:
    """Strategy factory whose client records payloads instead of calling Google."""

    def __init__(self, side_effect=None):
        self.collect = AsyncMock(side_effect=side_effect, return_value=204)
        self.strategies = 0

    def __call__(self, config):
        client = GA4MeasurementClient(config.ga4_measurement_id, config.ga4_api_secret)
        client.collect = self.collect
        client.close = AsyncMock()
        self.strategies += 1
        return DirectGA4Strategy(client)

    @property
    def sent_payloads(self):
        return [call.args[0] for call in self.collect.await_args_list]
