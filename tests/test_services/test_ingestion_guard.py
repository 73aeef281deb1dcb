import dataclasses
import json

import pytest

from conftest import SITE_URL, TEST_KEY, batch_body, make_request
from ga4_relay.core.crypto import Envelope, create_permanent_token, create_site_time_token
from ga4_relay.core.errors import MalformedPayload
from ga4_relay.services.ingestion_guard import IngestionGuard, normalize_payload
from ga4_relay.services.rate_limiter import SlidingWindowRateLimiter


@pytest.fixture
def guard(store, limiter, relay_config):
    return IngestionGuard(store, limiter, relay_config)


async def stored_record(store, event_id):
    row = await store.get(event_id)
    return row, json.loads(Envelope.from_storage(row.original_payload).open(TEST_KEY))


@pytest.mark.asyncio
async def test_admitted_batch_is_queued_one_row_per_event(guard, store):
    result = await guard.admit(make_request(batch_body(3)))

    assert result.status_code == 200
    assert result.body["success"] is True
    assert result.body["events_queued"] == 3
    assert len(result.event_ids) == 3
    for event_id, expected_name in zip(result.event_ids, ["event_0", "event_1", "event_2"]):
        row, record = await stored_record(store, event_id)
        assert row.monitor_status == "allowed"
        assert row.queue_status == "pending"
        assert row.event_name == expected_name
        assert row.consent_given is True
        assert record["event"]["name"] == expected_name
        assert record["consent"]["ad_user_data"] == "GRANTED"


@pytest.mark.asyncio
async def test_stored_headers_are_sealed(guard, store):
    result = await guard.admit(make_request(batch_body()))
    row = await store.get(result.event_ids[0])
    headers = json.loads(Envelope.from_storage(row.original_headers).open(None))
    assert headers["accept_language"].startswith("nl-NL")
    assert headers["referer"] == f"{SITE_URL}/products/42"


@pytest.mark.asyncio
async def test_rate_limited_request_leaves_denied_audit_row(store, relay_config):
    guard = IngestionGuard(store, SlidingWindowRateLimiter(max_requests=1, window_seconds=60), relay_config)
    assert (await guard.admit(make_request(batch_body()))).accepted

    result = await guard.admit(make_request(batch_body()))
    assert result.status_code == 429
    assert result.body["error"] == "Rate limit exceeded"
    assert result.body["retry_after"] > 0
    assert result.headers["Retry-After"] == str(result.body["retry_after"])

    rows, _ = await store.list_events(monitor_status="denied")
    assert len(rows) == 1
    assert rows[0].queue_status is None
    assert json.loads(rows[0].error_message)["type"] == "RateLimited"


@pytest.mark.asyncio
async def test_foreign_origin_is_rejected(guard, store):
    request = make_request(batch_body(), referer="https://evil.example.net/", origin="https://evil.example.net")
    result = await guard.admit(request)
    assert result.status_code == 403
    rows, total = await store.list_events(monitor_status="denied")
    assert total == 1 and rows[0].reason == "Origin validation failed"


@pytest.mark.asyncio
async def test_bot_request_is_rejected(guard, store):
    request = make_request(batch_body(), ip="66.249.66.1", accept="*/*")
    result = await guard.admit(request)
    assert result.status_code == 403
    assert result.body["error"] == "Request blocked"
    rows, _ = await store.list_events(monitor_status="bot_detected")
    assert len(rows) == 1
    diagnostic = json.loads(rows[0].error_message)
    assert diagnostic["bot_detection_rules"]["known_bot_ip"] is True
    assert rows[0].queue_status is None


@pytest.mark.asyncio
async def test_malformed_body_is_rejected(guard, store):
    result = await guard.admit(make_request("{not json"))
    assert result.status_code == 400
    rows, _ = await store.list_events(monitor_status="error")
    assert len(rows) == 1
    assert rows[0].queue_status is None


@pytest.mark.asyncio
async def test_empty_events_array_is_rejected(guard):
    result = await guard.admit(make_request({"events": []}))
    assert result.status_code == 400
    assert result.body["error"] == "Invalid event data"


@pytest.mark.asyncio
async def test_encrypted_body_is_opened(store, limiter, relay_config):
    config = dataclasses.replace(relay_config, encryption_enabled=True, encryption_key=TEST_KEY)
    guard = IngestionGuard(store, limiter, config)
    token = create_permanent_token(json.dumps(batch_body(2)), TEST_KEY)

    result = await guard.admit(make_request({"jwt": token}, **{"x-encrypted": "true"}))

    assert result.status_code == 200
    row, record = await stored_record(store, result.event_ids[0])
    assert row.was_originally_encrypted is True
    assert json.loads(row.original_payload)["type"] == "permanent"
    assert record["event"]["name"] == "event_0"


@pytest.mark.asyncio
async def test_encrypted_body_with_wrong_key_is_rejected(store, limiter, relay_config):
    config = dataclasses.replace(relay_config, encryption_enabled=True, encryption_key=TEST_KEY)
    guard = IngestionGuard(store, limiter, config)
    token = create_permanent_token(json.dumps(batch_body()), "ff" * 32)

    result = await guard.admit(make_request({"jwt": token}, **{"x-encrypted": "true"}))

    assert result.status_code == 400
    assert result.body["error"] == "Failed to decrypt request data"


@pytest.mark.asyncio
async def test_time_token_endpoint_requires_time_jwt(guard):
    result = await guard.admit(make_request(batch_body()), require_time_token=True)
    assert result.status_code == 400


@pytest.mark.asyncio
async def test_time_token_is_accepted(guard, store):
    token = create_site_time_token(json.dumps(batch_body()), SITE_URL)
    result = await guard.admit(make_request({"time_jwt": token}), require_time_token=True)
    assert result.status_code == 200
    row = await store.get(result.event_ids[0])
    assert row.was_originally_encrypted is True


@pytest.mark.asyncio
async def test_client_signal_bots_are_filtered_silently(guard, store):
    body = batch_body()
    body["events"][0]["params"]["botData"] = {"webdriver_detected": True, "bot_score": 90}
    # one request-level signal, not enough on its own
    result = await guard.admit(make_request(body, ip="66.249.66.1"))

    assert result.status_code == 200
    assert result.body["filtered"] is True
    assert not result.admitted
    rows, _ = await store.list_events(monitor_status="bot_detected")
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_bot_data_is_stripped_before_queueing(guard, store):
    body = batch_body()
    body["events"][0]["params"]["botData"] = {"bot_score": 0}
    result = await guard.admit(make_request(body))
    _, record = await stored_record(store, result.event_ids[0])
    assert "botData" not in record["event"]["params"]


@pytest.mark.asyncio
async def test_queue_disabled_rows_start_processing(store, limiter, relay_config):
    guard = IngestionGuard(store, limiter, dataclasses.replace(relay_config, queue_enabled=False))
    result = await guard.admit(make_request(batch_body(2)))
    assert len(result.admitted) == 2
    for event_id in result.event_ids:
        row = await store.get(event_id)
        assert row.queue_status == "processing"
        assert row.claimed_at is not None


@pytest.mark.asyncio
async def test_missing_consent_defaults_to_denied(guard, store):
    body = batch_body()
    del body["consent"]
    result = await guard.admit(make_request(body))
    _, record = await stored_record(store, result.event_ids[0])
    assert record["consent"] == {"consent_mode": "DENIED", "consent_reason": "missing_data"}


def test_normalize_single_event():
    payload = normalize_payload({"event_name": "sign_up", "method": "email", "consent": {"consent_mode": "GRANTED"}},
                                now_ms=1_700_000_000_000)
    assert payload.events == [{
        "name": "sign_up",
        "params": {"method": "email"},
        "isCompleteData": True,
        "timestamp": 1_700_000_000_000,
    }]
    assert payload.consent == {"consent_mode": "GRANTED"}
    assert payload.batch is False


def test_normalize_rejects_nameless_events():
    with pytest.raises(MalformedPayload):
        normalize_payload({"events": [{"params": {}}]})
    with pytest.raises(MalformedPayload):
        normalize_payload({"params": {"a": 1}})


@pytest.mark.asyncio
async def test_overflowing_bot_score_is_admitted(guard, store):
    body = json.dumps(batch_body()).replace('"params": {', '"params": {"botData": {"bot_score": 1e400}, ', 1)

    result = await guard.admit(make_request(body))

    assert result.status_code == 200
    assert len(result.event_ids) == 1
    _, record = await stored_record(store, result.event_ids[0])
    assert "botData" not in record["event"]["params"]
