import json
import logging

import pytest

from ga4_relay.core.logging import (
    JsonFormatter,
    _redact,
    mask_ip,
    request_id_var,
    set_job_id,
    set_request_id,
)
from ga4_relay.core.observability import log_step


def test_redact_masks_secrets_recursively():
    data = {"Authorization": "Bearer x", "nested": {"api_secret": "s", "jwt": "t"}, "name": "page_view"}
    redacted = _redact(data)
    assert redacted["Authorization"] == "***"
    assert redacted["nested"] == {"api_secret": "***", "jwt": "***"}
    assert redacted["name"] == "page_view"


@pytest.mark.parametrize("ip,expected", [
    ("203.0.113.77", "203.0.113.0"),
    ("2001:db8:1234:5678::1", "2001:db8:1234::"),
    ("not-an-ip", "invalid"),
    (None, None),
])
def test_mask_ip(ip, expected):
    assert mask_ip(ip) == expected


def test_json_formatter_carries_context_and_extra():
    set_request_id("req-1")
    set_job_id("process_event_queue_job")
    record = logging.LogRecord("ga4", logging.INFO, __file__, 1, "queued %d", (3,), None)
    record.extra = {"event_ids": [1, 2, 3]}
    doc = json.loads(JsonFormatter().format(record))
    assert doc["message"] == "queued 3"
    assert doc["request_id"] == "req-1"
    assert doc["event_ids"] == [1, 2, 3]


def test_set_request_id_generates_when_missing():
    rid = set_request_id(None)
    assert rid
    assert request_id_var.get() == rid


@pytest.mark.asyncio
async def test_log_step_logs_exit_and_failure(caplog):
    caplog.set_level(logging.DEBUG, logger="steps")

    @log_step("test.ok")
    async def ok(value=None):
        return {"value": value, "token": "hidden"}

    @log_step("test.fail")
    async def fail():
        raise ValueError("boom")

    assert (await ok(value=1))["value"] == 1
    with pytest.raises(ValueError):
        await fail()

    messages = [r.getMessage() for r in caplog.records if r.name == "steps"]
    assert "EXIT test.ok" in messages
    assert any(m.startswith("ERROR test.fail") for m in messages)
    exit_record = next(r for r in caplog.records if r.getMessage() == "EXIT test.ok")
    assert "hidden" not in exit_record.extra["result_preview"]
