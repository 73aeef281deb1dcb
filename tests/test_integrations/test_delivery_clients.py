from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ga4_relay.core.errors import TransmissionConfigError
from ga4_relay.integrations.cloudflare_client import CloudflareWorkerClient
from ga4_relay.integrations.ga4_client import GA4MeasurementClient


def _ok():
    response = MagicMock()
    response.status_code = 204
    response.text = ""
    return response


@pytest.mark.asyncio
async def test_ga4_collect_sends_credentials_as_query_params():
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client_class.return_value = mock_client
        mock_client.request.return_value = _ok()

        client = GA4MeasurementClient("G-TEST123", "secret")
        status = await client.collect({"client_id": "1", "events": []}, {"User-Agent": "Browser/1.0"})

    assert status == 204
    assert mock_client_class.call_args.kwargs["timeout"] == 10.0
    args, kwargs = mock_client.request.call_args
    assert args == ("POST", "/mp/collect")
    assert kwargs["params"] == {"measurement_id": "G-TEST123", "api_secret": "secret"}
    assert kwargs["headers"]["User-Agent"] == "Browser/1.0"
    assert kwargs["headers"]["Content-Type"] == "application/json"


@pytest.mark.asyncio
async def test_ga4_collect_requires_configuration():
    client = GA4MeasurementClient("G-TEST123", None)
    assert not client.configured
    with pytest.raises(TransmissionConfigError):
        await client.collect({})


@pytest.mark.parametrize("url", [None, "", "http://worker.example.com/batch", "ftp://worker.example.com"])
def test_worker_url_must_be_https(url):
    with pytest.raises(TransmissionConfigError):
        CloudflareWorkerClient(url).validate_url()


def test_worker_headers_carry_bearer_key_only_when_set():
    assert "Authorization" not in CloudflareWorkerClient("https://w.example.com").request_headers()
    headers = CloudflareWorkerClient("https://w.example.com", api_key="k1").request_headers()
    assert headers["Authorization"] == "Bearer k1"
    assert headers["User-Agent"] == "ga4-relay-batch/1.0"


@pytest.mark.asyncio
async def test_worker_send_batch_posts_to_configured_url():
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client_class.return_value = mock_client
        mock_client.request.return_value = _ok()

        client = CloudflareWorkerClient("https://w.example.com/ingest", api_key="k1")
        await client.send_batch({"events": []}, client.request_headers())

    assert mock_client_class.call_args.kwargs["timeout"] == 30.0
    args, kwargs = mock_client.request.call_args
    assert args == ("POST", "https://w.example.com/ingest")
    assert kwargs["json"] == {"events": []}
