from typing import Any, Dict
from urllib.parse import urlparse

from .base_client import BaseApiClient
from ga4_relay.core.errors import TransmissionConfigError


class CloudflareWorkerClient(BaseApiClient):
    USER_AGENT = "ga4-relay-batch/1.0"

    def __init__(self, worker_url: str | None, api_key: str | None = None, tries: int = 1, wait=None):
        super().__init__(timeout=30.0, tries=tries, wait=wait)
        self.worker_url = worker_url
        self.api_key = api_key

    def validate_url(self) -> str:
        if not self.worker_url:
            raise TransmissionConfigError("Cloudflare Worker URL not configured")
        parsed = urlparse(self.worker_url)
        if parsed.scheme != "https" or not parsed.hostname:
            raise TransmissionConfigError("Cloudflare Worker URL must use https")
        return self.worker_url

    def request_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": self.USER_AGENT}
        # Ключ воркера уходит только в Authorization
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def send_batch(self, body: Dict[str, Any], headers: Dict[str, str]) -> int:
        url = self.validate_url()
        response = await self._request("POST", url, json=body, headers=headers)
        return response.status_code
