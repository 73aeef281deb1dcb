from typing import Any, Dict

from .base_client import BaseApiClient
from ga4_relay.core.errors import TransmissionConfigError


class GA4MeasurementClient(BaseApiClient):
    BASE_API_URL = "https://www.google-analytics.com"
    COLLECT_PATH = "/mp/collect"
    USER_AGENT = "ga4-relay-direct/1.0"

    def __init__(self, measurement_id: str | None, api_secret: str | None, tries: int = 1, wait=None):
        super().__init__(base_url=self.BASE_API_URL, timeout=10.0, tries=tries, wait=wait)
        self.measurement_id = measurement_id
        self.api_secret = api_secret

    @property
    def configured(self) -> bool:
        return bool(self.measurement_id and self.api_secret)

    async def collect(self, payload: Dict[str, Any], headers: Dict[str, str] | None = None) -> int:
        """
        Отправляет одно событие в Measurement Protocol.
        Возвращает HTTP статус; не-2xx поднимает UpstreamHTTPError.
        """
        if not self.configured:
            raise TransmissionConfigError("GA4 measurement id or API secret not configured")
        request_headers = {"Content-Type": "application/json", "User-Agent": self.USER_AGENT}
        request_headers.update(headers or {})
        response = await self._request(
            "POST",
            self.COLLECT_PATH,
            params={"measurement_id": self.measurement_id, "api_secret": self.api_secret},
            json=payload,
            headers=request_headers,
        )
        return response.status_code
