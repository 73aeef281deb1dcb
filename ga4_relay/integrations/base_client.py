import hashlib
import logging
import os
import time

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ga4_relay.core.errors import Timeout, TransmissionError, TransportError, UpstreamHTTPError
from ga4_relay.core.logging import _redact


def is_retryable_exception(exception: BaseException) -> bool:
    """Определяет, является ли исключение основанием для повторной попытки."""
    if isinstance(exception, (Timeout, TransportError)):
        return True
    if isinstance(exception, UpstreamHTTPError):
        # Повторяем только при серверных ошибках (5xx) и 429
        return exception.status_code == 429 or 500 <= exception.status_code < 600
    return False


def _log_sample_rate() -> float:
    return float(os.getenv("LOG_SAMPLE_RATE", "1.0"))


LOG_BODY_MAX = int(os.getenv("LOG_BODY_MAX", "2000"))


class BaseApiClient:
    """httpx wrapper: logged requests, retries via tenacity, relay errors instead of httpx ones."""

    def __init__(self, base_url: str = "", timeout: float = 30.0, tries: int = 1, wait=None):
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.tries = max(1, tries)
        self._wait = wait if wait is not None else wait_exponential(multiplier=1, min=1, max=10)
        self._logger = logging.getLogger("http")

    def _maybe_hash(self, body: str) -> str:
        return hashlib.sha256(body.encode("utf-8", "ignore")).hexdigest()[:16]

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send with retries. Returns the 2xx response or raises a TransmissionError."""
        t0 = time.perf_counter()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.tries),
            wait=self._wait,
            retry=retry_if_exception(is_retryable_exception),
            reraise=True,
        )
        attempt_number = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    return await self._send_once(method, url, attempt_number, t0, **kwargs)
        except TransmissionError as e:
            dt = round((time.perf_counter() - t0) * 1000)
            self._logger.error("HTTP FAIL %s %s after %d tries: %s", method, url, attempt_number, e,
                               extra={"extra": {"method": method, "url": url, "elapsed_ms": dt,
                                                "attempts": attempt_number, "error_type": type(e).__name__}})
            raise

    async def _send_once(self, method: str, url: str, attempt: int, t0: float, **kwargs) -> httpx.Response:
        req_body = kwargs.get("content") or kwargs.get("data") or (kwargs.get("json") and str(kwargs["json"])) or ""
        headers = _redact(dict(kwargs.get("headers") or {}))
        self._logger.debug("HTTP %s %s (attempt %d)", method, url, attempt,
                           extra={"extra": {"method": method, "url": url, "attempt": attempt,
                                            "headers": headers, "body_preview": str(req_body)[:LOG_BODY_MAX]}})

        try:
            response: httpx.Response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise Timeout(f"Request timed out: {e!r}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Request failed: {e!r}") from e

        dt = round((time.perf_counter() - t0) * 1000)
        body_text = response.text or ""
        body_hash = self._maybe_hash(body_text)
        if _log_sample_rate() >= 1.0:
            body_preview = body_text[:LOG_BODY_MAX]
        else:
            body_preview = f"[sampled hash:{body_hash}]"

        self._logger.info("HTTP %s %s -> %d in %dms", method, url, response.status_code, dt,
                          extra={"extra": {"method": method, "url": url, "status_code": response.status_code,
                                           "elapsed_ms": dt, "response_preview": body_preview,
                                           "response_hash": body_hash}})

        if not 200 <= response.status_code < 300:
            raise UpstreamHTTPError(response.status_code, body_text[:LOG_BODY_MAX])
        return response

    async def close(self):
        await self.client.aclose()
