from typing import Any, Dict


class RelayError(Exception):
    """Base class for every error raised by ga4_relay."""


# --- crypto -----------------------------------------------------------------

class CryptoError(RelayError):
    pass


class InvalidKey(CryptoError):
    pass


class InvalidKeyFormat(InvalidKey):
    pass


class InvalidCiphertext(CryptoError):
    pass


class AuthenticationFailed(CryptoError):
    pass


class Expired(CryptoError):
    pass


# --- ingestion --------------------------------------------------------------

class IngestionError(RelayError):
    """Rejected inbound request. Carries everything needed for the audit row and the HTTP answer."""

    status_code = 400
    monitor_status = "error"
    public_error = "Invalid request"

    def __init__(self, reason: str, details: Dict[str, Any] | None = None):
        super().__init__(reason)
        self.reason = reason
        self.details = details or {}


class RateLimited(IngestionError):
    status_code = 429
    monitor_status = "denied"
    public_error = "Rate limit exceeded"

    def __init__(self, retry_after: int, details: Dict[str, Any] | None = None):
        super().__init__("Rate limit exceeded", details)
        self.retry_after = retry_after


class OriginRejected(IngestionError):
    status_code = 403
    monitor_status = "denied"
    public_error = "Origin not allowed"


class BotDetected(IngestionError):
    status_code = 403
    monitor_status = "bot_detected"
    public_error = "Request blocked"

    def __init__(self, checks: Dict[str, bool], details: Dict[str, Any] | None = None):
        super().__init__("Bot detected", details)
        self.checks = checks


class MalformedPayload(IngestionError):
    public_error = "Invalid event data"


class DecryptionFailed(IngestionError):
    public_error = "Failed to decrypt request data"


# --- persistence ------------------------------------------------------------

class StoreUnavailable(RelayError):
    pass


# --- transmission -----------------------------------------------------------

class TransmissionError(RelayError):
    pass


class TransportError(TransmissionError):
    pass


class Timeout(TransmissionError):
    pass


class UpstreamHTTPError(TransmissionError):
    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class TransmissionConfigError(TransmissionError):
    pass
