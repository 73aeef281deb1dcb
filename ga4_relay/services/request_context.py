"""What the ingestion pipeline knows about one inbound HTTP request."""
import ipaddress
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping
from urllib.parse import urlparse

# Order matters: the first header carrying a public address wins
CLIENT_IP_HEADERS = (
    "cf-connecting-ip",
    "x-real-ip",
    "x-forwarded-for",
    "x-forwarded",
    "x-cluster-client-ip",
    "forwarded-for",
    "forwarded",
)

# header name -> key used in stored original headers
STORED_HEADERS = {
    "user-agent": "user_agent",
    "accept-language": "accept_language",
    "accept": "accept",
    "accept-encoding": "accept_encoding",
    "referer": "referer",
    "origin": "origin",
    "x-forwarded-for": "x_forwarded_for",
    "x-real-ip": "x_real_ip",
}


def _public_ip(value: str) -> str | None:
    candidate = value.split(",", 1)[0].strip()
    if candidate.lower().startswith("for="):
        candidate = candidate[4:].split(";", 1)[0].strip('"[] ')
    try:
        addr = ipaddress.ip_address(candidate)
    except ValueError:
        return None
    if addr.is_private or addr.is_reserved or addr.is_loopback or addr.is_link_local or addr.is_unspecified:
        return None
    return str(addr)


def resolve_client_ip(headers: Mapping[str, str], remote_addr: str | None) -> str:
    for name in CLIENT_IP_HEADERS:
        value = headers.get(name)
        if value:
            ip = _public_ip(value)
            if ip:
                return ip
    if remote_addr:
        try:
            return str(ipaddress.ip_address(remote_addr))
        except ValueError:
            pass
    return "0.0.0.0"


@dataclass
class InboundRequest:
    body: str
    headers: Dict[str, str]
    client_ip: str = "0.0.0.0"
    url: str = ""
    json_body: Any = field(default=None, init=False)
    json_error: str | None = field(default=None, init=False)

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in self.headers.items()}
        try:
            self.json_body = json.loads(self.body) if self.body else None
        except json.JSONDecodeError as e:
            self.json_error = str(e)

    @classmethod
    def build(cls, body: bytes | str, headers: Mapping[str, str], remote_addr: str | None, url: str = "") -> "InboundRequest":
        text = body.decode("utf-8", "replace") if isinstance(body, bytes) else body
        lowered = {k.lower(): v for k, v in headers.items()}
        return cls(text, lowered, resolve_client_ip(lowered, remote_addr), url)

    @property
    def body_dict(self) -> Dict[str, Any]:
        return self.json_body if isinstance(self.json_body, dict) else {}

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")

    @property
    def referer(self) -> str:
        return self.headers.get("referer", "")

    def stored_headers(self) -> Dict[str, str]:
        return {key: self.headers[name] for name, key in STORED_HEADERS.items() if self.headers.get(name)}


def _host(url: str | None) -> str | None:
    if not url or not isinstance(url, str):
        return None
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return None
    return (parsed.hostname or "").lower() or None


def origin_matches(request: InboundRequest, site_host: str) -> bool:
    """Referer host, then Origin host, then the page_origin claimed in the body."""
    if not site_host:
        return False
    for candidate in (request.referer, request.headers.get("origin"), request.body_dict.get("page_origin")):
        if _host(candidate) == site_host:
            return True
    return False


def extract_consent_given(consent: Any) -> bool | None:
    if not isinstance(consent, Mapping):
        return None
    if "consent_mode" in consent:
        return consent["consent_mode"] == "GRANTED"
    has_user_data = "ad_user_data" in consent
    has_personalization = "ad_personalization" in consent
    if has_user_data and has_personalization:
        return consent["ad_user_data"] == "GRANTED" and consent["ad_personalization"] == "GRANTED"
    if has_user_data:
        return consent["ad_user_data"] == "GRANTED"
    if has_personalization:
        return consent["ad_personalization"] == "GRANTED"
    return None
