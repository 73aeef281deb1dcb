import copy
import uuid
from typing import Any, Dict, Mapping

from ga4_relay.services import privacy
from ga4_relay.services.device_info import DEVICE_PARAMS, build_device

# fields lifted into top-level GA4 objects, never sent as event params
LIFTED_PARAMS = (
    "geo_city", "geo_country", "geo_region", "geo_continent", "geo_city_tz", "geo_country_tz",
    "geo_latitude", "geo_longitude", "user_id",
) + DEVICE_PARAMS


def build_ga4_payload(
    event: Mapping[str, Any],
    consent: Mapping[str, Any] | None,
    original_headers: Mapping[str, str] | None = None,
) -> Dict[str, Any]:
    """Measurement Protocol body for a single stored event."""
    event = copy.deepcopy(dict(event))
    headers = original_headers or {}
    params: Dict[str, Any] = event.get("params") if isinstance(event.get("params"), dict) else {}
    event["params"] = params

    resolved = privacy.resolve_consent(consent)
    denied = privacy.is_consent_denied(resolved)

    client_id = event.get("client_id") or params.pop("client_id", None) or str(uuid.uuid4())
    params.pop("client_id", None)
    user_id = event.get("user_id") or params.get("user_id")

    # location and device are read before redaction drops the precise fields
    location = privacy.build_user_location(params, consent_denied=denied)
    device = build_device(params, headers, consent_denied=denied)

    if denied:
        privacy.redact_identity(event)
        user_id = None
    if resolved["ad_personalization"] == privacy.DENIED:
        privacy.redact_advertising(params)

    raw_consent = consent if isinstance(consent, Mapping) else {}
    params["consent"] = privacy.describe_consent(
        resolved, raw_consent.get("consent_reason") or raw_consent.get("reason"))

    for key in LIFTED_PARAMS:
        params.pop(key, None)

    payload: Dict[str, Any] = {"client_id": str(client_id)}
    if user_id:
        payload["user_id"] = str(user_id)
    if event.get("timestamp_micros") is not None:
        payload["timestamp_micros"] = event["timestamp_micros"]
    payload["consent"] = resolved
    if location:
        payload["user_location"] = location
    if device:
        payload["device"] = device
    if params.get("user_agent"):
        payload["user_agent"] = params["user_agent"]
    if not denied:
        ip = privacy.client_ip_from_headers(headers)
        if ip:
            payload["ip_override"] = ip
    payload["events"] = [{"name": event.get("name"), "params": params}]
    return payload
