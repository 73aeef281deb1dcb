"""
Consent handling for outbound GA4 events.

Two consent keys matter: ``ad_user_data`` and ``ad_personalization``. When
either is DENIED the event loses everything that identifies the visitor
(user id, precise geo, full user agent, IP override) and its device info is
generalized. A DENIED ``ad_personalization`` additionally strips paid
campaign attribution.
"""
import ipaddress
import re
from typing import Any, Dict, Mapping, MutableMapping, Tuple

CONSENT_KEYS = ("ad_user_data", "ad_personalization")
GRANTED = "GRANTED"
DENIED = "DENIED"
DENIED_CONSENT = "(denied consent)"

IDENTITY_PARAMS = ("user_id", "customer_id", "login_status")
PRECISE_GEO_PARAMS = ("geo_latitude", "geo_longitude", "geo_city", "geo_region", "geo_city_tz")
ATTRIBUTION_PARAMS = ("gclid", "content", "term", "originalGclid", "originalContent", "originalTerm")

_UNPAID_CAMPAIGNS = {"(organic)", "(direct)", "(not set)", "(referral)"}
_PAID_MEDIUMS = {"cpc", "ppc", "paidsearch", "display", "banner", "cpm"}
_PAID_TRAFFIC_TYPES = {"paid_search", "paid_social", "display", "cpc"}

# stored original headers, first public address wins
IP_HEADER_KEYS = (
    "cf_connecting_ip", "x_real_ip", "x_forwarded_for", "x_forwarded",
    "x_cluster_client_ip", "forwarded_for", "forwarded", "remote_addr",
)

# timezone -> (country, continent, subcontinent), UN M49 region codes
TIMEZONE_LOCATIONS: Dict[str, Tuple[str, str, str]] = {
    "Europe/Amsterdam": ("NL", "150", "155"),
    "Europe/Brussels": ("BE", "150", "155"),
    "Europe/Berlin": ("DE", "150", "155"),
    "Europe/Paris": ("FR", "150", "155"),
    "Europe/London": ("GB", "150", "154"),
    "Europe/Madrid": ("ES", "150", "039"),
    "Europe/Rome": ("IT", "150", "039"),
    "America/New_York": ("US", "003", "021"),
    "America/Los_Angeles": ("US", "003", "021"),
    "America/Chicago": ("US", "003", "021"),
    "America/Toronto": ("CA", "003", "021"),
}

CONTINENT_CODES: Dict[str, Tuple[str, str]] = {
    "Europe": ("150", "155"),
    "America": ("003", "021"),
    "Asia": ("142", "030"),
    "Africa": ("002", "015"),
    "Australia": ("009", "053"),
}

COUNTRY_ISO: Dict[str, str] = {
    "Netherlands": "NL", "The Netherlands": "NL", "Belgium": "BE", "Germany": "DE", "France": "FR",
    "United Kingdom": "GB", "United States": "US", "Canada": "CA", "Australia": "AU", "Japan": "JP",
    "China": "CN", "India": "IN", "Brazil": "BR", "Mexico": "MX", "Italy": "IT", "Spain": "ES",
    "Poland": "PL", "Sweden": "SE", "Norway": "NO", "Denmark": "DK", "Finland": "FI",
    "Switzerland": "CH", "Austria": "AT", "Czech Republic": "CZ", "Hungary": "HU", "Portugal": "PT",
    "Ireland": "IE", "Russia": "RU", "Turkey": "TR", "South Africa": "ZA", "Argentina": "AR",
    "Chile": "CL", "Colombia": "CO", "Peru": "PE", "Venezuela": "VE", "Thailand": "TH",
    "Malaysia": "MY", "Singapore": "SG", "Philippines": "PH", "Indonesia": "ID", "Vietnam": "VN",
    "South Korea": "KR", "Taiwan": "TW", "Hong Kong": "HK", "New Zealand": "NZ", "Israel": "IL",
    "Egypt": "EG", "Saudi Arabia": "SA", "United Arab Emirates": "AE", "Kuwait": "KW", "Qatar": "QA",
    "Bahrain": "BH", "Oman": "OM", "Jordan": "JO", "Lebanon": "LB", "Pakistan": "PK",
    "Bangladesh": "BD", "Sri Lanka": "LK", "Nepal": "NP", "Myanmar": "MM", "Cambodia": "KH",
    "Laos": "LA",
}

# city part of a timezone -> country, for zones missing from TIMEZONE_LOCATIONS
_TZ_CITY_COUNTRIES = {
    "Amsterdam": "NL", "Brussels": "BE", "Berlin": "DE", "Paris": "FR", "London": "GB",
    "Madrid": "ES", "Rome": "IT", "Vienna": "AT", "Zurich": "CH", "Stockholm": "SE",
    "Oslo": "NO", "Copenhagen": "DK", "Helsinki": "FI", "Warsaw": "PL", "Prague": "CZ",
    "Budapest": "HU", "Lisbon": "PT", "Dublin": "IE", "Moscow": "RU", "Istanbul": "TR",
    "Tokyo": "JP", "Shanghai": "CN", "Kolkata": "IN", "Singapore": "SG", "Sydney": "AU",
    "Toronto": "CA", "Vancouver": "CA", "Sao_Paulo": "BR", "Mexico_City": "MX",
}


def resolve_consent(consent: Mapping[str, Any] | None) -> Dict[str, str]:
    """Explicit key, else legacy ``consent_mode``, else DENIED."""
    if not isinstance(consent, Mapping):
        consent = {}
    legacy = consent.get("consent_mode")
    resolved = {}
    for key in CONSENT_KEYS:
        value = consent.get(key) or legacy
        resolved[key] = GRANTED if value == GRANTED else DENIED
    return resolved


def is_consent_denied(consent: Mapping[str, str]) -> bool:
    return any(consent.get(key) == DENIED for key in CONSENT_KEYS)


def anonymize_user_agent(user_agent: Any) -> str:
    if not isinstance(user_agent, str) or not user_agent:
        return ""
    anonymized = re.sub(r"\d+\.\d+[.\d]*", "x.x", user_agent)
    anonymized = re.sub(r"\([^)]*\)", "(anonymous)", anonymized)
    return anonymized[:100]


def country_to_iso(country: Any) -> str:
    text = str(country or "").strip()
    if text in COUNTRY_ISO:
        return COUNTRY_ISO[text]
    if len(text) == 2 and text.isalpha():
        return text.upper()
    return text


def location_from_timezone(timezone: Any) -> Dict[str, str]:
    if not isinstance(timezone, str) or not timezone:
        return {}
    if timezone in TIMEZONE_LOCATIONS:
        country, continent, subcontinent = TIMEZONE_LOCATIONS[timezone]
        return {"country_id": country, "continent_id": continent, "subcontinent_id": subcontinent}

    region, _, city = timezone.partition("/")
    location: Dict[str, str] = {}
    if city in _TZ_CITY_COUNTRIES:
        location["country_id"] = _TZ_CITY_COUNTRIES[city]
    if region in CONTINENT_CODES:
        location["continent_id"], location["subcontinent_id"] = CONTINENT_CODES[region]
    return location


def _continent_ids(params: Mapping[str, Any]) -> Dict[str, str]:
    continent = params.get("geo_continent")
    if isinstance(continent, str) and continent in CONTINENT_CODES:
        continent_id, subcontinent_id = CONTINENT_CODES[continent]
        return {"continent_id": continent_id, "subcontinent_id": subcontinent_id}
    return {}


def build_user_location(params: Mapping[str, Any], *, consent_denied: bool) -> Dict[str, str]:
    """GA4 ``user_location``; city and region only with consent."""
    if consent_denied:
        location = location_from_timezone(params.get("timezone"))
        if location:
            return location
        if params.get("geo_country_tz"):
            location["country_id"] = country_to_iso(params["geo_country_tz"])
        elif params.get("geo_country"):
            location["country_id"] = country_to_iso(params["geo_country"])
        location.update(_continent_ids(params))
        return location

    location = {}
    city = params.get("geo_city") or params.get("geo_city_tz")
    if city:
        location["city"] = str(city)
    if params.get("geo_region"):
        location["region_id"] = str(params["geo_region"])
    country = params.get("geo_country") or params.get("geo_country_tz")
    if country:
        location["country_id"] = country_to_iso(country)
    location.update(_continent_ids(params))
    if not location:
        location = location_from_timezone(params.get("timezone"))
    return location


def redact_identity(event: MutableMapping[str, Any]) -> None:
    """Remove visitor identifiers and precise geo from an event in place."""
    event.pop("user_id", None)
    params = event.get("params")
    if not isinstance(params, MutableMapping):
        return
    for key in IDENTITY_PARAMS + PRECISE_GEO_PARAMS:
        params.pop(key, None)
    if params.get("user_agent"):
        params["user_agent"] = anonymize_user_agent(params["user_agent"])


def redact_advertising(params: MutableMapping[str, Any]) -> None:
    """Strip paid-campaign attribution when ad personalization is denied."""
    for key in ATTRIBUTION_PARAMS:
        params.pop(key, None)

    for key in ("campaign", "originalCampaign"):
        if key in params and str(params[key]) not in _UNPAID_CAMPAIGNS:
            params[key] = DENIED_CONSENT

    for prefix in ("", "original"):
        medium_key = f"{prefix}Medium" if prefix else "medium"
        source_key = f"{prefix}Source" if prefix else "source"
        if str(params.get(medium_key, "")).lower() in _PAID_MEDIUMS:
            params[medium_key] = DENIED_CONSENT
            params[source_key] = DENIED_CONSENT

    for key in ("traffic_type", "originalTrafficType"):
        if str(params.get(key, "")).lower() in _PAID_TRAFFIC_TYPES:
            params[key] = DENIED_CONSENT


def client_ip_from_headers(headers: Mapping[str, str]) -> str | None:
    for key in IP_HEADER_KEYS:
        value = headers.get(key)
        if not value:
            continue
        candidate = str(value).split(",", 1)[0].strip()
        try:
            addr = ipaddress.ip_address(candidate)
        except ValueError:
            continue
        if addr.is_global:
            return str(addr)
    return None


def describe_consent(consent: Mapping[str, str], reason: Any) -> str:
    return (
        f"ad_personalization: {consent['ad_personalization']}. "
        f"ad_user_data: {consent['ad_user_data']}. "
        f"reason: {reason or 'button_click'}"
    )
