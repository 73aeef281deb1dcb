import re
from typing import Any, Dict, Mapping

_TABLET_RE = re.compile(r"iPad|Tablet|Kindle|Silk|PlayBook", re.IGNORECASE)
_MOBILE_RE = re.compile(r"Mobile|iPhone|iPod|Android|BlackBerry|Opera Mini|IEMobile|Windows Phone", re.IGNORECASE)

_WINDOWS_VERSIONS = {"10.0": "10", "6.3": "8.1", "6.2": "8", "6.1": "7", "6.0": "Vista", "5.1": "XP"}

_CATEGORY_MAP = {
    "phone": "mobile",
    "smartphone": "mobile",
    "mobile phone": "mobile",
    "tablet": "tablet",
    "desktop": "desktop",
    "computer": "desktop",
    "pc": "desktop",
    "laptop": "desktop",
    "smart tv": "smart tv",
    "tv": "smart tv",
    "smarttv": "smart tv",
    "wearable": "wearable",
    "watch": "wearable",
    "smart watch": "wearable",
}

# substring -> normalized name, first hit wins
_OS_NAMES = (
    ("Windows NT", "Windows"), ("Win32", "Windows"), ("Win64", "Windows"),
    ("Mac OS X", "macOS"), ("Mac OS", "macOS"), ("MacOS", "macOS"),
    ("iPhone OS", "iOS"), ("iPad OS", "iPadOS"), ("iPadOS", "iPadOS"),
)
_BROWSER_NAMES = (
    ("Google Chrome", "Chrome"), ("Mozilla Firefox", "Firefox"), ("Internet Explorer", "Internet Explorer"),
    ("Microsoft Edge", "Edge"), ("Safari", "Safari"), ("Opera", "Opera"), ("Samsung Internet", "Samsung Internet"),
)

# params that feed the device object and are removed from event params afterwards
DEVICE_PARAMS = (
    "device_type", "is_mobile", "is_tablet", "is_desktop",
    "browser_name", "browser_version", "screen_resolution", "screen_width", "screen_height",
    "os_name", "os_version", "device_model", "device_brand",
    "mobile_model_name", "mobile_brand_name",
    "viewport_width", "viewport_height", "language", "accept_language",
)


def parse_user_agent(user_agent: Any) -> Dict[str, str]:
    if not isinstance(user_agent, str) or not user_agent:
        return {}
    parsed: Dict[str, str] = {}

    if _TABLET_RE.search(user_agent):
        parsed["device_type"] = "tablet"
    elif _MOBILE_RE.search(user_agent):
        parsed["device_type"] = "mobile"
    else:
        parsed["device_type"] = "desktop"

    if m := re.search(r"Windows NT (\d+\.\d+)", user_agent, re.IGNORECASE):
        parsed["os_name"] = "Windows"
        parsed["os_version"] = _WINDOWS_VERSIONS.get(m.group(1), m.group(1))
    elif m := re.search(r"Mac OS X (\d+[._]\d+)", user_agent, re.IGNORECASE):
        parsed["os_name"] = "macOS"
        parsed["os_version"] = m.group(1).replace("_", ".")
    elif m := re.search(r"(?:iPhone )?OS (\d+[._]\d+) like Mac OS X", user_agent, re.IGNORECASE):
        parsed["os_name"] = "iOS"
        parsed["os_version"] = m.group(1).replace("_", ".")
    elif m := re.search(r"Android (\d+(?:\.\d+)?)", user_agent, re.IGNORECASE):
        parsed["os_name"] = "Android"
        parsed["os_version"] = m.group(1)
    elif re.search(r"Linux", user_agent, re.IGNORECASE):
        parsed["os_name"] = "Linux"

    # Edge and Opera carry a Chrome token too, check them first
    if m := re.search(r"Edg(?:e|A|iOS)?/(\d+\.\d+)", user_agent, re.IGNORECASE):
        parsed["browser_name"], parsed["browser_version"] = "Edge", m.group(1)
    elif m := re.search(r"(?:OPR|Opera)[/\s](\d+\.\d+)", user_agent, re.IGNORECASE):
        parsed["browser_name"], parsed["browser_version"] = "Opera", m.group(1)
    elif m := re.search(r"(?:Chrome|CriOS)/(\d+\.\d+)", user_agent, re.IGNORECASE):
        parsed["browser_name"], parsed["browser_version"] = "Chrome", m.group(1)
    elif m := re.search(r"(?:Firefox|FxiOS)/(\d+\.\d+)", user_agent, re.IGNORECASE):
        parsed["browser_name"], parsed["browser_version"] = "Firefox", m.group(1)
    elif re.search(r"Safari/[\d.]+", user_agent, re.IGNORECASE):
        parsed["browser_name"] = "Safari"
        if m := re.search(r"Version/(\d+\.\d+)", user_agent, re.IGNORECASE):
            parsed["browser_version"] = m.group(1)
    elif m := re.search(r"MSIE (\d+\.\d+)", user_agent, re.IGNORECASE):
        parsed["browser_name"], parsed["browser_version"] = "Internet Explorer", m.group(1)
    elif m := re.search(r"Trident.*rv:(\d+\.\d+)", user_agent, re.IGNORECASE):
        parsed["browser_name"], parsed["browser_version"] = "Internet Explorer", m.group(1)

    if parsed["device_type"] in ("mobile", "tablet"):
        if re.search(r"iPhone", user_agent, re.IGNORECASE):
            parsed["device_brand"] = "Apple"
            m = re.search(r"iPhone(\d+,\d+)", user_agent, re.IGNORECASE)
            parsed["device_model"] = f"iPhone {m.group(1)}" if m else "iPhone"
        elif re.search(r"iPad", user_agent, re.IGNORECASE):
            parsed["device_brand"], parsed["device_model"] = "Apple", "iPad"
        elif re.search(r"Samsung|SM-[A-Z0-9]+", user_agent, re.IGNORECASE):
            parsed["device_brand"] = "Samsung"
            if m := re.search(r"SM-([A-Z0-9]+)", user_agent, re.IGNORECASE):
                parsed["device_model"] = f"SM-{m.group(1)}"
        elif m := re.search(r"Pixel (\d+)", user_agent, re.IGNORECASE):
            parsed["device_brand"], parsed["device_model"] = "Google", f"Pixel {m.group(1)}"

    return parsed


# --- normalization (consent granted) ----------------------------------------

def normalize_device_category(category: Any) -> str:
    value = str(category).strip().lower()
    return _CATEGORY_MAP.get(value, value)


def normalize_language(language: Any) -> str:
    value = str(language or "").strip().lower()
    return value.split("-", 1)[0] if value else ""


def primary_language(accept_language: Any) -> str:
    if not isinstance(accept_language, str) or not accept_language:
        return ""
    first = accept_language.split(",", 1)[0].split(";", 1)[0]
    return normalize_language(first)


def normalize_screen_resolution(resolution: Any) -> str:
    value = re.sub(r"[^\dx*]", "", str(resolution or "").lower())
    m = re.match(r"^(\d+)[x*](\d+)$", value)
    return f"{m.group(1)}x{m.group(2)}" if m else value


def _mapped(value: Any, table) -> str:
    text = str(value).strip()
    for needle, name in table:
        if needle.lower() in text.lower():
            return name
    return text


def normalize_os_name(name: Any) -> str:
    return _mapped(name, _OS_NAMES)


def normalize_browser_name(name: Any) -> str:
    return _mapped(name, _BROWSER_NAMES)


def normalize_version(version: Any) -> str:
    text = str(version or "")
    m = re.search(r"\d+(?:\.\d+)*", text)
    return m.group(0) if m else text


# --- generalization (consent denied) ----------------------------------------

def generalize_screen_resolution(resolution: Any) -> str:
    m = re.match(r"^(\d+)[x*](\d+)$", str(resolution or "").strip().lower())
    if not m:
        return "unknown"
    width = int(m.group(1))
    if width <= 768:
        return "mobile"
    if width <= 1024:
        return "tablet"
    if width <= 1366:
        return "laptop"
    if width <= 1920:
        return "desktop"
    return "large"


def generalize_os_name(name: Any) -> str:
    value = str(name).lower()
    if "windows" in value:
        return "Windows"
    if "mac" in value or "darwin" in value:
        return "macOS"
    if "ios" in value:
        return "iOS"
    if "android" in value:
        return "Android"
    if "linux" in value:
        return "Linux"
    return "Other"


def generalize_browser_name(name: Any) -> str:
    value = str(name).lower()
    for family in ("edge", "opera", "chrome", "firefox", "safari"):
        if family in value:
            return family.capitalize()
    return "Other"


def major_version(version: Any) -> str:
    m = re.match(r"^(\d+)", str(version or ""))
    return m.group(1) if m else ""


def build_device(params: Mapping[str, Any], headers: Mapping[str, str], *, consent_denied: bool) -> Dict[str, str]:
    """GA4 ``device`` object from flat event params, falling back to the request's user agent."""
    ua = parse_user_agent(headers.get("user_agent") or params.get("user_agent"))
    device: Dict[str, str] = {}

    if "device_type" in params:
        device["category"] = normalize_device_category(params["device_type"])
    elif params.get("is_mobile"):
        device["category"] = "mobile"
    elif params.get("is_tablet"):
        device["category"] = "tablet"
    elif params.get("is_desktop"):
        device["category"] = "desktop"
    elif ua.get("device_type"):
        device["category"] = ua["device_type"]

    if "language" in params:
        device["language"] = normalize_language(params["language"])
    elif "accept_language" in params:
        device["language"] = primary_language(params["accept_language"])
    elif headers.get("accept_language"):
        device["language"] = primary_language(headers["accept_language"])

    if "screen_resolution" in params:
        resolution = params["screen_resolution"]
    elif "screen_width" in params and "screen_height" in params:
        resolution = f"{params['screen_width']}x{params['screen_height']}"
    else:
        resolution = None

    os_name = params.get("os_name") or ua.get("os_name")
    os_version = params.get("os_version") or ua.get("os_version")
    browser = params.get("browser_name") or ua.get("browser_name")
    browser_version = params.get("browser_version") or ua.get("browser_version")

    if consent_denied:
        if resolution is not None:
            device["screen_resolution"] = generalize_screen_resolution(resolution)
        if os_name:
            device["operating_system"] = generalize_os_name(os_name)
        if os_version:
            device["operating_system_version"] = major_version(os_version)
        if browser:
            device["browser"] = generalize_browser_name(browser)
        if browser_version:
            device["browser_version"] = major_version(browser_version)
        # no model or brand, they narrow the audience down too far
        return device

    if resolution is not None:
        device["screen_resolution"] = normalize_screen_resolution(resolution)
    if os_name:
        device["operating_system"] = normalize_os_name(os_name)
    if os_version:
        device["operating_system_version"] = normalize_version(os_version)
    if browser:
        device["browser"] = normalize_browser_name(browser)
    if browser_version:
        device["browser_version"] = normalize_version(browser_version)
    model = params.get("mobile_model_name") or params.get("device_model") or ua.get("device_model")
    brand = params.get("mobile_brand_name") or params.get("device_brand") or ua.get("device_brand")
    if model:
        device["model"] = str(model).strip()
    if brand:
        device["brand"] = str(brand).strip()
    return device
