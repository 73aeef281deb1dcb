"""
Bot classification for inbound tracking requests.

Request-level: six independent checks, a request is a bot when two or more
are positive. A single noisy signal (a VPN on a cloud range, a proxy that
drops Accept-Language) is not enough on its own.

Event-level: the browser script ships ``botData`` with each event; those
client signals are scored separately once the request itself was admitted.
"""
import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence

logger = logging.getLogger(__name__)

BOT_THRESHOLD = 2

_BOT_UA_PATTERNS = [
    # generic
    r"bot\b", r"crawl", r"spider", r"scraper",
    # search engines
    r"googlebot", r"bingbot", r"yahoo", r"duckduckbot", r"baiduspider", r"yandexbot", r"sogou", r"applebot",
    # social
    r"facebookexternalhit", r"twitterbot", r"linkedinbot", r"whatsapp", r"telegrambot", r"discordbot",
    # SEO / monitoring
    r"semrushbot", r"ahrefsbot", r"mj12bot", r"dotbot", r"screaming frog", r"seobility", r"serpstatbot",
    r"ubersuggest", r"sistrix", r"pingdom", r"uptimerobot", r"statuscake", r"site24x7", r"newrelic",
    r"gtmetrix", r"pagespeed", r"lighthouse", r"chrome-lighthouse",
    # headless browsers and automation
    r"headlesschrome", r"phantomjs", r"slimerjs", r"htmlunit", r"selenium", r"webdriver", r"puppeteer",
    r"playwright", r"cypress",
    # HTTP libraries
    r"python", r"requests", r"curl", r"wget", r"apache-httpclient", r"java/", r"okhttp", r"node\.js",
    r"go-http-client", r"http_request", r"ruby", r"perl", r"libwww",
    # AI crawlers
    r"gptbot", r"chatgpt", r"claudebot", r"anthropic", r"openai", r"perplexity", r"cohere",
    # research
    r"researchbot", r"academicbot", r"university",
    # suspicious shapes
    r"^mozilla/5\.0$", r"compatible;?\s*$", r"^\s*$", r"prerender",
]
_BOT_UA_RE = re.compile("|".join(f"(?:{p})" for p in _BOT_UA_PATTERNS), re.IGNORECASE)
_LETTERS_ONLY_UA_RE = re.compile(r"^[a-z\s]+$", re.IGNORECASE)

_KNOWN_BOT_NETWORKS = [ipaddress.ip_network(n) for n in (
    "66.249.64.0/19",     # Googlebot
    "157.55.32.0/20",     # Bingbot
    "40.77.167.0/24",     # Bingbot
    "207.46.0.0/16",      # Microsoft
    "72.30.0.0/16",       # Yahoo
    "98.137.149.56/29",   # Yahoo
    "74.6.136.0/26",      # Yahoo
)]

_HOSTING_NETWORKS = [ipaddress.ip_network(n) for n in (
    # Azure
    "13.107.42.0/24", "20.36.0.0/14", "40.74.0.0/15",
    # AWS
    "52.0.0.0/11", "54.0.0.0/15",
    # Google Cloud
    "35.0.0.0/8", "34.0.0.0/9",
    # Cloudflare
    "104.16.0.0/12", "172.64.0.0/13", "173.245.48.0/20", "103.21.244.0/22", "103.22.200.0/22",
    "103.31.4.0/22", "141.101.64.0/18", "108.162.192.0/18", "190.93.240.0/20", "188.114.96.0/20",
    "197.234.240.0/22", "198.41.128.0/17", "162.158.0.0/15", "104.24.0.0/14", "172.67.0.0/16",
    "131.0.72.0/22",
)]

_SUSPICIOUS_REFERRER_RE = re.compile(
    r"google\.com/search|bing\.com/search|yahoo\.com/search|bot|crawl|spider", re.IGNORECASE
)

_AUTOMATION_UA_RE = re.compile(
    r"curl|wget|python|node|automation|postman|insomnia|selenium|webdriver|puppeteer|playwright|phantom",
    re.IGNORECASE,
)

_ESSENTIAL_HEADERS = ("accept", "accept-language", "accept-encoding")


@dataclass(frozen=True)
class RequestSignals:
    user_agent: str
    ip: str
    headers: Mapping[str, str]

    @property
    def referer(self) -> str:
        return self.headers.get("referer", "")

    @property
    def origin(self) -> str:
        return self.headers.get("origin", "")

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")


@dataclass(frozen=True)
class BotVerdict:
    checks: Dict[str, bool]
    threshold: int = BOT_THRESHOLD

    @property
    def positive(self) -> List[str]:
        return [name for name, hit in self.checks.items() if hit]

    @property
    def positive_count(self) -> int:
        return len(self.positive)

    @property
    def is_bot(self) -> bool:
        return self.positive_count >= self.threshold


def _ip_in(ip: str, networks: Sequence[ipaddress.IPv4Network]) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(addr in net for net in networks)


def check_user_agent(user_agent: str) -> bool:
    if not user_agent or len(user_agent) < 10:
        return True
    if _BOT_UA_RE.search(user_agent):
        return True
    return bool(_LETTERS_ONLY_UA_RE.match(user_agent))


def check_known_bot_ip(ip: str) -> bool:
    return _ip_in(ip, _KNOWN_BOT_NETWORKS)


def check_suspicious_referrer(referer: str) -> bool:
    if not referer:
        return False
    return bool(_SUSPICIOUS_REFERRER_RE.search(referer))


def check_missing_headers(headers: Mapping[str, str]) -> bool:
    missing = sum(1 for name in _ESSENTIAL_HEADERS if not headers.get(name))
    if missing >= 2:
        return True
    if headers.get("accept") == "*/*":
        return True
    if headers.get("connection", "").lower() == "close":
        return True
    if "crawler" in headers.get("x-forwarded-for", "").lower():
        return True
    return bool(headers.get("from"))


def check_hosting_network(ip: str) -> bool:
    return _ip_in(ip, _HOSTING_NETWORKS)


def check_behavior(signals: RequestSignals) -> bool:
    if _AUTOMATION_UA_RE.search(signals.user_agent or ""):
        return True
    media_type = signals.content_type.split(";", 1)[0].strip().lower()
    if media_type and media_type != "application/json":
        return True
    return not signals.origin and not signals.referer


class RequestBotDetector:
    def __init__(self, threshold: int = BOT_THRESHOLD):
        self.threshold = threshold

    def evaluate(self, signals: RequestSignals) -> BotVerdict:
        checks = {
            "user_agent": check_user_agent(signals.user_agent),
            "known_bot_ip": check_known_bot_ip(signals.ip),
            "suspicious_referrer": check_suspicious_referrer(signals.referer),
            "missing_headers": check_missing_headers(signals.headers),
            "hosting_network": check_hosting_network(signals.ip),
            "behavior": check_behavior(signals),
        }
        verdict = BotVerdict(checks, self.threshold)
        if verdict.positive:
            logger.debug("Bot signals: %s", ",".join(verdict.positive),
                         extra={"extra": {"bot_checks": checks, "is_bot": verdict.is_bot}})
        return verdict


# --- client reported signals ------------------------------------------------

_ENHANCED_AUTOMATION_RE = re.compile(r"puppeteer|playwright|cypress|testcafe|nightwatch|webdriverio", re.IGNORECASE)
_UTC_TIMEZONES = {"utc", "gmt", "utc+0", "gmt+0"}
_ROUND_SCROLL = {25, 50, 75, 90, 100}


def _as_int(value: Any, default: int | None = None) -> int | None:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


def score_bot_data(bot_data: Mapping[str, Any]) -> int:
    score = 0
    bot_score = _as_int(bot_data.get("bot_score"))
    if bot_score is not None and bot_score > 35:
        score += 40
    if bot_data.get("webdriver_detected"):
        score += 50
    if bot_data.get("has_automation_indicators"):
        score += 30
    if "has_javascript" in bot_data and not bot_data["has_javascript"]:
        score += 20
    if bot_data.get("hardware_concurrency") == 0:
        score += 15
    if "cookie_enabled" in bot_data and not bot_data["cookie_enabled"]:
        score += 10
    if "screen_available_width" in bot_data and "screen_available_height" in bot_data:
        width = _as_int(bot_data["screen_available_width"], 0)
        height = _as_int(bot_data["screen_available_height"], 0)
        if width < 320 or width > 7680 or height < 240 or height > 4320:
            score += 25
    if "color_depth" in bot_data:
        depth = _as_int(bot_data["color_depth"], 0)
        if depth < 16 or depth > 32:
            score += 15
    engagement = _as_int(bot_data.get("engagement_calculated"))
    if engagement is not None and engagement < 500:
        score += 20
    if str(bot_data.get("timezone", "")).lower() in _UTC_TIMEZONES:
        score += 10
    return score


def score_behavior(bot_data: Mapping[str, Any], params: Mapping[str, Any]) -> int:
    score = 0
    created = _as_int(bot_data.get("event_creation_time"))
    started = _as_int(bot_data.get("session_start_time"))
    if created is not None and started is not None and created - started < 1000:
        score += 25
    timestamp = _as_int(params.get("event_timestamp"))
    if timestamp is not None and timestamp % 1000 == 0:
        score += 15
    engagement = _as_int(params.get("engagement_time_msec"))
    if engagement is not None and engagement < 100:
        score += 20
    if _as_int(params.get("percent_scrolled")) in _ROUND_SCROLL:
        score += 10
    return score


def score_enhanced_user_agent(user_agent: str) -> int:
    score = 0
    if not user_agent or len(user_agent) < 10:
        score += 30
    if user_agent and _ENHANCED_AUTOMATION_RE.search(user_agent):
        score += 40
    return score


@dataclass
class ClientSignalVerdict:
    checks: Dict[str, bool] = field(default_factory=dict)
    score: int = 0

    @property
    def is_bot(self) -> bool:
        return sum(self.checks.values()) >= BOT_THRESHOLD


def analyze_client_signals(
    request_verdict: BotVerdict,
    events: Sequence[Mapping[str, Any]],
    user_agent: str,
) -> ClientSignalVerdict:
    """Score the ``botData`` the browser attached to the first event."""
    params = (events[0].get("params") if events else None) or {}
    bot_data = params.get("botData") if isinstance(params, Mapping) else None
    verdict = ClientSignalVerdict()

    verdict.checks["request_signals"] = request_verdict.positive_count > 0
    if verdict.checks["request_signals"]:
        verdict.score += 50

    data_score = score_bot_data(bot_data) if isinstance(bot_data, Mapping) else 0
    verdict.checks["bot_data"] = data_score >= 30
    behavior_score = score_behavior(bot_data, params) if isinstance(bot_data, Mapping) else 0
    verdict.checks["behavior"] = behavior_score >= 20
    ua_score = score_enhanced_user_agent(user_agent)
    verdict.checks["user_agent"] = ua_score >= 25

    for hit, value in ((verdict.checks["bot_data"], data_score),
                       (verdict.checks["behavior"], behavior_score),
                       (verdict.checks["user_agent"], ua_score)):
        if hit:
            verdict.score += value
    return verdict
