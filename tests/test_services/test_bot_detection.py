import pytest

from conftest import CHROME_UA, browser_headers
from ga4_relay.services.bot_detection import (
    BotVerdict,
    RequestBotDetector,
    RequestSignals,
    analyze_client_signals,
    check_behavior,
    check_hosting_network,
    check_known_bot_ip,
    check_missing_headers,
    check_suspicious_referrer,
    check_user_agent,
    score_bot_data,
)

CLEAN_IP = "203.0.113.10"
GOOGLEBOT_IP = "66.249.66.1"


def signals(ip=CLEAN_IP, **header_overrides):
    headers = browser_headers(**header_overrides)
    return RequestSignals(headers.get("user-agent", ""), ip, headers)


def test_clean_browser_request_has_no_positive_checks():
    verdict = RequestBotDetector().evaluate(signals())
    assert verdict.positive == []
    assert not verdict.is_bot


def test_single_positive_check_is_not_a_bot():
    verdict = RequestBotDetector().evaluate(signals(ip=GOOGLEBOT_IP))
    assert verdict.positive == ["known_bot_ip"]
    assert not verdict.is_bot


def test_two_positive_checks_make_a_bot():
    verdict = RequestBotDetector().evaluate(signals(ip=GOOGLEBOT_IP, accept="*/*"))
    assert verdict.positive_count == 2
    assert verdict.is_bot


@pytest.mark.parametrize("ua,expected", [
    (CHROME_UA, False),
    ("", True),
    ("short", True),
    ("Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)", True),
    ("python-requests/2.31.0", True),
    ("Mozilla/5.0 (X11; Linux x86_64) HeadlessChrome/120.0.0.0 Safari/537.36", True),
    ("just some letters here", True),
])
def test_check_user_agent(ua, expected):
    assert check_user_agent(ua) is expected


def test_ip_checks():
    assert check_known_bot_ip(GOOGLEBOT_IP)
    assert not check_known_bot_ip(CLEAN_IP)
    assert check_hosting_network("104.16.1.1")
    assert not check_hosting_network("not-an-ip")


def test_referrer_check():
    assert not check_suspicious_referrer("")
    assert check_suspicious_referrer("https://www.google.com/search?q=shoes")
    assert not check_suspicious_referrer("https://shop.example.com/cart")


def test_missing_headers_check():
    assert not check_missing_headers(browser_headers())
    assert check_missing_headers(browser_headers(**{"accept-language": None, "accept-encoding": None}))
    assert check_missing_headers(browser_headers(connection="close"))
    assert check_missing_headers(browser_headers(**{"from": "crawler@example.com"}))


def test_behavior_check():
    assert not check_behavior(signals(**{"content-type": "application/json; charset=utf-8"}))
    assert check_behavior(signals(**{"content-type": "text/plain"}))
    assert check_behavior(signals(origin=None, referer=None))


def test_client_signals_need_two_checks():
    clean = BotVerdict({"user_agent": False})
    events = [{"name": "page_view", "params": {"botData": {"webdriver_detected": True}}}]
    verdict = analyze_client_signals(clean, events, CHROME_UA)
    assert verdict.checks["bot_data"]
    assert not verdict.is_bot

    noisy_request = BotVerdict({"known_bot_ip": True, "user_agent": False})
    assert analyze_client_signals(noisy_request, events, CHROME_UA).is_bot


def test_score_bot_data():
    assert score_bot_data({}) == 0
    assert score_bot_data({"bot_score": 80, "webdriver_detected": True}) == 90
    assert score_bot_data({"screen_available_width": 100, "screen_available_height": 100}) == 25


@pytest.mark.parametrize("value", [1e400, "inf", "-inf", "nan"])
def test_non_finite_bot_score_is_ignored(value):
    assert score_bot_data({"bot_score": value}) == 0
    assert score_bot_data({"bot_score": value, "webdriver_detected": True}) == 50
