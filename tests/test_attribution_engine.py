from datetime import datetime, timedelta, timezone

from attribution_engine import (
    build_affiliate_referral_upsert,
    extract_attribution,
    safe_redirect,
    to_analytics_event,
)
from channel_engine import Channel
from config import AttributionConfig
from cookie_engine import (
    FIRST_TOUCH_COOKIE,
    CookiePayload,
    TouchHistory,
    sign_payload,
)
from signal_engine import RequestLike, iso_ts

CONFIG = AttributionConfig(
    signing_secret="test-secret",
    ip_salt="test-salt",
    base_url="https://polaris.example",
    site_host="polaris.example",
)
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _affiliate_request(cookie=None):
    headers = {"referer": "https://blog.other.example/", "user-agent": "ua", "x-country": "US"}
    if cookie:
        headers["cookie"] = cookie
    return RequestLike(
        url="https://polaris.example/?ref=jane&utm_source=blog&utm_campaign=launch&fbclid=F1",
        headers=headers,
        ip="203.0.113.9",
    )


def test_extract_attribution_end_to_end():
    result = extract_attribution(_affiliate_request(), CONFIG, now=NOW)

    assert result.attribution.channel == Channel.affiliate
    assert result.attribution.affiliate_code == "jane"
    assert result.history == TouchHistory()
    assert result.cookies.first_touch is not None
    assert result.cookies.last_touch is not None


def test_extract_attribution_reads_prior_first_touch():
    earlier = NOW - timedelta(days=10)
    ft = CookiePayload(ts=iso_ts(earlier), channel=Channel.email, kind="first")
    cookie = f"{FIRST_TOUCH_COOKIE}={sign_payload(ft, CONFIG.signing_secret)}"

    result = extract_attribution(_affiliate_request(cookie=cookie), CONFIG, now=NOW)

    assert result.history.ft == ft
    # sticky: not reissued
    assert result.cookies.first_touch is None

    row = build_affiliate_referral_upsert(result.attribution, result.history)
    assert row["first_touch_at"] == iso_ts(earlier)
    assert row["last_touch_at"] == iso_ts(NOW)


def test_referral_upsert_row_shape():
    result = extract_attribution(_affiliate_request(), CONFIG, now=NOW)
    row = build_affiliate_referral_upsert(result.attribution)

    assert row == {
        "code": "jane",
        "channel": "affiliate",
        "utm_source": "blog",
        "utm_medium": None,
        "utm_campaign": "launch",
        "utm_term": None,
        "utm_content": None,
        "gclid": None,
        "msclkid": None,
        "fbclid": "F1",
        "twclid": None,
        "ttclid": None,
        "clid": None,
        "referrer": "https://blog.other.example/",
        "landing_url": "https://polaris.example/?ref=jane&utm_source=blog&utm_campaign=launch&fbclid=F1",
        "country": "US",
        "user_agent": "ua",
        # no cookie history -> first touch is now
        "first_touch_at": iso_ts(NOW),
        "last_touch_at": iso_ts(NOW),
    }


def test_analytics_event_merges_extras():
    signal = extract_attribution(_affiliate_request(), CONFIG, now=NOW).attribution
    event = to_analytics_event(signal, "signup", {"plan": "pro_monthly", "channel": "override"})

    assert event["name"] == "signup"
    assert event["ts"] == signal.ts
    assert event["props"]["affiliate_code"] == "jane"
    assert event["props"]["site_domain"] == "polaris.example"
    assert event["props"]["plan"] == "pro_monthly"
    # caller extras win
    assert event["props"]["channel"] == "override"
    # the signal itself is untouched
    assert signal.channel == Channel.affiliate


def test_safe_redirect():
    assert safe_redirect("/pricing?x=1", CONFIG) == "/pricing?x=1"
    assert safe_redirect("https://polaris.example/welcome", CONFIG) == "https://polaris.example/welcome"

    assert safe_redirect("https://evil.example/", CONFIG) is None
    assert safe_redirect("http://polaris.example/", CONFIG) is None
    assert safe_redirect("//evil.example/", CONFIG) is None
    assert safe_redirect(None, CONFIG) is None

    # backslash and stripped whitespace both collapse to "//host" in browsers
    assert safe_redirect("/\\evil.example/phish", CONFIG) is None
    assert safe_redirect("/\t/evil.example/", CONFIG) is None
    assert safe_redirect("/\n/evil.example/", CONFIG) is None
    assert safe_redirect(" //evil.example/", CONFIG) is None
    assert safe_redirect("https://polaris.example/\t", CONFIG) is None

    no_base = AttributionConfig(signing_secret="s", ip_salt="p")
    assert safe_redirect("https://polaris.example/", no_base) is None
    assert safe_redirect("/ok", no_base) == "/ok"
