import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from config import AttributionConfig
from cookie_engine import (
    AttributionCookies,
    CookieSnapshot,
    TouchHistory,
    build_attribution_cookies,
    read_touch_history,
)
from signal_engine import (
    RequestLike,
    TouchSignal,
    extract_touch_signal,
    lower_headers,
    sanitize_affiliate,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtractResult:
    attribution: TouchSignal
    cookies: AttributionCookies
    history: TouchHistory


def extract_attribution(
    request: RequestLike,
    config: AttributionConfig,
    now: Optional[datetime] = None,
) -> ExtractResult:
    """
    full request-time pass:
      - normalize the request into a TouchSignal (channel included)
      - read + verify prior touch cookies from the Cookie header
      - decide which touch cookies to set on the response
    """
    now = now or datetime.now(timezone.utc)
    signal = extract_touch_signal(request, config, now=now)

    snapshot = CookieSnapshot.from_header(lower_headers(request.headers).get("cookie"))
    history = read_touch_history(snapshot, config)
    cookies = build_attribution_cookies(signal, snapshot, config, now=now)

    logger.debug(
        "touch %s channel=%s affiliate=%s ft=%s lt=%s",
        signal.request_id,
        signal.channel.value,
        signal.affiliate_code,
        cookies.first_touch is not None,
        cookies.last_touch is not None,
    )
    return ExtractResult(attribution=signal, cookies=cookies, history=history)


# ---------
# storage / analytics payloads
# ---------


def build_affiliate_referral_upsert(
    signal: TouchSignal,
    history: Optional[TouchHistory] = None,
) -> Dict[str, Any]:
    """
    row payload for the referrals table.
    first_touch_at comes from the first-touch cookie when we have one,
    last_touch_at is always this request.
    """
    ft = history.ft if history else None
    return {
        "code": sanitize_affiliate(signal.affiliate_code),
        "channel": signal.channel.value,
        "utm_source": signal.utm.source,
        "utm_medium": signal.utm.medium,
        "utm_campaign": signal.utm.campaign,
        "utm_term": signal.utm.term,
        "utm_content": signal.utm.content,
        "gclid": signal.click.gclid,
        "msclkid": signal.click.msclkid,
        "fbclid": signal.click.fbclid,
        "twclid": signal.click.twclid,
        "ttclid": signal.click.ttclid,
        "clid": signal.click.clid,
        "referrer": signal.referrer,
        "landing_url": signal.landing_url,
        "country": signal.country,
        "user_agent": signal.user_agent,
        "first_touch_at": ft.ts if ft and ft.ts else signal.ts,
        "last_touch_at": signal.ts,
    }


def to_analytics_event(
    signal: TouchSignal,
    name: str,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    props = {
        "channel": signal.channel.value,
        "utm_source": signal.utm.source,
        "utm_medium": signal.utm.medium,
        "utm_campaign": signal.utm.campaign,
        "utm_term": signal.utm.term,
        "utm_content": signal.utm.content,
        "gclid": signal.click.gclid,
        "msclkid": signal.click.msclkid,
        "fbclid": signal.click.fbclid,
        "twclid": signal.click.twclid,
        "ttclid": signal.click.ttclid,
        "clid": signal.click.clid,
        "affiliate_code": sanitize_affiliate(signal.affiliate_code),
        "landing_url": signal.landing_url,
        "referrer": signal.referrer,
        "country": signal.country,
        "site_domain": signal.site_domain,
    }
    # caller extras win over attribution fields
    props.update(extra or {})
    return {"name": name, "ts": signal.ts, "props": props}


def safe_redirect(url: Optional[str], config: AttributionConfig) -> Optional[str]:
    """
    only allow site-relative paths, or absolute urls on the site's own
    scheme + host. everything else is dropped.
    """
    if not url:
        return None
    # browsers drop tabs/newlines and read "\" as "/", so "/\t/x" or "/\x"
    # would turn into a protocol-relative "//x"
    if any(ch.isspace() or ord(ch) < 0x20 or ord(ch) == 0x7F for ch in url):
        logger.debug("refusing redirect with control or whitespace characters")
        return None
    if url.startswith("/"):
        if url[1:2] in ("/", "\\"):
            logger.debug("refusing protocol-relative redirect")
            return None
        return url
    if not config.base_url:
        return None
    try:
        dest = urlsplit(url)
        allow = urlsplit(config.base_url)
        same_origin = dest.scheme == allow.scheme and dest.netloc == allow.netloc
    except ValueError:
        return None
    if same_origin and dest.netloc:
        return dest.geturl()
    logger.debug("refusing off-site redirect")
    return None
