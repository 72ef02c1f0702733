import base64
import hashlib
import hmac
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qs, urlsplit

from pydantic import BaseModel, Field

from channel_engine import Channel, infer_channel
from config import AttributionConfig, host_of

logger = logging.getLogger(__name__)

AFFILIATE_CODE_RE = re.compile(r"^[A-Za-z0-9_-]{2,64}$")
AFFILIATE_PARAMS = ("aff", "affiliate", "ref", "ref_code", "r")
COUNTRY_HEADERS = ("cf-ipcountry", "x-vercel-ip-country", "x-country")


class Utm(BaseModel):
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    term: Optional[str] = None
    content: Optional[str] = None


class ClickIds(BaseModel):
    gclid: Optional[str] = None
    msclkid: Optional[str] = None
    fbclid: Optional[str] = None
    twclid: Optional[str] = None
    ttclid: Optional[str] = None
    clid: Optional[str] = None


class TouchSignal(BaseModel):
    """
    one normalized marketing touch, built per request.
    the raw ip never lands here, only its salted hash.
    """

    ts: str
    request_id: str
    landing_url: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    ip_hash: Optional[str] = None
    utm: Utm = Field(default_factory=Utm)
    click: ClickIds = Field(default_factory=ClickIds)
    affiliate_code: Optional[str] = None
    channel: Channel = Channel.unknown
    site_domain: Optional[str] = None


@dataclass(frozen=True)
class RequestLike:
    """
    the minimum we need from an inbound request.
    headers can be any mapping (plain dict, starlette Headers, ...),
    values may be strings or lists of strings.
    """

    url: Optional[str] = None
    headers: Optional[Mapping[str, Any]] = None
    ip: Optional[str] = None


# ---------
# small parsing helpers (all return None instead of raising)
# ---------


def iso_ts(now: datetime) -> str:
    """utc iso-8601 with millisecond precision and a trailing Z."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_ts(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    raw = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def clean_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    v = str(value).strip()
    return v or None


def sanitize_affiliate(value: Optional[str]) -> Optional[str]:
    """
    allow-list check for affiliate codes. anything off-pattern is dropped.
    """
    if not value:
        return None
    cleaned = value.strip()
    if not AFFILIATE_CODE_RE.match(cleaned):
        logger.debug("dropping off-pattern affiliate code %r", cleaned[:80])
        return None
    return cleaned


def lower_headers(headers: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    if not headers:
        return out
    for key, value in headers.items():
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        if value is None:
            continue
        out[str(key).lower()] = str(value)
    return out


def safe_url(url: Optional[str]) -> Optional[str]:
    """absolute url or None; malformed input is not an error."""
    if host_of(url) is None:
        if url:
            logger.debug("ignoring malformed landing url")
        return None
    return url


def first_ip(forwarded_for: Optional[str]) -> Optional[str]:
    if not forwarded_for:
        return None
    return forwarded_for.split(",")[0].strip() or None


def hmac_b64(secret: str, data: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def hash_ip(ip: str, salt: str) -> str:
    return hmac_b64(salt, ip)


def _query(url: Optional[str]) -> Dict[str, str]:
    if not url:
        return {}
    try:
        parsed = parse_qs(urlsplit(url).query)
    except ValueError:
        return {}
    # first value wins, same as URLSearchParams.get
    return {k: v[0] for k, v in parsed.items() if v}


def pick_utm(query: Mapping[str, str]) -> Utm:
    return Utm(
        source=clean_value(query.get("utm_source")),
        medium=clean_value(query.get("utm_medium")),
        campaign=clean_value(query.get("utm_campaign")),
        term=clean_value(query.get("utm_term")),
        content=clean_value(query.get("utm_content")),
    )


def pick_click_ids(query: Mapping[str, str]) -> ClickIds:
    return ClickIds(
        gclid=clean_value(query.get("gclid")),
        msclkid=clean_value(query.get("msclkid")),
        fbclid=clean_value(query.get("fbclid")),
        twclid=clean_value(query.get("twclid")),
        ttclid=clean_value(query.get("ttclid")),
        clid=clean_value(query.get("clid")) or clean_value(query.get("click_id")),
    )


def pick_affiliate_code(query: Mapping[str, str]) -> Optional[str]:
    for key in AFFILIATE_PARAMS:
        raw = clean_value(query.get(key))
        if raw:
            return sanitize_affiliate(raw)
    return None


# ---------
# extraction
# ---------


def extract_touch_signal(
    request: RequestLike,
    config: AttributionConfig,
    now: Optional[datetime] = None,
) -> TouchSignal:
    """
    turn one request into a TouchSignal. never raises on bad input:
    missing headers, broken urls and absent ip just leave fields empty.

    the channel is classified here as well, against the configured site
    host (or the landing host when no site url is configured).
    """
    now = now or datetime.now(timezone.utc)
    h = lower_headers(request.headers)
    landing_url = safe_url(request.url)
    query = _query(landing_url)

    # 1) ip -> salted hash, raw ip is discarded
    raw_ip = request.ip or h.get("x-real-ip") or first_ip(h.get("x-forwarded-for"))
    ip = clean_value(raw_ip)
    ip_hash = hash_ip(ip, config.ip_salt) if ip else None

    # 2) headers
    referrer = clean_value(h.get("referer") or h.get("referrer"))
    country = None
    for name in COUNTRY_HEADERS:
        country = clean_value(h.get(name))
        if country:
            break

    # 3) query params + channel
    utm = pick_utm(query)
    click = pick_click_ids(query)
    affiliate_code = pick_affiliate_code(query)
    site_domain = config.site_host or host_of(landing_url)
    channel = infer_channel(utm, click, referrer, affiliate_code, site_host=site_domain)

    return TouchSignal(
        ts=iso_ts(now),
        request_id=str(uuid.uuid4()),
        landing_url=landing_url,
        referrer=referrer,
        user_agent=clean_value(h.get("user-agent")),
        country=country,
        ip_hash=ip_hash,
        utm=utm,
        click=click,
        affiliate_code=affiliate_code,
        channel=channel,
        site_domain=site_domain,
    )
