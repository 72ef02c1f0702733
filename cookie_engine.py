import base64
import binascii
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Literal, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from channel_engine import PAID_CHANNELS, Channel
from config import AttributionConfig
from signal_engine import ClickIds, TouchSignal, Utm, hmac_b64, parse_ts

logger = logging.getLogger(__name__)

FIRST_TOUCH_COOKIE = "pc_attrib_ft"
LAST_TOUCH_COOKIE = "pc_attrib_lt"

SECONDS_PER_DAY = 60 * 60 * 24


class CookiePayload(BaseModel):
    """
    the slice of a touch we keep client-side. signed, not encrypted.
    """

    ts: str
    channel: Channel
    utm: Utm = Field(default_factory=Utm)
    click: ClickIds = Field(default_factory=ClickIds)
    affiliate_code: Optional[str] = None
    referrer: Optional[str] = None
    landing_url: Optional[str] = None
    kind: Literal["first", "last"]

    @classmethod
    def from_signal(cls, signal: TouchSignal, kind: str) -> "CookiePayload":
        return cls(
            ts=signal.ts,
            channel=signal.channel,
            utm=signal.utm,
            click=signal.click,
            affiliate_code=signal.affiliate_code,
            referrer=signal.referrer,
            landing_url=signal.landing_url,
            kind=kind,
        )


@dataclass(frozen=True)
class CookieSnapshot:
    """
    read-only view of the inbound Cookie header, parsed once.
    """

    values: Mapping[str, str]

    @classmethod
    def from_header(cls, header: Optional[str]) -> "CookieSnapshot":
        parsed = {}
        for part in (header or "").split(";"):
            part = part.strip()
            name, sep, value = part.partition("=")
            if sep and name:
                parsed[name] = value
        return cls(values=MappingProxyType(parsed))

    def get(self, name: str) -> Optional[str]:
        return self.values.get(name)


@dataclass(frozen=True)
class TouchHistory:
    ft: Optional[CookiePayload] = None
    lt: Optional[CookiePayload] = None


@dataclass(frozen=True)
class AttributionCookies:
    """Set-Cookie strings to emit; None means leave the browser's cookie alone."""

    first_touch: Optional[str] = None
    last_touch: Optional[str] = None


# ---------
# signing
# ---------


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def sign_payload(payload: CookiePayload, secret: str) -> str:
    """
    cookie value = base64url(json) + "." + base64url(hmac_sha256(secret, b64 part))
    """
    body = json.dumps(payload.model_dump(mode="json", exclude_none=True), separators=(",", ":"))
    b64 = _b64encode(body.encode("utf-8"))
    return f"{b64}.{hmac_b64(secret, b64)}"


def verify_cookie(value: Optional[str], secret: str) -> Optional[CookiePayload]:
    """
    return the payload if the signature checks out and the body is sane,
    otherwise None. a bad cookie is treated as no cookie.
    """
    if not value:
        return None
    b64, sep, sig = value.partition(".")
    if not sep or not b64 or not sig:
        return None

    expected = hmac_b64(secret, b64)
    # constant-time compare on bytes
    if not hmac.compare_digest(sig.encode("utf-8"), expected.encode("utf-8")):
        logger.debug("attribution cookie rejected: bad signature")
        return None

    try:
        parsed = json.loads(_b64decode(b64).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        logger.debug("attribution cookie rejected: undecodable body")
        return None

    if not isinstance(parsed, dict) or not isinstance(parsed.get("ts"), str):
        return None
    try:
        return CookiePayload.model_validate(parsed)
    except ValidationError:
        logger.debug("attribution cookie rejected: unexpected shape")
        return None


def read_touch_history(snapshot: CookieSnapshot, config: AttributionConfig) -> TouchHistory:
    return TouchHistory(
        ft=verify_cookie(snapshot.get(FIRST_TOUCH_COOKIE), config.signing_secret),
        lt=verify_cookie(snapshot.get(LAST_TOUCH_COOKIE), config.signing_secret),
    )


# ---------
# refresh rules
# ---------


def is_older_than_days(ts: str, days: int, now: datetime) -> bool:
    """an unparsable timestamp counts as expired."""
    issued = parse_ts(ts)
    if issued is None:
        return True
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now - issued >= timedelta(days=days)


def should_refresh_last_touch(prev: CookiePayload, current: TouchSignal) -> bool:
    # 1) moved into a paid channel
    if current.channel in PAID_CHANNELS and prev.channel not in PAID_CHANNELS:
        return True
    # 2) a different affiliate showed up
    if current.affiliate_code and current.affiliate_code != prev.affiliate_code:
        return True
    # 3) campaign changed
    if current.utm.campaign and current.utm.campaign != (prev.utm.campaign or ""):
        return True
    return False


def make_cookie(name: str, value: str, max_age_sec: int, site_host: Optional[str]) -> str:
    parts = [f"{name}={value}", "Path=/", "HttpOnly", "SameSite=Lax"]
    hostname = (site_host or "").split(":", 1)[0].lower()
    if hostname != "localhost":
        parts.append("Secure")
    parts.append(f"Max-Age={max(0, int(max_age_sec))}")
    return "; ".join(parts)


def build_attribution_cookies(
    signal: TouchSignal,
    existing: CookieSnapshot,
    config: AttributionConfig,
    now: Optional[datetime] = None,
) -> AttributionCookies:
    """
    decide which touch cookies to (re)issue for this request.

      - first-touch: only when missing/invalid or past the first-touch window
      - last-touch: when missing/invalid, past its window, or the touch
        changed meaningfully (see should_refresh_last_touch)
    """
    now = now or datetime.now(timezone.utc)
    history = read_touch_history(existing, config)
    ft, lt = history.ft, history.lt

    first_touch = None
    if ft is None or is_older_than_days(ft.ts, config.first_touch_days, now):
        first_touch = make_cookie(
            FIRST_TOUCH_COOKIE,
            sign_payload(CookiePayload.from_signal(signal, "first"), config.signing_secret),
            SECONDS_PER_DAY * config.first_touch_days,
            config.site_host,
        )

    last_touch = None
    if (
        lt is None
        or is_older_than_days(lt.ts, config.last_touch_days, now)
        or should_refresh_last_touch(lt, signal)
    ):
        last_touch = make_cookie(
            LAST_TOUCH_COOKIE,
            sign_payload(CookiePayload.from_signal(signal, "last"), config.signing_secret),
            SECONDS_PER_DAY * config.last_touch_days,
            config.site_host,
        )

    return AttributionCookies(first_touch=first_touch, last_touch=last_touch)
