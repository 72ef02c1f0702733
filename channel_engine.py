from enum import Enum
from typing import Any, Optional

from config import host_of


class Channel(str, Enum):
    affiliate = "affiliate"
    paid_search = "paid_search"
    paid_social = "paid_social"
    social = "social"
    email = "email"
    organic_search = "organic_search"
    referral = "referral"
    direct = "direct"
    unknown = "unknown"


PAID_CHANNELS = frozenset({Channel.paid_search, Channel.paid_social})

PAID_SEARCH_MEDIUMS = frozenset({"cpc", "ppc", "paid", "sem"})
PAID_SOCIAL_MEDIUMS = frozenset({"paid_social", "social_paid"})

SEARCH_DOMAINS = (
    "google.com",
    "bing.com",
    "yahoo.com",
    "duckduckgo.com",
    "yandex.ru",
    "baidu.com",
    "ecosia.org",
)


def strip_www(host: str) -> str:
    return host[4:] if host.lower().startswith("www.") else host


def _bare_host(host: str) -> str:
    # drop port, drop www.
    return strip_www(host.lower().rsplit(":", 1)[0] if ":" in host else host.lower())


def is_search_domain(host: str) -> bool:
    h = _bare_host(host)
    return any(h == d or h.endswith("." + d) for d in SEARCH_DOMAINS)


def is_own_domain(host: Optional[str], site_host: Optional[str]) -> bool:
    if not host or not site_host:
        return False
    return _bare_host(host) == _bare_host(site_host)


def infer_channel(
    utm: Any,
    click: Any,
    referrer: Optional[str],
    affiliate_code: Optional[str],
    site_host: Optional[str] = None,
) -> Channel:
    """
    map touch signals to a marketing channel. first matching rule wins:

      1. affiliate code            -> affiliate
      2. gclid/msclkid or cpc-ish  -> paid_search
      3. paid_social medium        -> paid_social
      4. social medium             -> social
      5. email medium/source       -> email
      6. search referrer, no utm   -> organic_search
      7. foreign referrer          -> referral
      8. nothing at all            -> direct
      9. anything else             -> unknown

    affiliate has to stay ahead of paid_search: affiliate links often carry
    ad click ids and must still be credited to the affiliate.
    """
    medium = (utm.medium or "").lower()
    source = (utm.source or "").lower()

    if affiliate_code:
        return Channel.affiliate

    if click.gclid or click.msclkid or medium in PAID_SEARCH_MEDIUMS:
        return Channel.paid_search
    if medium in PAID_SOCIAL_MEDIUMS:
        return Channel.paid_social
    if medium == "social":
        return Channel.social
    if medium == "email" or source == "email":
        return Channel.email

    host = host_of(referrer)
    if host:
        if is_search_domain(host) and not utm.source and not utm.medium:
            return Channel.organic_search
        if not is_own_domain(host, site_host):
            return Channel.referral

    if not referrer and not utm.source and not utm.medium:
        return Channel.direct
    return Channel.unknown
