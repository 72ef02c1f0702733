from functools import lru_cache
from typing import Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    process-wide settings, read once from the environment (or .env).
    engines never touch this directly; the edge builds explicit config
    objects from it and passes them down.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    attribution_signing_secret: str = "dev-secret-change"
    attribution_ip_salt: str = "dev-ip-salt"
    app_base_url: str = ""

    affiliate_default_first_bps: int = 3000
    affiliate_default_recurring_bps: int = 2000
    affiliate_hold_days: int = 14
    affiliate_clawback_days: int = 30

    database_url: str = "dbname=polaris user=polaris password=secret host=localhost port=5432"
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


FIRST_TOUCH_WINDOW_DAYS = 90
LAST_TOUCH_WINDOW_DAYS = 7


def host_of(url: Optional[str]) -> Optional[str]:
    """
    host (with port, if any) of an absolute url, or None when it can't be parsed.
    """
    if not url:
        return None
    try:
        parts = urlsplit(url)
        if not parts.scheme or not parts.hostname:
            return None
        port = parts.port
    except ValueError:
        return None
    return f"{parts.hostname}:{port}" if port else parts.hostname


class AttributionConfig(BaseModel):
    """
    immutable configuration for the attribution engines.
    """

    model_config = ConfigDict(frozen=True)

    signing_secret: str
    ip_salt: str
    base_url: str = ""
    site_host: Optional[str] = None
    first_touch_days: int = FIRST_TOUCH_WINDOW_DAYS
    last_touch_days: int = LAST_TOUCH_WINDOW_DAYS

    @classmethod
    def from_settings(cls, settings: Settings) -> "AttributionConfig":
        return cls(
            signing_secret=settings.attribution_signing_secret,
            ip_salt=settings.attribution_ip_salt,
            base_url=settings.app_base_url,
            site_host=host_of(settings.app_base_url),
        )
