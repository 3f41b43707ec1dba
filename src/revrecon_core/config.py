"""Collector configuration loaded from environment variables."""
import logging
import os
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)


def redact_text(text: str, secrets: list[Optional[str]]) -> str:
    if not text:
        return text
    redacted = text
    for secret in secrets:
        if secret:
            redacted = redacted.replace(secret, "[REDACTED]")
    return redacted


def resolve_timezone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except Exception:
        logger.warning("Invalid METRICS_TIMEZONE '%s', using UTC", tz_name)
        return ZoneInfo("UTC")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s '%s', using %s", name, raw, default)
        return default


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


class CollectorSettings(BaseModel):
    """Runtime settings for the clients and the collector loop."""

    tracking_api_key: Optional[str] = None
    tracking_base_url: str = "https://api.eflow.team"
    tracking_timezone_id: int = 80
    tracking_currency_id: str = "USD"
    tracking_affiliate_ids: list[str] = Field(default_factory=list)

    sending_api_username: Optional[str] = None
    sending_api_password: Optional[str] = None
    sending_account_code: Optional[str] = None
    sending_base_url: str = "https://api.ongage.net"

    redis_url: Optional[str] = None

    lookback_days: int = Field(30, ge=1)
    fetch_interval_s: int = Field(300, ge=1)
    sending_interval_s: int = Field(900, ge=1)
    attribution_interval_s: int = Field(600, ge=1)
    report_spacing_s: float = Field(10.0, ge=0)
    retry_backoff_s: float = Field(60.0, ge=0)

    timezone: str = "America/New_York"

    @classmethod
    def from_env(cls) -> "CollectorSettings":
        """Build settings from the process environment."""
        return cls(
            tracking_api_key=os.getenv("TRACKING_API_KEY"),
            tracking_base_url=os.getenv("TRACKING_BASE_URL", "https://api.eflow.team"),
            tracking_timezone_id=_env_int("TRACKING_TIMEZONE_ID", 80),
            tracking_currency_id=os.getenv("TRACKING_CURRENCY_ID", "USD"),
            tracking_affiliate_ids=_env_list("TRACKING_AFFILIATE_IDS"),
            sending_api_username=os.getenv("SENDING_API_USERNAME"),
            sending_api_password=os.getenv("SENDING_API_PASSWORD"),
            sending_account_code=os.getenv("SENDING_ACCOUNT_CODE"),
            sending_base_url=os.getenv("SENDING_BASE_URL", "https://api.ongage.net"),
            redis_url=os.getenv("REDIS_URL"),
            lookback_days=_env_int("COLLECTOR_LOOKBACK_DAYS", 30),
            fetch_interval_s=_env_int("COLLECTOR_FETCH_INTERVAL_S", 300),
            sending_interval_s=_env_int("COLLECTOR_SENDING_INTERVAL_S", 900),
            attribution_interval_s=_env_int("COLLECTOR_ATTRIBUTION_INTERVAL_S", 600),
            report_spacing_s=_env_int("COLLECTOR_REPORT_SPACING_S", 10),
            retry_backoff_s=_env_int("COLLECTOR_RETRY_BACKOFF_S", 60),
            timezone=os.getenv("METRICS_TIMEZONE", "America/New_York"),
        )

    @property
    def tzinfo(self) -> ZoneInfo:
        return resolve_timezone(self.timezone)

    @property
    def tracking_configured(self) -> bool:
        return bool(self.tracking_api_key)

    @property
    def sending_configured(self) -> bool:
        return bool(
            self.sending_api_username
            and self.sending_api_password
            and self.sending_account_code
        )

    def tracking_headers(self) -> dict[str, str]:
        return {"X-Eflow-API-Key": self.tracking_api_key or ""}

    def sending_headers(self) -> dict[str, str]:
        return {
            "X_USERNAME": self.sending_api_username or "",
            "X_PASSWORD": self.sending_api_password or "",
            "X_ACCOUNT_CODE": self.sending_account_code or "",
        }

    def secrets(self) -> list[Optional[str]]:
        return [self.tracking_api_key, self.sending_api_password]

    def redact(self, text: str) -> str:
        """Strip API credentials from text destined for logs."""
        return redact_text(text, self.secrets())
