"""Runtime configuration loaded from environment variables."""

import os
import logging
from functools import lru_cache
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, Field, SecretStr

logger = logging.getLogger(__name__)

# Polling profiles: (interval seconds, max attempts)
POLL_PROFILES: Dict[str, Tuple[float, int]] = {
    "standard": (3.0, 100),
    "conservative": (10.0, 30),
}

DEFAULT_POLL_PROFILE = "standard"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_secret(name: str) -> Optional[SecretStr]:
    value = os.getenv(name)
    return SecretStr(value) if value else None


class PlatformDarajaCredentials(BaseModel):
    """Platform-owned Daraja credentials used when an owner opts for the default."""
    consumer_key: SecretStr
    consumer_secret: SecretStr
    passkey: SecretStr
    shortcode: str
    environment: str = "sandbox"


class PlatformKopoKopoCredentials(BaseModel):
    """Platform-owned Kopo Kopo credentials used as the verification fallback."""
    client_id: str
    client_secret: SecretStr
    till_number: Optional[str] = None
    environment: str = "sandbox"


class Settings(BaseModel):
    """Engine settings.

    Every knob can be overridden with an environment variable; see
    ``Settings.from_env`` for the names.
    """
    poll_profile: str = DEFAULT_POLL_PROFILE
    poll_interval: float = Field(default=3.0, gt=0)
    max_poll_attempts: int = Field(default=100, gt=0)
    # Attempts after which the poller also checks the latest transaction for the invoice
    secondary_lookup_after: int = Field(default=3, ge=0)

    session_refresh_threshold: float = Field(default=300.0, ge=0)

    encryption_key: Optional[SecretStr] = None

    callback_base_url: str = "http://localhost:8000"
    http_timeout: float = 30.0

    platform_daraja: Optional[PlatformDarajaCredentials] = None
    platform_kopokopo: Optional[PlatformKopoKopoCredentials] = None

    # Only consulted by the HTTP availability endpoint.
    debug_bypass: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        profile = os.getenv("STKPAY_POLL_PROFILE", DEFAULT_POLL_PROFILE)
        if profile not in POLL_PROFILES:
            logger.warning(f"Unknown poll profile '{profile}', using {DEFAULT_POLL_PROFILE}")
            profile = DEFAULT_POLL_PROFILE
        interval, attempts = POLL_PROFILES[profile]

        poll_interval = os.getenv("STKPAY_POLL_INTERVAL")
        max_attempts = os.getenv("STKPAY_MAX_POLL_ATTEMPTS")

        platform_daraja = None
        consumer_key = _env_secret("MPESA_CONSUMER_KEY")
        consumer_secret = _env_secret("MPESA_CONSUMER_SECRET")
        passkey = _env_secret("MPESA_PASSKEY")
        shortcode = os.getenv("MPESA_SHORTCODE")
        if consumer_key and consumer_secret and passkey and shortcode:
            platform_daraja = PlatformDarajaCredentials(
                consumer_key=consumer_key,
                consumer_secret=consumer_secret,
                passkey=passkey,
                shortcode=shortcode,
                environment=os.getenv("MPESA_ENVIRONMENT", "sandbox"),
            )

        platform_kopokopo = None
        client_id = os.getenv("KOPOKOPO_CLIENT_ID")
        client_secret = _env_secret("KOPOKOPO_CLIENT_SECRET")
        if client_id and client_secret:
            platform_kopokopo = PlatformKopoKopoCredentials(
                client_id=client_id,
                client_secret=client_secret,
                till_number=os.getenv("KOPOKOPO_TILL_NUMBER"),
                environment=os.getenv("KOPOKOPO_ENVIRONMENT", "sandbox"),
            )

        return cls(
            poll_profile=profile,
            poll_interval=float(poll_interval) if poll_interval else interval,
            max_poll_attempts=int(max_attempts) if max_attempts else attempts,
            encryption_key=_env_secret("STKPAY_ENCRYPTION_KEY"),
            callback_base_url=os.getenv("STKPAY_CALLBACK_BASE_URL", "http://localhost:8000"),
            http_timeout=float(os.getenv("STKPAY_HTTP_TIMEOUT", "30")),
            platform_daraja=platform_daraja,
            platform_kopokopo=platform_kopokopo,
            debug_bypass=_env_bool("STKPAY_DEBUG_BYPASS"),
        )

    def with_profile(self, profile: str) -> "Settings":
        """Return a copy using the named polling profile."""
        interval, attempts = POLL_PROFILES[profile]
        return self.model_copy(update={
            "poll_profile": profile,
            "poll_interval": interval,
            "max_poll_attempts": attempts,
        })

    def callback_url(self, provider: str) -> str:
        return f"{self.callback_base_url.rstrip('/')}/callbacks/{provider}"


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return Settings.from_env()
