from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Webhook Security - required from .env
    # Signs callbacks to the generic adapter; other providers have their own secrets below
    WEBHOOK_SECRET: str

    # Send path
    SENDING_STALE_SECONDS: int = 300
    DEFAULT_MAX_RETRIES: int = 3
    RETRY_BACKOFF_BASE_SECONDS: int = 30
    RETRY_BACKOFF_MULTIPLIER: int = 2
    PENDING_EXPIRY_HOURS: int = 24

    # Ingestion path
    EVENT_MAX_AGE_DAYS: int = 7
    EVENT_CACHE_TTL_SECONDS: int = 3600
    RECONCILE_WINDOW_HOURS: int = 24
    REDIS_URL: Optional[str] = None

    # Providers
    DEFAULT_PROVIDER: str = "generic"
    ENABLED_PROVIDERS: str = "meta,gupshup,twilio,generic"
    PROVIDER_DRY_RUN: bool = True
    PROVIDER_CONNECT_TIMEOUT: float = 5.0
    PROVIDER_READ_TIMEOUT: float = 15.0

    META_API_BASE: str = "https://graph.facebook.com/v19.0"
    META_PHONE_NUMBER_ID: str = ""
    META_ACCESS_TOKEN: str = ""
    META_APP_SECRET: str = ""

    GUPSHUP_API_BASE: str = "https://api.gupshup.io/wa/api/v1"
    GUPSHUP_API_KEY: str = ""
    GUPSHUP_SOURCE: str = ""
    GUPSHUP_APP_NAME: str = ""
    GUPSHUP_WEBHOOK_SECRET: str = ""

    TWILIO_API_BASE: str = "https://api.twilio.com/2010-04-01"
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM: str = ""
    TWILIO_WEBHOOK_SECRET: str = ""

    @property
    def enabled_providers(self) -> list[str]:
        return [p.strip() for p in self.ENABLED_PROVIDERS.split(",") if p.strip()]

    @property
    def provider_timeout(self) -> tuple[float, float]:
        return (self.PROVIDER_CONNECT_TIMEOUT, self.PROVIDER_READ_TIMEOUT)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
