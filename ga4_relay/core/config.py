import os
from dataclasses import dataclass
from urllib.parse import urlparse

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    PROJECT_NAME: str = "GA4 Relay"
    DEBUG: bool = False

    # Database
    POSTGRES_USER: str = "ga4_relay"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "ga4_relay"

    @property
    def database_url(self) -> str:
        """Async database URL; DATABASE_URL from env wins over the POSTGRES_* parts."""
        env_db_url = os.getenv("DATABASE_URL")
        if env_db_url:
            return env_db_url
        return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    RUN_MIGRATIONS_ON_STARTUP: bool = True
    SCHEDULER_ENABLED: bool = True

    # Site / ingestion
    SITE_URL: str = "http://localhost"
    BOT_DETECTION_ENABLED: bool = True
    RATE_LIMIT_MAX_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_REDIS_URL: str | None = Field(default=None)

    # Encryption
    ENCRYPTION_ENABLED: bool = False
    ENCRYPTION_KEY: str | None = Field(default=None)  # 64 hex chars

    # Transmission
    CLOUDFLARE_WORKER_URL: str | None = Field(default=None)
    WORKER_API_KEY: str | None = Field(default=None)
    BYPASS_CLOUDFLARE: bool = False
    GA4_MEASUREMENT_ID: str | None = Field(default=None)
    GA4_API_SECRET: str | None = Field(default=None)
    HTTP_RETRY_ATTEMPTS: int = 1

    # Queue
    QUEUE_ENABLED: bool = True
    QUEUE_INTERVAL_SECONDS: int = 300
    BATCH_SIZE: int = 1000
    LEASE_SECONDS: int = 300

    # Maintenance
    CLEANUP_COMPLETED_DAYS: int = 7
    CLEANUP_UNQUEUED_DAYS: int = 30
    MAX_COMPLETED_ROWS: int = 10000

    # Admin API, disabled when empty
    ADMIN_TOKEN: str | None = Field(default=None)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )


settings = Settings()


@dataclass(frozen=True)
class RelayConfig:
    """Snapshot of the settings one request or one batch run works with."""

    site_url: str
    debug: bool = False
    encryption_enabled: bool = False
    encryption_key: str | None = None
    cloudflare_worker_url: str | None = None
    worker_api_key: str | None = None
    bypass_cloudflare: bool = False
    ga4_measurement_id: str | None = None
    ga4_api_secret: str | None = None
    http_retry_attempts: int = 1
    queue_enabled: bool = True
    batch_size: int = 1000
    lease_seconds: int = 300
    bot_detection_enabled: bool = True

    @property
    def site_host(self) -> str:
        return (urlparse(self.site_url).hostname or "").lower()

    @property
    def storage_key(self) -> str | None:
        """Key for sealing data at rest, None when encryption is off."""
        if self.encryption_enabled and self.encryption_key:
            return self.encryption_key
        return None

    @property
    def transmission_method(self) -> str:
        return "ga4_direct" if self.bypass_cloudflare else "cloudflare"

    @classmethod
    def from_settings(cls, source: Settings) -> "RelayConfig":
        return cls(
            site_url=source.SITE_URL,
            debug=source.DEBUG,
            encryption_enabled=source.ENCRYPTION_ENABLED,
            encryption_key=source.ENCRYPTION_KEY,
            cloudflare_worker_url=source.CLOUDFLARE_WORKER_URL,
            worker_api_key=source.WORKER_API_KEY,
            bypass_cloudflare=source.BYPASS_CLOUDFLARE,
            ga4_measurement_id=source.GA4_MEASUREMENT_ID,
            ga4_api_secret=source.GA4_API_SECRET,
            http_retry_attempts=source.HTTP_RETRY_ATTEMPTS,
            queue_enabled=source.QUEUE_ENABLED,
            batch_size=source.BATCH_SIZE,
            lease_seconds=source.LEASE_SECONDS,
            bot_detection_enabled=source.BOT_DETECTION_ENABLED,
        )


def get_relay_config() -> RelayConfig:
    return RelayConfig.from_settings(settings)
