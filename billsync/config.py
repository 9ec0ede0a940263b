"""
Application configuration using Pydantic Settings.

Load order:
1. Environment variables
2. .env file (if present)
3. Default values
"""

from enum import Enum
from functools import lru_cache
from typing import Any

from pydantic import Field, RedisDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Billing reconciliation settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============ Environment ============
    environment: Environment = Environment.DEVELOPMENT
    log_level: LogLevel = LogLevel.INFO
    debug: bool = False
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # ============ Security ============
    # Required on /reconcile/* and /status/* when set
    operator_api_key: SecretStr | None = None

    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000"]
    )

    # ============ Record store ============
    redis_url: RedisDsn = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )

    # ============ Payment provider ============
    stripe_secret_key: SecretStr | None = None
    stripe_webhook_secret: SecretStr | None = None
    webhook_tolerance_seconds: int = Field(
        default=300,
        ge=0,
        description="Maximum age of a signed webhook timestamp",
    )
    provider_timeout_seconds: float = Field(
        default=20.0,
        gt=0,
        description="Timeout applied to every provider call",
    )

    # Price ids per paid plan; looked up from price metadata when unset
    stripe_price_starter: str | None = None
    stripe_price_professional: str | None = None

    checkout_success_url: str = Field(
        default="http://localhost:3000/payment/success?session_id={CHECKOUT_SESSION_ID}",
    )
    checkout_cancel_url: str = "http://localhost:3000/planos"

    # ============ Sweep ============
    sweep_concurrency: int = Field(
        default=1,
        ge=1,
        le=32,
        description="Records reconciled in parallel during a sweep",
    )
    sweep_deadline_seconds: float | None = Field(
        default=240.0,
        gt=0,
        description="Overall sweep budget; remaining records are skipped",
    )

    # ============ Sync client ============
    sync_base_url: str = "http://localhost:8000"
    sync_endpoint: str = "/reconcile/all"
    sync_timeout_seconds: float = Field(default=300.0, gt=0)
    sync_retry_attempts: int = Field(default=3, ge=1, le=10)
    sync_retry_delay_seconds: float = Field(default=5.0, ge=0)

    # ============ Monitoring ============
    sentry_dsn: str | None = None
    prometheus_enabled: bool = True

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse comma-separated origins from environment."""
        if isinstance(v, str):
            if not v:
                return []
            return [x.strip() for x in v.split(",")]
        return v or []

    @field_validator("sync_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    def price_for_plan(self, plan: str) -> str | None:
        """Configured price id for a paid plan, if any."""
        return getattr(self, f"stripe_price_{plan}", None)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Using lru_cache ensures settings are loaded once and reused.
    """
    return Settings()
