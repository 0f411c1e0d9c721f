"""Application configuration settings."""
from __future__ import annotations

from decimal import Decimal
from functools import lru_cache

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment configuration for the marketpay backend."""

    app_env: str = "dev"
    database_url: str = "sqlite:///marketpay.db"
    SECRET_KEY: str = "change-me"
    CORS_ALLOW_ORIGINS: list[str] = ["http://localhost:3000"]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True
    ALLOW_DB_CREATE_ALL: bool = False
    LOG_LEVEL: str = "INFO"

    # --- Stripe ------------------------------------------------------------
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_TIMEOUT_SECONDS: int = 20
    STRIPE_MAX_NETWORK_RETRIES: int = 2
    STRIPE_CONNECT_COUNTRY: str = "US"

    # --- Money movement ----------------------------------------------------
    DEFAULT_CURRENCY: str = "usd"
    PLATFORM_FEE_PERCENT: Decimal = Decimal("5")
    # 0 disables the corresponding clamp.
    PLATFORM_FEE_MIN: Decimal = Decimal("0")
    PLATFORM_FEE_MAX: Decimal = Decimal("0")
    REFUND_WINDOW_DAYS: int = 30
    ESCROW_HOLD_DAYS: int = 7
    AUTO_RELEASE_ENABLED: bool = False

    # --- Client-facing redirects -------------------------------------------
    CLIENT_URL: str = "http://localhost:3000"
    ONBOARDING_RETURN_PATH: str = "/dashboard/payments?onboarding=complete"
    ONBOARDING_REFRESH_PATH: str = "/dashboard/payments?onboarding=refresh"
    PAYMENT_RETURN_PATH: str = "/dashboard/payments/return"

    # --- Scheduler -----------------------------------------------------------
    SCHEDULER_ENABLED: bool = False
    RECONCILIATION_INTERVAL_MINUTES: int = 15
    STALE_PROCESSING_MINUTES: int = 30

    CACHE_TTL_SECONDS: int = 300

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8"
    )

    @field_validator("STRIPE_SECRET_KEY", "SENTRY_DSN")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("DEFAULT_CURRENCY")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.strip().lower()

    def client_url(self, path: str) -> str:
        return f"{self.CLIENT_URL.rstrip('/')}{path}"


class AppInfo(BaseModel):
    name: str = "marketpay"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = ["Settings", "AppInfo", "settings", "get_settings"]
