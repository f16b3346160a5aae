"""Application configuration settings."""
from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Environnement d'exécution: "dev" | "local" | "test" | "staging" | "prod"
ENV = os.getenv("APP_ENV", "dev").lower()

# Clé legacy (uniquement tolérée en DEV)
DEV_API_KEY = os.getenv("DEV_API_KEY") or "dev-secret-key"
DEV_API_KEY_ALLOWED = ENV in {"dev", "local", "test"}

# Scopes reconnus
API_SCOPES = {"company", "provider", "admin"}


class Settings(BaseSettings):
    """Environment configuration for the escrow backend."""

    app_env: str = Field(default=ENV, validation_alias=AliasChoices("APP_ENV", "app_env"))
    database_url: str = Field(
        default="sqlite:///escrow.db",
        validation_alias=AliasChoices("DATABASE_URL", "database_url"),
    )
    SECRET_KEY: str = "change-me"
    DEV_API_KEY: str | None = DEV_API_KEY
    CORS_ALLOW_ORIGINS: list[str] = ["http://localhost:3000"]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True
    ALLOW_DB_CREATE_ALL: bool = False

    # --- Stripe ----------------------------------------------------------
    STRIPE_ENABLED: bool = False
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_TIMEOUT_SECONDS: int = 10
    STRIPE_MAX_NETWORK_RETRIES: int = 0

    # --- Payments --------------------------------------------------------
    PAYMENT_CURRENCY: str = "MYR"
    PLATFORM_FEE_RATE: Decimal = Decimal("0.10")
    MAX_MILESTONES_PER_PROJECT: int = 20

    # --- Scheduler -------------------------------------------------------
    SCHEDULER_ENABLED: bool = False
    RECONCILE_INTERVAL_MINUTES: int = 15
    RECONCILE_STALE_AFTER_MINUTES: int = 30

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("STRIPE_WEBHOOK_SECRET", "STRIPE_SECRET_KEY")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class AppInfo(BaseModel):
    name: str = "marketplace-escrow"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "DEV_API_KEY",
    "DEV_API_KEY_ALLOWED",
    "API_SCOPES",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
