"""Application configuration settings."""
from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "staging" | "prod"
ENV = os.getenv("P2P_ENV", "dev").lower()

# Scheduler for inactivity / room recycling timers
SCHEDULER_ENABLED = os.getenv("P2P_SCHEDULER_ENABLED", "1") in {
    "1",
    "true",
    "yes",
    "True",
    "YES",
}

DEFAULT_CHAIN = "BSC"


class Settings(BaseSettings):
    """Environment configuration for the P2P escrow backend."""

    app_env: str = ENV
    database_url: str = "sqlite:///p2pescrow.db"
    API_KEY: str = Field(
        default="dev-bot-key",
        validation_alias=AliasChoices("API_KEY", "BOT_API_KEY"),
    )
    ADMIN_API_KEY: str | None = None
    ADMIN_USER_IDS: list[int] = []
    ADMIN_USERNAMES: list[str] = []
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = False
    SCHEDULER_ENABLED: bool = SCHEDULER_ENABLED
    ALLOW_DB_CREATE_ALL: bool = False
    CORS_ALLOW_ORIGINS: list[str] = []
    LOG_LEVEL: str = "INFO"

    # --- Trades ------------------------------------------------------------
    TRADE_ID_PREFIX: str = "P2PMMX"
    INVITE_TIMEOUT_SECONDS: int = 5 * 60
    ROOM_RECYCLE_DELAY_SECONDS: int = 5 * 60
    SETTLEMENT_EPSILON: Decimal = Decimal("0.00001")

    # --- Fees --------------------------------------------------------------
    # Flat per-transfer cost, in token units, keyed by tier then canonical chain.
    NETWORK_FEES: dict[str, dict[str, Decimal]] = {
        "NO_BIO_TAG": {"BSC": Decimal("0.3"), "TRON": Decimal("3.0")},
        "HAS_BIO_TAG": {"BSC": Decimal("0.2"), "TRON": Decimal("2.0")},
    }
    # Service fee percent by how many parties carry the bio tag.
    SERVICE_FEES: dict[str, Decimal] = {
        "NO_BIO_TAG": Decimal("0.75"),
        "ONE_TAG": Decimal("0.5"),
        "BOTH_TAGS": Decimal("0.25"),
    }

    # --- Tokens ------------------------------------------------------------
    SUPPORTED_TOKENS: dict[str, list[str]] = {
        "BSC": ["USDT", "USDC"],
        "TRON": ["USDT"],
    }
    TOKEN_DECIMALS: dict[str, int] = {
        "USDT_BSC": 18,
        "USDC_BSC": 18,
        "USDT_TRON": 6,
    }
    DEFAULT_TOKEN_DECIMALS: int = 18

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8"
    )

    @field_validator("ADMIN_API_KEY")
    @classmethod
    def _strip_empty_key(cls, value: str | None) -> str | None:
        """Normalise empty admin keys to ``None`` so the admin scope stays closed."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("ADMIN_USERNAMES")
    @classmethod
    def _normalise_usernames(cls, value: list[str]) -> list[str]:
        return [name.lstrip("@").lower() for name in value if name]


class AppInfo(BaseModel):
    name: str = "p2p-escrow-rooms"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "SCHEDULER_ENABLED",
    "DEFAULT_CHAIN",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
