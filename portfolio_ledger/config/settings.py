"""
Configuration Management for Portfolio Ledger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Every tunable used by the projector, the reconciliation engine and the
transfer matcher is declared once, validated at startup, and can be
overridden per environment without touching code.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Relational store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_DB_",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite:///portfolio_ledger.db",
        description="SQLAlchemy database URL"
    )
    echo: bool = Field(
        default=False,
        description="Echo SQL statements (debugging only)"
    )


class PricingSettings(BaseSettings):
    """Price resolver and price cache configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PRICES_",
        extra="ignore"
    )

    cache_ttl_seconds: float = Field(
        default=300.0,
        ge=0.0,
        description="How long a resolved price stays fresh in the cache"
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Timeout for a single price lookup; timeouts count as missing prices"
    )
    price_file: Optional[str] = Field(
        default=None,
        description="Path to a JSON price table used by the static resolver"
    )

    @field_validator('price_file')
    @classmethod
    def validate_price_file(cls, v: Optional[str]) -> Optional[str]:
        """Warn if the price table doesn't exist (it may be mounted later)."""
        if v and not Path(v).exists():
            import warnings
            warnings.warn(
                f"Price file not found at {v}. "
                "Make sure it exists before running valuations."
            )
        return v


class ReconciliationSettings(BaseSettings):
    """Projection and reconciliation tunables."""

    model_config = SettingsConfigDict(
        env_prefix="RECONCILE_",
        extra="ignore"
    )

    dust_epsilon: Decimal = Field(
        default=Decimal("0.00000001"),
        ge=0,
        description="Holdings with an absolute quantity at or below this are dropped"
    )
    plug_description: str = Field(
        default="Valuation Adjustment",
        min_length=1,
        description="Description given to reconciliation plug entries"
    )
    record_asset_positions: bool = Field(
        default=True,
        description="Write per-symbol asset valuation rows with each snapshot"
    )


class TransferMatchingSettings(BaseSettings):
    """Transfer-matching heuristic tunables."""

    model_config = SettingsConfigDict(
        env_prefix="TRANSFER_",
        extra="ignore"
    )

    window_days: int = Field(
        default=3,
        ge=0,
        le=31,
        description="Symmetric window (days) around the source entry date"
    )
    amount_tolerance: int = Field(
        default=100,
        ge=0,
        description="Allowed absolute difference in minor units"
    )
    min_confidence: int = Field(
        default=2,
        ge=0,
        description="Minimum score for a candidate to be offered"
    )
    candidate_limit: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Maximum number of ranked candidates returned"
    )
    keywords: str = Field(
        default="payment,pmt,transfer,online payment,mobile payment,card services",
        description="Comma-separated transfer-indicative description keywords"
    )

    @property
    def keywords_list(self) -> list[str]:
        """Get keywords as a normalized list."""
        return [kw.strip().lower() for kw in self.keywords.split(",") if kw.strip()]


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Root log level"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily to allow partial configuration

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def pricing(self) -> PricingSettings:
        return PricingSettings()

    @property
    def reconciliation(self) -> ReconciliationSettings:
        return ReconciliationSettings()

    @property
    def transfers(self) -> TransferMatchingSettings:
        return TransferMatchingSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("database", "pricing", "reconciliation", "transfers", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
