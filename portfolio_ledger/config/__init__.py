"""Configuration package."""

from portfolio_ledger.config.settings import (
    AppSettings,
    DatabaseSettings,
    PricingSettings,
    ReconciliationSettings,
    Settings,
    TransferMatchingSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "DatabaseSettings",
    "PricingSettings",
    "ReconciliationSettings",
    "Settings",
    "TransferMatchingSettings",
    "get_settings",
    "validate_all_settings",
]
