"""Valuation and reconciliation package."""

from portfolio_ledger.valuation.engine import (
    ValuationEngine,
    ValuationError,
    ValuationOrderError,
    asset_valuations_for,
    compute_total_value,
    to_naive_utc,
)
from portfolio_ledger.money import compute_plug

__all__ = [
    "ValuationEngine",
    "ValuationError",
    "ValuationOrderError",
    "asset_valuations_for",
    "compute_plug",
    "compute_total_value",
    "to_naive_utc",
]
