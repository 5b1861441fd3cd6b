"""Holdings projection package."""

from portfolio_ledger.projection.projector import (
    HoldingsProjector,
    InvalidTradeError,
    portfolio_cost_basis,
    project,
    realized_gain_for_sale,
    unrealized_gain,
    validate_trade,
    validate_trades,
)

__all__ = [
    "HoldingsProjector",
    "InvalidTradeError",
    "portfolio_cost_basis",
    "project",
    "realized_gain_for_sale",
    "unrealized_gain",
    "validate_trade",
    "validate_trades",
]
