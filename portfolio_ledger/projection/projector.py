"""
Holdings & Cost-Basis Projector

Turns an account's trade history into cash plus open positions using
weighted-average cost.

DESIGN DECISION: The projector is a pure fold. No I/O, no clock, no
settings lookups inside `project`. Given the same opening balance and
the same trades (in any input order) it returns the same Projection.

Validation runs BEFORE the fold:
- Malformed trades are reported, never coerced to zero
- One bad trade rejects the whole history, because every later
  average cost would silently be wrong

Sign conventions (minor units):
- DEPOSIT / DIVIDEND / INTEREST / WITHDRAW / FEE / ADJUSTMENT: cash += amount
  (WITHDRAW and FEE amounts are already negative)
- BUY: cash -= amount + fees, cost += amount + fees
- SELL: cash += amount - fees, cost -= average_cost * quantity_sold

Oversells are applied as-is: a position may go negative and is still
reported, so a broken import shows up instead of disappearing.
"""

from decimal import Decimal
from typing import Iterable, Optional

from portfolio_ledger.config import get_settings
from portfolio_ledger.models.trade import (
    AssetType,
    Holding,
    Projection,
    Trade,
    TradeType,
    TradeValidationIssue,
)
from portfolio_ledger.money import market_value, round_minor_units


DEFAULT_DUST_EPSILON = Decimal("0.00000001")


class InvalidTradeError(ValueError):
    """Trade data can't enter the fold."""

    def __init__(self, issues: list[TradeValidationIssue]):
        self.issues = issues
        summary = "; ".join(f"{i.trade_id} {i.field}: {i.message}" for i in issues[:5])
        more = f" (+{len(issues) - 5} more)" if len(issues) > 5 else ""
        super().__init__(f"{len(issues)} invalid trade(s): {summary}{more}")


def _is_integer_amount(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_finite_decimal(value) -> bool:
    return isinstance(value, Decimal) and value.is_finite()


def validate_trade(trade: Trade) -> list[TradeValidationIssue]:
    """
    Check one trade for data the fold can't use.

    Returns: list of issues (empty when the trade is usable)
    """
    issues = []

    def issue(field: str, message: str) -> None:
        issues.append(TradeValidationIssue(trade_id=trade.id, field=field, message=message))

    if not _is_integer_amount(trade.amount):
        issue("amount", f"Amount must be an integer number of minor units, got {trade.amount!r}")

    if trade.fees is not None:
        if not _is_integer_amount(trade.fees):
            issue("fees", f"Fees must be an integer number of minor units, got {trade.fees!r}")
        elif trade.fees < 0:
            issue("fees", "Fees must not be negative")

    if trade.quantity is not None and not _is_finite_decimal(trade.quantity):
        issue("quantity", f"Quantity must be a finite number, got {trade.quantity!r}")

    if trade.price_per_unit is not None and not _is_finite_decimal(trade.price_per_unit):
        issue("price_per_unit", f"Price must be a finite number, got {trade.price_per_unit!r}")

    if trade.is_position_trade:
        if not trade.symbol:
            issue("symbol", f"{trade.type.value} requires a symbol")
        if trade.asset_type is None:
            issue("asset_type", f"{trade.type.value} requires an asset type")
        elif trade.asset_type == AssetType.CASH:
            issue("asset_type", f"{trade.type.value} can't trade the CASH asset type")
        if trade.quantity is None:
            issue("quantity", f"{trade.type.value} requires a quantity")
        elif _is_finite_decimal(trade.quantity) and trade.quantity <= 0:
            issue("quantity", f"{trade.type.value} quantity must be positive")

    return issues


def validate_trades(trades: Iterable[Trade]) -> list[TradeValidationIssue]:
    """Validate every trade; returns all issues found."""
    issues = []
    for trade in trades:
        issues.extend(validate_trade(trade))
    return issues


def _fold_order(trade: Trade):
    return (trade.occurred_at, trade.created_at, str(trade.id))


class _Position:
    __slots__ = ("symbol", "asset_type", "quantity", "cost")

    def __init__(self, symbol: str, asset_type: AssetType):
        self.symbol = symbol
        self.asset_type = asset_type
        self.quantity = Decimal(0)
        self.cost = Decimal(0)


def project(
    opening_balance: int,
    trades: Iterable[Trade],
    dust_epsilon: Decimal = DEFAULT_DUST_EPSILON,
) -> Projection:
    """
    Fold trades into cash and holdings.

    Args:
        opening_balance: Cash before the first trade (minor units)
        trades: The account's trades, in any order
        dust_epsilon: Positions with |quantity| at or below this are dropped

    Raises:
        InvalidTradeError: If any trade fails validation
    """
    trades = sorted(trades, key=_fold_order)

    issues = validate_trades(trades)
    if issues:
        raise InvalidTradeError(issues)

    cash = opening_balance
    positions: dict[tuple[str, AssetType], _Position] = {}

    for trade in trades:
        if not trade.is_position_trade:
            cash += trade.amount
            continue

        key = (trade.symbol, trade.asset_type)
        position = positions.get(key)
        if position is None:
            position = positions[key] = _Position(trade.symbol, trade.asset_type)

        fees = trade.fees_or_zero
        if trade.type == TradeType.BUY:
            cash -= trade.amount + fees
            position.quantity += trade.quantity
            position.cost += trade.amount + fees
        else:
            held = position.quantity
            if held > 0:
                position.cost -= position.cost / held * trade.quantity
            else:
                position.cost = Decimal(0)
            cash += trade.amount - fees
            position.quantity -= trade.quantity

    holdings = []
    for position in sorted(positions.values(), key=lambda p: (p.symbol, p.asset_type.value)):
        if abs(position.quantity) <= dust_epsilon:
            continue
        holdings.append(Holding(
            symbol=position.symbol,
            asset_type=position.asset_type,
            quantity=position.quantity,
            total_cost=round_minor_units(position.cost),
            average_cost=position.cost / position.quantity if position.quantity > 0 else None,
        ))

    return Projection(cash=cash, holdings=holdings)


def realized_gain_for_sale(
    trades: Iterable[Trade],
    sale: Trade,
) -> int:
    """
    Realized gain of one SELL: net proceeds minus the cost it removed.

    Derived on demand from the trades that precede the sale; never stored.

    Raises:
        ValueError: If `sale` isn't a SELL
        InvalidTradeError: If the history is invalid
    """
    if sale.type != TradeType.SELL:
        raise ValueError(f"Trade {sale.id} is a {sale.type.value}, not a SELL")

    sale_order = _fold_order(sale)
    before = [
        t for t in trades
        if t.id != sale.id and _fold_order(t) < sale_order
        and t.symbol == sale.symbol and t.asset_type == sale.asset_type
    ]
    # dust_epsilon=0 keeps tiny residual positions so their cost is counted
    prior = project(0, before, dust_epsilon=Decimal(0)).holding(sale.symbol)

    removed = Decimal(0)
    if prior is not None and prior.quantity > 0 and prior.average_cost is not None:
        removed = prior.average_cost * sale.quantity
    return sale.amount - sale.fees_or_zero - round_minor_units(removed)


def unrealized_gain(holding: Holding, price: Decimal) -> int:
    """Market value at `price` minus remaining cost basis."""
    return market_value(holding.quantity, price) - holding.total_cost


def portfolio_cost_basis(projection: Projection) -> int:
    return projection.cost_basis


class HoldingsProjector:
    """
    Settings-aware front for `project`.

    Reads the dust epsilon once at construction so callers don't have
    to thread it through.
    """

    def __init__(self, dust_epsilon: Optional[Decimal] = None):
        self._dust_epsilon = (
            dust_epsilon if dust_epsilon is not None
            else get_settings().reconciliation.dust_epsilon
        )

    def validate(self, trades: Iterable[Trade]) -> list[TradeValidationIssue]:
        return validate_trades(trades)

    def project(self, opening_balance: int, trades: Iterable[Trade]) -> Projection:
        return project(opening_balance, trades, dust_epsilon=self._dust_epsilon)
