"""
Valuation Snapshot & Ledger Reconciliation Engine

Values an investment account (cash + holdings at current prices) and
reconciles that value into the account's ledger through one balancing
"plug" entry per snapshot.

The algorithm:
1. total_value = cash + sum(quantity * price) over priced holdings
2. balance = ledger balance as of as_of, INCLUDING any prior plug
3. delta = compute_plug(balance, total_value)
4. One unit of work: upsert the snapshot (account_id, as_of) and move
   its plug entry by delta

CRITICAL: Step 2 includes the prior plug. That is what makes a second
run with the same inputs produce delta 0 instead of doubling the
adjustment.

Failure semantics:
- Missing price: that holding is valued at zero, a PriceWarning is
  recorded, the valuation continues
- Price request timeout or PricingError: treated as missing prices for
  that asset type, whatever resolver is plugged in
- Persistence failure: PersistenceError propagates; the caller decides
  (the batch runner records it against the account and moves on)
- Price resolver configuration failure: propagates; the batch aborts
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Mapping, Optional
from uuid import UUID

import structlog

from portfolio_ledger.audit import AuditLogger
from portfolio_ledger.config import get_settings
from portfolio_ledger.models.ledger import Account
from portfolio_ledger.models.trade import PRICED_ASSET_TYPES, AssetType, Projection
from portfolio_ledger.models.valuation import (
    AssetValuationSnapshot,
    PricedHolding,
    PriceWarning,
    SnapshotResult,
    ValuationBreakdown,
    ValuationPreview,
)
from portfolio_ledger.money import compute_plug, market_value
from portfolio_ledger.projection import HoldingsProjector
from portfolio_ledger.services.pricing import (
    PriceResolverConfigurationError,
    PriceResolverInterface,
    PricingError,
)
from portfolio_ledger.services.storage import LedgerStoreInterface


# Keyed by (asset_type, symbol): the same ticker can be an equity and a coin
PriceMap = Mapping[tuple[AssetType, str], Decimal]

logger = structlog.get_logger("portfolio_ledger.valuation")


class ValuationError(Exception):
    """Base exception for valuation errors."""
    pass


class ValuationOrderError(ValuationError):
    """A manual valuation predates the account's latest snapshot."""
    pass


def to_naive_utc(value: datetime) -> datetime:
    """Stored timestamps are naive UTC; convert aware ones to match."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def compute_total_value(projection: Projection, prices: PriceMap) -> ValuationBreakdown:
    """
    Value a projection against a price map.

    Pure: no I/O. Holdings whose (asset_type, symbol) is absent from
    `prices` contribute zero and produce a PriceWarning.
    """
    positions = []
    warnings = []
    holdings_value = 0

    for holding in projection.holdings:
        price = prices.get((holding.asset_type, holding.symbol))
        if price is None:
            warnings.append(PriceWarning(
                symbol=holding.symbol,
                asset_type=holding.asset_type,
                message=f"No price for {holding.symbol}; valued at zero",
            ))
            value = 0
        else:
            value = market_value(holding.quantity, price)

        holdings_value += value
        positions.append(PricedHolding(
            symbol=holding.symbol,
            asset_type=holding.asset_type,
            quantity=holding.quantity,
            price=price,
            market_value=value,
            total_cost=holding.total_cost,
        ))

    return ValuationBreakdown(
        cash=projection.cash,
        holdings_value=holdings_value,
        total_value=projection.cash + holdings_value,
        positions=positions,
        warnings=warnings,
    )


def asset_valuations_for(
    account_id: UUID,
    as_of: datetime,
    breakdown: ValuationBreakdown,
) -> list[AssetValuationSnapshot]:
    """Per-symbol history rows for every priced position."""
    return [
        AssetValuationSnapshot(
            account_id=account_id,
            symbol=position.symbol,
            asset_type=position.asset_type,
            as_of=as_of,
            quantity=position.quantity,
            value=position.market_value,
        )
        for position in breakdown.positions
        if position.price is not None
    ]


class ValuationEngine:
    """
    Previews and commits valuations for investment accounts.

    IMPORTANT BOUNDARIES:
    1. Arithmetic lives in pure functions (compute_total_value, compute_plug)
    2. Writes go through ONE store method (apply_valuation)
    3. Preview and commit use the same arithmetic
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        price_resolver: Optional[PriceResolverInterface] = None,
        audit_logger: Optional[AuditLogger] = None,
        projector: Optional[HoldingsProjector] = None,
    ):
        settings = get_settings().reconciliation
        self._store = store
        self._resolver = price_resolver
        self._audit = audit_logger or AuditLogger()
        self._projector = projector or HoldingsProjector()
        self._plug_description = settings.plug_description
        self._record_asset_positions = settings.record_asset_positions

    async def project_account(
        self,
        account: Account,
        as_of: Optional[datetime] = None,
    ) -> Projection:
        """
        Project an account's trades up to `as_of`.

        Raises:
            InvalidTradeError: If the trade history is malformed
        """
        trades = await self._store.list_trades(account.id)
        if as_of is not None:
            as_of = to_naive_utc(as_of)
            trades = [t for t in trades if t.occurred_at <= as_of]
        return self._projector.project(account.opening_balance, trades)

    async def resolve_prices(self, projection: Projection) -> dict[tuple[AssetType, str], Decimal]:
        """
        Current prices for every priced holding, one request per asset type.

        A request that times out or fails with a PricingError leaves its
        symbols unpriced; compute_total_value turns them into warnings.

        Raises:
            PriceResolverConfigurationError: If no resolver can be used
        """
        by_type: dict[AssetType, list[str]] = {}
        for holding in projection.holdings:
            if holding.asset_type in PRICED_ASSET_TYPES:
                by_type.setdefault(holding.asset_type, []).append(holding.symbol)

        if not by_type:
            return {}
        if self._resolver is None:
            raise PriceResolverConfigurationError("No price resolver configured")

        prices: dict[tuple[AssetType, str], Decimal] = {}
        for asset_type in sorted(by_type, key=lambda a: a.value):
            symbols = sorted(by_type[asset_type])
            try:
                found = await self._resolver.get_current_prices(symbols, asset_type)
            except PriceResolverConfigurationError:
                raise
            except asyncio.TimeoutError:
                logger.warning(
                    "price_request_timeout",
                    asset_type=asset_type.value,
                    symbols=symbols,
                )
                continue
            except PricingError as e:
                logger.warning(
                    "price_request_failed",
                    asset_type=asset_type.value,
                    symbols=symbols,
                    error=str(e),
                )
                continue

            for symbol, price in found.items():
                prices[(asset_type, symbol.upper())] = price
        return prices

    async def preview(
        self,
        account: Account,
        as_of: datetime,
        projection: Projection,
        prices: PriceMap,
        correlation_id: Optional[UUID] = None,
    ) -> ValuationPreview:
        """
        Dry run: steps 1-3, no writes.
        """
        breakdown = compute_total_value(projection, prices)
        previous_balance = await self._store.get_ledger_balance(account.id, as_of)
        delta = compute_plug(previous_balance, breakdown.total_value)

        await self._audit.log_valuation_previewed(
            account_id=account.id,
            total_value=breakdown.total_value,
            delta=delta,
            correlation_id=correlation_id,
        )

        return ValuationPreview(
            account_id=account.id,
            as_of=as_of,
            previous_balance=previous_balance,
            total_value=breakdown.total_value,
            delta=delta,
            breakdown=breakdown,
        )

    async def reconcile(
        self,
        account: Account,
        as_of: datetime,
        projection: Projection,
        prices: PriceMap,
        correlation_id: Optional[UUID] = None,
    ) -> SnapshotResult:
        """
        Value the account and commit the snapshot and plug entry.

        Raises:
            NotFoundError: If the account is gone
            PersistenceError: If the unit of work failed (nothing written)
        """
        breakdown = compute_total_value(projection, prices)
        for warning in breakdown.warnings:
            await self._audit.log_price_missing(
                account_id=account.id,
                symbol=warning.symbol,
                asset_type=warning.asset_type.value,
                correlation_id=correlation_id,
            )

        asset_valuations = (
            asset_valuations_for(account.id, as_of, breakdown)
            if self._record_asset_positions else None
        )

        result = await self._store.apply_valuation(
            account_id=account.id,
            as_of=as_of,
            total_value=breakdown.total_value,
            plug_description=self._plug_description,
            asset_valuations=asset_valuations,
        )

        await self._audit.log_valuation_reconciled(
            snapshot_id=result.snapshot.id,
            account_id=account.id,
            total_value=breakdown.total_value,
            delta=result.delta,
            correlation_id=correlation_id,
        )

        return result.model_copy(update={"breakdown": breakdown})

    async def record_manual_valuation(
        self,
        account: Account,
        as_of: datetime,
        value: int,
        correlation_id: Optional[UUID] = None,
    ) -> SnapshotResult:
        """
        Reconcile to a user-entered total value.

        Raises:
            ValuationOrderError: If as_of is before the latest snapshot
        """
        latest = await self._store.get_latest_valuation(account.id)
        if latest is not None and as_of < latest.as_of:
            raise ValuationOrderError(
                f"Valuation date {as_of.isoformat()} is before the latest "
                f"valuation on {latest.as_of.isoformat()}"
            )

        result = await self._store.apply_valuation(
            account_id=account.id,
            as_of=as_of,
            total_value=value,
            plug_description=self._plug_description,
        )

        await self._audit.log_valuation_reconciled(
            snapshot_id=result.snapshot.id,
            account_id=account.id,
            total_value=value,
            delta=result.delta,
            correlation_id=correlation_id,
        )
        return result

    async def delete_snapshot(
        self,
        snapshot_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """Delete a snapshot together with its plug entry."""
        deleted = await self._store.delete_valuation(snapshot_id)
        if deleted:
            await self._audit.log_valuation_deleted(
                snapshot_id=snapshot_id,
                correlation_id=correlation_id,
            )
        return deleted
