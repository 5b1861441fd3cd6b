"""
Valuation Models for Portfolio Ledger

Snapshots, previews and batch results produced by the reconciliation
engine and the batch runner.

CRITICAL: A ValuationSnapshot never exists without its plug entry
(and vice versa). These models only describe the two facets; the
store writes them together.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from portfolio_ledger.models.ledger import LedgerEntry, ValuationKey
from portfolio_ledger.models.trade import AssetType


# =============================================================================
# PERSISTED SHAPES
# =============================================================================

class ValuationSnapshot(BaseModel):
    """Mark-to-market total value of an investment account at a point in time."""

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique snapshot ID"
    )
    account_id: UUID
    as_of: datetime
    value: int = Field(
        ...,
        strict=True,
        description="Total value in minor units"
    )
    created_at: datetime = Field(
        default_factory=datetime.utcnow
    )

    @property
    def correlation_key(self) -> ValuationKey:
        return ValuationKey(snapshot_id=self.id)


class AssetValuationSnapshot(BaseModel):
    """
    Per-symbol value history used for charts and audits.

    Derived data: always rebuildable from trades plus a price source.
    """

    id: UUID = Field(default_factory=uuid4)
    asset_position_id: Optional[UUID] = Field(
        default=None,
        description="Resolved by the store from (account_id, symbol, asset_type)"
    )
    account_id: UUID
    symbol: str
    asset_type: AssetType
    as_of: datetime
    quantity: Decimal
    value: int = Field(..., description="Market value in minor units")


# =============================================================================
# COMPUTED VALUES
# =============================================================================

class PriceWarning(BaseModel):
    """A symbol valued at zero because no price was available."""

    symbol: str
    asset_type: AssetType
    message: str


class PricedHolding(BaseModel):
    """A projected holding with its current market price applied."""

    symbol: str
    asset_type: AssetType
    quantity: Decimal
    price: Optional[Decimal] = Field(
        default=None,
        description="Minor units per unit; None when the price was missing"
    )
    market_value: int
    total_cost: int

    @property
    def unrealized_gain(self) -> int:
        return self.market_value - self.total_cost


class ValuationBreakdown(BaseModel):
    """Result of valuing a projection against a price map."""

    cash: int
    holdings_value: int
    total_value: int
    positions: list[PricedHolding] = Field(default_factory=list)
    warnings: list[PriceWarning] = Field(default_factory=list)

    @property
    def cost_basis(self) -> int:
        return sum(p.total_cost for p in self.positions)

    @property
    def unrealized_gain(self) -> int:
        """Holdings-only unrealized gain (cash isn't cost)."""
        return self.holdings_value - self.cost_basis


class ValuationPreview(BaseModel):
    """
    What a reconciliation would do, without doing it.

    Produced by the dry-run path; never written anywhere.
    """

    account_id: UUID
    as_of: datetime
    previous_balance: int = Field(
        ...,
        description="Ledger balance as of as_of, including any existing plug"
    )
    total_value: int
    delta: int = Field(
        ...,
        description="Amount the plug entry would move by"
    )
    breakdown: ValuationBreakdown


class SnapshotResult(BaseModel):
    """Outcome of a committed reconciliation."""

    snapshot: ValuationSnapshot
    plug_entry: LedgerEntry
    previous_balance: int
    delta: int
    breakdown: Optional[ValuationBreakdown] = None

    @property
    def new_balance(self) -> int:
        return self.previous_balance + self.delta


class PairingReport(BaseModel):
    """Snapshot/plug-entry pairing audit."""

    checked_at: datetime = Field(default_factory=datetime.utcnow)
    snapshots_without_entry: list[UUID] = Field(
        default_factory=list,
        description="Snapshot IDs with no plug entry"
    )
    entries_without_snapshot: list[UUID] = Field(
        default_factory=list,
        description="Plug entry IDs whose snapshot is gone"
    )
    duplicate_entries: list[UUID] = Field(
        default_factory=list,
        description="Extra plug entries beyond the first for one snapshot"
    )

    @property
    def is_consistent(self) -> bool:
        return not (
            self.snapshots_without_entry
            or self.entries_without_snapshot
            or self.duplicate_entries
        )


# =============================================================================
# BATCH RESULTS
# =============================================================================

class AccountRunResult(BaseModel):
    """Per-account outcome of a valuation batch."""

    account_id: UUID
    account_name: str
    user_id: str
    previous_value: int = 0
    new_value: Optional[int] = None
    change: int = 0
    change_percent: float = 0.0
    plug_amount: Optional[int] = Field(
        default=None,
        description="Delta applied (or that would be applied) to the plug entry"
    )
    updated: bool = False
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors


class BatchRunResult(BaseModel):
    """Overall outcome of a valuation batch."""

    run_id: UUID = Field(default_factory=uuid4)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    as_of: datetime
    dry_run: bool = False
    user_filter: Optional[str] = None
    accounts: list[AccountRunResult] = Field(default_factory=list)
    accounts_processed: int = 0
    accounts_updated: int = 0
    aborted: bool = False
    fatal_error: Optional[str] = None

    @property
    def accounts_with_errors(self) -> list[AccountRunResult]:
        return [a for a in self.accounts if a.errors]


class BackfillResult(BaseModel):
    """Outcome of recording per-symbol history for a past date."""

    days_ago: int = Field(..., ge=0)
    as_of: datetime
    accounts_processed: int = 0
    positions_recorded: int = 0
    missing_prices: list[str] = Field(
        default_factory=list,
        description="Symbols with no historical price for the date"
    )
    errors: list[str] = Field(default_factory=list)
    aborted: bool = False
    fatal_error: Optional[str] = None
