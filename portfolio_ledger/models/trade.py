"""
Trade Models for Portfolio Ledger

A Trade ("investment transaction") is one immutable row of an
investment-linked account's history. Holdings are never stored as
authoritative data; they are projected from trades on demand.

DESIGN DECISION: Models are lenient about cross-field rules (a BUY
without a symbol can still be loaded from history) so that import and
storage never silently drop rows. The projector's validation step is
where malformed trades are rejected, loudly, before any arithmetic.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


class TradeType(str, Enum):
    """Kinds of investment transactions."""
    BUY = "BUY"
    SELL = "SELL"
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    DIVIDEND = "DIVIDEND"
    INTEREST = "INTEREST"
    FEE = "FEE"
    ADJUSTMENT = "ADJUSTMENT"


# Pure cash movements: the signed amount is added to cash as-is
CASH_MOVEMENT_TYPES = frozenset({
    TradeType.DEPOSIT,
    TradeType.WITHDRAW,
    TradeType.DIVIDEND,
    TradeType.INTEREST,
    TradeType.FEE,
    TradeType.ADJUSTMENT,
})

POSITION_TRADE_TYPES = frozenset({TradeType.BUY, TradeType.SELL})


class AssetType(str, Enum):
    """What a trade's symbol refers to."""
    CRYPTO = "CRYPTO"
    EQUITY = "EQUITY"
    CASH = "CASH"


# Asset types that can be held as a position and priced
PRICED_ASSET_TYPES = frozenset({AssetType.CRYPTO, AssetType.EQUITY})


class Trade(BaseModel):
    """
    A single investment transaction.

    Sign conventions (minor units):
    - BUY: amount is the positive cost before fees
    - SELL: amount is the positive proceeds before fees
    - DEPOSIT / DIVIDEND / INTEREST: positive
    - WITHDRAW / FEE: negative (the amount carries its own sign)
    - ADJUSTMENT: either sign
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique trade ID"
    )
    account_id: UUID = Field(
        ...,
        description="Investment-linked account this trade belongs to"
    )
    occurred_at: datetime = Field(
        ...,
        description="When the trade happened; defines fold order"
    )
    type: TradeType
    asset_type: Optional[AssetType] = None
    symbol: Optional[str] = Field(
        default=None,
        max_length=32,
        description="Ticker or coin symbol, upper-cased"
    )
    quantity: Optional[Decimal] = Field(
        default=None,
        description="Units bought or sold"
    )
    price_per_unit: Optional[Decimal] = Field(
        default=None,
        description="Minor units per unit; derived from amount/quantity when absent"
    )
    amount: int = Field(
        ...,
        strict=True,
        description="Signed amount in minor units"
    )
    fees: Optional[int] = Field(
        default=None,
        ge=0,
        strict=True,
        description="Fees in minor units"
    )
    notes: Optional[str] = Field(
        default=None,
        max_length=1000
    )
    created_at: datetime = Field(
        default_factory=datetime.utcnow
    )

    @field_validator('symbol')
    @classmethod
    def normalize_symbol(cls, v: Optional[str]) -> Optional[str]:
        """Symbols are stored upper-case; blank means no symbol."""
        if v is None:
            return None
        v = v.strip().upper()
        return v or None

    @model_validator(mode='after')
    def derive_price_per_unit(self) -> 'Trade':
        """Fill in the unit price for position trades that omit it."""
        if (
            self.price_per_unit is None
            and self.type in POSITION_TRADE_TYPES
            and self.quantity is not None
            and self.quantity.is_finite()
            and self.quantity != 0
        ):
            self.price_per_unit = Decimal(self.amount) / self.quantity
        return self

    @property
    def is_position_trade(self) -> bool:
        return self.type in POSITION_TRADE_TYPES

    @property
    def fees_or_zero(self) -> int:
        return self.fees or 0

    @property
    def description(self) -> str:
        """Ledger description, e.g. "Buy NVDA" or "Deposit"."""
        base = self.type.value[:1] + self.type.value[1:].lower()
        return f"{base} {self.symbol}" if self.symbol else base


class TradeValidationIssue(BaseModel):
    """One reason a trade can't enter the fold."""

    trade_id: UUID
    field: str
    message: str


class Holding(BaseModel):
    """
    A projected position in one symbol.

    total_cost is rounded to minor units; average_cost is exact.
    """

    symbol: str
    asset_type: AssetType
    quantity: Decimal
    total_cost: int = Field(
        ...,
        description="Remaining cost basis in minor units"
    )
    average_cost: Optional[Decimal] = Field(
        default=None,
        description="Cost per unit in minor units; None when quantity isn't positive"
    )


class Projection(BaseModel):
    """Output of the holdings projector: cash plus open positions."""

    cash: int = Field(
        ...,
        description="Cash position in minor units"
    )
    holdings: list[Holding] = Field(default_factory=list)

    def holding(self, symbol: str) -> Optional[Holding]:
        symbol = symbol.upper()
        for holding in self.holdings:
            if holding.symbol == symbol:
                return holding
        return None

    @property
    def cost_basis(self) -> int:
        """Total remaining cost basis of all holdings."""
        return sum(h.total_cost for h in self.holdings)
