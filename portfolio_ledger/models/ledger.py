"""
Ledger Models for Portfolio Ledger

Accounts and the single-entry transaction log used everywhere else in
the product. An account's balance as of a date is its opening balance
plus the sum of its entries dated on or before that date.

DESIGN DECISION: Correlation keys ("references") are a typed tagged
union internally. The string forms below are a wire-compatibility
detail that other subsystems parse, so they are reproduced exactly:

    investment_valuation_<snapshotId>
    investment_trade_<tradeId>
    transfer_<epochMillis>_<randomSuffix>

Anything else is kept verbatim as an ExternalReference.
"""

import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)


VALUATION_KEY_PREFIX = "investment_valuation_"
TRADE_KEY_PREFIX = "investment_trade_"
TRANSFER_KEY_PREFIX = "transfer_"

_SUFFIX_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


# =============================================================================
# ENUMS
# =============================================================================

class AccountType(str, Enum):
    """
    Account types.

    The transfer matcher ranks candidates by these.
    """
    CHECKING = "CHECKING"
    SAVINGS = "SAVINGS"
    CREDIT_CARD = "CREDIT_CARD"
    CASH = "CASH"
    INVESTMENT = "INVESTMENT"
    LOAN = "LOAN"
    OTHER = "OTHER"


class AccountKind(str, Enum):
    """Plain ledger account or one linked to a trade history."""
    PLAIN = "PLAIN"
    INVESTMENT = "INVESTMENT"


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class EntryStatus(str, Enum):
    """Ledger entry clearing status."""
    PENDING = "PENDING"
    CLEARED = "CLEARED"
    RECONCILED = "RECONCILED"


# =============================================================================
# CORRELATION KEYS
# =============================================================================

class ValuationKey(BaseModel):
    """Marks the plug entry paired with a valuation snapshot."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["valuation"] = "valuation"
    snapshot_id: UUID

    @property
    def is_automated(self) -> bool:
        return True

    def encode(self) -> str:
        return f"{VALUATION_KEY_PREFIX}{self.snapshot_id}"


class TradeKey(BaseModel):
    """Marks the ledger entry recorded for a trade."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["trade"] = "trade"
    trade_id: UUID

    @property
    def is_automated(self) -> bool:
        return True

    def encode(self) -> str:
        return f"{TRADE_KEY_PREFIX}{self.trade_id}"


class TransferKey(BaseModel):
    """Shared key of the two entries forming a transfer pair."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["transfer"] = "transfer"
    token: str = Field(..., min_length=1)

    @property
    def is_automated(self) -> bool:
        return True

    def encode(self) -> str:
        return f"{TRANSFER_KEY_PREFIX}{self.token}"

    @classmethod
    def generate(cls, now: Optional[datetime] = None) -> "TransferKey":
        """New key: epoch milliseconds plus a 6 character base-36 suffix."""
        if now is None:
            millis = int(time.time() * 1000)
        else:
            # naive datetimes are UTC throughout the ledger
            millis = int(now.replace(tzinfo=now.tzinfo or timezone.utc).timestamp() * 1000)
        suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
        return cls(token=f"{millis}_{suffix}")


class ExternalReference(BaseModel):
    """A user or import supplied reference. Editable, never parsed."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["external"] = "external"
    value: str = Field(..., min_length=1)

    @property
    def is_automated(self) -> bool:
        return False

    def encode(self) -> str:
        return self.value


CorrelationKey = Annotated[
    Union[ValuationKey, TradeKey, TransferKey, ExternalReference],
    Field(discriminator="kind"),
]


def parse_correlation_key(raw: Optional[str]) -> Optional[CorrelationKey]:
    """
    Parse a persisted reference string into its typed form.

    Malformed ids under a known prefix are kept as ExternalReference
    so legacy rows never fail to load.
    """
    if raw is None or not raw.strip():
        return None

    if raw.startswith(VALUATION_KEY_PREFIX):
        try:
            return ValuationKey(snapshot_id=UUID(raw[len(VALUATION_KEY_PREFIX):]))
        except ValueError:
            return ExternalReference(value=raw)

    if raw.startswith(TRADE_KEY_PREFIX):
        try:
            return TradeKey(trade_id=UUID(raw[len(TRADE_KEY_PREFIX):]))
        except ValueError:
            return ExternalReference(value=raw)

    if raw.startswith(TRANSFER_KEY_PREFIX) and len(raw) > len(TRANSFER_KEY_PREFIX):
        return TransferKey(token=raw[len(TRANSFER_KEY_PREFIX):])

    return ExternalReference(value=raw)


def encode_correlation_key(key: Optional[CorrelationKey]) -> Optional[str]:
    return key.encode() if key is not None else None


# =============================================================================
# ACCOUNTS AND ENTRIES
# =============================================================================

class Account(BaseModel):
    """
    A financial account owned by a user.

    Investment-linked accounts (kind == INVESTMENT) also own a trade
    history and valuation snapshots.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique account ID"
    )
    user_id: str = Field(
        ...,
        min_length=1,
        description="Owning user"
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Display name"
    )
    currency: str = Field(
        default="USD",
        pattern="^[A-Z]{3}$",
        description="ISO 4217 currency code"
    )
    opening_balance: int = Field(
        default=0,
        strict=True,
        description="Opening balance in minor units"
    )
    status: AccountStatus = AccountStatus.ACTIVE
    account_type: AccountType = AccountType.CHECKING
    kind: AccountKind = AccountKind.PLAIN
    created_at: datetime = Field(
        default_factory=datetime.utcnow
    )

    @field_validator('currency', mode='before')
    @classmethod
    def normalize_currency(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @property
    def is_investment(self) -> bool:
        return self.kind == AccountKind.INVESTMENT


class CategorySplit(BaseModel):
    """Assignment of (part of) an entry's amount to a category."""

    category_id: str = Field(..., min_length=1)
    amount: int = Field(..., strict=True)


class LedgerEntry(BaseModel):
    """
    One row of an account's single-entry ledger.

    CRITICAL: Once an automated process (reconciliation, trade recording,
    transfer matching) has set the correlation key, it is never changed
    by an edit. The store enforces this.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique entry ID"
    )
    account_id: UUID
    date: datetime = Field(
        ...,
        description="Effective date of the entry"
    )
    amount: int = Field(
        ...,
        strict=True,
        description="Signed amount in minor units"
    )
    description: str = Field(
        default="",
        max_length=500
    )
    memo: Optional[str] = Field(
        default=None,
        max_length=1000
    )
    status: EntryStatus = EntryStatus.CLEARED
    pending: bool = False
    correlation_key: Optional[CorrelationKey] = None
    import_batch: Optional[str] = Field(
        default=None,
        max_length=100,
        description="Tag of the import run that created this entry"
    )
    category_splits: list[CategorySplit] = Field(default_factory=list)
    created_at: datetime = Field(
        default_factory=datetime.utcnow
    )

    @property
    def reference(self) -> Optional[str]:
        """Wire form of the correlation key."""
        return encode_correlation_key(self.correlation_key)

    @property
    def has_automated_key(self) -> bool:
        return self.correlation_key is not None and self.correlation_key.is_automated

    @property
    def is_transfer(self) -> bool:
        return isinstance(self.correlation_key, TransferKey)
