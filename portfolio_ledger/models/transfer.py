"""Transfer matching models."""

from typing import Optional

from pydantic import BaseModel, Field

from portfolio_ledger.models.ledger import Account, LedgerEntry, TransferKey
from portfolio_ledger.models.trade import Trade


class TransferCandidate(BaseModel):
    """A possible counterpart for a ledger entry, with its score."""

    entry: LedgerEntry
    account: Account
    confidence: int = Field(..., ge=0)
    day_distance: int = Field(
        ...,
        ge=0,
        description="Whole days between the candidate and the source entry"
    )


class TransferMatch(BaseModel):
    """Two entries tagged as the two sides of one transfer."""

    key: TransferKey
    entry_a: LedgerEntry
    entry_b: LedgerEntry


class TransferRecord(BaseModel):
    """A transfer recorded from scratch: debit, credit and any trades."""

    key: TransferKey
    debit: LedgerEntry
    credit: LedgerEntry
    withdraw_trade: Optional[Trade] = None
    deposit_trade: Optional[Trade] = None
