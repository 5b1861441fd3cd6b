"""Transfer matching package."""

from portfolio_ledger.transfers.matcher import (
    ACCOUNT_TYPE_PREFERENCE,
    TransferMatcher,
    TransferMatchError,
    account_type_preference,
    day_distance,
    has_transfer_keyword,
    is_eligible_pair,
    score_candidate,
)

__all__ = [
    "ACCOUNT_TYPE_PREFERENCE",
    "TransferMatcher",
    "TransferMatchError",
    "account_type_preference",
    "day_distance",
    "has_transfer_keyword",
    "is_eligible_pair",
    "score_candidate",
]
