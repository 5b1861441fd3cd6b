"""
Data Models Package

This package contains all Pydantic models used in the Portfolio Ledger system.
All data flowing through the system must conform to these schemas.
"""

from portfolio_ledger.models.ledger import (
    Account,
    AccountKind,
    AccountStatus,
    AccountType,
    CategorySplit,
    CorrelationKey,
    EntryStatus,
    ExternalReference,
    LedgerEntry,
    TradeKey,
    TransferKey,
    ValuationKey,
    encode_correlation_key,
    parse_correlation_key,
)
from portfolio_ledger.models.trade import (
    AssetType,
    Holding,
    Projection,
    Trade,
    TradeType,
    TradeValidationIssue,
)
from portfolio_ledger.models.valuation import (
    AccountRunResult,
    AssetValuationSnapshot,
    BackfillResult,
    BatchRunResult,
    PairingReport,
    PricedHolding,
    PriceWarning,
    SnapshotResult,
    ValuationBreakdown,
    ValuationPreview,
    ValuationSnapshot,
)
from portfolio_ledger.models.transfer import (
    TransferCandidate,
    TransferMatch,
    TransferRecord,
)
from portfolio_ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "Account",
    "AccountKind",
    "AccountStatus",
    "AccountType",
    "CategorySplit",
    "CorrelationKey",
    "EntryStatus",
    "ExternalReference",
    "LedgerEntry",
    "TradeKey",
    "TransferKey",
    "ValuationKey",
    "encode_correlation_key",
    "parse_correlation_key",
    # Trade models
    "AssetType",
    "Holding",
    "Projection",
    "Trade",
    "TradeType",
    "TradeValidationIssue",
    # Valuation models
    "AccountRunResult",
    "AssetValuationSnapshot",
    "BackfillResult",
    "BatchRunResult",
    "PairingReport",
    "PricedHolding",
    "PriceWarning",
    "SnapshotResult",
    "ValuationBreakdown",
    "ValuationPreview",
    "ValuationSnapshot",
    # Transfer models
    "TransferCandidate",
    "TransferMatch",
    "TransferRecord",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
