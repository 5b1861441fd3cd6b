"""
Audit Models for Portfolio Ledger

Every significant ledger mutation and every batch run is logged for
audit purposes. This provides:
1. Traceability of every automated write to the ledger
2. Debugging information when a valuation looks wrong
3. A record of degraded runs (missing prices, failed accounts)
4. Ability to reconstruct history

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every automated write path has its own event type.
    """
    # Trades
    TRADE_RECORDED = "trade_recorded"
    TRADE_DELETED = "trade_deleted"
    TRADE_REJECTED = "trade_rejected"

    # Valuation
    VALUATION_PREVIEWED = "valuation_previewed"
    VALUATION_RECONCILED = "valuation_reconciled"
    VALUATION_DELETED = "valuation_deleted"
    PRICE_MISSING = "price_missing"
    ASSET_HISTORY_BACKFILLED = "asset_history_backfilled"

    # Ledger entries
    ENTRY_DELETED = "entry_deleted"

    # Transfers
    TRANSFER_MATCHED = "transfer_matched"
    TRANSFER_RECORDED = "transfer_recorded"

    # Integrity
    PAIRING_CHECKED = "pairing_checked"
    ORPHAN_REPAIRED = "orphan_repaired"

    # Batch runs
    BATCH_STARTED = "batch_started"
    BATCH_COMPLETED = "batch_completed"
    BATCH_ABORTED = "batch_aborted"
    ACCOUNT_FAILED = "account_failed"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'account', 'snapshot', 'trade')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one batch run)"
    )

    # Event details
    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def details_json(self) -> str:
        """Details serialized for a text column."""
        return json.dumps(self.details, default=str) if self.details else ""


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.valuation_reconciled(snapshot_id, ...)
        event = AuditEventBuilder.batch_aborted(run_id, reason, ...)
    """

    @staticmethod
    def trade_recorded(
        trade_id: UUID,
        account_id: UUID,
        trade_type: str,
        symbol: Optional[str],
        amount: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRADE_RECORDED,
            entity_type="trade",
            entity_id=trade_id,
            correlation_id=correlation_id,
            description=f"Trade recorded: {trade_type} {symbol or ''}".strip(),
            details={
                "account_id": str(account_id),
                "trade_type": trade_type,
                "symbol": symbol,
                "amount": amount,
            },
            is_user_action=True,
        )

    @staticmethod
    def trade_deleted(
        trade_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRADE_DELETED,
            entity_type="trade",
            entity_id=trade_id,
            correlation_id=correlation_id,
            description="Trade and its ledger entry deleted",
            is_user_action=True,
        )

    @staticmethod
    def trade_rejected(
        account_id: UUID,
        issues: list[dict],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRADE_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Trade data rejected with {len(issues)} issues",
            details={"issues": issues},
        )

    @staticmethod
    def valuation_previewed(
        account_id: UUID,
        total_value: int,
        delta: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALUATION_PREVIEWED,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Valuation previewed: total {total_value}, delta {delta}",
            details={
                "total_value": total_value,
                "delta": delta,
            },
        )

    @staticmethod
    def valuation_reconciled(
        snapshot_id: UUID,
        account_id: UUID,
        total_value: int,
        delta: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALUATION_RECONCILED,
            entity_type="snapshot",
            entity_id=snapshot_id,
            correlation_id=correlation_id,
            description=f"Valuation reconciled: total {total_value}, plug moved by {delta}",
            details={
                "account_id": str(account_id),
                "total_value": total_value,
                "delta": delta,
            },
        )

    @staticmethod
    def valuation_deleted(
        snapshot_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALUATION_DELETED,
            entity_type="snapshot",
            entity_id=snapshot_id,
            correlation_id=correlation_id,
            description="Valuation snapshot and plug entry deleted",
        )

    @staticmethod
    def price_missing(
        account_id: UUID,
        symbol: str,
        asset_type: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PRICE_MISSING,
            severity=AuditSeverity.WARNING,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"No price for {symbol} ({asset_type}); valued at zero",
            details={
                "symbol": symbol,
                "asset_type": asset_type,
            },
        )

    @staticmethod
    def asset_history_backfilled(
        account_id: UUID,
        positions: int,
        days_ago: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ASSET_HISTORY_BACKFILLED,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Backfilled {positions} asset valuations {days_ago} day(s) back",
            details={
                "positions": positions,
                "days_ago": days_ago,
            },
        )

    @staticmethod
    def entry_deleted(
        entry_id: UUID,
        reference: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ENTRY_DELETED,
            entity_type="entry",
            entity_id=entry_id,
            correlation_id=correlation_id,
            description="Ledger entry deleted",
            details={"reference": reference},
            is_user_action=True,
        )

    @staticmethod
    def transfer_matched(
        entry_a_id: UUID,
        entry_b_id: UUID,
        reference: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSFER_MATCHED,
            entity_type="entry",
            entity_id=entry_a_id,
            correlation_id=correlation_id,
            description="Entries tagged as a transfer pair",
            details={
                "counterpart_id": str(entry_b_id),
                "reference": reference,
            },
        )

    @staticmethod
    def transfer_recorded(
        debit_id: UUID,
        credit_id: UUID,
        amount: int,
        reference: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSFER_RECORDED,
            entity_type="entry",
            entity_id=debit_id,
            correlation_id=correlation_id,
            description=f"Transfer of {amount} recorded",
            details={
                "credit_id": str(credit_id),
                "amount": amount,
                "reference": reference,
            },
            is_user_action=True,
        )

    @staticmethod
    def pairing_checked(
        snapshots_without_entry: int,
        entries_without_snapshot: int,
        duplicate_entries: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        consistent = not (snapshots_without_entry or entries_without_snapshot or duplicate_entries)
        return AuditEvent(
            event_type=AuditEventType.PAIRING_CHECKED,
            severity=AuditSeverity.INFO if consistent else AuditSeverity.WARNING,
            correlation_id=correlation_id,
            description=(
                "Snapshot pairing consistent" if consistent
                else "Snapshot pairing has orphans"
            ),
            details={
                "snapshots_without_entry": snapshots_without_entry,
                "entries_without_snapshot": entries_without_snapshot,
                "duplicate_entries": duplicate_entries,
            },
        )

    @staticmethod
    def orphan_repaired(
        entity_type: str,
        entity_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ORPHAN_REPAIRED,
            severity=AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Orphaned {entity_type} removed",
        )

    @staticmethod
    def batch_started(
        run_id: UUID,
        dry_run: bool,
        user_filter: Optional[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BATCH_STARTED,
            entity_type="batch",
            entity_id=run_id,
            correlation_id=run_id,
            description="Valuation batch started" + (" (dry run)" if dry_run else ""),
            details={
                "dry_run": dry_run,
                "user_filter": user_filter,
            },
        )

    @staticmethod
    def batch_completed(
        run_id: UUID,
        accounts_processed: int,
        accounts_updated: int,
        accounts_failed: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BATCH_COMPLETED,
            severity=AuditSeverity.WARNING if accounts_failed else AuditSeverity.INFO,
            entity_type="batch",
            entity_id=run_id,
            correlation_id=run_id,
            description=(
                f"Valuation batch complete: {accounts_updated}/{accounts_processed} updated"
            ),
            details={
                "accounts_processed": accounts_processed,
                "accounts_updated": accounts_updated,
                "accounts_failed": accounts_failed,
            },
        )

    @staticmethod
    def batch_aborted(
        run_id: UUID,
        reason: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BATCH_ABORTED,
            severity=AuditSeverity.CRITICAL,
            entity_type="batch",
            entity_id=run_id,
            correlation_id=run_id,
            description="Valuation batch aborted",
            error_message=reason,
        )

    @staticmethod
    def account_failed(
        account_id: UUID,
        error_type: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCOUNT_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Account valuation failed: {error_type}",
            error_code=error_type,
            error_message=error_message,
        )
