"""
Audit Logger

DESIGN DECISION: Every automated write to the ledger is logged.
This provides:
1. Complete traceability of plug entries, trade entries and transfer tags
2. Debugging capability when a valuation looks wrong
3. A history of degraded batch runs

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash a batch if logging fails)
- Supports correlation IDs to trace related events
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

import structlog

from portfolio_ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditSeverity,
)
from portfolio_ledger.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(log_level: str = "INFO") -> None:
    """Route structlog output through the stdlib root logger at `log_level`."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, log_level, logging.INFO))


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. The audit table (for persistence)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("portfolio_ledger.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        # Always log locally
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        # Persist to storage if available
        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_trade_recorded(
        self,
        trade_id: UUID,
        account_id: UUID,
        trade_type: str,
        symbol: Optional[str],
        amount: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a trade and its ledger entry being written."""
        event = AuditEventBuilder.trade_recorded(
            trade_id=trade_id,
            account_id=account_id,
            trade_type=trade_type,
            symbol=symbol,
            amount=amount,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_trade_deleted(
        self,
        trade_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.trade_deleted(
            trade_id=trade_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_trade_rejected(
        self,
        account_id: UUID,
        issues: list[dict],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log malformed trade data found during projection."""
        event = AuditEventBuilder.trade_rejected(
            account_id=account_id,
            issues=issues,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_valuation_previewed(
        self,
        account_id: UUID,
        total_value: int,
        delta: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.valuation_previewed(
            account_id=account_id,
            total_value=total_value,
            delta=delta,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_valuation_reconciled(
        self,
        snapshot_id: UUID,
        account_id: UUID,
        total_value: int,
        delta: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a committed snapshot and plug entry."""
        event = AuditEventBuilder.valuation_reconciled(
            snapshot_id=snapshot_id,
            account_id=account_id,
            total_value=total_value,
            delta=delta,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_valuation_deleted(
        self,
        snapshot_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.valuation_deleted(
            snapshot_id=snapshot_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_price_missing(
        self,
        account_id: UUID,
        symbol: str,
        asset_type: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.price_missing(
            account_id=account_id,
            symbol=symbol,
            asset_type=asset_type,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_asset_history_backfilled(
        self,
        account_id: UUID,
        positions: int,
        days_ago: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.asset_history_backfilled(
            account_id=account_id,
            positions=positions,
            days_ago=days_ago,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_entry_deleted(
        self,
        entry_id: UUID,
        reference: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.entry_deleted(
            entry_id=entry_id,
            reference=reference,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_transfer_matched(
        self,
        entry_a_id: UUID,
        entry_b_id: UUID,
        reference: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log two entries being tagged as one transfer."""
        event = AuditEventBuilder.transfer_matched(
            entry_a_id=entry_a_id,
            entry_b_id=entry_b_id,
            reference=reference,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_transfer_recorded(
        self,
        debit_id: UUID,
        credit_id: UUID,
        amount: int,
        reference: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.transfer_recorded(
            debit_id=debit_id,
            credit_id=credit_id,
            amount=amount,
            reference=reference,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_pairing_checked(
        self,
        snapshots_without_entry: int,
        entries_without_snapshot: int,
        duplicate_entries: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.pairing_checked(
            snapshots_without_entry=snapshots_without_entry,
            entries_without_snapshot=entries_without_snapshot,
            duplicate_entries=duplicate_entries,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_orphan_repaired(
        self,
        entity_type: str,
        entity_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.orphan_repaired(
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_batch_started(
        self,
        run_id: UUID,
        dry_run: bool,
        user_filter: Optional[str],
    ) -> None:
        event = AuditEventBuilder.batch_started(
            run_id=run_id,
            dry_run=dry_run,
            user_filter=user_filter,
        )
        await self.log(event)

    async def log_batch_completed(
        self,
        run_id: UUID,
        accounts_processed: int,
        accounts_updated: int,
        accounts_failed: int,
    ) -> None:
        event = AuditEventBuilder.batch_completed(
            run_id=run_id,
            accounts_processed=accounts_processed,
            accounts_updated=accounts_updated,
            accounts_failed=accounts_failed,
        )
        await self.log(event)

    async def log_batch_aborted(
        self,
        run_id: UUID,
        reason: str,
    ) -> None:
        """Log a run stopped by a configuration failure."""
        event = AuditEventBuilder.batch_aborted(
            run_id=run_id,
            reason=reason,
        )
        await self.log(event)

    async def log_account_failed(
        self,
        account_id: UUID,
        error_type: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.account_failed(
            account_id=account_id,
            error_type=error_type,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a batch run or user action.
    Pass it through all subsequent operations.
    """
    return uuid4()
