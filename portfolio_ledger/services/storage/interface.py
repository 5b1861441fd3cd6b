"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Run the same engine against SQLite, PostgreSQL or an in-memory fake
2. Inject failing stores in tests to exercise per-account error paths
3. Keep business logic decoupled from storage implementation

CRITICAL: Paired writes (snapshot + plug entry, trade + trade entry,
both sides of a transfer) are single interface methods. Callers never
get a chance to write one half without the other.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from uuid import UUID

from portfolio_ledger.models.audit import AuditEvent
from portfolio_ledger.models.ledger import (
    Account,
    AccountKind,
    LedgerEntry,
    TransferKey,
)
from portfolio_ledger.models.trade import Trade
from portfolio_ledger.models.valuation import (
    AssetValuationSnapshot,
    PairingReport,
    SnapshotResult,
    ValuationSnapshot,
)


class LedgerStoreInterface(ABC):
    """
    Abstract interface for the ledger store.

    Any storage implementation must implement these methods.
    """

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    @abstractmethod
    async def create_account(self, account: Account) -> Account:
        """
        Persist a new account.

        Raises:
            DuplicateError: If an account with this ID exists
        """
        pass

    @abstractmethod
    async def get_account(self, account_id: UUID) -> Optional[Account]:
        pass

    @abstractmethod
    async def list_accounts(
        self,
        user_id: Optional[str] = None,
        kind: Optional[AccountKind] = None,
        active_only: bool = True,
    ) -> list[Account]:
        """
        List accounts ordered by user then name.

        Args:
            user_id: Only this user's accounts
            kind: Only accounts of this kind
            active_only: Skip closed accounts
        """
        pass

    # -------------------------------------------------------------------------
    # Ledger entries
    # -------------------------------------------------------------------------

    @abstractmethod
    async def add_entry(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Append a plain (non-automated) entry.

        Raises:
            ImmutableCorrelationKeyError: If the entry carries an
                automated key; those are written by the paired methods
            NotFoundError: If the account doesn't exist
        """
        pass

    @abstractmethod
    async def get_entry(self, entry_id: UUID) -> Optional[LedgerEntry]:
        pass

    @abstractmethod
    async def update_entry(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Replace the editable fields of an entry.

        Raises:
            NotFoundError: If the entry doesn't exist
            ImmutableCorrelationKeyError: If an automated key would change
        """
        pass

    @abstractmethod
    async def delete_entry(self, entry_id: UUID) -> bool:
        """
        Delete an entry, cascading to its snapshot or trade.

        Returns:
            True if something was deleted
        """
        pass

    @abstractmethod
    async def list_entries(
        self,
        account_id: UUID,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> list[LedgerEntry]:
        """List an account's entries in (date, created_at) order."""
        pass

    @abstractmethod
    async def get_ledger_balance(
        self,
        account_id: UUID,
        as_of: Optional[datetime] = None,
    ) -> int:
        """
        Opening balance plus all entries dated on or before `as_of`.

        Raises:
            NotFoundError: If the account doesn't exist
        """
        pass

    # -------------------------------------------------------------------------
    # Trades
    # -------------------------------------------------------------------------

    @abstractmethod
    async def record_trade(self, trade: Trade) -> tuple[Trade, LedgerEntry]:
        """
        Write a trade and its `investment_trade_<id>` ledger entry together.

        Raises:
            NotFoundError: If the account doesn't exist
        """
        pass

    @abstractmethod
    async def delete_trade(self, trade_id: UUID) -> bool:
        """Delete a trade and its ledger entry together."""
        pass

    @abstractmethod
    async def list_trades(self, account_id: UUID) -> list[Trade]:
        pass

    # -------------------------------------------------------------------------
    # Valuations
    # -------------------------------------------------------------------------

    @abstractmethod
    async def apply_valuation(
        self,
        account_id: UUID,
        as_of: datetime,
        total_value: int,
        plug_description: str,
        asset_valuations: Optional[list[AssetValuationSnapshot]] = None,
    ) -> SnapshotResult:
        """
        Upsert a snapshot and its plug entry in one unit of work.

        The ledger balance is read inside the same transaction and the
        plug moves by `compute_plug(balance, total_value)`.

        Raises:
            NotFoundError: If the account doesn't exist
            PersistenceError: If the write failed (nothing was written)
        """
        pass

    @abstractmethod
    async def get_valuation(self, snapshot_id: UUID) -> Optional[ValuationSnapshot]:
        pass

    @abstractmethod
    async def get_latest_valuation(
        self,
        account_id: UUID,
        before: Optional[datetime] = None,
    ) -> Optional[ValuationSnapshot]:
        """Most recent snapshot, optionally strictly before `before`."""
        pass

    @abstractmethod
    async def list_valuations(self, account_id: UUID) -> list[ValuationSnapshot]:
        pass

    @abstractmethod
    async def delete_valuation(self, snapshot_id: UUID) -> bool:
        """Delete a snapshot and its plug entry together."""
        pass

    @abstractmethod
    async def record_asset_valuations(
        self,
        asset_valuations: list[AssetValuationSnapshot],
    ) -> int:
        """Upsert per-symbol history rows keyed by (position, as_of)."""
        pass

    @abstractmethod
    async def list_asset_valuations(
        self,
        account_id: UUID,
        symbol: Optional[str] = None,
    ) -> list[AssetValuationSnapshot]:
        pass

    # -------------------------------------------------------------------------
    # Integrity
    # -------------------------------------------------------------------------

    @abstractmethod
    async def find_pairing_orphans(self) -> PairingReport:
        """Report snapshots and plug entries that are missing their other half."""
        pass

    @abstractmethod
    async def repair_pairing_orphans(self) -> PairingReport:
        """
        Delete orphaned rows and duplicate plug entries.

        Returns the report of what was removed.
        """
        pass

    # -------------------------------------------------------------------------
    # Transfers
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_transfer_candidates(
        self,
        exclude_account_id: UUID,
        currency: str,
        date_from: datetime,
        date_to: datetime,
    ) -> list[tuple[LedgerEntry, Account]]:
        """
        Entries in other accounts of `currency` within the date range
        that carry no automated correlation key and aren't pending.
        """
        pass

    @abstractmethod
    async def apply_transfer_match(
        self,
        key: TransferKey,
        entry_a: LedgerEntry,
        entry_b: LedgerEntry,
    ) -> tuple[LedgerEntry, LedgerEntry]:
        """
        Tag both entries with `key` in one transaction.

        Raises:
            NotFoundError: If either entry is gone
            ImmutableCorrelationKeyError: If either entry already
                carries an automated key
        """
        pass

    @abstractmethod
    async def create_transfer(
        self,
        key: TransferKey,
        debit: LedgerEntry,
        credit: LedgerEntry,
        trades: Optional[list[Trade]] = None,
    ) -> tuple[LedgerEntry, LedgerEntry]:
        """Write both sides of a new transfer (plus any trades) together."""
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one batch run).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class PersistenceError(StorageError):
    """An atomic write failed and was rolled back."""
    pass


class ImmutableCorrelationKeyError(StorageError):
    """An edit tried to replace or remove an automated correlation key."""
    pass
