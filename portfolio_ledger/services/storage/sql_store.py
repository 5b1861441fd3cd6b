"""
SQL Storage Implementation

DESIGN DECISION: SQLAlchemy 2.0 over any database URL. SQLite is the
default (single user, zero setup) and tests run against in-memory SQLite.

Every public method runs as exactly one transaction
(`sessionmaker.begin()`): either everything it wrote is committed or
nothing is. That is what keeps a snapshot and its plug entry, a trade
and its ledger entry, and both sides of a transfer together.

TRADEOFFS:
- Methods are async to satisfy the interface but the driver calls are
  synchronous. Fine for a batch job; swap in an async engine if this
  ever sits behind a busy server.
- No optimistic locking. At most one writer per account is assumed.
"""

import json
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, TypeVar
from uuid import UUID

from sqlalchemy import create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from portfolio_ledger.config import get_settings
from portfolio_ledger.models.audit import AuditEvent
from portfolio_ledger.models.ledger import (
    VALUATION_KEY_PREFIX,
    Account,
    AccountKind,
    AccountStatus,
    CategorySplit,
    EntryStatus,
    LedgerEntry,
    TradeKey,
    TransferKey,
    ValuationKey,
    parse_correlation_key,
)
from portfolio_ledger.models.trade import Trade
from portfolio_ledger.models.valuation import (
    AssetValuationSnapshot,
    PairingReport,
    SnapshotResult,
    ValuationSnapshot,
)
from portfolio_ledger.money import compute_plug
from portfolio_ledger.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    ImmutableCorrelationKeyError,
    LedgerStoreInterface,
    NotFoundError,
    PersistenceError,
    StorageError,
)
from portfolio_ledger.services.storage.schema import (
    AccountRow,
    AssetPositionRow,
    AssetValuationRow,
    AuditEventRow,
    Base,
    EntrySplitRow,
    LedgerEntryRow,
    TradeRow,
    ValuationSnapshotRow,
)


T = TypeVar("T")


def create_database_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """
    Create an engine from explicit arguments or DatabaseSettings.

    In-memory SQLite shares one connection so every session sees the
    same database.
    """
    settings = get_settings().database
    url = url or settings.url
    echo = settings.echo if echo is None else echo

    kwargs: dict = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url:
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


class SQLDatabase:
    """
    Low-level database wrapper.

    Owns the engine and session factory and provides retry logic for
    transient failures.
    """

    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine or create_database_engine()
        self._sessionmaker = sessionmaker(bind=self._engine, expire_on_commit=False)

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        """Create any missing tables."""
        Base.metadata.create_all(self._engine)

    @retry(
        retry=retry_if_exception_type(OperationalError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def run(self, work: Callable[[Session], T]) -> T:
        """Run `work` inside one transaction; commit on success, roll back on error."""
        with self._sessionmaker.begin() as session:
            return work(session)

    def dispose(self) -> None:
        self._engine.dispose()


# =============================================================================
# ROW <-> MODEL CONVERSION
# =============================================================================

def _decimal_to_text(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _text_to_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _account_from_row(row: AccountRow) -> Account:
    return Account(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        currency=row.currency,
        opening_balance=row.opening_balance,
        status=row.status,
        account_type=row.account_type,
        kind=row.kind,
        created_at=row.created_at,
    )


def _account_to_row(account: Account) -> AccountRow:
    return AccountRow(
        id=account.id,
        user_id=account.user_id,
        name=account.name,
        currency=account.currency,
        opening_balance=account.opening_balance,
        status=account.status,
        account_type=account.account_type,
        kind=account.kind,
        created_at=account.created_at,
    )


def _entry_from_row(row: LedgerEntryRow) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        account_id=row.account_id,
        date=row.date,
        amount=row.amount,
        description=row.description,
        memo=row.memo,
        status=row.status,
        pending=row.pending,
        correlation_key=parse_correlation_key(row.reference),
        import_batch=row.import_batch,
        category_splits=[
            CategorySplit(category_id=split.category_id, amount=split.amount)
            for split in row.splits
        ],
        created_at=row.created_at,
    )


def _entry_to_row(entry: LedgerEntry) -> LedgerEntryRow:
    return LedgerEntryRow(
        id=entry.id,
        account_id=entry.account_id,
        date=entry.date,
        amount=entry.amount,
        description=entry.description,
        memo=entry.memo,
        status=entry.status,
        pending=entry.pending,
        reference=entry.reference,
        import_batch=entry.import_batch,
        created_at=entry.created_at,
        splits=_split_rows(entry.category_splits),
    )


def _split_rows(splits: list[CategorySplit]) -> list[EntrySplitRow]:
    return [
        EntrySplitRow(position=index, category_id=split.category_id, amount=split.amount)
        for index, split in enumerate(splits)
    ]


def _trade_from_row(row: TradeRow) -> Trade:
    return Trade(
        id=row.id,
        account_id=row.account_id,
        occurred_at=row.occurred_at,
        type=row.type,
        asset_type=row.asset_type,
        symbol=row.symbol,
        quantity=_text_to_decimal(row.quantity),
        price_per_unit=_text_to_decimal(row.price_per_unit),
        amount=row.amount,
        fees=row.fees,
        notes=row.notes,
        created_at=row.created_at,
    )


def _trade_to_row(trade: Trade) -> TradeRow:
    return TradeRow(
        id=trade.id,
        account_id=trade.account_id,
        occurred_at=trade.occurred_at,
        type=trade.type,
        asset_type=trade.asset_type,
        symbol=trade.symbol,
        quantity=_decimal_to_text(trade.quantity),
        price_per_unit=_decimal_to_text(trade.price_per_unit),
        amount=trade.amount,
        fees=trade.fees,
        notes=trade.notes,
        created_at=trade.created_at,
    )


def _snapshot_from_row(row: ValuationSnapshotRow) -> ValuationSnapshot:
    return ValuationSnapshot(
        id=row.id,
        account_id=row.account_id,
        as_of=row.as_of,
        value=row.value,
        created_at=row.created_at,
    )


def _asset_valuation_from_row(row: AssetValuationRow) -> AssetValuationSnapshot:
    return AssetValuationSnapshot(
        id=row.id,
        asset_position_id=row.asset_position_id,
        account_id=row.position.account_id,
        symbol=row.position.symbol,
        asset_type=row.position.asset_type,
        as_of=row.as_of,
        quantity=Decimal(row.quantity),
        value=row.value,
    )


# =============================================================================
# SHARED QUERIES (run inside an open session)
# =============================================================================

def _require_account(session: Session, account_id: UUID) -> AccountRow:
    row = session.get(AccountRow, account_id)
    if row is None:
        raise NotFoundError(f"Account not found: {account_id}")
    return row


def _ledger_balance(session: Session, account: AccountRow, as_of: Optional[datetime]) -> int:
    stmt = select(func.coalesce(func.sum(LedgerEntryRow.amount), 0)).where(
        LedgerEntryRow.account_id == account.id
    )
    if as_of is not None:
        stmt = stmt.where(LedgerEntryRow.date <= as_of)
    return account.opening_balance + int(session.scalar(stmt))


def _entries_by_reference(session: Session, reference: str) -> list[LedgerEntryRow]:
    stmt = (
        select(LedgerEntryRow)
        .where(LedgerEntryRow.reference == reference)
        .order_by(LedgerEntryRow.created_at, LedgerEntryRow.id)
    )
    return list(session.scalars(stmt))


def _delete_entries_by_reference(session: Session, reference: str) -> int:
    rows = _entries_by_reference(session, reference)
    for row in rows:
        session.delete(row)
    return len(rows)


def _upsert_asset_valuation(
    session: Session,
    valuation: AssetValuationSnapshot,
) -> AssetValuationSnapshot:
    position = session.scalars(
        select(AssetPositionRow).where(
            AssetPositionRow.account_id == valuation.account_id,
            AssetPositionRow.symbol == valuation.symbol,
            AssetPositionRow.asset_type == valuation.asset_type,
        )
    ).one_or_none()
    if position is None:
        position = AssetPositionRow(
            id=uuid.uuid4(),
            account_id=valuation.account_id,
            symbol=valuation.symbol,
            asset_type=valuation.asset_type,
        )
        session.add(position)
        session.flush()

    row = session.scalars(
        select(AssetValuationRow).where(
            AssetValuationRow.asset_position_id == position.id,
            AssetValuationRow.as_of == valuation.as_of,
        )
    ).one_or_none()
    if row is None:
        row = AssetValuationRow(
            id=valuation.id,
            asset_position_id=position.id,
            as_of=valuation.as_of,
            quantity=str(valuation.quantity),
            value=valuation.value,
        )
        session.add(row)
    else:
        row.quantity = str(valuation.quantity)
        row.value = valuation.value

    return valuation.model_copy(update={"id": row.id, "asset_position_id": position.id})


def _pairing_report(session: Session) -> PairingReport:
    snapshot_ids = set(session.scalars(select(ValuationSnapshotRow.id)))

    plug_rows = session.scalars(
        select(LedgerEntryRow)
        .where(LedgerEntryRow.reference.startswith(VALUATION_KEY_PREFIX, autoescape=True))
        .order_by(LedgerEntryRow.created_at, LedgerEntryRow.id)
    )

    by_snapshot: dict[UUID, list[UUID]] = {}
    entries_without_snapshot: list[UUID] = []
    for row in plug_rows:
        key = parse_correlation_key(row.reference)
        if not isinstance(key, ValuationKey) or key.snapshot_id not in snapshot_ids:
            entries_without_snapshot.append(row.id)
            continue
        by_snapshot.setdefault(key.snapshot_id, []).append(row.id)

    duplicates = [
        entry_id
        for entry_ids in by_snapshot.values()
        for entry_id in entry_ids[1:]
    ]

    return PairingReport(
        snapshots_without_entry=sorted(
            (sid for sid in snapshot_ids if sid not in by_snapshot), key=str
        ),
        entries_without_snapshot=entries_without_snapshot,
        duplicate_entries=duplicates,
    )


def _transfer_description(amount: int, counterpart_name: str) -> str:
    direction = "to" if amount < 0 else "from"
    return f"Transfer {direction} {counterpart_name}"


class SQLLedgerStore(LedgerStoreInterface):
    """
    SQLAlchemy implementation of the ledger store.

    Domain errors raised inside a unit of work (NotFoundError,
    ImmutableCorrelationKeyError, ...) roll the transaction back and
    propagate unchanged. Driver errors surface as PersistenceError.
    """

    def __init__(self, database: Optional[SQLDatabase] = None):
        self._db = database or SQLDatabase()

    @property
    def database(self) -> SQLDatabase:
        return self._db

    def _call(self, work: Callable[[Session], T], action: str) -> T:
        try:
            return self._db.run(work)
        except StorageError:
            raise
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to {action}: {e}") from e

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    async def create_account(self, account: Account) -> Account:
        def work(session: Session) -> Account:
            if session.get(AccountRow, account.id) is not None:
                raise DuplicateError(f"Account already exists: {account.id}")
            session.add(_account_to_row(account))
            return account

        return self._call(work, "create account")

    async def get_account(self, account_id: UUID) -> Optional[Account]:
        def work(session: Session) -> Optional[Account]:
            row = session.get(AccountRow, account_id)
            return _account_from_row(row) if row else None

        return self._call(work, "get account")

    async def list_accounts(
        self,
        user_id: Optional[str] = None,
        kind: Optional[AccountKind] = None,
        active_only: bool = True,
    ) -> list[Account]:
        def work(session: Session) -> list[Account]:
            stmt = select(AccountRow)
            if user_id is not None:
                stmt = stmt.where(AccountRow.user_id == user_id)
            if kind is not None:
                stmt = stmt.where(AccountRow.kind == kind)
            if active_only:
                stmt = stmt.where(AccountRow.status == AccountStatus.ACTIVE)
            stmt = stmt.order_by(AccountRow.user_id, AccountRow.name, AccountRow.id)
            return [_account_from_row(row) for row in session.scalars(stmt)]

        return self._call(work, "list accounts")

    # -------------------------------------------------------------------------
    # Ledger entries
    # -------------------------------------------------------------------------

    async def add_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.has_automated_key:
            raise ImmutableCorrelationKeyError(
                f"Entry {entry.id} carries automated key {entry.reference}; "
                "use the paired trade, valuation or transfer operation"
            )

        def work(session: Session) -> LedgerEntry:
            _require_account(session, entry.account_id)
            if session.get(LedgerEntryRow, entry.id) is not None:
                raise DuplicateError(f"Entry already exists: {entry.id}")
            session.add(_entry_to_row(entry))
            return entry

        return self._call(work, "add entry")

    async def get_entry(self, entry_id: UUID) -> Optional[LedgerEntry]:
        def work(session: Session) -> Optional[LedgerEntry]:
            row = session.get(LedgerEntryRow, entry_id)
            return _entry_from_row(row) if row else None

        return self._call(work, "get entry")

    async def update_entry(self, entry: LedgerEntry) -> LedgerEntry:
        def work(session: Session) -> LedgerEntry:
            row = session.get(LedgerEntryRow, entry.id)
            if row is None:
                raise NotFoundError(f"Entry not found: {entry.id}")

            current_key = parse_correlation_key(row.reference)
            if entry.correlation_key != current_key and (
                (current_key is not None and current_key.is_automated)
                or entry.has_automated_key
            ):
                raise ImmutableCorrelationKeyError(
                    f"Correlation key of entry {entry.id} can't change "
                    f"from {row.reference!r} to {entry.reference!r}"
                )

            row.date = entry.date
            row.amount = entry.amount
            row.description = entry.description
            row.memo = entry.memo
            row.status = entry.status
            row.pending = entry.pending
            row.reference = entry.reference
            row.import_batch = entry.import_batch
            row.splits = _split_rows(entry.category_splits)
            session.flush()
            return _entry_from_row(row)

        return self._call(work, "update entry")

    async def delete_entry(self, entry_id: UUID) -> bool:
        def work(session: Session) -> bool:
            row = session.get(LedgerEntryRow, entry_id)
            if row is None:
                return False

            key = parse_correlation_key(row.reference)
            if isinstance(key, ValuationKey):
                snapshot = session.get(ValuationSnapshotRow, key.snapshot_id)
                if snapshot is not None:
                    session.delete(snapshot)
                _delete_entries_by_reference(session, row.reference)
            elif isinstance(key, TradeKey):
                trade = session.get(TradeRow, key.trade_id)
                if trade is not None:
                    session.delete(trade)
                _delete_entries_by_reference(session, row.reference)
            else:
                session.delete(row)
            return True

        return self._call(work, "delete entry")

    async def list_entries(
        self,
        account_id: UUID,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> list[LedgerEntry]:
        def work(session: Session) -> list[LedgerEntry]:
            stmt = select(LedgerEntryRow).where(LedgerEntryRow.account_id == account_id)
            if date_from is not None:
                stmt = stmt.where(LedgerEntryRow.date >= date_from)
            if date_to is not None:
                stmt = stmt.where(LedgerEntryRow.date <= date_to)
            stmt = stmt.order_by(
                LedgerEntryRow.date, LedgerEntryRow.created_at, LedgerEntryRow.id
            )
            return [_entry_from_row(row) for row in session.scalars(stmt)]

        return self._call(work, "list entries")

    async def find_entries_by_reference(self, reference: str) -> list[LedgerEntry]:
        def work(session: Session) -> list[LedgerEntry]:
            return [_entry_from_row(row) for row in _entries_by_reference(session, reference)]

        return self._call(work, "find entries")

    async def get_ledger_balance(
        self,
        account_id: UUID,
        as_of: Optional[datetime] = None,
    ) -> int:
        def work(session: Session) -> int:
            return _ledger_balance(session, _require_account(session, account_id), as_of)

        return self._call(work, "read ledger balance")

    # -------------------------------------------------------------------------
    # Trades
    # -------------------------------------------------------------------------

    async def record_trade(self, trade: Trade) -> tuple[Trade, LedgerEntry]:
        entry = LedgerEntry(
            account_id=trade.account_id,
            date=trade.occurred_at,
            amount=trade.amount,
            description=trade.description,
            memo=trade.notes,
            status=EntryStatus.CLEARED,
            correlation_key=TradeKey(trade_id=trade.id),
        )

        def work(session: Session) -> tuple[Trade, LedgerEntry]:
            account = _require_account(session, trade.account_id)
            if account.kind != AccountKind.INVESTMENT:
                raise NotFoundError(f"Investment account not found: {trade.account_id}")
            if session.get(TradeRow, trade.id) is not None:
                raise DuplicateError(f"Trade already exists: {trade.id}")
            session.add(_trade_to_row(trade))
            session.add(_entry_to_row(entry))
            return trade, entry

        return self._call(work, "record trade")

    async def delete_trade(self, trade_id: UUID) -> bool:
        def work(session: Session) -> bool:
            row = session.get(TradeRow, trade_id)
            if row is None:
                return False
            _delete_entries_by_reference(session, TradeKey(trade_id=trade_id).encode())
            session.delete(row)
            return True

        return self._call(work, "delete trade")

    async def list_trades(self, account_id: UUID) -> list[Trade]:
        def work(session: Session) -> list[Trade]:
            stmt = (
                select(TradeRow)
                .where(TradeRow.account_id == account_id)
                .order_by(TradeRow.occurred_at, TradeRow.created_at, TradeRow.id)
            )
            return [_trade_from_row(row) for row in session.scalars(stmt)]

        return self._call(work, "list trades")

    # -------------------------------------------------------------------------
    # Valuations
    # -------------------------------------------------------------------------

    async def apply_valuation(
        self,
        account_id: UUID,
        as_of: datetime,
        total_value: int,
        plug_description: str,
        asset_valuations: Optional[list[AssetValuationSnapshot]] = None,
    ) -> SnapshotResult:
        def work(session: Session) -> SnapshotResult:
            account = _require_account(session, account_id)

            snapshot = session.scalars(
                select(ValuationSnapshotRow).where(
                    ValuationSnapshotRow.account_id == account_id,
                    ValuationSnapshotRow.as_of == as_of,
                )
            ).one_or_none()
            if snapshot is None:
                snapshot = ValuationSnapshotRow(
                    id=uuid.uuid4(),
                    account_id=account_id,
                    as_of=as_of,
                    value=total_value,
                    created_at=datetime.utcnow(),
                )
                session.add(snapshot)

            reference = ValuationKey(snapshot_id=snapshot.id).encode()
            plugs = _entries_by_reference(session, reference)
            for duplicate in plugs[1:]:
                session.delete(duplicate)
            plug = plugs[0] if plugs else None
            session.flush()

            # balance already includes the existing plug, so reruns converge
            previous_balance = _ledger_balance(session, account, as_of)
            delta = compute_plug(previous_balance, total_value)

            if plug is None:
                plug = LedgerEntryRow(
                    id=uuid.uuid4(),
                    account_id=account_id,
                    date=as_of,
                    amount=delta,
                    description=plug_description,
                    status=EntryStatus.CLEARED,
                    pending=False,
                    reference=reference,
                    created_at=datetime.utcnow(),
                    splits=[],
                )
                session.add(plug)
            else:
                plug.amount = plug.amount + delta
                if not plug.description:
                    plug.description = plug_description

            snapshot.value = total_value

            for valuation in asset_valuations or []:
                _upsert_asset_valuation(session, valuation)

            session.flush()
            return SnapshotResult(
                snapshot=_snapshot_from_row(snapshot),
                plug_entry=_entry_from_row(plug),
                previous_balance=previous_balance,
                delta=delta,
            )

        return self._call(work, "apply valuation")

    async def get_valuation(self, snapshot_id: UUID) -> Optional[ValuationSnapshot]:
        def work(session: Session) -> Optional[ValuationSnapshot]:
            row = session.get(ValuationSnapshotRow, snapshot_id)
            return _snapshot_from_row(row) if row else None

        return self._call(work, "get valuation")

    async def get_latest_valuation(
        self,
        account_id: UUID,
        before: Optional[datetime] = None,
    ) -> Optional[ValuationSnapshot]:
        def work(session: Session) -> Optional[ValuationSnapshot]:
            stmt = select(ValuationSnapshotRow).where(
                ValuationSnapshotRow.account_id == account_id
            )
            if before is not None:
                stmt = stmt.where(ValuationSnapshotRow.as_of < before)
            stmt = stmt.order_by(
                ValuationSnapshotRow.as_of.desc(), ValuationSnapshotRow.created_at.desc()
            ).limit(1)
            row = session.scalars(stmt).first()
            return _snapshot_from_row(row) if row else None

        return self._call(work, "get latest valuation")

    async def list_valuations(self, account_id: UUID) -> list[ValuationSnapshot]:
        def work(session: Session) -> list[ValuationSnapshot]:
            stmt = (
                select(ValuationSnapshotRow)
                .where(ValuationSnapshotRow.account_id == account_id)
                .order_by(ValuationSnapshotRow.as_of)
            )
            return [_snapshot_from_row(row) for row in session.scalars(stmt)]

        return self._call(work, "list valuations")

    async def delete_valuation(self, snapshot_id: UUID) -> bool:
        def work(session: Session) -> bool:
            row = session.get(ValuationSnapshotRow, snapshot_id)
            if row is None:
                return False
            _delete_entries_by_reference(session, ValuationKey(snapshot_id=snapshot_id).encode())
            session.delete(row)
            return True

        return self._call(work, "delete valuation")

    async def record_asset_valuations(
        self,
        asset_valuations: list[AssetValuationSnapshot],
    ) -> int:
        def work(session: Session) -> int:
            for valuation in asset_valuations:
                _require_account(session, valuation.account_id)
                _upsert_asset_valuation(session, valuation)
            return len(asset_valuations)

        return self._call(work, "record asset valuations")

    async def list_asset_valuations(
        self,
        account_id: UUID,
        symbol: Optional[str] = None,
    ) -> list[AssetValuationSnapshot]:
        def work(session: Session) -> list[AssetValuationSnapshot]:
            stmt = (
                select(AssetValuationRow)
                .join(AssetValuationRow.position)
                .where(AssetPositionRow.account_id == account_id)
            )
            if symbol is not None:
                stmt = stmt.where(AssetPositionRow.symbol == symbol.upper())
            stmt = stmt.order_by(AssetPositionRow.symbol, AssetValuationRow.as_of)
            return [_asset_valuation_from_row(row) for row in session.scalars(stmt)]

        return self._call(work, "list asset valuations")

    # -------------------------------------------------------------------------
    # Integrity
    # -------------------------------------------------------------------------

    async def find_pairing_orphans(self) -> PairingReport:
        return self._call(_pairing_report, "check snapshot pairing")

    async def repair_pairing_orphans(self) -> PairingReport:
        def work(session: Session) -> PairingReport:
            report = _pairing_report(session)
            for snapshot_id in report.snapshots_without_entry:
                session.delete(session.get(ValuationSnapshotRow, snapshot_id))
            for entry_id in report.entries_without_snapshot + report.duplicate_entries:
                session.delete(session.get(LedgerEntryRow, entry_id))
            return report

        return self._call(work, "repair snapshot pairing")

    # -------------------------------------------------------------------------
    # Transfers
    # -------------------------------------------------------------------------

    async def list_transfer_candidates(
        self,
        exclude_account_id: UUID,
        currency: str,
        date_from: datetime,
        date_to: datetime,
    ) -> list[tuple[LedgerEntry, Account]]:
        def work(session: Session) -> list[tuple[LedgerEntry, Account]]:
            stmt = (
                select(LedgerEntryRow, AccountRow)
                .join(LedgerEntryRow.account)
                .where(
                    LedgerEntryRow.account_id != exclude_account_id,
                    AccountRow.currency == currency,
                    LedgerEntryRow.date >= date_from,
                    LedgerEntryRow.date <= date_to,
                    LedgerEntryRow.pending.is_(False),
                    LedgerEntryRow.status != EntryStatus.PENDING,
                )
                .order_by(LedgerEntryRow.date, LedgerEntryRow.created_at, LedgerEntryRow.id)
            )
            results = []
            for entry_row, account_row in session.execute(stmt):
                entry = _entry_from_row(entry_row)
                if entry.has_automated_key:
                    continue
                results.append((entry, _account_from_row(account_row)))
            return results

        return self._call(work, "list transfer candidates")

    async def apply_transfer_match(
        self,
        key: TransferKey,
        entry_a: LedgerEntry,
        entry_b: LedgerEntry,
    ) -> tuple[LedgerEntry, LedgerEntry]:
        def work(session: Session) -> tuple[LedgerEntry, LedgerEntry]:
            rows = []
            for entry in (entry_a, entry_b):
                row = session.get(LedgerEntryRow, entry.id)
                if row is None:
                    raise NotFoundError(f"Entry not found: {entry.id}")
                current = parse_correlation_key(row.reference)
                if current is not None and current.is_automated:
                    raise ImmutableCorrelationKeyError(
                        f"Entry {entry.id} is already tagged with {row.reference}"
                    )
                rows.append(row)

            row_a, row_b = rows
            for row, other in ((row_a, row_b), (row_b, row_a)):
                row.reference = key.encode()
                row.splits = []
                row.pending = False
                row.status = EntryStatus.CLEARED
                if not row.description:
                    row.description = _transfer_description(row.amount, other.account.name)

            session.flush()
            return _entry_from_row(row_a), _entry_from_row(row_b)

        return self._call(work, "apply transfer match")

    async def create_transfer(
        self,
        key: TransferKey,
        debit: LedgerEntry,
        credit: LedgerEntry,
        trades: Optional[list[Trade]] = None,
    ) -> tuple[LedgerEntry, LedgerEntry]:
        # trades written here have no ledger entry of their own; the
        # transfer entry already carries the cash movement
        debit = debit.model_copy(update={"correlation_key": key, "category_splits": []})
        credit = credit.model_copy(update={"correlation_key": key, "category_splits": []})

        def work(session: Session) -> tuple[LedgerEntry, LedgerEntry]:
            _require_account(session, debit.account_id)
            _require_account(session, credit.account_id)
            session.add(_entry_to_row(debit))
            session.add(_entry_to_row(credit))
            for trade in trades or []:
                session.add(_trade_to_row(trade))
            return debit, credit

        return self._call(work, "create transfer")


class SQLAuditStorage(AuditStorageInterface):
    """
    SQL implementation of audit storage.

    Append-only: there is no update or delete path.
    """

    def __init__(self, database: Optional[SQLDatabase] = None):
        self._db = database or SQLDatabase()

    def _event_to_row(self, event: AuditEvent) -> AuditEventRow:
        return AuditEventRow(
            event_id=event.event_id,
            timestamp=event.timestamp,
            event_type=event.event_type,
            severity=event.severity,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            correlation_id=event.correlation_id,
            description=event.description,
            details_json=event.details_json(),
            error_code=event.error_code,
            error_message=event.error_message,
            is_user_action=event.is_user_action,
        )

    def _row_to_event(self, row: AuditEventRow) -> AuditEvent:
        return AuditEvent(
            event_id=row.event_id,
            timestamp=row.timestamp,
            event_type=row.event_type,
            severity=row.severity,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            correlation_id=row.correlation_id,
            description=row.description,
            details=json.loads(row.details_json) if row.details_json else {},
            error_code=row.error_code,
            error_message=row.error_message,
            is_user_action=row.is_user_action,
        )

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            self._db.run(lambda session: session.add(self._event_to_row(event)))
            return True
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to log audit event: {e}") from e

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        return self._query(
            select(AuditEventRow)
            .where(AuditEventRow.correlation_id == correlation_id)
            .order_by(AuditEventRow.timestamp)
        )

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        return self._query(
            select(AuditEventRow)
            .where(
                AuditEventRow.entity_type == entity_type,
                AuditEventRow.entity_id == entity_id,
            )
            .order_by(AuditEventRow.timestamp)
        )

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        return self._query(
            select(AuditEventRow).order_by(AuditEventRow.timestamp.desc()).limit(limit)
        )

    def _query(self, stmt) -> list[AuditEvent]:
        try:
            return self._db.run(
                lambda session: [self._row_to_event(row) for row in session.scalars(stmt)]
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read audit events: {e}") from e
