"""
Relational Schema

SQLAlchemy 2.0 declarative tables for the ledger store.

DESIGN DECISION: Quantities and prices are stored as decimal TEXT so
SQLite round-trips them exactly. Money columns are integers (minor
units) everywhere.

The `reference` column on ledger_entries holds the wire form of the
correlation key. It is indexed because cascades and pairing checks
look entries up by it.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from portfolio_ledger.models.audit import AuditEventType, AuditSeverity
from portfolio_ledger.models.ledger import (
    AccountKind,
    AccountStatus,
    AccountType,
    EntryStatus,
)
from portfolio_ledger.models.trade import AssetType, TradeType


class Base(DeclarativeBase):
    pass


class AccountRow(Base):
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    opening_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[AccountStatus] = mapped_column(
        SAEnum(AccountStatus, name="account_status_enum"), nullable=False
    )
    account_type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType, name="account_type_enum"), nullable=False
    )
    kind: Mapped[AccountKind] = mapped_column(
        SAEnum(AccountKind, name="account_kind_enum"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )

    entries: Mapped[list["LedgerEntryRow"]] = relationship(back_populates="account")

    def __repr__(self) -> str:
        return f"<AccountRow {self.name} ({self.kind.value})>"


class LedgerEntryRow(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("ix_ledger_entries_account_date", "account_id", "date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    memo: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[EntryStatus] = mapped_column(
        SAEnum(EntryStatus, name="entry_status_enum"), nullable=False
    )
    pending: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reference: Mapped[Optional[str]] = mapped_column(
        String(200), nullable=True, index=True
    )
    import_batch: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )

    account: Mapped[AccountRow] = relationship(back_populates="entries")
    splits: Mapped[list["EntrySplitRow"]] = relationship(
        back_populates="entry",
        cascade="all, delete-orphan",
        order_by="EntrySplitRow.position",
    )

    def __repr__(self) -> str:
        return f"<LedgerEntryRow {self.date:%Y-%m-%d} {self.amount} {self.reference or ''}>"


class EntrySplitRow(Base):
    __tablename__ = "entry_splits"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    entry_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("ledger_entries.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(nullable=False, default=0)
    category_id: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    entry: Mapped[LedgerEntryRow] = relationship(back_populates="splits")


class TradeRow(Base):
    __tablename__ = "trades"
    __table_args__ = (
        Index("ix_trades_account_occurred", "account_id", "occurred_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    type: Mapped[TradeType] = mapped_column(
        SAEnum(TradeType, name="trade_type_enum"), nullable=False
    )
    asset_type: Mapped[Optional[AssetType]] = mapped_column(
        SAEnum(AssetType, name="asset_type_enum"), nullable=True
    )
    symbol: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    quantity: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    price_per_unit: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fees: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )


class ValuationSnapshotRow(Base):
    __tablename__ = "valuation_snapshots"
    __table_args__ = (
        UniqueConstraint("account_id", "as_of", name="uq_valuation_account_as_of"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id"), nullable=False, index=True
    )
    as_of: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )


class AssetPositionRow(Base):
    __tablename__ = "asset_positions"
    __table_args__ = (
        UniqueConstraint("account_id", "symbol", "asset_type", name="uq_asset_position"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    asset_type: Mapped[AssetType] = mapped_column(
        SAEnum(AssetType, name="asset_type_enum"), nullable=False
    )

    valuations: Mapped[list["AssetValuationRow"]] = relationship(
        back_populates="position",
        cascade="all, delete-orphan",
    )


class AssetValuationRow(Base):
    __tablename__ = "asset_valuations"
    __table_args__ = (
        UniqueConstraint("asset_position_id", "as_of", name="uq_asset_valuation_as_of"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    asset_position_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("asset_positions.id", ondelete="CASCADE"), nullable=False
    )
    as_of: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    quantity: Mapped[str] = mapped_column(String(64), nullable=False)
    value: Mapped[int] = mapped_column(BigInteger, nullable=False)

    position: Mapped[AssetPositionRow] = relationship(back_populates="valuations")


class AuditEventRow(Base):
    __tablename__ = "audit_events"

    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    event_type: Mapped[AuditEventType] = mapped_column(
        SAEnum(AuditEventType, name="audit_event_type_enum"), nullable=False
    )
    severity: Mapped[AuditSeverity] = mapped_column(
        SAEnum(AuditSeverity, name="audit_severity_enum"), nullable=False
    )
    entity_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    correlation_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, nullable=True, index=True
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    details_json: Mapped[str] = mapped_column(Text, nullable=False, default="")
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_user_action: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
