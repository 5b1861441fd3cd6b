"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
Currently implements SQLAlchemy as the backend, but designed to be swappable.
"""

from portfolio_ledger.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    ImmutableCorrelationKeyError,
    LedgerStoreInterface,
    NotFoundError,
    PersistenceError,
    StorageError,
)
from portfolio_ledger.services.storage.sql_store import (
    SQLAuditStorage,
    SQLDatabase,
    SQLLedgerStore,
    create_database_engine,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LedgerStoreInterface",
    # Exceptions
    "DuplicateError",
    "ImmutableCorrelationKeyError",
    "NotFoundError",
    "PersistenceError",
    "StorageError",
    # SQL implementation
    "SQLAuditStorage",
    "SQLDatabase",
    "SQLLedgerStore",
    "create_database_engine",
]
