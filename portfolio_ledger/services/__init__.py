"""Services package."""

from portfolio_ledger.services.pricing import (
    CachedPriceResolver,
    PriceCache,
    PriceResolverConfigurationError,
    PriceResolverInterface,
    PriceUnavailableError,
    StaticPriceResolver,
)
from portfolio_ledger.services.storage import (
    AuditStorageInterface,
    DuplicateError,
    ImmutableCorrelationKeyError,
    LedgerStoreInterface,
    NotFoundError,
    PersistenceError,
    SQLAuditStorage,
    SQLDatabase,
    SQLLedgerStore,
    StorageError,
)

__all__ = [
    # Pricing services
    "CachedPriceResolver",
    "PriceCache",
    "PriceResolverConfigurationError",
    "PriceResolverInterface",
    "PriceUnavailableError",
    "StaticPriceResolver",
    # Storage services
    "AuditStorageInterface",
    "DuplicateError",
    "ImmutableCorrelationKeyError",
    "LedgerStoreInterface",
    "NotFoundError",
    "PersistenceError",
    "SQLAuditStorage",
    "SQLDatabase",
    "SQLLedgerStore",
    "StorageError",
]
