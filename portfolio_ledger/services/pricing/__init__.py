"""Price resolution services."""

from portfolio_ledger.services.pricing.cache import PriceCache
from portfolio_ledger.services.pricing.interface import (
    PriceResolverConfigurationError,
    PriceResolverInterface,
    PriceUnavailableError,
    PricingError,
)
from portfolio_ledger.services.pricing.resolvers import (
    CachedPriceResolver,
    StaticPriceResolver,
)

__all__ = [
    "CachedPriceResolver",
    "PriceCache",
    "PriceResolverConfigurationError",
    "PriceResolverInterface",
    "PriceUnavailableError",
    "PricingError",
    "StaticPriceResolver",
]
