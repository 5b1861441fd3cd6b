"""
Price Resolver Interface

Price sources (exchange APIs, market data vendors) live outside this
package. Anything that can answer these two questions can drive a
valuation.

CRITICAL: Unknown or unsupported symbols are OMITTED from results,
never raised. The only exception a resolver should raise is
PriceResolverConfigurationError (missing credentials, no price table),
because then no account's valuation can be trusted.

Prices are Decimals in minor units per unit (45,000 means $450.00 a share).
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

from portfolio_ledger.models.trade import AssetType


class PricingError(Exception):
    """Base exception for pricing errors."""
    pass


class PriceUnavailableError(PricingError):
    """A price could not be obtained for one symbol."""

    def __init__(self, symbol: str, asset_type: AssetType, message: str):
        self.symbol = symbol
        self.asset_type = asset_type
        super().__init__(message)


class PriceResolverConfigurationError(PricingError):
    """The price source is not configured or not authorized."""
    pass


class PriceResolverInterface(ABC):
    """Abstract price source."""

    @abstractmethod
    async def get_current_prices(
        self,
        symbols: list[str],
        asset_type: AssetType,
    ) -> dict[str, Decimal]:
        """
        Current prices for `symbols`.

        Returns:
            Map of upper-case symbol to price; unknown symbols omitted

        Raises:
            PriceResolverConfigurationError: If the source can't be used at all
        """
        pass

    @abstractmethod
    async def get_historical_price(
        self,
        symbol: str,
        asset_type: AssetType,
        days_ago: int,
    ) -> Optional[Decimal]:
        """
        Price `days_ago` days before today, or None if unknown.

        Raises:
            PriceResolverConfigurationError: If the source can't be used at all
        """
        pass
