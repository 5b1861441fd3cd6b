"""
Price Resolvers

StaticPriceResolver serves a fixed price table, loaded from JSON or
passed in directly. It is what the CLI uses when pointed at a price
file and what the tests use in place of a network source.

CachedPriceResolver wraps any resolver with a PriceCache and a
per-request timeout. A timeout or a per-symbol failure turns into an
omitted price (the valuation degrades that symbol to zero with a
warning); a configuration failure always propagates.

Price table format:

    {
        "EQUITY": {"NVDA": "45000", "GME": "8500"},
        "CRYPTO": {"BTC": "6500000"},
        "history": {
            "EQUITY": {"NVDA": {"1": "44000", "7": "41000"}}
        }
    }
"""

import asyncio
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

import structlog

from portfolio_ledger.config import get_settings
from portfolio_ledger.models.trade import AssetType
from portfolio_ledger.services.pricing.cache import PriceCache
from portfolio_ledger.services.pricing.interface import (
    PriceResolverConfigurationError,
    PriceResolverInterface,
    PricingError,
)


PriceTable = dict[AssetType, dict[str, Decimal]]
HistoryTable = dict[AssetType, dict[str, dict[int, Decimal]]]


def _parse_price(value, where: str) -> Decimal:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise PriceResolverConfigurationError(f"Invalid price {value!r} at {where}")
    if not price.is_finite() or price < 0:
        raise PriceResolverConfigurationError(f"Invalid price {value!r} at {where}")
    return price


class StaticPriceResolver(PriceResolverInterface):
    """
    Price resolver backed by an in-memory table.

    An instance created without a table is "unconfigured" and raises
    PriceResolverConfigurationError on every call.
    """

    def __init__(
        self,
        prices: Optional[PriceTable] = None,
        history: Optional[HistoryTable] = None,
    ):
        self._configured = prices is not None
        self._prices: PriceTable = {
            asset_type: {symbol.upper(): price for symbol, price in table.items()}
            for asset_type, table in (prices or {}).items()
        }
        self._history: HistoryTable = {
            asset_type: {symbol.upper(): days for symbol, days in table.items()}
            for asset_type, table in (history or {}).items()
        }

    @classmethod
    def from_file(cls, path: str) -> "StaticPriceResolver":
        """
        Load a price table from a JSON file.

        Raises:
            PriceResolverConfigurationError: If the file is missing or malformed
        """
        file_path = Path(path)
        if not file_path.exists():
            raise PriceResolverConfigurationError(f"Price file not found: {path}")

        try:
            data = json.loads(file_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise PriceResolverConfigurationError(f"Could not read price file {path}: {e}")

        if not isinstance(data, dict):
            raise PriceResolverConfigurationError(f"Price file {path} must hold a JSON object")

        return cls.from_mapping(data, source=path)

    @classmethod
    def from_mapping(cls, data: dict, source: str = "<mapping>") -> "StaticPriceResolver":
        prices: PriceTable = {}
        history: HistoryTable = {}

        try:
            for key, table in data.items():
                if key == "history":
                    for asset_key, symbols in table.items():
                        asset_type = AssetType(asset_key.upper())
                        history[asset_type] = {
                            symbol.upper(): {
                                int(days): _parse_price(price, f"{source}:history.{asset_key}.{symbol}")
                                for days, price in by_day.items()
                            }
                            for symbol, by_day in symbols.items()
                        }
                    continue

                asset_type = AssetType(key.upper())
                prices[asset_type] = {
                    symbol.upper(): _parse_price(price, f"{source}:{key}.{symbol}")
                    for symbol, price in table.items()
                }
        except (AttributeError, ValueError) as e:
            raise PriceResolverConfigurationError(f"Malformed price table in {source}: {e}")

        return cls(prices=prices, history=history)

    @classmethod
    def from_settings(cls) -> "StaticPriceResolver":
        """Resolver for PRICES_PRICE_FILE; unconfigured when it isn't set."""
        price_file = get_settings().pricing.price_file
        if not price_file:
            return cls()
        return cls.from_file(price_file)

    def _ensure_configured(self) -> None:
        if not self._configured:
            raise PriceResolverConfigurationError(
                "No price source configured. Set PRICES_PRICE_FILE or pass --prices."
            )

    async def get_current_prices(
        self,
        symbols: list[str],
        asset_type: AssetType,
    ) -> dict[str, Decimal]:
        self._ensure_configured()
        table = self._prices.get(asset_type, {})
        return {
            symbol.upper(): table[symbol.upper()]
            for symbol in symbols
            if symbol.upper() in table
        }

    async def get_historical_price(
        self,
        symbol: str,
        asset_type: AssetType,
        days_ago: int,
    ) -> Optional[Decimal]:
        self._ensure_configured()
        symbol = symbol.upper()
        by_day = self._history.get(asset_type, {}).get(symbol, {})
        if days_ago in by_day:
            return by_day[days_ago]
        if days_ago == 0:
            return self._prices.get(asset_type, {}).get(symbol)
        return None


class CachedPriceResolver(PriceResolverInterface):
    """
    Cache and timeout decorator for any price resolver.

    DESIGN DECISION: The cache is passed in, not global. Two runs that
    share a cache share prices; a test that wants a cold cache builds
    a new one.
    """

    def __init__(
        self,
        resolver: PriceResolverInterface,
        cache: Optional[PriceCache] = None,
        timeout_seconds: Optional[float] = None,
    ):
        settings = get_settings().pricing
        self._resolver = resolver
        self._cache = cache if cache is not None else PriceCache(settings.cache_ttl_seconds)
        self._timeout = (
            timeout_seconds if timeout_seconds is not None
            else settings.request_timeout_seconds
        )
        self._logger = structlog.get_logger("portfolio_ledger.pricing")

    @property
    def cache(self) -> PriceCache:
        return self._cache

    async def get_current_prices(
        self,
        symbols: list[str],
        asset_type: AssetType,
    ) -> dict[str, Decimal]:
        unique = sorted({symbol.upper() for symbol in symbols})
        found, missing = self._cache.get_many(asset_type, unique)
        if not missing:
            return found

        try:
            fetched = await asyncio.wait_for(
                self._resolver.get_current_prices(missing, asset_type),
                timeout=self._timeout,
            )
        except PriceResolverConfigurationError:
            raise
        except asyncio.TimeoutError:
            self._logger.warning(
                "price_request_timeout",
                asset_type=asset_type.value,
                symbols=missing,
                timeout_seconds=self._timeout,
            )
            return found
        except PricingError as e:
            self._logger.warning(
                "price_request_failed",
                asset_type=asset_type.value,
                symbols=missing,
                error=str(e),
            )
            return found

        for symbol, price in fetched.items():
            self._cache.put(asset_type, symbol, price)
            found[symbol.upper()] = price
        return found

    async def get_historical_price(
        self,
        symbol: str,
        asset_type: AssetType,
        days_ago: int,
    ) -> Optional[Decimal]:
        cached = self._cache.get(asset_type, symbol, days_ago)
        if cached is not None:
            return cached

        try:
            price = await asyncio.wait_for(
                self._resolver.get_historical_price(symbol, asset_type, days_ago),
                timeout=self._timeout,
            )
        except PriceResolverConfigurationError:
            raise
        except asyncio.TimeoutError:
            self._logger.warning(
                "price_request_timeout",
                asset_type=asset_type.value,
                symbols=[symbol.upper()],
                days_ago=days_ago,
                timeout_seconds=self._timeout,
            )
            return None
        except PricingError as e:
            self._logger.warning(
                "price_request_failed",
                asset_type=asset_type.value,
                symbols=[symbol.upper()],
                days_ago=days_ago,
                error=str(e),
            )
            return None

        if price is not None:
            self._cache.put(asset_type, symbol, price, days_ago)
        return price

    def invalidate(self) -> int:
        return self._cache.invalidate()
