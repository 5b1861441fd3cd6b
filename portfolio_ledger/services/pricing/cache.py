"""
Price Cache

An explicit, injected cache in front of a price source. Each instance
owns its entries, its TTL and its clock, so tests can construct one
with a fake clock and nothing leaks between runs.
"""

import time
from decimal import Decimal
from typing import Callable, Optional

from portfolio_ledger.models.trade import AssetType


# (asset_type, symbol, days_ago); days_ago is None for current prices
CacheKey = tuple[AssetType, str, Optional[int]]


class PriceCache:
    """
    TTL cache of resolved prices.

    Usage:
        cache = PriceCache(ttl_seconds=300)
        cache.put(AssetType.EQUITY, "NVDA", Decimal("45000"))
        cache.get(AssetType.EQUITY, "NVDA")
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must not be negative")
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[CacheKey, tuple[float, Decimal]] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def _key(self, asset_type: AssetType, symbol: str, days_ago: Optional[int]) -> CacheKey:
        return (asset_type, symbol.upper(), days_ago)

    def get(
        self,
        asset_type: AssetType,
        symbol: str,
        days_ago: Optional[int] = None,
    ) -> Optional[Decimal]:
        """Cached price, or None when absent or expired."""
        key = self._key(asset_type, symbol, days_ago)
        entry = self._entries.get(key)
        if entry is None:
            return None

        stored_at, price = entry
        if self._clock() - stored_at >= self._ttl:
            del self._entries[key]
            return None
        return price

    def put(
        self,
        asset_type: AssetType,
        symbol: str,
        price: Decimal,
        days_ago: Optional[int] = None,
    ) -> None:
        self._entries[self._key(asset_type, symbol, days_ago)] = (self._clock(), price)

    def get_many(
        self,
        asset_type: AssetType,
        symbols: list[str],
    ) -> tuple[dict[str, Decimal], list[str]]:
        """Split `symbols` into (cached prices, symbols still to fetch)."""
        found: dict[str, Decimal] = {}
        missing: list[str] = []
        for symbol in symbols:
            price = self.get(asset_type, symbol)
            if price is None:
                missing.append(symbol.upper())
            else:
                found[symbol.upper()] = price
        return found, missing

    def invalidate(
        self,
        asset_type: Optional[AssetType] = None,
        symbol: Optional[str] = None,
    ) -> int:
        """
        Drop cached entries.

        With no arguments everything goes; otherwise only entries
        matching the given asset type and/or symbol.

        Returns:
            Number of entries removed
        """
        symbol = symbol.upper() if symbol else None
        doomed = [
            key for key in self._entries
            if (asset_type is None or key[0] == asset_type)
            and (symbol is None or key[1] == symbol)
        ]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)
