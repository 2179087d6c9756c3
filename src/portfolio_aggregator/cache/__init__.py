"""Caching layer with byte backends and the structure/price tiered cache."""

from portfolio_aggregator.cache.backend import CacheBackend, InMemoryCacheBackend
from portfolio_aggregator.cache.keys import price_key, structure_key
from portfolio_aggregator.cache.tiered import CacheEntry, TieredCache

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "InMemoryCacheBackend",
    "TieredCache",
    "price_key",
    "structure_key",
]
