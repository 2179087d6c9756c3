"""Two-namespace read-through cache separating wallet structure from token prices."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Generic, TypeVar

from pydantic import BaseModel, ValidationError

from portfolio_aggregator.cache.backend import CacheBackend, InMemoryCacheBackend
from portfolio_aggregator.cache.keys import price_key, structure_key
from portfolio_aggregator.core.models import PriceSnapshot, StructureSnapshot, TokenReference

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


class CacheEntry(BaseModel, Generic[T]):
    """
    Cache entry envelope with TTL support.

    Parameters
    ----------
    value : T
        Cached value
    written_at : float
        Clock value at write time
    ttl : float
        Time-to-live in seconds

    """

    value: T
    written_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        """
        Check if cache entry has expired.

        Parameters
        ----------
        now : float
            Current clock value

        Returns
        -------
        bool
            True if expired, False otherwise

        """
        return (now - self.written_at) > self.ttl


class TieredCache:
    """
    Read-through cache with a long-lived ``structure`` namespace and a short-lived ``price`` namespace.

    Concurrent misses on the same key share one in-flight refresh. Backend
    failures are logged and bypassed, so a broken backend slows requests down
    but never fails them.

    Parameters
    ----------
    backend : CacheBackend | None
        Byte store. Uses an ``InMemoryCacheBackend`` if None.
    structure_ttl : float
        Time-to-live in seconds for structure entries
    price_ttl : float
        Time-to-live in seconds for price entries
    enabled : bool
        When False every call goes straight to the refresh function
    clock : Callable[[], float] | None
        Returns the current time in seconds. Uses ``time.time`` if None.

    """

    def __init__(
        self,
        backend: CacheBackend | None = None,
        structure_ttl: float = 300.0,
        price_ttl: float = 60.0,
        enabled: bool = True,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._clock = clock or time.time
        self.backend = backend if backend is not None else InMemoryCacheBackend(clock=self._clock)
        self.structure_ttl = structure_ttl
        self.price_ttl = price_ttl
        self.enabled = enabled
        self._inflight: dict[str, asyncio.Future] = {}
        self._waiters: dict[asyncio.Future, int] = {}

        if not enabled:
            logger.warning("Portfolio cache is disabled; every request will call the providers")

    async def get_or_refresh_structure(
        self,
        wallet: str,
        networks: Iterable[str],
        refresh: Callable[[], Awaitable[StructureSnapshot]],
    ) -> tuple[StructureSnapshot, bool]:
        """
        Return the cached structure for a wallet, refreshing it on a miss.

        Parameters
        ----------
        wallet : str
            Wallet address
        networks : Iterable[str]
            Networks the structure covers
        refresh : Callable[[], Awaitable[StructureSnapshot]]
            Produces a fresh snapshot (the expensive discovery call)

        Returns
        -------
        tuple[StructureSnapshot, bool]
            The snapshot and whether it was served from the cache

        """
        key = structure_key(wallet, networks)
        return await self._get_or_refresh(key, StructureSnapshot, self.structure_ttl, refresh)

    async def get_or_refresh_prices(
        self,
        token_refs: Iterable[TokenReference],
        refresh: Callable[[], Awaitable[PriceSnapshot]],
    ) -> tuple[PriceSnapshot, bool]:
        """
        Return cached prices for a token set, refreshing them on a miss.

        Incomplete snapshots (enrichment timed out or was cancelled) are
        returned to the caller but never stored.

        Parameters
        ----------
        token_refs : Iterable[TokenReference]
            Tokens to price
        refresh : Callable[[], Awaitable[PriceSnapshot]]
            Produces a fresh snapshot

        Returns
        -------
        tuple[PriceSnapshot, bool]
            The snapshot and whether it was served from the cache

        """
        key = price_key(token_refs)
        return await self._get_or_refresh(
            key,
            PriceSnapshot,
            self.price_ttl,
            refresh,
            cacheable=lambda snapshot: snapshot.complete,
        )

    async def invalidate_structure(self, wallet: str, networks: Iterable[str]) -> None:
        """Drop the structure entry for a wallet and network set."""
        await self._delete(structure_key(wallet, networks))

    async def invalidate_prices(self, token_refs: Iterable[TokenReference]) -> None:
        """Drop the price entry for a token set."""
        await self._delete(price_key(token_refs))

    async def _get_or_refresh(
        self,
        key: str,
        model: type[M],
        ttl: float,
        refresh: Callable[[], Awaitable[M]],
        cacheable: Callable[[M], bool] | None = None,
    ) -> tuple[M, bool]:
        if not self.enabled:
            return await refresh(), False

        cached = await self._read(key, model)
        if cached is not None:
            logger.debug("Cache hit: %s", key)
            return cached, True

        task = self._inflight.get(key)
        if task is None:
            logger.debug("Cache miss: %s", key)
            task = asyncio.ensure_future(self._produce(key, model, ttl, refresh, cacheable))
            self._inflight[key] = task
            self._waiters[task] = 0
            task.add_done_callback(lambda done: self._forget(key, done))
        else:
            logger.debug("Joining in-flight refresh: %s", key)

        # Shielded so one cancelled caller does not cancel the refresh for the others;
        # the refresh itself is cancelled when its last caller leaves
        self._waiters[task] += 1
        try:
            return await asyncio.shield(task)
        finally:
            self._leave(key, task)

    async def _produce(
        self,
        key: str,
        model: type[M],
        ttl: float,
        refresh: Callable[[], Awaitable[M]],
        cacheable: Callable[[M], bool] | None,
    ) -> tuple[M, bool]:
        # A refresh that finished between our miss and now already wrote the entry
        cached = await self._read(key, model)
        if cached is not None:
            return cached, True

        value = await refresh()
        if cacheable is None or cacheable(value):
            await self._write(key, model, value, ttl)
        else:
            logger.debug("Not caching incomplete value for %s", key)
        return value, False

    def _leave(self, key: str, task: asyncio.Future) -> None:
        remaining = self._waiters[task] - 1
        if remaining:
            self._waiters[task] = remaining
            return

        del self._waiters[task]
        if task.done():
            return

        logger.debug("Cancelling refresh abandoned by every caller: %s", key)
        if self._inflight.get(key) is task:
            del self._inflight[key]
        task.cancel()

    def _forget(self, key: str, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Retrieved here so a failure nobody waits for is not reported as unhandled
        if not task.cancelled():
            task.exception()

    async def _read(self, key: str, model: type[M]) -> M | None:
        try:
            raw = await self.backend.get(key)
        except Exception as e:
            logger.warning("Cache backend read failed for %s, bypassing cache: %s", key, e)
            return None

        if raw is None:
            return None

        try:
            entry = CacheEntry[model].model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Discarding unreadable cache entry %s: %s", key, e)
            return None

        if entry.is_expired(self._clock()):
            return None

        return entry.value

    async def _write(self, key: str, model: type[M], value: M, ttl: float) -> None:
        entry = CacheEntry[model](value=value, written_at=self._clock(), ttl=ttl)
        try:
            await self.backend.set(key, entry.model_dump_json().encode(), ttl)
        except Exception as e:
            logger.warning("Cache backend write failed for %s: %s", key, e)

    async def _delete(self, key: str) -> None:
        if not self.enabled:
            return
        try:
            await self.backend.delete(key)
        except Exception as e:
            logger.warning("Cache backend delete failed for %s: %s", key, e)
