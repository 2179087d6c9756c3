"""Cache backends storing serialized entries as bytes."""

import time
from collections.abc import Callable
from typing import Protocol


class CacheBackend(Protocol):
    """Byte-oriented key/value store with per-key TTL."""

    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes, ttl: float) -> None: ...

    async def delete(self, key: str) -> None: ...


class _StoredValue:
    """
    Stored bytes with an absolute expiry.

    Parameters
    ----------
    value : bytes
        Serialized entry
    expires_at : float
        Clock value after which the entry is gone

    """

    __slots__ = ("expires_at", "value")

    def __init__(self, value: bytes, expires_at: float) -> None:
        self.value = value
        self.expires_at = expires_at


class InMemoryCacheBackend:
    """
    Process-local cache backend with TTL.

    Expiry here only bounds memory; freshness is decided by the entry
    envelope that ``TieredCache`` writes.

    Parameters
    ----------
    clock : Callable[[], float] | None
        Returns the current time in seconds. Uses ``time.time`` if None.

    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.time
        self._store: dict[str, _StoredValue] = {}

    async def get(self, key: str) -> bytes | None:
        """
        Get stored bytes if they exist and haven't expired.

        Parameters
        ----------
        key : str
            Cache key

        Returns
        -------
        bytes | None
            Stored value if found and valid, None otherwise

        """
        stored = self._store.get(key)
        if stored is None:
            return None

        if self._clock() > stored.expires_at:
            # Clean up expired entry
            del self._store[key]
            return None

        return stored.value

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds, replacing any previous value."""
        self._store[key] = _StoredValue(value, self._clock() + ttl)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        """Clear all cached entries."""
        self._store.clear()

    def cleanup_expired(self) -> int:
        """
        Remove all expired entries from the store.

        Returns
        -------
        int
            Number of entries removed

        """
        now = self._clock()
        expired_keys = [key for key, stored in self._store.items() if now > stored.expires_at]
        for key in expired_keys:
            del self._store[key]
        return len(expired_keys)

    def __len__(self) -> int:
        return len(self._store)
