"""Cache backend interface and the in-process implementation."""

import copy
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from cachetools import TLRUCache


class CacheBackend(ABC):
    """Abstract base class for key-value cache storage."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Retrieve value from cache.

        Args:
            key: Cache key

        Returns:
            Cached value or None if not found/expired
        """
        pass

    @abstractmethod
    async def set(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        """Store value in cache.

        Args:
            key: Cache key
            value: Value to store (must be serializable)
            ttl: Time to live in seconds
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete value from cache.

        Args:
            key: Cache key
        """
        pass

    @abstractmethod
    async def keys(self, prefix: str = "") -> list[str]:
        """List live keys starting with prefix.

        Args:
            prefix: Key prefix to match

        Returns:
            Matching keys
        """
        pass


class MemoryCacheBackend(CacheBackend):
    """In-process cache with per-key TTL, safe for concurrent access."""

    def __init__(self, maxsize: int = 10_000, timer: Callable[[], float] = time.monotonic) -> None:
        """Initialize the in-memory cache.

        Args:
            maxsize: Maximum number of entries before LRU eviction
            timer: Clock used for expiry (injectable for tests)
        """
        self._cache: TLRUCache = TLRUCache(maxsize=maxsize, ttu=self._expires_at, timer=timer)
        self._lock = threading.Lock()

    @property
    def maxsize(self) -> int:
        return int(self._cache.maxsize)

    @staticmethod
    def _expires_at(key: str, value: tuple[Dict[str, Any], int], now: float) -> float:
        return now + value[1]

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._cache.get(key)
        # Callers may mutate what they get back
        return copy.deepcopy(item[0]) if item else None

    async def set(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        with self._lock:
            self._cache[key] = (copy.deepcopy(value), ttl)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            self._cache.expire()
            return [key for key in self._cache.keys() if key.startswith(prefix)]

    def __len__(self) -> int:
        with self._lock:
            self._cache.expire()
            return len(self._cache)
