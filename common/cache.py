"""Simple TTL cache helpers for frequently read scheduling data."""
from __future__ import annotations

from threading import RLock
from typing import Generic, Optional, TypeVar

from cachetools import TTLCache

T = TypeVar("T")


class SimpleTTLCache(Generic[T]):
    def __init__(self, ttl: int, maxsize: int = 256) -> None:
        self._cache: TTLCache[str, T] = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = RLock()

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            return self._cache.get(key)

    def set(self, key: str, value: T) -> None:
        with self._lock:
            self._cache[key] = value

    def pop_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``; returns how many went."""
        with self._lock:
            stale = [key for key in list(self._cache.keys()) if key.startswith(prefix)]
            for key in stale:
                self._cache.pop(key, None)
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
