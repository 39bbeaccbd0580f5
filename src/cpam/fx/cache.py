"""Explicit TTL cache for FX rates.

The cache is an ordinary object built once by the caller and passed to the
FX rate service; nothing is cached in module globals.

Environment:
    CPAM_FX_CACHE_TTL_SECONDS: Default TTL for ``TTLCache.from_env()``
        (default: 3600).
"""

from __future__ import annotations

import os
import threading
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Generic, TypeVar

CPAM_FX_CACHE_TTL_ENV = "CPAM_FX_CACHE_TTL_SECONDS"
DEFAULT_TTL_SECONDS = 3600.0

V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[V]):
    """Thread-safe key/value cache whose entries expire after ``ttl_seconds``.

    Expired entries are evicted on read.

    Args:
        ttl_seconds: Lifetime of an entry. 0 disables caching.
        clock: Monotonic clock in seconds; injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds < 0:
            raise ValueError(f"ttl_seconds must be >= 0, got {ttl_seconds}")
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._store: dict[Hashable, CacheEntry[V]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls, clock: Callable[[], float] = time.monotonic) -> TTLCache[V]:
        raw = os.environ.get(CPAM_FX_CACHE_TTL_ENV)
        ttl = float(raw) if raw else DEFAULT_TTL_SECONDS
        return cls(ttl_seconds=ttl, clock=clock)

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, key: Hashable) -> V | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._store[key]
                return None
            return entry.value

    def put(self, key: Hashable, value: V) -> None:
        if self._ttl == 0:
            return
        with self._lock:
            self._store[key] = CacheEntry(value=value, expires_at=self._clock() + self._ttl)

    def get_or_load(self, key: Hashable, loader: Callable[[], V]) -> V:
        """Cached value for ``key``, calling ``loader`` on a miss.

        Loader exceptions propagate and nothing is cached.
        """
        value = self.get(key)
        if value is not None:
            return value
        value = loader()
        self.put(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._store)
