"""Bounded in-memory cache with TTL expiry, shared across concurrent requests."""

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    """Cache counters."""

    size: int
    max_entries: int
    hits: int
    misses: int
    evictions: int
    expirations: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class TTLCache:
    """Capacity-bounded cache where entries expire after ``ttl_seconds``.

    All reads and writes go through ``self.lock``: an expired read deletes
    the entry, and two requests may race to insert or evict the same key.
    When full, the oldest inserted entry is evicted first.
    """

    def __init__(
        self,
        max_entries: int = 100,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ):
        """Initialize cache.

        Args:
            max_entries: Maximum number of live entries
            ttl_seconds: Time to live for each entry
            clock: Monotonic time source
            name: Name used in log messages
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.name = name
        self.lock = asyncio.Lock()

        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    async def get(self, key: str) -> Any | None:
        """Return the cached value, or None if absent or expired."""
        async with self.lock:
            item = self._entries.get(key)
            if item is None:
                self._misses += 1
                return None

            expires_at, value = item
            if self.clock() >= expires_at:
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                return None

            self._hits += 1
            return value

    async def set(self, key: str, value: Any) -> None:
        """Insert or replace a value, evicting expired then oldest entries when full."""
        async with self.lock:
            now = self.clock()
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.max_entries:
                self._purge_expired(now)
                while len(self._entries) >= self.max_entries:
                    evicted_key, _ = self._entries.popitem(last=False)
                    self._evictions += 1
                    logger.debug(f"{self.name}: evicted {evicted_key}")

            self._entries[key] = (now + self.ttl_seconds, value)

    async def delete(self, key: str) -> bool:
        async with self.lock:
            return self._entries.pop(key, None) is not None

    async def clear(self) -> None:
        async with self.lock:
            self._entries.clear()

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        self._expirations += len(expired)

    def stats(self) -> CacheStats:
        return CacheStats(
            size=len(self._entries),
            max_entries=self.max_entries,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            expirations=self._expirations,
        )

    def __len__(self) -> int:
        return len(self._entries)
