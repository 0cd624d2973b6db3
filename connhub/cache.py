"""Per-handler TTL cache interposed on explicit ``cache_key`` queries."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

LOG = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_ENTRIES = 1000


class _Miss:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Any = _Miss()


@dataclass(slots=True)
class _CacheEntry:
    value: Any
    inserted_at: float


class CacheLayer:
    """Bounded key/value store whose entries expire after a fixed TTL.

    Expired entries are logically absent: ``get`` never returns them, and they
    are evicted lazily on access or when ``size`` is computed.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL_SECONDS,
        *,
        enabled: bool = True,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl <= 0:
            raise ValueError("Cache TTL must be positive")
        if max_entries <= 0:
            raise ValueError("Cache max_entries must be positive")
        self._ttl = float(ttl)
        self._enabled = enabled
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._hits = 0
        self._misses = 0

    @property
    def ttl(self) -> float:
        return self._ttl

    @property
    def enabled(self) -> bool:
        return self._enabled

    def get(self, key: str) -> Any:
        """Return the cached value or ``MISS``."""

        if not self._enabled:
            self._misses += 1
            return MISS
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return MISS
        if self._clock() - entry.inserted_at >= self._ttl:
            del self._entries[key]
            self._misses += 1
            return MISS
        self._hits += 1
        return entry.value

    def put(self, key: str, value: Any) -> None:
        if not self._enabled:
            return
        self._entries.pop(key, None)
        self._entries[key] = _CacheEntry(value=value, inserted_at=self._clock())
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, key: str | None = None) -> int:
        """Drop one key, or everything when ``key`` is None. Returns the count removed."""

        if key is None:
            removed = len(self._entries)
            self._entries.clear()
            return removed
        return 1 if self._entries.pop(key, None) is not None else 0

    def size(self) -> int:
        self._evict_expired()
        return len(self._entries)

    def stats(self) -> dict[str, object]:
        return {
            "enabled": self._enabled,
            "ttl": self._ttl,
            "size": self.size(),
            "hits": self._hits,
            "misses": self._misses,
        }

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Return a cached value, or await ``loader`` and cache its result."""

        cached = self.get(key)
        if cached is not MISS:
            LOG.debug("Cache hit", extra={"cache_key": key})
            return cached
        LOG.debug("Cache miss", extra={"cache_key": key})
        value = await loader()
        self.put(key, value)
        return value

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now - entry.inserted_at >= self._ttl]
        for key in expired:
            del self._entries[key]


__all__ = ["CacheLayer", "DEFAULT_TTL_SECONDS", "MISS"]
