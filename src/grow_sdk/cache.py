"""Size-bounded LRU cache for idempotent GET responses."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode

from .metrics import CACHE_EVENTS
from .models import ApiResponse, HttpMethod, body_size

logger = logging.getLogger("grow_sdk.cache")


def fingerprint(method: HttpMethod | str, path: str, query: Optional[Mapping[str, Any]] = None) -> str:
    """Deterministic cache key: method, path and the query sorted by name."""
    verb = method.value if isinstance(method, HttpMethod) else str(method).upper()
    key = f"{verb} {path}"
    if query:
        pairs = []
        for name in sorted(query):
            value = query[name]
            if value is None:
                continue
            if isinstance(value, (list, tuple)):
                pairs.extend((name, str(item)) for item in value)
            else:
                pairs.append((name, str(value)))
        if pairs:
            key += "?" + urlencode(pairs)
    return key


@dataclass(frozen=True)
class CachedResponse:
    key: str
    response: ApiResponse
    stored_at: float
    ttl: float
    size_bytes: int

    def expired(self, now: float) -> bool:
        return self.stored_at + self.ttl < now


@dataclass(frozen=True)
class CacheStats:
    entry_count: int
    total_bytes: int
    max_bytes: int

    def as_dict(self) -> Dict[str, int]:
        return {"entry_count": self.entry_count, "total_bytes": self.total_bytes, "max_bytes": self.max_bytes}


class RequestCache:
    def __init__(
        self,
        *,
        max_bytes: int = 50 * 1024 * 1024,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self._max_bytes = max_bytes
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries: "OrderedDict[str, CachedResponse]" = OrderedDict()
        self._total_bytes = 0
        self._lock = asyncio.Lock()

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    async def lookup(self, key: str) -> Optional[CachedResponse]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                CACHE_EVENTS.labels(event="miss").inc()
                return None
            if entry.expired(self._clock()):
                self._drop(key)
                logger.debug("Cache entry expired key=%s", key)
                CACHE_EVENTS.labels(event="miss").inc()
                return None
            self._entries.move_to_end(key)
            CACHE_EVENTS.labels(event="hit").inc()
            return entry

    async def store(self, key: str, response: ApiResponse, ttl: Optional[float] = None) -> bool:
        """Store ``response`` under ``key``. Returns False when the entry alone exceeds the cache."""
        size = body_size(response.body)
        if size > self._max_bytes:
            logger.debug("Rejecting cache entry key=%s size=%s max=%s", key, size, self._max_bytes)
            CACHE_EVENTS.labels(event="reject").inc()
            return False

        entry = CachedResponse(
            key=key,
            response=response.model_copy(deep=True, update={"from_cache": False}),
            stored_at=self._clock(),
            ttl=self._default_ttl if ttl is None else ttl,
            size_bytes=size,
        )
        async with self._lock:
            if key in self._entries:
                self._drop(key)
            while self._entries and self._total_bytes + size > self._max_bytes:
                evicted_key, _ = next(iter(self._entries.items()))
                self._drop(evicted_key)
                logger.debug("Evicted cache entry key=%s", evicted_key)
                CACHE_EVENTS.labels(event="evict").inc()
            self._entries[key] = entry
            self._total_bytes += size
        CACHE_EVENTS.labels(event="store").inc()
        return True

    async def invalidate(self, key: str) -> bool:
        async with self._lock:
            if key not in self._entries:
                return False
            self._drop(key)
            return True

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._total_bytes = 0

    async def stats(self) -> CacheStats:
        async with self._lock:
            return CacheStats(
                entry_count=len(self._entries),
                total_bytes=self._total_bytes,
                max_bytes=self._max_bytes,
            )

    def _drop(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._total_bytes -= entry.size_bytes


__all__ = ["CacheStats", "CachedResponse", "RequestCache", "fingerprint"]
