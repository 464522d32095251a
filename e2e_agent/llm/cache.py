"""LRU prompt cache with TTL and a byte budget.

Entries are evicted lazily on access once expired, and least-recently-used
entries are evicted first whenever a new entry would overflow the byte
budget. Every read-modify-write runs under one :class:`asyncio.Lock`.
"""

import asyncio
import hashlib
import json
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from loguru import logger
from pydantic import BaseModel

DEFAULT_MAX_BYTES = 50 * 1024 * 1024
DEFAULT_TTL_SECONDS = 3600.0


@dataclass(frozen=True)
class CacheEntry:
    """Single cache entry with metadata. Replaced, never mutated."""

    key: str
    value: Any
    inserted_at: float
    expires_at: float
    size_bytes: int
    hit_count: int = 0


@dataclass(frozen=True)
class CacheStats:
    """Cache statistics snapshot."""

    hits: int
    misses: int
    evictions: int
    total_entries: int
    total_size: int
    max_size: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": self.hit_rate,
            "total_entries": self.total_entries,
            "total_size": self.total_size,
            "max_size": self.max_size,
        }


def entry_size(value: Any) -> int:
    """Approximate footprint as the UTF-8 length of the JSON encoding."""
    if isinstance(value, BaseModel):
        return len(value.model_dump_json().encode("utf-8"))
    return len(json.dumps(value, default=str).encode("utf-8"))


class PromptCache:
    """
    In-memory response cache keyed by prompt fingerprint.

    Usage:
        cache = PromptCache(max_bytes=10_000_000, ttl_seconds=600)
        await cache.set("key", response)
        response = await cache.get("key")
    """

    def __init__(
        self,
        max_bytes: int = DEFAULT_MAX_BYTES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_bytes = max_bytes
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()
        self._size = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @staticmethod
    def make_key(prompt: str, context: Any | None = None) -> str:
        """Deterministic key derived from prompt and context."""
        digest = hashlib.sha256(prompt.encode("utf-8"))
        if context is not None:
            if isinstance(context, BaseModel):
                payload = context.model_dump_json(exclude={"cache_key", "enable_cache", "tags"})
            else:
                payload = json.dumps(context, sort_keys=True, default=str)
            digest.update(b"\x00")
            digest.update(payload.encode("utf-8"))
        return digest.hexdigest()

    def _is_expired(self, entry: CacheEntry) -> bool:
        return self._clock() >= entry.expires_at

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._size -= entry.size_bytes

    async def get(self, key: str) -> Any | None:
        """Return the cached value, or ``None`` on miss or expiry."""
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if self._is_expired(entry):
                self._remove(key)
                self._misses += 1
                logger.debug(f"Cache entry expired: {key[:12]}")
                return None

            self._entries[key] = replace(entry, hit_count=entry.hit_count + 1)
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    async def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> bool:
        """Store a value, evicting LRU entries to stay within budget.

        Returns:
            False if the value alone exceeds the byte budget and was not stored.
        """
        size = entry_size(value)
        if size > self.max_bytes:
            logger.warning(f"Cache value of {size} bytes exceeds budget {self.max_bytes}")
            return False

        async with self._lock:
            if key in self._entries:
                self._remove(key)

            while self._entries and self._size + size > self.max_bytes:
                oldest_key = next(iter(self._entries))
                self._remove(oldest_key)
                self._evictions += 1
                logger.debug(f"Evicted cache entry {oldest_key[:12]}")

            now = self._clock()
            ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                inserted_at=now,
                expires_at=now + ttl,
                size_bytes=size,
            )
            self._size += size
            return True

    async def has(self, key: str) -> bool:
        """Check presence without touching hit/miss counters."""
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if self._is_expired(entry):
                self._remove(key)
                return False
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            return True

    async def clear(self) -> None:
        """Drop every entry and reset statistics."""
        async with self._lock:
            self._entries.clear()
            self._size = 0
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    async def cleanup(self) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed.
        """
        async with self._lock:
            expired = [k for k, e in self._entries.items() if self._is_expired(e)]
            for key in expired:
                self._remove(key)
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired cache entries")
        return len(expired)

    def keys(self) -> list[str]:
        """Keys in least- to most-recently-used order."""
        return list(self._entries)

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            total_entries=len(self._entries),
            total_size=self._size,
            max_size=self.max_bytes,
        )
