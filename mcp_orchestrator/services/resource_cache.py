"""
Resource content cache.

Successful resource reads are kept per (owning server, uri) for a fixed TTL
inside a byte budget. When a new entry would exceed the budget the oldest
entries are evicted first; an entry larger than the whole budget is never
stored. Expired entries are dropped lazily on lookup or by clean_expired().
"""

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

import orjson

from mcp_orchestrator.models.mcp import ResourceCacheStats, ResourceReadResult, utcnow
from mcp_orchestrator.utils.logging import get_logger

logger = get_logger("resource-cache")

CacheKey = Tuple[str, str]


@dataclass
class CachedResource:
    result: ResourceReadResult
    cached_at: datetime
    expires_at: datetime
    size_bytes: int


def estimate_size(result: ResourceReadResult) -> int:
    return len(orjson.dumps(result.contents, default=str))


class ResourceCache:

    def __init__(self, ttl_seconds: float = 600.0, max_size_bytes: int = 50 * 1024 * 1024,
                 enabled: bool = True):
        self.ttl_seconds = ttl_seconds
        self.max_size_bytes = max_size_bytes
        self.enabled = enabled
        # Insertion order is age order
        self._entries: "OrderedDict[CacheKey, CachedResource]" = OrderedDict()
        self._size_bytes = 0
        self.hits = 0
        self.misses = 0

    @classmethod
    def from_settings(cls, settings) -> "ResourceCache":
        return cls(
            ttl_seconds=settings.RESOURCE_CACHE_TTL_SECONDS,
            max_size_bytes=int(settings.RESOURCE_CACHE_MAX_SIZE_MB * 1024 * 1024),
            enabled=settings.RESOURCE_CACHE_ENABLED,
        )

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def size_bytes(self) -> int:
        return self._size_bytes

    def get(self, server_id: str, uri: str, now: Optional[datetime] = None) -> Optional[ResourceReadResult]:
        if not self.enabled:
            return None
        key = (server_id, uri)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if entry.expires_at <= (now or utcnow()):
            self._evict(key)
            self.misses += 1
            return None

        self.hits += 1
        logger.debug("Resource cache hit", extra={"data": {"server_id": server_id, "uri": uri}})
        return entry.result.model_copy(update={"cached": True})

    def put(self, result: ResourceReadResult, now: Optional[datetime] = None) -> bool:
        """Store a successful read. Returns False when the result was not cached."""
        if not self.enabled or not result.success or result.server_id is None:
            return False

        size = estimate_size(result)
        if size > self.max_size_bytes:
            logger.info(
                "Resource too large to cache",
                extra={"data": {"uri": result.uri, "size_bytes": size, "max_size_bytes": self.max_size_bytes}}
            )
            return False

        key = (result.server_id, result.uri)
        self._evict(key)
        self._make_room(size)

        now = now or utcnow()
        self._entries[key] = CachedResource(
            result=result.model_copy(update={"cached": False}),
            cached_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
            size_bytes=size,
        )
        self._size_bytes += size
        return True

    def _make_room(self, size: int) -> None:
        freed = 0
        evicted = 0
        while self._entries and self._size_bytes + size > self.max_size_bytes:
            key = next(iter(self._entries))
            freed += self._entries[key].size_bytes
            self._evict(key)
            evicted += 1
        if evicted:
            logger.info(
                "Evicted oldest cached resources",
                extra={"data": {"evicted": evicted, "freed_bytes": freed}}
            )

    def _evict(self, key: CacheKey) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._size_bytes -= entry.size_bytes

    def clear(self, uri: Optional[str] = None, server_id: Optional[str] = None) -> int:
        """Drop entries matching uri and/or server_id (everything when both are None)."""
        keys = [
            key for key in self._entries
            if (uri is None or key[1] == uri) and (server_id is None or key[0] == server_id)
        ]
        for key in keys:
            self._evict(key)
        return len(keys)

    def clean_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            self._evict(key)
        if expired:
            logger.info("Cleaned expired cached resources", extra={"data": {"removed": len(expired)}})
        return len(expired)

    def stats(self, now: Optional[datetime] = None) -> ResourceCacheStats:
        now = now or utcnow()
        expired = sum(1 for entry in self._entries.values() if entry.expires_at <= now)
        lookups = self.hits + self.misses
        return ResourceCacheStats(
            total_entries=len(self._entries),
            valid_entries=len(self._entries) - expired,
            expired_entries=expired,
            size_bytes=self._size_bytes,
            max_size_bytes=self.max_size_bytes,
            utilization=round(self._size_bytes / self.max_size_bytes, 4) if self.max_size_bytes else 0.0,
            hits=self.hits,
            misses=self.misses,
            hit_rate=round(self.hits / lookups, 4) if lookups else 0.0,
        )
