"""
Two-tier read-through cache.

A small local tier sits in front of a shared tier (Redis, or the in-process
stand-in). Reads check local first, then shared, and backfill local with a
shorter TTL. Writes go to both tiers. Tag invalidation removes the tagged
shared entries and flushes the whole local tier, which keeps no tag index.

Only ``get`` moves the request statistics. A shared tier that cannot be
reached degrades reads to misses and turns writes into logged no-ops.
"""
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple

from orderflow.core.errors import CacheUnavailableError
from orderflow.services.cache_backends import SharedCacheBackend
from orderflow.services.metrics import CACHE_REQUESTS_TOTAL, MetricStore

logger = logging.getLogger(__name__)

PRIVATE_TTL_CEILING = 60


class _Miss:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "CACHE_MISS"

    def __bool__(self) -> bool:
        return False


CACHE_MISS = _Miss()


@dataclass
class CacheStats:
    """Request counters; owned by whoever builds the cache."""
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    total_requests: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, hit: bool, evicted: int = 0) -> None:
        with self._lock:
            self.total_requests += 1
            self.evictions += evicted
            if hit:
                self.hits += 1
            else:
                self.misses += 1

    @property
    def hit_rate(self) -> float:
        return self.hits / self.total_requests if self.total_requests else 0.0

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return {
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "total_requests": self.total_requests,
                "hit_rate": self.hit_rate,
            }


class LocalCache:
    """Bounded in-process tier with per-entry expiry and LRU replacement."""

    def __init__(self, max_entries: int = 1024):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, Tuple[str, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str, now: float) -> Tuple[Optional[str], bool]:
        """Returns (payload, expired). An expired entry is removed."""
        with self._lock:
            found = self._entries.get(key)
            if found is None:
                return None, False
            payload, expires_at = found
            if now > expires_at:
                del self._entries[key]
                return None, True
            self._entries.move_to_end(key)
            return payload, False

    def set(self, key: str, payload: str, expires_at: float) -> None:
        with self._lock:
            self._entries[key] = (payload, expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                dropped, _ = self._entries.popitem(last=False)
                logger.debug(f"Local cache full, dropped {dropped}")

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def __len__(self) -> int:
        return len(self._entries)


class TwoTierCache:
    def __init__(
        self,
        shared: Optional[SharedCacheBackend],
        *,
        stats: Optional[CacheStats] = None,
        metrics: Optional[MetricStore] = None,
        default_ttl: float = 300,
        local_ttl_ceiling: float = 30,
        local_max_entries: int = 1024,
        clock: Callable[[], float] = time.time,
    ):
        self.shared = shared
        self.local = LocalCache(local_max_entries)
        self.stats = stats if stats is not None else CacheStats()
        self.metrics = metrics
        self.default_ttl = default_ttl
        self.local_ttl_ceiling = local_ttl_ceiling
        self._clock = clock

    @staticmethod
    def scoped_key(key: str, identity: Optional[str]) -> str:
        return key if identity is None else f"{key}|caller:{identity}"

    def _count(self, hit: bool, evicted: int = 0) -> None:
        self.stats.record(hit, evicted)
        if self.metrics is not None:
            self.metrics.record(CACHE_REQUESTS_TOTAL, {"result": "hit" if hit else "miss"})

    async def get(self, key: str, identity: Optional[str] = None) -> Any:
        """Return the cached value or CACHE_MISS."""
        key = self.scoped_key(key, identity)
        now = self._clock()
        payload, evicted = self.local.get(key, now)
        evictions = int(evicted)
        if payload is not None:
            self._count(True, evictions)
            return json.loads(payload)

        entry = None
        if self.shared is not None:
            try:
                entry = await self.shared.get(key)
            except CacheUnavailableError as exc:
                logger.warning(f"Cache read for {key} fell back to origin: {exc}")
        if entry is not None and now > entry.expires_at:
            evictions += 1
            await self._drop_shared(key)
            entry = None
        if entry is None:
            self._count(False, evictions)
            return CACHE_MISS

        local_expiry = min(entry.expires_at, now + self.local_ttl_ceiling)
        self.local.set(key, entry.payload, local_expiry)
        self._count(True, evictions)
        return json.loads(entry.payload)

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        tags: Iterable[str] = (),
        identity: Optional[str] = None,
    ) -> None:
        """Write to both tiers. Never touches the request statistics."""
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if identity is not None:
            ttl = min(ttl, PRIVATE_TTL_CEILING)
        key = self.scoped_key(key, identity)
        payload = json.dumps(value, default=str)
        now = self._clock()
        expires_at = now + ttl
        self.local.set(key, payload, now + min(ttl, self.local_ttl_ceiling))
        if self.shared is None:
            return
        try:
            await self.shared.set(key, payload, expires_at, ttl, tuple(tags))
        except CacheUnavailableError as exc:
            logger.warning(f"Skipped shared cache write for {key}: {exc}")

    async def delete(self, key: str, identity: Optional[str] = None) -> None:
        key = self.scoped_key(key, identity)
        self.local.delete(key)
        await self._drop_shared(key)

    async def _drop_shared(self, key: str) -> None:
        if self.shared is None:
            return
        try:
            await self.shared.delete(key)
        except CacheUnavailableError as exc:
            logger.warning(f"Could not delete shared cache key {key}: {exc}")

    async def invalidate_tag(self, tag: str) -> int:
        """Remove every shared entry tagged ``tag`` and flush the local tier."""
        removed = 0
        if self.shared is not None:
            try:
                removed = await self.shared.invalidate_tag(tag)
            except CacheUnavailableError as exc:
                logger.warning(f"Tag invalidation for {tag} skipped on shared tier: {exc}")
        flushed = self.local.clear()
        logger.debug(f"Invalidated tag {tag}: {removed} shared entries, {flushed} local entries")
        return removed

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
        tags: Iterable[str] = (),
        identity: Optional[str] = None,
    ) -> Any:
        cached = await self.get(key, identity=identity)
        if cached is not CACHE_MISS:
            return cached
        value = await loader()
        await self.set(key, value, ttl=ttl, tags=tags, identity=identity)
        return value
