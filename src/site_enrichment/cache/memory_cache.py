"""In-process cache gateway with per-kind TTLs and bounded size."""

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from cachetools import TLRUCache

from site_enrichment.cache.gateway import Coordinate, cache_key, coordinate_key
from site_enrichment.models.config import CacheTTLConfig
from site_enrichment.models.data_models import CacheKind
from site_enrichment.monitoring.logger import StructuredLogger


CACHE_VERSION = "v1.0"


@dataclass
class CacheEntry:
    data: Any
    ttl: float
    version: str = CACHE_VERSION
    lat: Optional[float] = None
    lng: Optional[float] = None


@dataclass
class CacheStats:
    hits: int
    misses: int
    hit_rate: float
    total_requests: int
    cache_size: int
    memory_usage_bytes: int


def _entry_expiry(key: str, entry: CacheEntry, now: float) -> float:
    return now + entry.ttl


class TenthEvictingCache(TLRUCache):
    """
    A TLRU cache that frees a tenth of its capacity whenever it is full.

    Entries expire ``entry.ttl`` seconds after they are written.
    """

    def __init__(self, maxsize: int, timer: Callable[[], float], logger: StructuredLogger):
        super().__init__(maxsize=maxsize, ttu=_entry_expiry, timer=timer)
        self.logger = logger

    def popitem(self):
        """Evict the least recently used tenth of the entries."""
        batch = max(1, len(self) // 10)
        key, value = super().popitem()
        for _ in range(batch - 1):
            super().popitem()
        self.logger.log("cache_evicted", entries=batch)
        return key, value


class InMemoryCacheGateway:
    """
    CacheGateway backed by a cachetools TLRU cache.

    Entries expire after the TTL of their kind and are dropped when their
    version no longer matches.
    """

    def __init__(
        self,
        ttl: Optional[CacheTTLConfig] = None,
        max_entries: int = 10000,
        precision: int = 3,
        now: Callable[[], float] = time.time,
        logger: Optional[StructuredLogger] = None,
    ):
        ttl = ttl or CacheTTLConfig()
        self._ttl: Dict[CacheKind, float] = {
            CacheKind.DEMOGRAPHIC: ttl.demographic,
            CacheKind.LOCATION_INTELLIGENCE: ttl.location_intelligence,
            CacheKind.VIABILITY: ttl.viability,
            CacheKind.COMPETITIVE: ttl.competitive,
            CacheKind.LOCATION_ANALYSIS: ttl.location_analysis,
        }
        self.max_entries = max_entries
        self.precision = precision
        self._now = now
        self.logger = logger or StructuredLogger("site_enrichment.cache")
        self._store = self._new_store()
        self._hits = 0
        self._misses = 0

    async def get(self, kind: CacheKind, lat: float, lng: float, radius: Optional[float] = None) -> Optional[Any]:
        return self._read(cache_key(kind, lat, lng, radius, self.precision))

    async def set(
        self,
        kind: CacheKind,
        lat: float,
        lng: float,
        value: Any,
        radius: Optional[float] = None
    ) -> None:
        key = cache_key(kind, lat, lng, radius, self.precision)
        self._store[key] = CacheEntry(data=value, ttl=self._ttl[kind], lat=lat, lng=lng)

    async def get_multiple(self, kind: CacheKind, coordinates: Iterable[Coordinate]) -> Dict[str, Any]:
        results = {}
        for lat, lng in coordinates:
            value = await self.get(kind, lat, lng)
            if value is not None:
                results[coordinate_key(lat, lng)] = value
        return results

    async def set_multiple(self, kind: CacheKind, entries: Iterable[Tuple[float, float, Any]]) -> None:
        for lat, lng, value in entries:
            await self.set(kind, lat, lng, value)

    async def invalidate_location(self, lat: float, lng: float) -> int:
        """Drop every kind cached for one location."""
        removed = 0
        for kind in CacheKind:
            if self._store.pop(cache_key(kind, lat, lng, precision=self.precision), None) is not None:
                removed += 1
        return removed

    async def invalidate_region(self, north: float, south: float, east: float, west: float) -> int:
        """Drop every entry whose coordinates fall inside the bounds."""
        doomed = [
            key for key, entry in self._live_entries()
            if entry.lat is not None
            and south <= entry.lat <= north
            and west <= entry.lng <= east
        ]
        for key in doomed:
            self._store.pop(key, None)
        self.logger.log("cache_region_invalidated", entries=len(doomed))
        return len(doomed)

    async def invalidate_expired(self) -> int:
        return len(self._store.expire())

    async def clear(self) -> None:
        self._store = self._new_store()
        self._hits = 0
        self._misses = 0

    def get_cache_stats(self) -> CacheStats:
        total = self._hits + self._misses
        memory = sum(
            len(key) * 2 + len(json.dumps(entry.data, default=str)) * 2 + 64
            for key, entry in self._live_entries()
        )
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            hit_rate=round(self._hits / total, 3) if total > 0 else 0.0,
            total_requests=total,
            cache_size=len(self._store),
            memory_usage_bytes=memory
        )

    async def health_check(self) -> Dict[str, Any]:
        """Write then read a probe entry."""
        probe_key = "health_check_test"
        probe = {"test": True, "timestamp": self._now()}
        self._store[probe_key] = CacheEntry(data=probe, ttl=1.0)
        retrieved = self._store.pop(probe_key, None)
        status = "healthy" if retrieved is not None and retrieved.data == probe else "unhealthy"
        return {"status": status, "details": self.get_cache_stats()}

    def _new_store(self) -> TenthEvictingCache:
        return TenthEvictingCache(maxsize=self.max_entries, timer=self._now, logger=self.logger)

    def _live_entries(self) -> List[Tuple[str, CacheEntry]]:
        entries = []
        for key in list(self._store.keys()):
            entry = self._store.get(key)
            if entry is not None:
                entries.append((key, entry))
        return entries

    def _read(self, key: str) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is None:
            self._misses += 1
            return None

        if entry.version != CACHE_VERSION:
            self._store.pop(key, None)
            self._misses += 1
            return None

        self._hits += 1
        return entry.data
