"""
Two-tier resolution cache.

Tier 1 is an in-process map split into lock-striped shards; tier 2 is the
persistence store. The store is only read here: the engine persists
results and then hands them to put().
"""

import threading
import zlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple, Union

from logging_config import get_logger

from .errors import PersistenceError
from .interfaces import Clock, ResolutionResult, utc_now
from .store import TerritoryStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class FailureMarker:
    """Remembered NOT_FOUND outcome so repeated misses skip the providers."""
    zip_code: str
    error_code: str
    message: str
    suggestions: Tuple[str, ...] = ()
    classification: Optional[str] = None


CachedValue = Union[ResolutionResult, FailureMarker]


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: CachedValue
    ttl: float
    inserted_at: datetime

    @property
    def expires_at(self) -> datetime:
        return self.inserted_at + timedelta(seconds=self.ttl)


@dataclass(frozen=True)
class CacheHit:
    value: CachedValue
    tier: str  # 'memory' or 'store'


class ResolutionCache:
    """
    Cache in front of provider calls, keyed by ZIP code.

    Entries are immutable and replaced whole. Memory TTL for a result is
    the time left until its next_revalidation_at, capped at memory_ttl_cap.
    Failures live only in memory, for failure_ttl seconds.
    """

    def __init__(
        self,
        store: Optional[TerritoryStore] = None,
        clock: Clock = utc_now,
        memory_ttl_cap: float = 600,
        failure_ttl: float = 300,
        shard_count: int = 16,
    ):
        self.store = store
        self.clock = clock
        self.memory_ttl_cap = memory_ttl_cap
        self.failure_ttl = failure_ttl
        self._shards: List[Tuple[threading.Lock, Dict[str, CacheEntry]]] = [
            (threading.Lock(), {}) for _ in range(max(1, shard_count))
        ]
        self._stats_lock = threading.Lock()
        self.stats = {"memory_hits": 0, "store_hits": 0, "misses": 0}

    def _shard(self, key: str) -> Tuple[threading.Lock, Dict[str, CacheEntry]]:
        return self._shards[zlib.crc32(key.encode()) % len(self._shards)]

    def _count(self, stat: str):
        with self._stats_lock:
            self.stats[stat] += 1

    def get(self, zip_code: str) -> Optional[CacheHit]:
        """
        Look up a ZIP in memory, then in the store.

        A store row counts only while fresh; stale rows are left for the
        fallback locator. Store errors degrade to a miss.
        """
        now = self.clock()
        lock, entries = self._shard(zip_code)
        with lock:
            entry = entries.get(zip_code)
            if entry is not None and now >= entry.expires_at:
                del entries[zip_code]
                entry = None
        if entry is not None:
            self._count("memory_hits")
            return CacheHit(value=entry.value, tier="memory")

        if self.store is not None:
            try:
                row = self.store.get(zip_code)
            except PersistenceError as e:
                logger.warning("Store read failed, treating as cache miss",
                               extra={"zip_code": zip_code, "error": str(e)})
                row = None
            if row is not None and row.is_fresh(now):
                self._put_entry(zip_code, row, self._result_ttl(row, now), now)
                self._count("store_hits")
                return CacheHit(value=row, tier="store")

        self._count("misses")
        return None

    def put(self, result: ResolutionResult) -> None:
        """Cache a freshly resolved result in memory."""
        now = self.clock()
        ttl = self._result_ttl(result, now)
        if ttl <= 0:
            return
        self._put_entry(result.zip_code, result, ttl, now)

    def put_failure(self, failure: FailureMarker) -> None:
        now = self.clock()
        self._put_entry(failure.zip_code, failure, self.failure_ttl, now)

    def invalidate(self, zip_code: str) -> None:
        lock, entries = self._shard(zip_code)
        with lock:
            entries.pop(zip_code, None)

    def clear(self) -> None:
        for lock, entries in self._shards:
            with lock:
                entries.clear()

    def size(self) -> int:
        total = 0
        for lock, entries in self._shards:
            with lock:
                total += len(entries)
        return total

    def _result_ttl(self, result: ResolutionResult, now: datetime) -> float:
        remaining = (result.next_revalidation_at - now).total_seconds()
        return min(remaining, self.memory_ttl_cap)

    def _put_entry(self, key: str, value: CachedValue, ttl: float, now: datetime):
        entry = CacheEntry(key=key, value=value, ttl=ttl, inserted_at=now)
        lock, entries = self._shard(key)
        with lock:
            entries[key] = entry
