"""
TM Exact-Match Cache
In-memory LRU keyed by (source_hash, target_language).

Each key holds a small bucket {requested_context: entry} so that the
context-specific and null-context fallback resolutions of the same
hash are cached side by side and dropped together on invalidation.

Cached entries are detached copies; the store stays the source of truth.
"""
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


@dataclass
class CacheStatistics:
    hits: int
    misses: int
    size: int
    max_size: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": round(self.hit_rate, 4),
        }


class TMCache:
    """
    Thread-safe LRU cache for exact matches.

    Writers invalidate; readers that resolved an entry from the store put it
    back with the stamp taken before their read. A put whose key was
    invalidated after that stamp is dropped, so a slow reader can never
    re-insert a row a writer has already replaced.
    """

    def __init__(self, max_size: int = 10000):
        self.max_size = max_size
        self._buckets: "OrderedDict[CacheKey, Dict[Optional[str], Any]]" = OrderedDict()
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

        # Logical clock for invalidations
        self._clock = 0
        self._floor = 0
        self._invalidated: "OrderedDict[CacheKey, int]" = OrderedDict()
        self._language_floor: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def stamp(self) -> int:
        """Token to pass to put() after reading from the store."""
        with self._lock:
            return self._clock

    def get(self, source_hash: str, target_language: str, context: Optional[str] = None):
        key = (source_hash, target_language)
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or context not in bucket:
                self._misses += 1
                return None
            self._buckets.move_to_end(key)
            self._hits += 1
            return bucket[context]

    def __contains__(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._buckets

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(
        self,
        source_hash: str,
        target_language: str,
        entry: Any,
        context: Optional[str] = None,
        stamp: Optional[int] = None,
    ) -> bool:
        """
        Cache an entry resolved for (hash, language, context).

        Returns:
            False when the put was dropped as stale
        """
        key = (source_hash, target_language)
        with self._lock:
            if stamp is not None and self._is_stale(key, stamp):
                logger.debug(f"Dropped stale cache put for {source_hash[:12]}/{target_language}")
                return False

            bucket = self._buckets.setdefault(key, {})
            bucket[context] = entry
            self._buckets.move_to_end(key)

            while len(self._buckets) > self.max_size:
                self._buckets.popitem(last=False)
            return True

    def invalidate(self, source_hash: str, target_language: str) -> None:
        key = (source_hash, target_language)
        with self._lock:
            self._clock += 1
            self._buckets.pop(key, None)
            self._invalidated[key] = self._clock
            self._invalidated.move_to_end(key)
            # Forgetting an old record is safe once the floor covers it
            while len(self._invalidated) > self.max_size:
                _, clock = self._invalidated.popitem(last=False)
                self._floor = max(self._floor, clock)

    def invalidate_many(self, keys: Iterable[CacheKey]) -> None:
        with self._lock:
            for source_hash, target_language in keys:
                self.invalidate(source_hash, target_language)

    def invalidate_language(self, target_language: str) -> int:
        """Drop every key of one target language."""
        with self._lock:
            self._clock += 1
            self._language_floor[target_language] = self._clock
            doomed = [key for key in self._buckets if key[1] == target_language]
            for key in doomed:
                del self._buckets[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._clock += 1
            self._floor = self._clock
            self._buckets.clear()
            self._invalidated.clear()
            self._language_floor.clear()
        logger.debug("TM cache cleared")

    def preload(self, entries: Iterable[Any], stamp: Optional[int] = None) -> int:
        """Warm the cache with entries under their own context."""
        count = 0
        with self._lock:
            for entry in entries:
                count += self.put(
                    entry.source_hash,
                    entry.target_language,
                    entry,
                    context=entry.domain_context,
                    stamp=stamp,
                )
        return count

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def statistics(self) -> CacheStatistics:
        with self._lock:
            return CacheStatistics(
                hits=self._hits,
                misses=self._misses,
                size=len(self._buckets),
                max_size=self.max_size,
            )

    def reset_statistics(self) -> None:
        with self._lock:
            self._hits = 0
            self._misses = 0

    def _is_stale(self, key: CacheKey, stamp: int) -> bool:
        if stamp < self._floor:
            return True
        if stamp < self._language_floor.get(key[1], 0):
            return True
        return stamp < self._invalidated.get(key, 0)
