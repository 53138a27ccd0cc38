"""TTL cache for query results, keyed by compiled query fingerprint."""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from cachetools import TTLCache

logger = logging.getLogger(__name__)


class ResultCache:
    """
    Bounded time-to-live cache for query result rows.

    Keys are ``CompiledQuery.fingerprint()`` values, so identical SQL bound to
    different parameters never shares an entry. When the cache is full the
    least recently used entry is evicted first.
    """

    def __init__(self, ttl_seconds: int = 600, max_size: int = 100,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._cache = TTLCache(maxsize=max_size, ttl=ttl_seconds, timer=clock)
        # TTLCache is not thread-safe
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[List[Dict[str, Any]]]:
        with self._lock:
            rows = self._cache.get(key)
            if rows is None:
                self.misses += 1
                return None
            self.hits += 1
            return rows

    def set(self, key: str, rows: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._cache[key] = rows

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self.hits = 0
            self.misses = 0
        logger.info("Result cache cleared")

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            self._cache.expire()
            total = self.hits + self.misses
            return {
                "keys": len(self._cache),
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": self.hits / total if total else 0.0,
            }
