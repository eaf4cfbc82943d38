"""
In-memory TTL cache for upstream responses that change slowly
(bestseller lists, repeated search queries).
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

MAX_ENTRIES = 1000


class CacheManager:
    """Thread-safe memory cache with per-entry expiry."""

    def __init__(self):
        self.memory_cache: Dict[str, tuple] = {}
        self.memory_cache_lock = threading.RLock()
        self.cache_stats = {"hits": 0, "misses": 0}

    def get(self, key: str) -> Optional[Any]:
        with self.memory_cache_lock:
            cache_entry = self.memory_cache.get(key)
            if cache_entry:
                value, expires_at = cache_entry
                if datetime.now() < expires_at:
                    self.cache_stats["hits"] += 1
                    return value
                del self.memory_cache[key]
            self.cache_stats["misses"] += 1
            return None

    def set(self, key: str, value: Any, ttl_seconds: int = 300) -> None:
        with self.memory_cache_lock:
            self.memory_cache[key] = (value, datetime.now() + timedelta(seconds=ttl_seconds))

            # Keep the cache bounded: drop the 10% closest to expiry
            if len(self.memory_cache) > MAX_ENTRIES:
                sorted_items = sorted(self.memory_cache.items(), key=lambda x: x[1][1])
                for k, _ in sorted_items[: MAX_ENTRIES // 10]:
                    self.memory_cache.pop(k, None)
                logger.debug(f"Evicted {MAX_ENTRIES // 10} cache entries")

    def clear(self) -> None:
        with self.memory_cache_lock:
            self.memory_cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        stats = self.cache_stats.copy()
        stats["memory_cache_size"] = len(self.memory_cache)
        total = stats["hits"] + stats["misses"]
        stats["hit_ratio"] = stats["hits"] / total if total else 0.0
        return stats


# Global cache instance
cache_manager = CacheManager()
