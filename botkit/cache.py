"""
Unified Cache Manager Module

Memoizes expensive read paths (embeddings, completions, similarity searches,
retrieval contexts, analytics aggregates) in the state repository with
key-based TTL invalidation. Keys live in named groups, each with its own
default TTL, so a whole family of entries can be dropped at once when the
underlying data changes.
"""

import hashlib
import json
import logging
import threading
from typing import Any, Callable, Dict, Optional

from config.settings import CacheConfig, get_settings
from botkit.state import StateRepository

# Configure logging
logger = logging.getLogger(__name__)

_MISS = object()


def make_cache_key(prefix: str, *parts: Any) -> str:
    """Build a stable key from arbitrary JSON-serialisable parts."""
    raw = json.dumps(parts, sort_keys=True, default=str)
    return f"{prefix}{hashlib.md5(raw.encode()).hexdigest()}"


class UnifiedCacheManager:
    """
    Group-aware cache on top of a StateRepository.

    Example:
        cache = UnifiedCacheManager(InMemoryStateRepository())
        cache.set("stats", {"total": 3}, group="performance")
        cache.get("stats", group="performance")
        cache.invalidate_group("performance")
    """

    PREFIX = "cache:"

    def __init__(self, state: StateRepository, config: Optional[CacheConfig] = None):
        self.state = state
        self.config = config or get_settings().cache
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0}
        self._stats_lock = threading.Lock()

    def _full_key(self, key: str, group: str) -> str:
        return f"{self.PREFIX}{group}:{key}"

    def _bump(self, counter: str) -> None:
        with self._stats_lock:
            self._stats[counter] += 1

    def ttl_for(self, group: str) -> int:
        return self.config.group_ttls.get(group, self.config.default_ttl)

    def get(self, key: str, group: str = "default", default: Any = None) -> Any:
        value = self.state.get(self._full_key(key, group), _MISS)
        if value is _MISS:
            self._bump("misses")
            return default
        self._bump("hits")
        return value

    def has(self, key: str, group: str = "default") -> bool:
        return self.state.has(self._full_key(key, group))

    def set(self, key: str, value: Any, group: str = "default", ttl: Optional[int] = None) -> None:
        self.state.set(self._full_key(key, group), value, ttl if ttl is not None else self.ttl_for(group))
        self._bump("sets")

    def delete(self, key: str, group: str = "default") -> bool:
        self._bump("deletes")
        return self.state.delete(self._full_key(key, group))

    def remember(
        self,
        key: str,
        producer: Callable[[], Any],
        group: str = "default",
        ttl: Optional[int] = None,
    ) -> Any:
        """Return the cached value, computing and storing it on a miss."""
        value = self.get(key, group, _MISS)
        if value is not _MISS:
            return value
        value = producer()
        self.set(key, value, group, ttl)
        return value

    def invalidate_group(self, group: str) -> int:
        removed = self.state.delete_prefix(f"{self.PREFIX}{group}:")
        logger.debug(f"Invalidated cache group '{group}' ({removed} entries)")
        return removed

    def invalidate_prefix(self, prefix: str, group: str = "default") -> int:
        """Drop the entries of a group whose key starts with prefix."""
        return self.state.delete_prefix(self._full_key(prefix, group))

    def clear_all(self) -> int:
        removed = self.state.delete_prefix(self.PREFIX)
        logger.info(f"Cleared all caches ({removed} entries)")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        """Hit/miss counters plus live and expired entry counts per group."""
        groups: Dict[str, Dict[str, int]] = {}
        total = expired = 0
        for full_key, is_expired in self.state.scan(self.PREFIX):
            group = full_key[len(self.PREFIX):].split(":", 1)[0]
            bucket = groups.setdefault(group, {"entries": 0, "expired": 0})
            bucket["entries"] += 1
            total += 1
            if is_expired:
                bucket["expired"] += 1
                expired += 1

        with self._stats_lock:
            counters = dict(self._stats)
        lookups = counters["hits"] + counters["misses"]
        return {
            **counters,
            "hit_rate": counters["hits"] / lookups if lookups else 0.0,
            "total_entries": total,
            "expired_entries": expired,
            "groups": groups,
        }
