"""Pulse — Query Cache.

Short-TTL memoization in front of the dashboard pipeline. One instance is
built per process and handed to the services that use it. It takes no locks:
all access happens on the event loop thread.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from pulse.config import settings
from pulse.core.logging import get_logger

logger = get_logger("cache.query")


@dataclass
class CachedEntry:
    key: str
    data: Any
    stored_at: float
    ttl: float


class QueryCache:
    """TTL cache with substring-pattern invalidation."""

    def __init__(
        self,
        default_ttl: Optional[float] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = settings.cache_ttl_seconds if default_ttl is None else default_ttl
        self.max_entries = settings.cache_max_entries if max_entries is None else max_entries
        self._clock = clock
        self._entries: Dict[str, CachedEntry] = {}

    # ── Key builders ──

    @staticmethod
    def dashboard_key(
        client_id: str,
        periods: list[str],
        business_size: str,
        industry_vertical: str,
        bucketed: bool = False,
    ) -> str:
        """Key for one dashboard payload; bucketed and monthly shapes never share a key."""
        shape = "buckets" if bucketed else "months"
        return (
            f"dashboard:{client_id}:{','.join(periods)}:"
            f"{business_size}:{industry_vertical}:{shape}"
        )

    # ── Core operations ──

    def get(self, key: str) -> Any:
        """Return cached data, or None if absent or expired (expired keys are evicted)."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at > entry.ttl:
            del self._entries[key]
            return None
        return entry.data

    def set(self, key: str, data: Any, ttl: Optional[float] = None) -> None:
        self._entries[key] = CachedEntry(
            key=key,
            data=data,
            stored_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )
        if len(self._entries) > self.max_entries:
            self._evict()

    def clear(self, pattern: Optional[str] = None) -> int:
        """Delete keys containing `pattern`, or everything when no pattern is given."""
        if pattern:
            keys = [k for k in self._entries if pattern in k]
            for key in keys:
                del self._entries[key]
            logger.info(f"Cache cleared: deleted {len(keys)} keys matching pattern {pattern!r}")
            return len(keys)

        total = len(self._entries)
        self._entries.clear()
        logger.info(f"Cache cleared: deleted all {total} keys")
        return total

    def invalidate_client(self, client_id: str) -> int:
        return self.clear(f"dashboard:{client_id}:")

    def _evict(self) -> None:
        """Drop expired entries, then the oldest ones above max_entries."""
        now = self._clock()
        for key in [k for k, e in self._entries.items() if now - e.stored_at > e.ttl]:
            del self._entries[key]
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            oldest = sorted(self._entries.values(), key=lambda e: e.stored_at)[:overflow]
            for entry in oldest:
                del self._entries[entry.key]

    def stats(self) -> dict:
        return {"size": len(self._entries), "keys": list(self._entries.keys())}
