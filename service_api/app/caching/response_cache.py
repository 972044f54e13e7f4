"""
In-process TTL cache for JSON response bodies.
"""

import asyncio
import json
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TYPE_CHECKING

from cachetools import TLRUCache

from shared.errors import CacheError
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_RESPONSE_TTL = 300
DASHBOARD_STATS_TTL = 120
CATEGORIES_TTL = 86400
DEFAULT_CHECK_PERIOD = 60


@dataclass
class CacheEntry:
    """A cached response body and its lifetime."""
    key: str
    value: Any
    ttl_seconds: float
    created_at: float
    size_bytes: int

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds


def _entry_expiry(key: str, entry: CacheEntry, now: float) -> float:
    return now + entry.ttl_seconds


class ResponseCache:
    """TTL cache keyed by request path and query.

    Every entry carries its own TTL. Expired entries are never returned and
    are physically removed by ``sweep()``, which runs every ``check_period``
    seconds once ``start()`` has been awaited. There is no size bound; entries
    only leave through expiry or invalidation.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_RESPONSE_TTL,
        check_period: float = DEFAULT_CHECK_PERIOD,
        *,
        metrics: Optional["MetricsCollector"] = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.check_period = check_period
        self.metrics = metrics
        self.logger = get_logger("api.cache")
        self._timer = timer
        self._entries = self._new_store()
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0}

        self._sweep_task: Optional[asyncio.Task] = None
        self.running = False

    def _new_store(self) -> TLRUCache:
        return TLRUCache(maxsize=math.inf, ttu=_entry_expiry, timer=self._timer)

    def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for ``key`` or ``default``."""
        entry = self._entries.get(key)
        if entry is None:
            self._stats["misses"] += 1
            self._record_lookup("miss")
            return default

        self._stats["hits"] += 1
        self._record_lookup("hit")
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> bool:
        """Insert or replace ``key``. Returns False when nothing was stored."""
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds

        try:
            size_bytes = len(json.dumps(value))
        except (TypeError, ValueError) as exc:
            raise CacheError("Value is not JSON serializable", {"key": key, "error": str(exc)}) from exc

        if ttl <= 0:
            self._entries.pop(key, None)
            return False

        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            ttl_seconds=ttl,
            created_at=self._timer(),
            size_bytes=size_bytes,
        )
        self._stats["sets"] += 1
        self._update_entries_gauge()
        self.logger.debug("Cached response", key=key, ttl=ttl)
        return True

    def invalidate_by_pattern(self, pattern: str) -> int:
        """Remove every entry whose key contains ``pattern`` (plain substring)."""
        self._entries.expire()

        removed = 0
        for key in [k for k in list(self._entries.keys()) if pattern in k]:
            try:
                del self._entries[key]
            except KeyError:
                # expired between the sweep and the delete
                continue
            removed += 1

        self._stats["deletes"] += removed
        self._record_invalidation("pattern", removed)
        self.logger.info("Cache invalidated by pattern", pattern=pattern, removed=removed)
        return removed

    def invalidate_all(self) -> int:
        """Drop every entry. Returns the number of live entries removed."""
        self._entries.expire()
        removed = len(self._entries)
        self._entries = self._new_store()

        self._stats["deletes"] += removed
        self._record_invalidation("all", removed)
        self.logger.info("Cache flushed", removed=removed)
        return removed

    async def get_or_set(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        ttl_seconds: Optional[float] = None,
    ) -> Any:
        """Read-through helper: return the cached value or fetch and store it.

        Errors raised by ``fetch`` propagate and nothing is stored.
        """
        missing = object()
        cached = self.get(key, missing)
        if cached is not missing:
            return cached

        value = await fetch()
        try:
            self.set(key, value, ttl_seconds)
        except CacheError as exc:
            self.logger.warning("Skipping cache write", key=key, error=exc.message)
        return value

    def sweep(self) -> int:
        """Physically remove expired entries."""
        expired = self._entries.expire()
        count = len(expired)
        if count:
            self._update_entries_gauge()
            self.logger.debug("Expired cache entries swept", count=count)
        return count

    def stats(self) -> Dict[str, Any]:
        """Best-effort counters for monitoring."""
        self._entries.expire()

        approximate_size = 0
        for key in list(self._entries.keys()):
            entry = self._entries.get(key)
            if entry is not None:
                approximate_size += len(key) + entry.size_bytes

        total = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "key_count": len(self._entries),
            "total_requests": total,
            "hit_rate_percentage": round(self._stats["hits"] / total * 100, 2) if total else 0.0,
            "approximate_size_bytes": approximate_size,
            "default_ttl": self.default_ttl,
            "check_period": self.check_period,
        }

    def __len__(self) -> int:
        self._entries.expire()
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    async def start(self):
        """Start the periodic expiry sweep."""
        if self._sweep_task is not None:
            return
        self.running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self.logger.info("Response cache started", check_period=self.check_period)

    async def stop(self):
        """Stop the periodic expiry sweep."""
        self.running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self.logger.info("Response cache stopped")

    async def _sweep_loop(self):
        while self.running:
            await asyncio.sleep(self.check_period)
            try:
                self.sweep()
            except Exception as e:
                self.logger.error("Error in cache sweep", error=str(e))

    def _record_lookup(self, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("response_cache_requests_total", result=result)

    def _record_invalidation(self, kind: str, removed: int) -> None:
        if self.metrics:
            self.metrics.increment_counter("response_cache_invalidations_total", amount=removed, kind=kind)
        self._update_entries_gauge()

    def _update_entries_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("response_cache_entries", len(self._entries))
