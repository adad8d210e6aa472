"""TTL-keyed cache of resolved logical metric values.

Replaces per-service module-level cache maps with one encapsulated instance
constructed with an injectable clock. Expiry is checked lazily on every read,
so correctness never depends on the background sweep having run; the sweep
only bounds memory.
"""

import asyncio
from decimal import Decimal
from typing import Any

from marketwatch.clock import Clock
from marketwatch.config import CacheSettings
from marketwatch.logging import get_logger
from marketwatch.models import CacheEntry, DataClass, LogicalMetric

logger = get_logger(__name__)


class ResponseCache:
    """In-memory cache of logical values with per-entry TTL.

    All methods are synchronous and contain no suspension points, so on the
    single event loop each call observes and mutates the map atomically.

    Usage:
        cache = ResponseCache(settings.cache, clock)
        await cache.start()          # background sweep
        cache.put(metric, value, cache.ttl_for(DataClass.FAST), "coingecko")
        cache.get(metric)            # None once expired
    """

    def __init__(self, settings: CacheSettings, clock: Clock | None = None) -> None:
        self._settings = settings
        self._clock = clock or Clock()
        self._entries: dict[LogicalMetric, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    def ttl_for(self, data_class: DataClass) -> float:
        """Return the TTL in seconds for a metric's data class."""
        if data_class == DataClass.FAST:
            return self._settings.fast_ttl
        return self._settings.slow_ttl

    def get_entry(self, key: LogicalMetric) -> CacheEntry | None:
        """Return the live entry for key, or None if absent or expired."""
        entry = self._entries.get(key)
        if entry is None or entry.is_expired(self._clock.now()):
            self._misses += 1
            return None
        self._hits += 1
        return entry

    def get(self, key: LogicalMetric) -> Decimal | None:
        """Return the cached value for key, or None if absent or expired."""
        entry = self.get_entry(key)
        return entry.value if entry is not None else None

    def put(
        self,
        key: LogicalMetric,
        value: Decimal,
        ttl: float,
        source: str,
        metadata: dict[str, Any] | None = None,
    ) -> CacheEntry:
        """Store a value with its TTL and the provider that supplied it."""
        entry = CacheEntry(
            key=key,
            value=value,
            fetched_at=self._clock.now(),
            ttl=ttl,
            source_provider=source,
            metadata=metadata or {},
        )
        self._entries[key] = entry
        return entry

    def invalidate(self, key: LogicalMetric) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
        logger.info("response_cache_cleared")

    def __len__(self) -> int:
        return len(self._entries)

    def sweep(self) -> tuple[int, int]:
        """Drop expired entries, then evict oldest entries above the cap.

        Returns:
            Tuple of (expired_removed, evicted_over_cap).
        """
        now = self._clock.now()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]

        evicted = 0
        overflow = len(self._entries) - self._settings.max_entries
        if overflow > 0:
            oldest_first = sorted(
                self._entries.values(), key=lambda e: e.fetched_at
            )
            for entry in oldest_first[:overflow]:
                del self._entries[entry.key]
                evicted += 1

        if expired or evicted:
            logger.debug(
                "response_cache_swept",
                expired=len(expired),
                evicted=evicted,
                remaining=len(self._entries),
            )
        return len(expired), evicted

    def stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "entries": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 3) if total else 0.0,
        }

    # ──────────────────────────────────────────────
    # Background sweep
    # ──────────────────────────────────────────────

    async def start(self) -> None:
        """Begin the periodic sweep in the background."""
        if self._running:
            logger.warning("response_cache_sweep_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "response_cache_sweep_started",
            interval=self._settings.sweep_interval,
            max_entries=self._settings.max_entries,
        )

    async def stop(self) -> None:
        """Stop the sweep task."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("response_cache_sweep_stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            await self._clock.sleep(self._settings.sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.warning("response_cache_sweep_error", exc_info=True)
