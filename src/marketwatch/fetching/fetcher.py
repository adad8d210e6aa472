"""Rate-limited outbound calls, one ordered queue per provider.

Every call for a provider passes through that provider's ProviderQueue, so
the provider's RateWindow is never read-then-written by two overlapping
dispatches. Before each dispatch (retries included) the fetcher waits until
both the sliding-window budget and the minimum spacing allow another call.

Retry policy:
- HTTP 429 / provider-declared rate limit: one retry after a fixed backoff,
  then RateLimitedError
- timeout / transient network error: one retry after a short delay, then
  the original error class
- any other 4xx: surfaced immediately as ProviderHTTPError
"""

import asyncio
from collections import deque
from dataclasses import dataclass

from marketwatch.clock import Clock
from marketwatch.config import FetcherSettings
from marketwatch.exceptions import (
    FetchError,
    FetchTimeoutError,
    RateLimitedError,
    TransientFetchError,
)
from marketwatch.fetching.transport import Transport
from marketwatch.logging import get_logger
from marketwatch.models import Provider, ProviderRequest, RateLimit, RawResponse

logger = get_logger(__name__)


class RateWindow:
    """Ordered timestamps of recent dispatches for one provider.

    A timestamp counts against the budget while ``now - t < window_seconds``.
    """

    def __init__(self, rate_limit: RateLimit) -> None:
        self.rate_limit = rate_limit
        self._calls: deque[float] = deque()
        self.last_dispatch: float | None = None

    def prune(self, now: float) -> None:
        window = self.rate_limit.window_seconds
        while self._calls and now - self._calls[0] >= window:
            self._calls.popleft()

    def wait_time(self, now: float) -> float:
        """Seconds until one more dispatch fits in the window (0 if it fits now)."""
        self.prune(now)
        if len(self._calls) < self.rate_limit.max_calls:
            return 0.0
        oldest = self._calls[0]
        return max(0.0, oldest + self.rate_limit.window_seconds - now)

    def record(self, now: float) -> None:
        self._calls.append(now)
        self.last_dispatch = now

    def count(self, now: float) -> int:
        self.prune(now)
        return len(self._calls)

    def timestamps(self) -> list[float]:
        return list(self._calls)


class ProviderQueue:
    """FIFO serialisation point for one provider.

    asyncio.Lock wakes waiters in acquisition order, which makes it a FIFO
    queue of callers; ``pending`` exposes how many are waiting or running.
    """

    def __init__(self, provider_id: str) -> None:
        self.provider_id = provider_id
        self._lock = asyncio.Lock()
        self.pending = 0

    async def __aenter__(self) -> "ProviderQueue":
        self.pending += 1
        try:
            await self._lock.acquire()
        except BaseException:
            self.pending -= 1
            raise
        return self

    async def __aexit__(self, *exc: object) -> None:
        self._lock.release()
        self.pending -= 1

    @property
    def busy(self) -> bool:
        return self._lock.locked()


@dataclass
class ProviderStats:
    """Per-provider call counters, reported in logs."""

    dispatched: int = 0
    rate_limited: int = 0
    retries: int = 0
    failures: int = 0
    successes: int = 0


class RateLimitedFetcher:
    """Issues provider calls under per-provider rate limits.

    Args:
        transport: Performs a single raw call (HTTP or exchange).
        settings: Backoff, retry delay and default timeout.
        clock: Time source; every wait goes through ``clock.sleep``.
    """

    def __init__(
        self,
        transport: Transport,
        settings: FetcherSettings,
        clock: Clock | None = None,
    ) -> None:
        self._transport = transport
        self._settings = settings
        self._clock = clock or Clock()
        self._windows: dict[str, RateWindow] = {}
        self._queues: dict[str, ProviderQueue] = {}
        self._stats: dict[str, ProviderStats] = {}

    # ──────────────────────────────────────────────
    # Public methods
    # ──────────────────────────────────────────────

    async def fetch(self, provider: Provider, request: ProviderRequest) -> RawResponse:
        """Fetch one response from ``provider``.

        Raises:
            RateLimitedError: Still rate limited after the single backoff retry.
            FetchTimeoutError: Timed out twice.
            TransientFetchError: Network failure twice.
            ProviderHTTPError: Non-retryable 4xx.
        """
        queue = self._queue_for(provider)
        stats = self._stats_for(provider)
        async with queue:
            rate_limit_retried = False
            transient_retried = False
            while True:
                try:
                    response = await self._dispatch(provider, request)
                except RateLimitedError:
                    stats.rate_limited += 1
                    if rate_limit_retried:
                        stats.failures += 1
                        logger.warning(
                            "provider_rate_limited",
                            provider=provider.id,
                            retried=True,
                        )
                        raise
                    rate_limit_retried = True
                    stats.retries += 1
                    logger.warning(
                        "provider_rate_limit_backoff",
                        provider=provider.id,
                        delay=self._settings.rate_limit_backoff,
                    )
                    await self._clock.sleep(self._settings.rate_limit_backoff)
                    continue
                except (FetchTimeoutError, TransientFetchError) as e:
                    if transient_retried:
                        stats.failures += 1
                        logger.warning(
                            "provider_fetch_failed",
                            provider=provider.id,
                            error=str(e),
                            retried=True,
                        )
                        raise
                    transient_retried = True
                    stats.retries += 1
                    logger.info(
                        "provider_fetch_retry",
                        provider=provider.id,
                        error=str(e),
                        delay=self._settings.transient_retry_delay,
                    )
                    await self._clock.sleep(self._settings.transient_retry_delay)
                    continue
                except FetchError as e:
                    stats.failures += 1
                    logger.warning(
                        "provider_fetch_failed",
                        provider=provider.id,
                        error=str(e),
                        retried=False,
                    )
                    raise
                stats.successes += 1
                return response

    def window(self, provider_id: str) -> RateWindow | None:
        """Return the rate window for a provider, if it has been used."""
        return self._windows.get(provider_id)

    def queue(self, provider_id: str) -> ProviderQueue | None:
        return self._queues.get(provider_id)

    def stats(self) -> dict[str, ProviderStats]:
        """Snapshot of per-provider counters."""
        return dict(self._stats)

    async def close(self) -> None:
        await self._transport.close()

    # ──────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────

    def _queue_for(self, provider: Provider) -> ProviderQueue:
        queue = self._queues.get(provider.id)
        if queue is None:
            queue = ProviderQueue(provider.id)
            self._queues[provider.id] = queue
        return queue

    def _window_for(self, provider: Provider) -> RateWindow:
        window = self._windows.get(provider.id)
        if window is None:
            window = RateWindow(provider.rate_limit)
            self._windows[provider.id] = window
        return window

    def _stats_for(self, provider: Provider) -> ProviderStats:
        stats = self._stats.get(provider.id)
        if stats is None:
            stats = ProviderStats()
            self._stats[provider.id] = stats
        return stats

    async def _await_slot(self, provider: Provider, window: RateWindow) -> None:
        """Suspend until the window budget and min spacing both allow a dispatch."""
        while True:
            now = self._clock.now()
            wait = window.wait_time(now)
            if wait <= 0 and window.last_dispatch is not None and provider.min_interval > 0:
                wait = provider.min_interval - (now - window.last_dispatch)
            if wait <= 0:
                return
            logger.debug(
                "provider_throttled",
                provider=provider.id,
                wait=round(wait, 3),
                in_window=window.count(now),
            )
            await self._clock.sleep(wait)

    async def _dispatch(self, provider: Provider, request: ProviderRequest) -> RawResponse:
        window = self._window_for(provider)
        await self._await_slot(provider, window)
        window.record(self._clock.now())
        self._stats_for(provider).dispatched += 1

        timeout = provider.timeout or self._settings.default_timeout
        try:
            return await asyncio.wait_for(
                self._transport.send(provider, request), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise FetchTimeoutError(provider.id, f"no response within {timeout}s") from e
