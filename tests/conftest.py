"""Shared test fixtures for the market data collector."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio

from marketwatch.config import (
    AlertSettings,
    AppSettings,
    CacheSettings,
    CollectionSettings,
    FetcherSettings,
    ProviderKeySettings,
)
from marketwatch.fetching.transport import Transport
from marketwatch.models import Provider, ProviderRequest, RateLimit, RawResponse
from marketwatch.storage.database import MarketDatabase
from marketwatch.storage.store import MarketDataStore

START = 1_700_000_000.0


class _VirtualDeadline:
    def __init__(self, at: float, task: asyncio.Task) -> None:
        self.at = at
        self.task = task
        self.expired = False


class ManualClock:
    """Deterministic clock: sleeping advances time instead of waiting.

    Every sleep still yields to the event loop once so other tasks can run.
    A sleep that would cross an active ``timeout`` stops at the deadline and
    cancels the task that opened it, like ``asyncio.timeout`` in real time.
    """

    def __init__(self, start: float = START) -> None:
        self._now = start
        self.sleeps: list[float] = []
        self._deadlines: list[_VirtualDeadline] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        target = self._now + max(seconds, 0.0)
        due = [d for d in self._deadlines if not d.expired and d.at <= target]
        if due:
            first = min(due, key=lambda d: d.at)
            self._now = max(self._now, first.at)
            first.expired = True
            first.task.cancel()
        else:
            self._now = target
        await asyncio.sleep(0)

    @asynccontextmanager
    async def timeout(self, seconds: float) -> AsyncIterator[None]:
        """Virtual-time deadline, backed by a real one for work that never sleeps."""
        deadline = _VirtualDeadline(self._now + seconds, asyncio.current_task())
        self._deadlines.append(deadline)
        try:
            async with asyncio.timeout(seconds):
                yield
        except asyncio.CancelledError:
            if not deadline.expired:
                raise
            deadline.task.uncancel()
            raise TimeoutError from None
        finally:
            self._deadlines.remove(deadline)


class ScriptedTransport(Transport):
    """Transport returning scripted outcomes per provider id.

    Each script entry is either a payload (returned as a 200 response) or an
    exception instance (raised). The last entry repeats once the script runs
    out. ``calls`` records (provider_id, request, time) for every send.
    """

    def __init__(self, clock: ManualClock, scripts: dict[str, list[Any]] | None = None) -> None:
        self._clock = clock
        self.scripts: dict[str, list[Any]] = scripts or {}
        self.calls: list[tuple[str, ProviderRequest, float]] = []
        self.closed = False

    def script(self, provider_id: str, *outcomes: Any) -> None:
        self.scripts[provider_id] = list(outcomes)

    def calls_to(self, provider_id: str) -> list[tuple[str, ProviderRequest, float]]:
        return [c for c in self.calls if c[0] == provider_id]

    async def send(self, provider: Provider, request: ProviderRequest) -> RawResponse:
        self.calls.append((provider.id, request, self._clock.now()))
        script = self.scripts.get(provider.id)
        if not script:
            raise AssertionError(f"no script for provider {provider.id}")
        outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return RawResponse(
            provider_id=provider.id,
            status=200,
            payload=outcome,
            received_at=self._clock.now(),
        )

    async def close(self) -> None:
        self.closed = True


def make_provider(
    provider_id: str,
    max_calls: int = 100,
    window: float = 60.0,
    priority: int = 0,
    group: str = "test",
    min_interval: float = 0.0,
) -> Provider:
    return Provider(
        id=provider_id,
        rate_limit=RateLimit(max_calls=max_calls, window_seconds=window),
        fallback_priority=priority,
        group=group,
        min_interval=min_interval,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def transport(clock: ManualClock) -> ScriptedTransport:
    return ScriptedTransport(clock)


@pytest.fixture
def fetcher_settings() -> FetcherSettings:
    return FetcherSettings(rate_limit_backoff=60.0, transient_retry_delay=1.0, default_timeout=5.0)


@pytest.fixture
def cache_settings() -> CacheSettings:
    return CacheSettings(fast_ttl=300.0, slow_ttl=900.0, sweep_interval=60.0, max_entries=100)


@pytest.fixture
def alert_settings() -> AlertSettings:
    return AlertSettings(
        dedup_window=3600.0,
        event_window=86400.0,
        retention_days=7,
        event_horizon_days=3,
        ssr_very_bullish=Decimal("2.0"),
        ssr_bullish=Decimal("4.0"),
        ssr_bearish=Decimal("6.0"),
        ssr_very_bearish=Decimal("8.0"),
    )


@pytest.fixture
def collection_settings() -> CollectionSettings:
    return CollectionSettings(
        core_interval=3600,
        cycle_deadline=5.0,
        group_concurrency=2,
        crypto_symbols=["BTC", "ETH"],
        stablecoin_symbols=["USDT", "USDC"],
    )


@pytest.fixture
def mock_settings(collection_settings: CollectionSettings) -> AppSettings:
    """AppSettings with every provider key set to a dummy value."""
    return AppSettings(
        log_level="DEBUG",
        providers=ProviderKeySettings(
            fred_api_key="test-fred-key",  # type: ignore[arg-type]
            alpha_vantage_api_key="test-av-key",  # type: ignore[arg-type]
            coingecko_api_key="test-cg-key",  # type: ignore[arg-type]
        ),
        collection=collection_settings,
    )


@pytest_asyncio.fixture
async def store(tmp_path) -> AsyncIterator[MarketDataStore]:
    """A MarketDataStore backed by a fresh SQLite file."""
    database = MarketDatabase(str(tmp_path / "test.db"))
    await database.connect()
    try:
        yield MarketDataStore(database)
    finally:
        await database.close()
