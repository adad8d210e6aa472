"""Tests for CollectionScheduler: fan-out, deadline, derived steps, and loops."""

import asyncio
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import START, ManualClock, make_provider
from marketwatch.alerts.engine import DedupAlertEngine
from marketwatch.alerts.rules import AlertRules
from marketwatch.analytics.correlation import CorrelationEngine
from marketwatch.analytics.narratives import NarrativeClassifier
from marketwatch.collection.resolver import FallbackResolver, MetricRoute, ProviderBinding
from marketwatch.collection.routes import (
    BTC_DOMINANCE_METRIC,
    FEAR_GREED_METRIC,
    crypto_market_cap,
    crypto_price,
    stablecoin_market_cap,
)
from marketwatch.collection.scheduler import (
    SSR_METRIC,
    STEP_ABANDONED,
    STEP_FAILED,
    STEP_OK,
    STEP_SKIPPED,
    CollectionScheduler,
    seconds_until_hour,
)
from marketwatch.config import CollectionSettings
from marketwatch.exceptions import ProviderHTTPError, RateLimitedError
from marketwatch.fetching.cache import ResponseCache
from marketwatch.fetching.fetcher import RateLimitedFetcher
from marketwatch.fetching.transport import Transport
from marketwatch.models import (
    CycleKind,
    DataClass,
    LogicalMetric,
    MetricStatus,
    ProviderRequest,
    RawResponse,
    UpcomingEvent,
)
from marketwatch.providers import coingecko
from marketwatch.providers.validation import POSITIVE, ParsedValue

TRENDING_URL = coingecko.trending_request().url

TRENDING = {
    "coins": [
        {"item": {"symbol": "FET", "name": "Fetch.ai", "data": {"total_volume": "$200,000,000", "price_change_percentage_24h": {"usd": 8}}}},
        {"item": {"symbol": "PEPE", "name": "Pepe", "data": {"total_volume": "$150,000,000", "price_change_percentage_24h": {"usd": -4}}}},
    ]
}


class UrlTransport(Transport):
    """Answers by request URL; "hang" outcomes never return."""

    def __init__(self, clock: ManualClock, outcomes: dict[str, Any]) -> None:
        self._clock = clock
        self.outcomes = outcomes
        self.calls: list[str] = []

    async def send(self, provider, request: ProviderRequest) -> RawResponse:
        self.calls.append(request.url)
        outcome = self.outcomes[request.url]
        if outcome == "hang":
            await asyncio.Event().wait()
        if isinstance(outcome, BaseException):
            raise outcome
        return RawResponse(provider.id, 200, outcome, self._clock.now())


def _parse(payload: Any) -> ParsedValue:
    return ParsedValue(raw=payload["v"], metadata=dict(payload.get("meta", {})))


def _binding(provider_id: str, url: str, group: str = "test", priority: int = 0) -> ProviderBinding:
    provider = make_provider(provider_id, priority=priority, group=group)
    return ProviderBinding(provider, lambda: ProviderRequest(url=url), _parse, POSITIVE)


def _route(metric: LogicalMetric, *bindings: ProviderBinding, cycle: CycleKind = CycleKind.CORE) -> MetricRoute:
    return MetricRoute(metric, DataClass.FAST, cycle, list(bindings))


def _core_routes() -> list[MetricRoute]:
    return [
        _route(
            crypto_price("BTC"),
            _binding("pa", "a/btc", group="crypto", priority=0),
            _binding("pb", "b/btc", group="crypto", priority=1),
            _binding("pc", "c/btc", group="crypto", priority=2),
        ),
        _route(crypto_price("ETH"), _binding("cg", "cg/eth", group="crypto")),
        _route(crypto_market_cap("BTC"), _binding("cg", "cg/btc_cap", group="crypto")),
        _route(stablecoin_market_cap("USDT"), _binding("cg", "cg/usdt", group="crypto")),
        _route(stablecoin_market_cap("USDC"), _binding("cg", "cg/usdc", group="crypto")),
        _route(BTC_DOMINANCE_METRIC, _binding("cg", "cg/dominance", group="crypto")),
        _route(FEAR_GREED_METRIC, _binding("fng", "fng/index", group="sentiment")),
        _route(LogicalMetric("EQUITY_INDEX", "SP500"), _binding("yh", "yh/spy", group="equities")),
    ]


def _outcomes() -> dict[str, Any]:
    return {
        "a/btc": ProviderHTTPError("pa", 404, "gone"),
        "b/btc": {"v": -1},
        "c/btc": {"v": "64000"},
        "cg/eth": {"v": "3200"},
        "cg/btc_cap": {"v": "1400000000000"},
        "cg/usdt": {"v": "150000000000", "meta": {"change_24h_pct": 6}},
        "cg/usdc": {"v": "50000000000", "meta": {"change_24h_pct": 6}},
        "cg/dominance": {"v": "58"},
        "fng/index": {"v": "72", "meta": {"classification": "Greed"}},
        "yh/spy": {"v": "510.5"},
        TRENDING_URL: TRENDING,
    }


@pytest.fixture
def harness(clock: ManualClock, store, fetcher_settings, cache_settings, alert_settings, collection_settings):
    """Scheduler wired to real components over a URL-scripted transport."""

    def build(routes=None, outcomes=None, settings: CollectionSettings | None = None, **overrides):
        transport = UrlTransport(clock, outcomes if outcomes is not None else _outcomes())
        fetcher = RateLimitedFetcher(transport, fetcher_settings, clock=clock)
        cache = ResponseCache(cache_settings, clock=clock)
        resolver = FallbackResolver(fetcher, cache, routes if routes is not None else _core_routes())
        notifier = MagicMock()
        notifier.dispatch = AsyncMock(return_value=True)
        components = {
            "fetcher": fetcher,
            "correlation_engine": CorrelationEngine(store, clock=clock),
            "classifier": NarrativeClassifier(),
            "alert_engine": DedupAlertEngine(store, notifier, alert_settings, clock=clock),
            "alert_rules": AlertRules(alert_settings),
            "clock": clock,
        }
        components.update(overrides)
        scheduler = CollectionScheduler(
            resolver, store, settings or collection_settings, **components
        )
        return scheduler, transport

    return build


class TestSecondsUntilHour:
    def test_later_today(self) -> None:
        # START is 22:13:20 UTC
        assert seconds_until_hour(START, 23) == pytest.approx(46 * 60 + 40)

    def test_wraps_to_tomorrow(self) -> None:
        assert seconds_until_hour(START, 6) == pytest.approx((7 * 3600) + 46 * 60 + 40)

    def test_exact_hour_means_next_day(self) -> None:
        assert seconds_until_hour(START - 13 * 60 - 20, 22) == pytest.approx(86400)


class TestCoreCycle:
    @pytest.mark.asyncio
    async def test_statuses_and_persistence(self, harness, store) -> None:
        scheduler, _ = harness()

        result = await scheduler.run_cycle(CycleKind.CORE)

        assert result.per_metric[crypto_price("BTC")] == MetricStatus.USED_FALLBACK
        assert result.values[crypto_price("BTC")].source_provider == "pc"
        assert result.count(MetricStatus.OK) == 7
        assert result.abandoned == []
        assert result.finished_at is not None

        stored = await store.get_latest_metric_value(crypto_price("BTC"))
        assert stored.value == Decimal("64000")
        assert stored.timestamp_ms == result.started_at_ms
        sp500 = await store.get_latest_metric_value(LogicalMetric("EQUITY_INDEX", "SP500"))
        assert sp500.timestamp_ms == result.started_at_ms

    @pytest.mark.asyncio
    async def test_derived_steps(self, harness, store) -> None:
        scheduler, _ = harness()

        result = await scheduler.run_cycle(CycleKind.CORE)

        assert result.steps == {
            "sentiment": STEP_OK,
            "ssr": STEP_OK,
            "btc_dominance": STEP_OK,
            "stablecoin_growth": STEP_OK,
            "correlations": STEP_OK,
            "narratives": STEP_OK,
        }
        ssr = await store.get_latest_metric_value(SSR_METRIC)
        assert ssr.value == Decimal("7.0000")

        sentiment = await store.get_latest_sentiment("fear_greed")
        assert sentiment["value"] == Decimal("72")
        assert sentiment["classification"] == "Greed"

        alert_types = {a.type for a in await store.get_alerts(limit=10)}
        assert alert_types == {"SSR_BEARISH", "BTC_DOMINANCE_HIGH", "STABLECOIN_RAPID_GROWTH"}

        narratives = await store.get_latest_narratives()
        assert [g.label for g in narratives] == ["AI & Big Data", "Meme Coins"]

    @pytest.mark.asyncio
    async def test_second_cycle_served_from_cache(self, harness, store, clock: ManualClock) -> None:
        scheduler, transport = harness()
        await scheduler.run_cycle(CycleKind.CORE)
        first_calls = [u for u in transport.calls if u != TRENDING_URL]

        clock.advance(60)
        result = await scheduler.run_cycle(CycleKind.CORE)

        assert [u for u in transport.calls if u != TRENDING_URL] == first_calls
        assert set(result.per_metric.values()) == {MetricStatus.USED_CACHE}
        alerts = await store.get_alerts(limit=10, latest_per_metric=False)
        assert len(alerts) == 3

    @pytest.mark.asyncio
    async def test_failed_metric_isolated(self, harness) -> None:
        outcomes = _outcomes()
        outcomes["fng/index"] = ProviderHTTPError("fng", 500, "down")
        scheduler, _ = harness(outcomes=outcomes)

        result = await scheduler.run_cycle(CycleKind.CORE)

        assert result.per_metric[FEAR_GREED_METRIC] == MetricStatus.FAILED
        assert FEAR_GREED_METRIC not in result.values
        assert result.per_metric[crypto_price("ETH")] == MetricStatus.OK
        assert result.steps["sentiment"] == STEP_SKIPPED
        assert result.steps["ssr"] == STEP_OK

    @pytest.mark.asyncio
    async def test_fanout_deadline_abandons_pending(self, harness, collection_settings) -> None:
        outcomes = _outcomes()
        outcomes["yh/spy"] = "hang"
        settings = collection_settings.model_copy(update={"fanout_deadline": 0.05})
        scheduler, _ = harness(outcomes=outcomes, settings=settings)

        result = await scheduler.run_cycle(CycleKind.CORE)

        assert result.abandoned == [LogicalMetric("EQUITY_INDEX", "SP500")]
        assert LogicalMetric("EQUITY_INDEX", "SP500") not in result.per_metric
        assert result.per_metric[crypto_price("ETH")] == MetricStatus.OK
        assert result.steps["ssr"] == STEP_OK

    @pytest.mark.asyncio
    async def test_stalled_step_bounded_by_cycle_deadline(self, harness, collection_settings) -> None:
        """A derived step stuck in rate-limit backoff cannot outlive the cycle."""
        outcomes = _outcomes()
        outcomes[TRENDING_URL] = RateLimitedError("coingecko", "HTTP 429")
        scheduler, _ = harness(outcomes=outcomes)

        result = await scheduler.run_cycle(CycleKind.CORE)

        assert result.finished_at - result.started_at <= collection_settings.cycle_deadline
        assert result.steps["narratives"] == STEP_ABANDONED
        assert result.steps["correlations"] == STEP_OK
        assert result.count(MetricStatus.OK) == 7

    @pytest.mark.asyncio
    async def test_steps_after_deadline_are_abandoned(self, harness, clock: ManualClock) -> None:
        async def stall(symbols, as_of_ms):
            await clock.sleep(3600)

        correlation_engine = MagicMock()
        correlation_engine.compute_all = AsyncMock(side_effect=stall)
        scheduler, transport = harness(correlation_engine=correlation_engine)

        result = await scheduler.run_cycle(CycleKind.CORE)

        assert result.steps["ssr"] == STEP_OK
        assert result.steps["correlations"] == STEP_ABANDONED
        assert result.steps["narratives"] == STEP_ABANDONED
        assert TRENDING_URL not in transport.calls

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_others(self, harness) -> None:
        broken = MagicMock()
        broken.compute_all = AsyncMock(side_effect=RuntimeError("boom"))
        scheduler, _ = harness(correlation_engine=broken)

        result = await scheduler.run_cycle(CycleKind.CORE)

        assert result.steps["correlations"] == STEP_FAILED
        assert result.steps["narratives"] == STEP_OK
        assert result.steps["ssr"] == STEP_OK

    @pytest.mark.asyncio
    async def test_missing_collaborators_skip_steps(self, harness) -> None:
        scheduler, _ = harness(
            correlation_engine=None, classifier=None, alert_rules=None, alert_engine=None
        )

        result = await scheduler.run_cycle(CycleKind.CORE)

        assert result.steps["correlations"] == STEP_SKIPPED
        assert result.steps["narratives"] == STEP_SKIPPED
        assert result.steps["btc_dominance"] == STEP_SKIPPED
        assert result.steps["ssr"] == STEP_OK

    @pytest.mark.asyncio
    async def test_group_concurrency_bound(self, clock: ManualClock, store, collection_settings) -> None:
        """No more than group_concurrency metrics of one group resolve at once."""
        active = 0
        peak = 0

        async def resolve(metric):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            raise ProviderHTTPError("x", 500)

        routes = [
            _route(LogicalMetric("CRYPTO_PRICE", f"C{i}"), _binding("cg", f"cg/{i}", group="crypto"))
            for i in range(6)
        ]
        resolver = MagicMock()
        resolver.routes_for.return_value = routes
        resolver.resolve = AsyncMock(side_effect=resolve)
        scheduler = CollectionScheduler(resolver, store, collection_settings, clock=clock)

        result = await scheduler.run_cycle(CycleKind.CORE)

        assert peak == collection_settings.group_concurrency
        assert result.count(MetricStatus.FAILED) == 6


class TestExtendedCycle:
    @pytest.mark.asyncio
    async def test_calendar_and_event_alerts(self, harness, store, clock: ManualClock) -> None:
        cpi = UpcomingEvent(title="CPI Release", scheduled_at=clock.now() + 86400, impact="high")
        cpi.id = await store.upsert_event(cpi)
        calendar = MagicMock()
        calendar.refresh = AsyncMock(return_value=[cpi])
        routes = [_route(LogicalMetric("INFLATION", "CPI"), _binding("fred", "fred/cpi"), cycle=CycleKind.EXTENDED)]
        outcomes = {"fred/cpi": {"v": "310.3"}}
        scheduler, _ = harness(routes=routes, outcomes=outcomes, calendar=calendar)

        result = await scheduler.run_cycle(CycleKind.EXTENDED)
        await scheduler.run_cycle(CycleKind.EXTENDED)

        assert result.per_metric[LogicalMetric("INFLATION", "CPI")] == MetricStatus.OK
        assert result.steps == {"calendar": STEP_OK, "event_alerts": STEP_OK}
        alerts = await store.get_alerts(limit=10, latest_per_metric=False)
        assert len(alerts) == 1
        assert alerts[0].event_id == cpi.id
        assert alerts[0].severity.value == "high"

    @pytest.mark.asyncio
    async def test_calendar_failure_still_alerts_stored_events(self, harness, store, clock: ManualClock) -> None:
        event = UpcomingEvent(title="Jobs Report", scheduled_at=clock.now() + 3600)
        event.id = await store.upsert_event(event)
        calendar = MagicMock()
        calendar.refresh = AsyncMock(side_effect=ProviderHTTPError("fred", 500))
        scheduler, _ = harness(routes=[], outcomes={}, calendar=calendar)

        result = await scheduler.run_cycle(CycleKind.EXTENDED)

        assert result.steps == {"calendar": STEP_FAILED, "event_alerts": STEP_OK}
        assert len(await store.get_alerts(limit=10)) == 1


class TestLoops:
    @pytest.mark.asyncio
    async def test_start_runs_core_cycle_and_stop_cancels(self, clock: ManualClock, collection_settings) -> None:
        resolver = MagicMock()
        resolver.routes_for.return_value = []
        store = MagicMock()
        store.delete_events_before = AsyncMock(return_value=0)
        scheduler = CollectionScheduler(resolver, store, collection_settings, clock=clock)

        await scheduler.start()
        assert scheduler.is_running
        for _ in range(5):
            await asyncio.sleep(0)
        await scheduler.stop()

        assert not scheduler.is_running
        assert scheduler.last_result(CycleKind.CORE) is not None
        assert collection_settings.core_interval in clock.sleeps

    @pytest.mark.asyncio
    async def test_maintenance_runs_alert_cleanup(self, clock: ManualClock, collection_settings) -> None:
        store = MagicMock()
        store.delete_events_before = AsyncMock(return_value=2)
        alert_engine = MagicMock()
        alert_engine.run_maintenance = AsyncMock()
        scheduler = CollectionScheduler(
            MagicMock(), store, collection_settings, alert_engine=alert_engine, clock=clock
        )

        await scheduler.run_maintenance()

        alert_engine.run_maintenance.assert_awaited_once_with(clock.now())
        store.delete_events_before.assert_awaited_once_with(clock.now() - 86400)
