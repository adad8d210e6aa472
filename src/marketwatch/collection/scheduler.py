"""Collection cycle scheduler.

A cycle fans out one task per metric route, bounded by a semaphore per
provider group, and waits for all of them behind a single barrier. Derived
steps (sentiment, SSR and dominance alerts, stablecoin growth,
correlations, narratives, calendar reminders) run only after the barrier,
each isolated so one failure never skips the rest.

The whole cycle runs under a hard ``cycle_deadline``; the fan-out gets
the smaller ``fanout_deadline`` so derived steps still have time. Metric
tasks pending at the fan-out deadline are cancelled and reported as
abandoned, as are derived steps cut short by the cycle deadline. A bounded
cycle keeps the next one on schedule.

Three background loops drive cycles: the core cycle every
``core_interval`` seconds, the extended cycle daily at ``extended_hour``
UTC and alert maintenance daily at ``maintenance_hour`` UTC.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import structlog

from marketwatch.alerts.engine import DedupAlertEngine
from marketwatch.alerts.rules import AlertRules
from marketwatch.analytics.correlation import CorrelationEngine
from marketwatch.analytics.derived import stablecoin_supply_ratio, weighted_change
from marketwatch.analytics.narratives import NarrativeClassifier
from marketwatch.clock import Clock
from marketwatch.collection.calendar import EconomicCalendar
from marketwatch.collection.resolver import FallbackResolver, MetricRoute
from marketwatch.collection.routes import (
    BTC_DOMINANCE_METRIC,
    FEAR_GREED_METRIC,
    crypto_market_cap,
    stablecoin_market_cap,
)
from marketwatch.config import CollectionSettings
from marketwatch.exceptions import AllProvidersFailedError, PayloadValidationError
from marketwatch.fetching.fetcher import RateLimitedFetcher
from marketwatch.logging import get_logger
from marketwatch.models import (
    AlertCandidate,
    CollectionCycleResult,
    CycleKind,
    LogicalMetric,
    MetricStatus,
)
from marketwatch.providers import coingecko
from marketwatch.providers.catalog import COINGECKO
from marketwatch.providers.validation import to_decimal
from marketwatch.storage.store import MarketDataStore

logger = get_logger(__name__)

SSR_METRIC = LogicalMetric("STABLECOIN_SUPPLY_RATIO", "BTC")

STEP_OK = "ok"
STEP_FAILED = "failed"
STEP_SKIPPED = "skipped"
STEP_ABANDONED = "abandoned"

_SECONDS_PER_DAY = 86400

Step = Callable[[CollectionCycleResult], Awaitable[bool]]


def seconds_until_hour(now: float, hour: int) -> float:
    """Seconds from ``now`` until the next occurrence of ``hour``:00 UTC."""
    current = datetime.fromtimestamp(now, tz=UTC)
    target = current.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= current:
        target += timedelta(days=1)
    return (target - current).total_seconds()


class CollectionScheduler:
    """Runs collection cycles and the derived steps that follow them.

    Collaborators other than the resolver and store are optional; a missing
    one marks its derived step as skipped.

    Args:
        resolver: Metric routes and fallback resolution.
        store: Destination for collected values and derived results.
        settings: Cycle timing, concurrency and symbol lists.
        fetcher: Shared fetcher, used directly for the trending feed.
        correlation_engine: Pairwise crypto correlations.
        classifier: Narrative bucketing of trending coins.
        alert_engine: Dedup engine receiving alert candidates.
        alert_rules: Candidate producers.
        calendar: Economic calendar refreshed by the extended cycle.
        coingecko_api_key: Key for the trending request.
        clock: Time source.
    """

    def __init__(
        self,
        resolver: FallbackResolver,
        store: MarketDataStore,
        settings: CollectionSettings,
        fetcher: RateLimitedFetcher | None = None,
        correlation_engine: CorrelationEngine | None = None,
        classifier: NarrativeClassifier | None = None,
        alert_engine: DedupAlertEngine | None = None,
        alert_rules: AlertRules | None = None,
        calendar: EconomicCalendar | None = None,
        coingecko_api_key: str = "",
        clock: Clock | None = None,
    ) -> None:
        self._resolver = resolver
        self._store = store
        self._settings = settings
        self._fetcher = fetcher
        self._correlation = correlation_engine
        self._classifier = classifier
        self._alerts = alert_engine
        self._rules = alert_rules
        self._calendar = calendar
        self._cg_key = coingecko_api_key
        self._clock = clock or Clock()
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._last_results: dict[CycleKind, CollectionCycleResult] = {}

    # ──────────────────────────────────────────────
    # Cycle execution
    # ──────────────────────────────────────────────

    async def run_cycle(self, kind: CycleKind) -> CollectionCycleResult:
        """Run one collection cycle of ``kind`` and its derived steps.

        The whole cycle, fan-out and derived steps together, is bounded by
        ``cycle_deadline``; the fan-out alone by ``fanout_deadline``. Steps
        that were interrupted or never reached are recorded as abandoned.
        """
        cycle_id = f"{kind.value}-{uuid.uuid4().hex[:12]}"
        result = CollectionCycleResult(
            cycle_id=cycle_id, kind=kind, started_at=self._clock.now()
        )
        routes = self._resolver.routes_for(kind)
        steps = self._core_steps() if kind == CycleKind.CORE else self._extended_steps()

        with structlog.contextvars.bound_contextvars(cycle_id=cycle_id, cycle=kind.value):
            logger.info("collection_cycle_started", metrics=len(routes))
            try:
                async with self._clock.timeout(self._settings.cycle_deadline):
                    await self._fan_out(routes, result)
                    for name, step in steps:
                        await self._run_step(result, name, step)
            except TimeoutError:
                for name, _ in steps:
                    result.steps.setdefault(name, STEP_ABANDONED)
                logger.warning(
                    "collection_cycle_deadline_exceeded",
                    deadline=self._settings.cycle_deadline,
                    abandoned_steps=[n for n, s in result.steps.items() if s == STEP_ABANDONED],
                )

            result.finished_at = self._clock.now()
            self._last_results[kind] = result
            logger.info(
                "collection_cycle_complete",
                ok=result.count(MetricStatus.OK),
                fallback=result.count(MetricStatus.USED_FALLBACK),
                cached=result.count(MetricStatus.USED_CACHE),
                failed=result.count(MetricStatus.FAILED),
                abandoned=len(result.abandoned),
                steps=result.steps,
                duration=round(result.finished_at - result.started_at, 3),
            )
        return result

    def _core_steps(self) -> list[tuple[str, Step]]:
        return [
            ("sentiment", self._store_sentiment),
            ("ssr", self._ssr_step),
            ("btc_dominance", self._dominance_step),
            ("stablecoin_growth", self._stablecoin_growth_step),
            ("correlations", self._correlation_step),
            ("narratives", self._narrative_step),
        ]

    def _extended_steps(self) -> list[tuple[str, Step]]:
        return [
            ("calendar", self._calendar_step),
            ("event_alerts", self._event_alert_step),
        ]

    async def _fan_out(self, routes: list[MetricRoute], result: CollectionCycleResult) -> None:
        """Collect every route concurrently; unfinished tasks become abandoned.

        Cancellation from the cycle deadline also lands here, so pending
        tasks are cancelled and recorded before it propagates.
        """
        if not routes:
            return
        tasks = {
            asyncio.create_task(self._collect(route, result)): route.metric
            for route in routes
        }
        budget = min(self._settings.fanout_deadline, self._settings.cycle_deadline)
        try:
            await asyncio.wait(tasks, timeout=budget)
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
                metric = tasks[task]
                result.abandoned.append(metric)
                result.per_metric.pop(metric, None)
                result.values.pop(metric, None)
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(
                    "collection_fanout_deadline_exceeded",
                    abandoned=[m.key for m in result.abandoned],
                    deadline=budget,
                )

    def _semaphore(self, group: str) -> asyncio.Semaphore:
        semaphore = self._semaphores.get(group)
        if semaphore is None:
            semaphore = asyncio.Semaphore(max(1, self._settings.group_concurrency))
            self._semaphores[group] = semaphore
        return semaphore

    async def _collect(self, route: MetricRoute, result: CollectionCycleResult) -> None:
        metric = route.metric
        async with self._semaphore(route.primary.group):
            try:
                resolution = await self._resolver.resolve(metric)
            except AllProvidersFailedError:
                result.per_metric[metric] = MetricStatus.FAILED
                return
            except Exception:
                logger.error("metric_collection_error", metric=metric.key, exc_info=True)
                result.per_metric[metric] = MetricStatus.FAILED
                return

        result.per_metric[metric] = resolution.status
        result.values[metric] = resolution
        try:
            await self._store.upsert_metric_value(
                metric,
                resolution.value,
                result.started_at_ms,
                resolution.source_provider,
                resolution.metadata,
            )
        except Exception:
            logger.warning("metric_persist_failed", metric=metric.key, exc_info=True)

    async def _run_step(
        self,
        result: CollectionCycleResult,
        name: str,
        step: Step,
    ) -> None:
        try:
            ran = await step(result)
        except Exception:
            logger.warning("derived_step_failed", step=name, exc_info=True)
            result.steps[name] = STEP_FAILED
            return
        result.steps[name] = STEP_OK if ran else STEP_SKIPPED

    # ──────────────────────────────────────────────
    # Derived steps (core)
    # ──────────────────────────────────────────────

    async def _store_sentiment(self, result: CollectionCycleResult) -> bool:
        resolution = result.values.get(FEAR_GREED_METRIC)
        if resolution is None:
            return False
        await self._store.upsert_sentiment(
            "fear_greed",
            resolution.value,
            str(resolution.metadata.get("classification", "")),
            resolution.source_provider,
            result.started_at_ms,
        )
        return True

    async def _ssr_step(self, result: CollectionCycleResult) -> bool:
        caps = [
            result.value_of(stablecoin_market_cap(symbol))
            for symbol in self._settings.stablecoin_symbols
        ]
        ssr = stablecoin_supply_ratio(
            result.value_of(crypto_market_cap("BTC")),
            [cap for cap in caps if cap is not None],
        )
        if ssr is None:
            return False
        await self._store.upsert_metric_value(
            SSR_METRIC, ssr, result.started_at_ms, "derived"
        )
        await self._submit_alerts(self._rules.ssr(ssr, self._clock.now()) if self._rules else [])
        return True

    async def _dominance_step(self, result: CollectionCycleResult) -> bool:
        dominance = result.value_of(BTC_DOMINANCE_METRIC)
        if dominance is None or self._rules is None:
            return False
        await self._submit_alerts(self._rules.btc_dominance(dominance, self._clock.now()))
        return True

    async def _stablecoin_growth_step(self, result: CollectionCycleResult) -> bool:
        points: list[tuple[Decimal, Decimal]] = []
        for symbol in self._settings.stablecoin_symbols:
            resolution = result.values.get(stablecoin_market_cap(symbol))
            if resolution is None or "change_24h_pct" not in resolution.metadata:
                continue
            try:
                change = to_decimal(resolution.metadata["change_24h_pct"])
            except PayloadValidationError:
                continue
            points.append((resolution.value, change))

        change_24h = weighted_change(points)
        if change_24h is None or self._rules is None:
            return False
        await self._submit_alerts(self._rules.stablecoin_growth(change_24h, self._clock.now()))
        return True

    async def _correlation_step(self, result: CollectionCycleResult) -> bool:
        if self._correlation is None:
            return False
        await self._correlation.compute_all(
            self._settings.crypto_symbols, as_of_ms=result.started_at_ms
        )
        return True

    async def _narrative_step(self, result: CollectionCycleResult) -> bool:
        if self._classifier is None or self._fetcher is None:
            return False
        response = await self._fetcher.fetch(COINGECKO, coingecko.trending_request(self._cg_key))
        items = coingecko.parse_trending(response.payload)
        groups = self._classifier.classify(items)
        await self._store.replace_narratives(groups, result.started_at_ms)
        logger.info(
            "narratives_updated",
            trending=len(items),
            groups=[g.label for g in groups],
        )
        return True

    # ──────────────────────────────────────────────
    # Derived steps (extended)
    # ──────────────────────────────────────────────

    async def _calendar_step(self, result: CollectionCycleResult) -> bool:
        if self._calendar is None:
            return False
        await self._calendar.refresh()
        return True

    async def _event_alert_step(self, result: CollectionCycleResult) -> bool:
        if self._rules is None or self._alerts is None:
            return False
        now = self._clock.now()
        events = await self._store.get_upcoming_events(
            now, now + self._settings.event_lookahead_days * _SECONDS_PER_DAY
        )
        await self._alerts.submit_many(self._rules.upcoming_events(events, now))
        return True

    async def _submit_alerts(self, candidates: list[AlertCandidate]) -> None:
        if self._alerts is None or not candidates:
            return
        await self._alerts.submit_many(candidates)

    # ──────────────────────────────────────────────
    # Maintenance
    # ──────────────────────────────────────────────

    async def run_maintenance(self) -> None:
        """Alert table cleanup plus removal of events that have passed."""
        now = self._clock.now()
        if self._alerts is not None:
            await self._alerts.run_maintenance(now)
        try:
            removed = await self._store.delete_events_before(now - _SECONDS_PER_DAY)
        except Exception:
            logger.warning("event_cleanup_failed", exc_info=True)
        else:
            logger.info("event_cleanup_complete", removed=removed)

    # ──────────────────────────────────────────────
    # Background loops
    # ──────────────────────────────────────────────

    async def start(self) -> None:
        """Start the core, extended and maintenance loops as background tasks."""
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._core_loop()),
            asyncio.create_task(self._extended_loop()),
            asyncio.create_task(self._maintenance_loop()),
        ]
        logger.info(
            "collection_scheduler_started",
            core_interval=self._settings.core_interval,
            extended_hour=self._settings.extended_hour,
            maintenance_hour=self._settings.maintenance_hour,
        )

    async def stop(self) -> None:
        """Cancel all loops and wait for them to exit."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("collection_scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def last_result(self, kind: CycleKind) -> CollectionCycleResult | None:
        return self._last_results.get(kind)

    async def _core_loop(self) -> None:
        while self._running:
            started = self._clock.now()
            try:
                await self.run_cycle(CycleKind.CORE)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("core_cycle_error", exc_info=True)
            elapsed = self._clock.now() - started
            await self._clock.sleep(max(0.0, self._settings.core_interval - elapsed))

    async def _extended_loop(self) -> None:
        while self._running:
            await self._clock.sleep(
                seconds_until_hour(self._clock.now(), self._settings.extended_hour)
            )
            try:
                await self.run_cycle(CycleKind.EXTENDED)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("extended_cycle_error", exc_info=True)

    async def _maintenance_loop(self) -> None:
        while self._running:
            await self._clock.sleep(
                seconds_until_hour(self._clock.now(), self._settings.maintenance_hour)
            )
            try:
                await self.run_maintenance()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("maintenance_error", exc_info=True)
