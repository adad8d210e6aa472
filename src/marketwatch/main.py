"""Entry point for the market data collector.

Wires all components together, validates provider credentials, and runs
the collection scheduler until SIGINT/SIGTERM.

Component wiring order (in _build_components):
1. Clock (shared time source)
2. MarketDatabase + MarketDataStore (persistence)
3. Transports (aiohttp for HTTP providers, ccxt for the exchange)
4. RateLimitedFetcher (per-provider windows and queues)
5. ResponseCache (TTL cache with background sweep)
6. FallbackResolver (metric routes built from settings)
7. CorrelationEngine and NarrativeClassifier (derived analytics)
8. Notifiers, AlertRules and DedupAlertEngine (alerting)
9. EconomicCalendar (FRED release dates)
10. CollectionScheduler (cycle loops)
"""

import asyncio
import signal
import sys
from typing import Any

from marketwatch.alerts.engine import DedupAlertEngine
from marketwatch.alerts.notifier import CompositeNotifier, LogNotifier, Notifier, WebhookNotifier
from marketwatch.alerts.rules import AlertRules
from marketwatch.analytics.correlation import CorrelationEngine
from marketwatch.analytics.narratives import NarrativeClassifier
from marketwatch.clock import Clock
from marketwatch.collection.calendar import EconomicCalendar
from marketwatch.collection.resolver import FallbackResolver
from marketwatch.collection.routes import CRYPTO_PRICE, build_routes
from marketwatch.collection.scheduler import CollectionScheduler
from marketwatch.config import AppSettings, validate_startup
from marketwatch.exceptions import ConfigurationError
from marketwatch.fetching.cache import ResponseCache
from marketwatch.fetching.fetcher import RateLimitedFetcher
from marketwatch.fetching.transport import ExchangeTransport, HttpTransport, TransportRouter
from marketwatch.logging import get_logger, setup_logging
from marketwatch.models import ProviderKind
from marketwatch.storage.database import MarketDatabase
from marketwatch.storage.store import MarketDataStore


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all collector components from settings.

    Does NOT open the database or start any loop -- that happens in run().

    Args:
        settings: Application-wide settings.

    Returns:
        Dict mapping component names to instances.
    """
    clock = Clock()
    keys = settings.providers

    database = MarketDatabase(settings.store.db_path)
    store = MarketDataStore(database)

    transport = TransportRouter(
        {
            ProviderKind.HTTP: HttpTransport(clock=clock),
            ProviderKind.EXCHANGE: ExchangeTransport(keys.exchange_id, clock=clock),
        }
    )
    fetcher = RateLimitedFetcher(transport, settings.fetcher, clock=clock)
    cache = ResponseCache(settings.cache, clock=clock)
    resolver = FallbackResolver(fetcher, cache, build_routes(settings))

    correlation_engine = CorrelationEngine(
        store,
        lookback=settings.collection.correlation_lookback,
        min_points=settings.collection.correlation_min_points,
        clock=clock,
        data_type=CRYPTO_PRICE,
    )
    classifier = NarrativeClassifier(top_k=settings.collection.narrative_top_k)

    notifiers: list[Notifier] = [LogNotifier()]
    if settings.alerts.webhook_url:
        notifiers.append(WebhookNotifier(settings.alerts.webhook_url))
    notifier = CompositeNotifier(notifiers)
    alert_engine = DedupAlertEngine(store, notifier, settings.alerts, clock=clock)
    alert_rules = AlertRules(settings.alerts)

    calendar = EconomicCalendar(
        fetcher,
        store,
        keys.fred_api_key.get_secret_value(),
        lookahead_days=settings.collection.event_lookahead_days,
        clock=clock,
    )

    scheduler = CollectionScheduler(
        resolver=resolver,
        store=store,
        settings=settings.collection,
        fetcher=fetcher,
        correlation_engine=correlation_engine,
        classifier=classifier,
        alert_engine=alert_engine,
        alert_rules=alert_rules,
        calendar=calendar,
        coingecko_api_key=keys.coingecko_api_key.get_secret_value(),
        clock=clock,
    )

    return {
        "clock": clock,
        "database": database,
        "store": store,
        "fetcher": fetcher,
        "cache": cache,
        "resolver": resolver,
        "notifier": notifier,
        "alert_engine": alert_engine,
        "scheduler": scheduler,
    }


def _setup_signal_handlers(stop_event: asyncio.Event) -> None:
    """Register SIGINT/SIGTERM to request a graceful shutdown.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("marketwatch.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def run(settings: AppSettings | None = None) -> None:
    """Run the collector until a shutdown signal arrives.

    Raises:
        ConfigurationError: A required provider key is missing.
    """
    settings = settings or AppSettings()
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("marketwatch.main")

    check = validate_startup(settings)
    if not check.ok:
        logger.error("startup_validation_failed", missing=check.missing)
        raise ConfigurationError(check.missing)
    if check.warnings:
        logger.warning("optional_provider_keys_missing", keys=check.warnings)

    components = _build_components(settings)
    stop_event = asyncio.Event()
    _setup_signal_handlers(stop_event)

    database: MarketDatabase = components["database"]
    cache: ResponseCache = components["cache"]
    scheduler: CollectionScheduler = components["scheduler"]

    await database.connect()
    try:
        await cache.start()
        if settings.collection.enabled:
            await scheduler.start()
        else:
            logger.warning("collection_disabled")
        logger.info(
            "marketwatch_started",
            db_path=settings.store.db_path,
            crypto_symbols=settings.collection.crypto_symbols,
            metrics=len(components["resolver"].metrics),
        )
        await stop_event.wait()
    finally:
        await scheduler.stop()
        await cache.stop()
        await components["notifier"].close()
        await components["fetcher"].close()
        await database.close()
        logger.info("marketwatch_stopped")


def main() -> None:
    """Synchronous entry point."""
    try:
        asyncio.run(run())
    except ConfigurationError:
        sys.exit(1)


if __name__ == "__main__":
    main()
