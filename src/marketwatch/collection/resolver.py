"""Resolve one logical metric through an ordered provider chain.

Cache first; on a miss, each binding is tried in ascending
``fallback_priority``: fetch, parse, validate, cache with provenance,
return. Any fetch or validation failure moves on to the next binding. When
every binding fails the caller gets AllProvidersFailedError with the
per-provider reasons; no placeholder value is ever produced.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from marketwatch.exceptions import (
    AllProvidersFailedError,
    FetchError,
    PayloadValidationError,
    UnknownMetricError,
)
from marketwatch.fetching.cache import ResponseCache
from marketwatch.fetching.fetcher import RateLimitedFetcher
from marketwatch.logging import get_logger
from marketwatch.models import (
    CycleKind,
    DataClass,
    LogicalMetric,
    MetricStatus,
    Provider,
    ProviderRequest,
    Resolution,
)
from marketwatch.providers.validation import ParsedValue, ValueDomain, extract, validate_value

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderBinding:
    """How one provider supplies one metric."""

    provider: Provider
    build_request: Callable[[], ProviderRequest]
    parse: Callable[[Any], ParsedValue]
    domain: ValueDomain = ValueDomain()


@dataclass
class MetricRoute:
    """A metric, its cache class, the cycle it belongs to, and its provider chain."""

    metric: LogicalMetric
    data_class: DataClass
    cycle: CycleKind
    bindings: list[ProviderBinding] = field(default_factory=list)

    def ordered_bindings(self) -> list[ProviderBinding]:
        # sorted() is stable, so equal priorities keep registration order
        return sorted(self.bindings, key=lambda b: b.provider.fallback_priority)

    @property
    def primary(self) -> Provider:
        return self.ordered_bindings()[0].provider


class FallbackResolver:
    """Resolves logical metrics with cache-first, priority-ordered fallback.

    Args:
        fetcher: Rate-limited fetcher shared by every route.
        cache: Response cache for resolved values.
        routes: Initial routes to register.
    """

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        cache: ResponseCache,
        routes: Iterable[MetricRoute] = (),
    ) -> None:
        self._fetcher = fetcher
        self._cache = cache
        self._routes: dict[LogicalMetric, MetricRoute] = {}
        for route in routes:
            self.register(route)

    def register(self, route: MetricRoute) -> None:
        if not route.bindings:
            raise ValueError(f"route for {route.metric.key} has no providers")
        self._routes[route.metric] = route

    def route(self, metric: LogicalMetric) -> MetricRoute:
        try:
            return self._routes[metric]
        except KeyError:
            raise UnknownMetricError(metric.key) from None

    def routes_for(self, kind: CycleKind) -> list[MetricRoute]:
        return [r for r in self._routes.values() if r.cycle == kind]

    @property
    def metrics(self) -> list[LogicalMetric]:
        return list(self._routes)

    async def resolve(self, metric: LogicalMetric) -> Resolution:
        """Return a validated value for ``metric``.

        Raises:
            UnknownMetricError: No route registered for the metric.
            AllProvidersFailedError: Cache miss and every provider failed.
        """
        route = self.route(metric)

        cached = self._cache.get_entry(metric)
        if cached is not None:
            logger.debug(
                "metric_served_from_cache",
                metric=metric.key,
                provider=cached.source_provider,
            )
            return Resolution(
                metric=metric,
                value=cached.value,
                source_provider=cached.source_provider,
                status=MetricStatus.USED_CACHE,
                fetched_at=cached.fetched_at,
                metadata=dict(cached.metadata),
            )

        failures: dict[str, str] = {}
        for index, binding in enumerate(route.ordered_bindings()):
            provider = binding.provider
            try:
                response = await self._fetcher.fetch(provider, binding.build_request())
                # shape errors inside a parser count as a validation failure
                parsed = extract(response.payload, binding.parse)
                value = validate_value(parsed.raw, binding.domain)
            except (FetchError, PayloadValidationError) as e:
                failures[provider.id] = f"{type(e).__name__}: {e}"
                logger.warning(
                    "metric_provider_failed",
                    metric=metric.key,
                    provider=provider.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            metadata = {k: v for k, v in parsed.metadata.items() if v is not None}
            entry = self._cache.put(
                metric,
                value,
                self._cache.ttl_for(route.data_class),
                provider.id,
                metadata,
            )
            status = MetricStatus.OK if index == 0 else MetricStatus.USED_FALLBACK
            if status == MetricStatus.USED_FALLBACK:
                logger.info(
                    "metric_resolved_by_fallback",
                    metric=metric.key,
                    provider=provider.id,
                    skipped=list(failures),
                )
            return Resolution(
                metric=metric,
                value=value,
                source_provider=provider.id,
                status=status,
                fetched_at=entry.fetched_at,
                metadata=metadata,
            )

        logger.error(
            "metric_unresolved",
            metric=metric.key,
            failures=failures,
        )
        raise AllProvidersFailedError(metric, failures)

