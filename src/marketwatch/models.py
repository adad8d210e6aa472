"""Shared data models for the market data pipeline.

CRITICAL: All market values use Decimal. Never use float for prices, yields or ratios.
Timestamps are Unix seconds (float) in memory and Unix milliseconds (int) in the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any


class DataClass(str, Enum):
    """Volatility class of a metric; decides how long a cached value is served."""

    FAST = "fast"  # prices, indices, sentiment
    SLOW = "slow"  # yields, inflation, on-chain


class ProviderKind(str, Enum):
    """How a provider is reached."""

    HTTP = "http"
    EXCHANGE = "exchange"


class MetricStatus(str, Enum):
    """Per-metric outcome recorded in a collection cycle."""

    OK = "ok"
    USED_FALLBACK = "used_fallback"
    USED_CACHE = "used_cache"
    FAILED = "failed"


class CycleKind(str, Enum):
    """Collection cycle flavour."""

    CORE = "core"
    EXTENDED = "extended"


class Severity(str, Enum):
    """Alert severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SubmitOutcome(str, Enum):
    """Result of submitting an alert candidate to the dedup engine."""

    ACCEPTED = "accepted"
    SUPPRESSED = "suppressed"


# ──────────────────────────────────────────────
# Providers and requests
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class RateLimit:
    """Call budget: at most ``max_calls`` dispatches in any ``window_seconds`` span."""

    max_calls: int
    window_seconds: float


@dataclass(frozen=True)
class Provider:
    """One external data source with its own rate limit and response shape."""

    id: str
    rate_limit: RateLimit
    fallback_priority: int = 0
    group: str = "default"  # concurrency group shared across metrics
    kind: ProviderKind = ProviderKind.HTTP
    min_interval: float = 0.0  # minimum spacing between two dispatches
    timeout: float | None = None  # falls back to FetcherSettings.default_timeout
    rate_limit_markers: tuple[str, ...] = ()  # body substrings meaning "slow down"


@dataclass(frozen=True)
class LogicalMetric:
    """Stable key callers request, regardless of which provider supplies it."""

    data_type: str
    symbol: str

    @property
    def key(self) -> str:
        return f"{self.data_type}/{self.symbol}"

    def __str__(self) -> str:
        return self.key


@dataclass
class ProviderRequest:
    """A single outbound call description.

    HTTP providers use method/url/params/headers; exchange providers name a
    ccxt method in ``exchange_call`` with positional ``exchange_args``.
    """

    url: str = ""
    method: str = "GET"
    params: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    json_body: dict[str, Any] | None = None
    exchange_call: str | None = None
    exchange_args: tuple[Any, ...] = ()


@dataclass
class RawResponse:
    """Decoded provider response."""

    provider_id: str
    status: int
    payload: Any
    received_at: float


# ──────────────────────────────────────────────
# Cache and resolution
# ──────────────────────────────────────────────


@dataclass
class CacheEntry:
    """A cached logical value with provenance."""

    key: LogicalMetric
    value: Decimal
    fetched_at: float
    ttl: float
    source_provider: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return now - self.fetched_at > self.ttl


@dataclass
class Resolution:
    """Value produced by the fallback resolver for one metric."""

    metric: LogicalMetric
    value: Decimal
    source_provider: str
    status: MetricStatus
    fetched_at: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CollectionCycleResult:
    """Outcome of one scheduled collection cycle.

    ``per_metric`` holds the status of every metric whose task finished;
    metrics still pending at the deadline are listed in ``abandoned`` and
    have no status for this cycle. ``steps`` records each post-barrier
    derived step as "ok", "failed", "skipped", or "abandoned" when the cycle
    deadline cut it short or it never started.
    """

    cycle_id: str
    kind: CycleKind
    started_at: float
    per_metric: dict[LogicalMetric, MetricStatus] = field(default_factory=dict)
    abandoned: list[LogicalMetric] = field(default_factory=list)
    values: dict[LogicalMetric, Resolution] = field(default_factory=dict)
    steps: dict[str, str] = field(default_factory=dict)
    finished_at: float | None = None

    @property
    def started_at_ms(self) -> int:
        return int(self.started_at * 1000)

    def count(self, status: MetricStatus) -> int:
        return sum(1 for s in self.per_metric.values() if s == status)

    def value_of(self, metric: LogicalMetric) -> Decimal | None:
        resolution = self.values.get(metric)
        return resolution.value if resolution is not None else None


# ──────────────────────────────────────────────
# Alerts
# ──────────────────────────────────────────────

EVENT_ALERT_TYPE = "UPCOMING_EVENT"


@dataclass
class AlertCandidate:
    """A proposed alert, before deduplication."""

    type: str
    metric: str
    severity: Severity
    value: str  # normalised string so equal readings compare equal in the store
    message: str
    computed_at: float
    event_id: int | None = None
    event_date: float | None = None
    event_title: str | None = None
    event_category: str | None = None

    @property
    def is_event(self) -> bool:
        return self.type == EVENT_ALERT_TYPE and self.event_id is not None

    @property
    def dedup_key(self) -> tuple:
        """(type, event_id) for event alerts, (type, metric, value) otherwise."""
        if self.is_event:
            return (self.type, self.event_id)
        return (self.type, self.metric, self.value)


@dataclass
class AlertRecord(AlertCandidate):
    """A persisted alert."""

    id: int = 0
    accepted_at: float = 0.0

    @classmethod
    def from_candidate(
        cls, candidate: AlertCandidate, record_id: int, accepted_at: float
    ) -> AlertRecord:
        return cls(
            type=candidate.type,
            metric=candidate.metric,
            severity=candidate.severity,
            value=candidate.value,
            message=candidate.message,
            computed_at=candidate.computed_at,
            event_id=candidate.event_id,
            event_date=candidate.event_date,
            event_title=candidate.event_title,
            event_category=candidate.event_category,
            id=record_id,
            accepted_at=accepted_at,
        )


@dataclass
class MaintenanceReport:
    """Rows removed by one alert maintenance pass."""

    expired: int = 0
    duplicates: int = 0
    past_events: int = 0

    @property
    def total(self) -> int:
        return self.expired + self.duplicates + self.past_events


@dataclass
class UpcomingEvent:
    """A scheduled economic/crypto event from the calendar."""

    title: str
    scheduled_at: float
    category: str = "economic"
    impact: str = "medium"
    source: str = ""
    description: str = ""
    id: int | None = None


# ──────────────────────────────────────────────
# Derived statistics
# ──────────────────────────────────────────────


@dataclass
class PricePoint:
    """One stored observation of a metric."""

    timestamp_ms: int
    value: Decimal


@dataclass
class CorrelationPair:
    """Pearson correlation of simple returns for a canonical symbol pair."""

    symbol1: str
    symbol2: str
    coefficient: Decimal
    period_days: int
    method: str
    computed_at: float

    def __post_init__(self) -> None:
        if self.symbol1 > self.symbol2:
            self.symbol1, self.symbol2 = self.symbol2, self.symbol1


@dataclass
class TrendingItem:
    """A trending asset as reported by the crypto aggregator."""

    symbol: str
    name: str
    volume_24h: Decimal = Decimal("0")
    market_cap: Decimal = Decimal("0")
    price_change_24h: Decimal = Decimal("0")  # percent
    popularity: Decimal = Decimal("0")  # normalised to 0-1
    categories: tuple[str, ...] = ()


@dataclass
class NarrativeGroup:
    """A narrative bucket aggregated over its trending members."""

    label: str
    members: list[str]
    total_volume: Decimal
    total_market_cap: Decimal
    avg_change: Decimal
    sentiment: str
    money_flow_score: Decimal
    relevance_score: Decimal = Decimal("0")
