"""Provider definitions: identity, rate-limit class, fallback priority and group.

Lower ``fallback_priority`` is tried first. ``group`` names the concurrency
group a metric is charged to when this provider is its primary source.
"""

from marketwatch.models import Provider, ProviderKind, RateLimit

YAHOO = Provider(
    id="yahoo",
    rate_limit=RateLimit(max_calls=60, window_seconds=60),
    fallback_priority=0,
    group="equities",
    min_interval=1.0,
)

ALPHA_VANTAGE = Provider(
    id="alphavantage",
    rate_limit=RateLimit(max_calls=5, window_seconds=60),
    fallback_priority=2,
    group="equities",
    min_interval=1.0,
    rate_limit_markers=("call frequency", "api rate limit", "premium endpoint"),
)

FRED = Provider(
    id="fred",
    rate_limit=RateLimit(max_calls=120, window_seconds=60),
    fallback_priority=0,
    group="macro",
    min_interval=0.5,
)

COINGECKO = Provider(
    id="coingecko",
    rate_limit=RateLimit(max_calls=30, window_seconds=60),
    fallback_priority=0,
    group="crypto",
    min_interval=1.0,
    rate_limit_markers=("exceeded the rate limit",),
)

ALTERNATIVE_ME = Provider(
    id="alternative_me",
    rate_limit=RateLimit(max_calls=60, window_seconds=60),
    fallback_priority=0,
    group="sentiment",
)

BLOCKCHAIN_INFO = Provider(
    id="blockchain_info",
    rate_limit=RateLimit(max_calls=1, window_seconds=10),
    fallback_priority=0,
    group="onchain",
)

EXCHANGE = Provider(
    id="exchange",
    rate_limit=RateLimit(max_calls=10, window_seconds=1),
    fallback_priority=1,
    group="crypto",
    kind=ProviderKind.EXCHANGE,
    min_interval=0.2,
)

ALL_PROVIDERS: tuple[Provider, ...] = (
    YAHOO,
    ALPHA_VANTAGE,
    FRED,
    COINGECKO,
    ALTERNATIVE_ME,
    BLOCKCHAIN_INFO,
    EXCHANGE,
)
