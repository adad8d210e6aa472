"""Fetching layer -- rate-limited provider calls, transports, and the TTL response cache."""

from marketwatch.fetching.cache import ResponseCache
from marketwatch.fetching.fetcher import ProviderQueue, RateLimitedFetcher, RateWindow
from marketwatch.fetching.transport import (
    ExchangeTransport,
    HttpTransport,
    Transport,
    TransportRouter,
)

__all__ = [
    "ExchangeTransport",
    "HttpTransport",
    "ProviderQueue",
    "RateLimitedFetcher",
    "RateWindow",
    "ResponseCache",
    "Transport",
    "TransportRouter",
]
