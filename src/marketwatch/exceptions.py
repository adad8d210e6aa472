"""Custom exceptions for the market data pipeline.

Fetch, validation, resolution and configuration errors live here
to avoid circular imports between the fetching and collection layers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from marketwatch.models import LogicalMetric


class MarketWatchError(Exception):
    """Base exception for all pipeline errors."""


class FetchError(MarketWatchError):
    """Raised when an outbound provider call does not produce a usable response."""

    def __init__(self, provider_id: str, message: str) -> None:
        super().__init__(f"[{provider_id}] {message}")
        self.provider_id = provider_id


class RateLimitedError(FetchError):
    """Raised when a provider is still rate limiting after the backoff retry."""


class FetchTimeoutError(FetchError):
    """Raised when a provider call exceeds its timeout (after one retry)."""


class TransientFetchError(FetchError):
    """Raised on connection resets, DNS failures and 5xx responses."""


class ProviderHTTPError(FetchError):
    """Raised on non-retryable HTTP errors (4xx other than 429)."""

    def __init__(self, provider_id: str, status: int, message: str = "") -> None:
        super().__init__(provider_id, f"HTTP {status} {message}".strip())
        self.status = status


class PayloadValidationError(MarketWatchError):
    """Raised when a provider payload has no usable value for a metric."""


class AllProvidersFailedError(MarketWatchError):
    """Raised when every provider in a metric's fallback chain failed.

    ``failures`` maps provider id to a short reason string so the cycle
    log shows why each provider was skipped.
    """

    def __init__(self, metric: LogicalMetric, failures: dict[str, str]) -> None:
        super().__init__(f"No provider produced a value for {metric.key}")
        self.metric = metric
        self.failures = failures


class UnknownMetricError(MarketWatchError, KeyError):
    """Raised when resolving a metric with no registered route."""


class ConfigurationError(MarketWatchError):
    """Raised when required configuration is missing at startup."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Missing required settings: {', '.join(missing)}")
        self.missing = missing
