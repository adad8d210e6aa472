"""Collection layer -- metric routes, fallback resolution, calendar refresh, and cycle scheduling."""

from marketwatch.collection.calendar import EconomicCalendar
from marketwatch.collection.resolver import FallbackResolver, MetricRoute, ProviderBinding
from marketwatch.collection.routes import build_routes
from marketwatch.collection.scheduler import CollectionScheduler, seconds_until_hour

__all__ = [
    "CollectionScheduler",
    "EconomicCalendar",
    "FallbackResolver",
    "MetricRoute",
    "ProviderBinding",
    "build_routes",
    "seconds_until_hour",
]
