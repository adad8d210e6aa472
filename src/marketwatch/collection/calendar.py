"""Economic calendar refresh from FRED release dates.

Only releases that move markets are tracked; each is stored as an
UpcomingEvent keyed by (title, scheduled_at), so repeated refreshes are
idempotent. FRED publishes dates without a time of day, so events are
scheduled at 12:30 UTC (08:30 US Eastern, the usual BLS/BEA release slot).
"""

from datetime import UTC, datetime, timedelta

from marketwatch.clock import Clock
from marketwatch.fetching.fetcher import RateLimitedFetcher
from marketwatch.logging import get_logger
from marketwatch.models import UpcomingEvent
from marketwatch.providers import fred
from marketwatch.providers.catalog import FRED
from marketwatch.storage.store import MarketDataStore

logger = get_logger(__name__)

# FRED release name -> (event title, impact)
TRACKED_RELEASES: dict[str, tuple[str, str]] = {
    "Consumer Price Index": ("CPI Release", "high"),
    "Personal Income and Outlays": ("PCE Release", "high"),
    "Employment Situation": ("Jobs Report", "high"),
    "Producer Price Index": ("PPI Release", "medium"),
    "Gross Domestic Product": ("GDP Release", "high"),
    "FOMC Press Release": ("FOMC Rate Decision", "high"),
    "Advance Monthly Sales for Retail and Food Services": ("Retail Sales", "medium"),
    "Job Openings and Labor Turnover Survey": ("JOLTS", "medium"),
}

_RELEASE_HOUR_UTC = 12
_RELEASE_MINUTE_UTC = 30


def release_timestamp(date_str: str) -> float:
    """Unix seconds for a FRED release date at the default release time."""
    day = datetime.strptime(date_str, "%Y-%m-%d").replace(tzinfo=UTC)
    return (day + timedelta(hours=_RELEASE_HOUR_UTC, minutes=_RELEASE_MINUTE_UTC)).timestamp()


class EconomicCalendar:
    """Keeps the upcoming_events table filled from the FRED release calendar.

    Args:
        fetcher: Shared rate-limited fetcher (FRED's queue and window apply).
        store: Destination for events.
        api_key: FRED key; refresh is a no-op without one.
        lookahead_days: How far ahead to request release dates.
        clock: Time source.
    """

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        store: MarketDataStore,
        api_key: str,
        lookahead_days: int = 14,
        clock: Clock | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._store = store
        self._api_key = api_key
        self._lookahead_days = lookahead_days
        self._clock = clock or Clock()

    async def refresh(self) -> list[UpcomingEvent]:
        """Fetch tracked release dates and upsert them; returns stored events.

        FetchError and PayloadValidationError propagate to the caller, which
        treats the refresh as one isolated derived step.
        """
        if not self._api_key:
            logger.info("economic_calendar_skipped", reason="no_fred_api_key")
            return []

        now = self._clock.now()
        today = datetime.fromtimestamp(now, tz=UTC).date()
        end = today + timedelta(days=self._lookahead_days)
        response = await self._fetcher.fetch(
            FRED,
            fred.release_dates_request(self._api_key, today.isoformat(), end.isoformat()),
        )

        stored: list[UpcomingEvent] = []
        seen: set[tuple[str, str]] = set()
        for entry in fred.parse_release_dates(response.payload):
            tracked = TRACKED_RELEASES.get(entry["release_name"])
            if tracked is None or (entry["release_name"], entry["date"]) in seen:
                continue
            seen.add((entry["release_name"], entry["date"]))
            try:
                scheduled_at = release_timestamp(entry["date"])
            except ValueError:
                logger.warning("economic_calendar_bad_date", entry=entry)
                continue
            if scheduled_at < now:
                continue
            title, impact = tracked
            event = UpcomingEvent(
                title=title,
                scheduled_at=scheduled_at,
                category="economic",
                impact=impact,
                source="fred",
                description=f"{entry['release_name']} scheduled for {entry['date']}.",
            )
            event.id = await self._store.upsert_event(event)
            stored.append(event)

        logger.info("economic_calendar_refreshed", events=len(stored), through=end.isoformat())
        return stored
