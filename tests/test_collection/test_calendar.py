"""Tests for the FRED-backed economic calendar."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import ManualClock
from marketwatch.collection.calendar import EconomicCalendar, release_timestamp
from marketwatch.models import RawResponse
from marketwatch.providers.catalog import FRED

# ManualClock starts at 2023-11-14 22:13:20 UTC
RELEASES = {
    "release_dates": [
        {"release_id": 10, "release_name": "Consumer Price Index", "date": "2023-11-14"},
        {"release_id": 10, "release_name": "Consumer Price Index", "date": "2023-11-15"},
        {"release_id": 10, "release_name": "Consumer Price Index", "date": "2023-11-15"},
        {"release_id": 50, "release_name": "Employment Situation", "date": "2023-12-08"},
        {"release_id": 99, "release_name": "H.8 Assets and Liabilities", "date": "2023-11-16"},
    ]
}


def _fetcher(payload) -> MagicMock:
    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(
        return_value=RawResponse(provider_id="fred", status=200, payload=payload, received_at=0.0)
    )
    return fetcher


class TestReleaseTimestamp:
    def test_release_at_half_past_twelve_utc(self) -> None:
        ts = release_timestamp("2024-05-15")
        assert datetime.fromtimestamp(ts, tz=UTC) == datetime(2024, 5, 15, 12, 30, tzinfo=UTC)


class TestEconomicCalendar:
    @pytest.mark.asyncio
    async def test_refresh_stores_tracked_future_releases(self, store, clock: ManualClock) -> None:
        fetcher = _fetcher(RELEASES)
        calendar = EconomicCalendar(fetcher, store, "fred-key", lookahead_days=30, clock=clock)

        events = await calendar.refresh()

        assert [e.title for e in events] == ["CPI Release", "Jobs Report"]
        assert all(e.id is not None for e in events)
        assert events[0].impact == "high"
        provider, request = fetcher.fetch.await_args.args
        assert provider is FRED
        assert request.params["realtime_start"] == "2023-11-14"
        assert request.params["realtime_end"] == "2023-12-14"

        stored = await store.get_upcoming_events(clock.now(), clock.now() + 40 * 86400)
        assert [e.title for e in stored] == ["CPI Release", "Jobs Report"]

    @pytest.mark.asyncio
    async def test_refresh_is_idempotent(self, store, clock: ManualClock) -> None:
        calendar = EconomicCalendar(_fetcher(RELEASES), store, "fred-key", lookahead_days=30, clock=clock)

        first = await calendar.refresh()
        second = await calendar.refresh()

        assert [e.id for e in first] == [e.id for e in second]
        stored = await store.get_upcoming_events(clock.now(), clock.now() + 40 * 86400)
        assert len(stored) == 2

    @pytest.mark.asyncio
    async def test_no_key_skips_fetch(self, store, clock: ManualClock) -> None:
        fetcher = _fetcher(RELEASES)
        calendar = EconomicCalendar(fetcher, store, "", clock=clock)
        assert await calendar.refresh() == []
        fetcher.fetch.assert_not_awaited()
