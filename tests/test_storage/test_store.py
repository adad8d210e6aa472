"""Tests for MarketDatabase schema setup and MarketDataStore queries.

All market values round-trip as Decimal (stored as TEXT).
"""

from decimal import Decimal

import pytest

from marketwatch.models import (
    EVENT_ALERT_TYPE,
    AlertCandidate,
    CorrelationPair,
    LogicalMetric,
    NarrativeGroup,
    Severity,
    UpcomingEvent,
)
from marketwatch.storage.database import SCHEMA_VERSION, MarketDatabase

BTC = LogicalMetric("CRYPTO_PRICE", "BTC")


def _alert(value: str = "58.12", metric: str = "btc_dominance", **extra) -> AlertCandidate:
    return AlertCandidate(
        type=extra.pop("type", "BTC_DOMINANCE_HIGH"),
        metric=metric,
        severity=Severity.MEDIUM,
        value=value,
        message="msg",
        computed_at=10.0,
        **extra,
    )


def _group(label: str, flow: str) -> NarrativeGroup:
    return NarrativeGroup(
        label=label,
        members=["FET"],
        total_volume=Decimal("1"),
        total_market_cap=Decimal("2"),
        avg_change=Decimal("3.5"),
        sentiment="bullish",
        money_flow_score=Decimal(flow),
        relevance_score=Decimal("1"),
    )


class TestMarketDatabase:
    @pytest.mark.asyncio
    async def test_connect_creates_schema(self, tmp_path) -> None:
        db_path = tmp_path / "nested" / "market.db"
        async with MarketDatabase(str(db_path)) as database:
            cursor = await database.db.execute("SELECT version FROM schema_version")
            assert (await cursor.fetchone())[0] == SCHEMA_VERSION
        assert db_path.exists()

    def test_db_requires_connect(self) -> None:
        with pytest.raises(RuntimeError):
            MarketDatabase(":memory:").db


class TestMetricValues:
    @pytest.mark.asyncio
    async def test_history_oldest_first_and_limited(self, store) -> None:
        for i in range(5):
            await store.upsert_metric_value(BTC, Decimal(f"100.{i}"), i * 1000, "coingecko")

        history = await store.get_metric_history(BTC, 3)

        assert [p.timestamp_ms for p in history] == [2000, 3000, 4000]
        assert history[-1].value == Decimal("100.4")

    @pytest.mark.asyncio
    async def test_upsert_replaces_same_timestamp(self, store) -> None:
        await store.upsert_metric_value(BTC, Decimal("1"), 1000, "coingecko")
        await store.upsert_metric_value(BTC, Decimal("2"), 1000, "exchange", {"change_24h_pct": Decimal("1.5")})

        history = await store.get_metric_history(BTC, 10)

        assert len(history) == 1
        assert history[0].value == Decimal("2")

    @pytest.mark.asyncio
    async def test_value_at(self, store) -> None:
        await store.upsert_metric_value(BTC, Decimal("1"), 1000, "a")
        await store.upsert_metric_value(BTC, Decimal("2"), 3000, "a")
        assert (await store.get_metric_value_at(BTC, 2500)).value == Decimal("1")
        assert await store.get_metric_value_at(BTC, 500) is None
        assert await store.get_latest_metric_value(LogicalMetric("CRYPTO_PRICE", "ETH")) is None


class TestDerivedTables:
    @pytest.mark.asyncio
    async def test_sentiment_latest(self, store) -> None:
        await store.upsert_sentiment("fear_greed", Decimal("40"), "Fear", "alternative_me", 1000)
        await store.upsert_sentiment("fear_greed", Decimal("72"), "Greed", "alternative_me", 2000)
        latest = await store.get_latest_sentiment("fear_greed")
        assert latest["value"] == Decimal("72")
        assert latest["classification"] == "Greed"
        assert await store.get_latest_sentiment("other") is None

    @pytest.mark.asyncio
    async def test_correlations_canonical_and_upserted(self, store) -> None:
        pair = CorrelationPair("ETH", "BTC", Decimal("0.5"), 1, "pearson_simple_returns", 0.0)
        assert (pair.symbol1, pair.symbol2) == ("BTC", "ETH")
        await store.upsert_correlations([pair], 1000)
        pair.coefficient = Decimal("0.75")
        await store.upsert_correlations([pair], 1000)

        rows = await store.get_correlations()

        assert len(rows) == 1
        assert rows[0].coefficient == Decimal("0.75")

    @pytest.mark.asyncio
    async def test_narratives_replace_and_keep_rank(self, store) -> None:
        await store.replace_narratives([_group("AI & Big Data", "9"), _group("Meme Coins", "5")], 1000)
        await store.replace_narratives([_group("DeFi", "7"), _group("Meme Coins", "3")], 1000)

        groups = await store.get_latest_narratives()

        assert [g.label for g in groups] == ["DeFi", "Meme Coins"]
        assert groups[0].members == ["FET"]
        assert groups[0].avg_change == Decimal("3.5")


class TestAlerts:
    @pytest.mark.asyncio
    async def test_exists_respects_since(self, store) -> None:
        await store.insert_alert(_alert(), accepted_at=100.0)
        assert await store.alert_exists(_alert(), since=99.0)
        assert not await store.alert_exists(_alert(), since=100.0)
        assert not await store.alert_exists(_alert("60.00"), since=0.0)

    @pytest.mark.asyncio
    async def test_event_exists_by_event_id(self, store) -> None:
        event_alert = _alert("high", metric="event:4", type=EVENT_ALERT_TYPE, event_id=4, event_date=500.0)
        record = await store.insert_alert(event_alert, accepted_at=100.0)
        assert record.id > 0
        assert record.accepted_at == 100.0
        assert await store.alert_exists(event_alert, since=0.0)
        other = _alert("high", metric="event:5", type=EVENT_ALERT_TYPE, event_id=5, event_date=500.0)
        assert not await store.alert_exists(other, since=0.0)

    @pytest.mark.asyncio
    async def test_get_alerts_latest_per_metric(self, store) -> None:
        await store.insert_alert(_alert("1.00"), accepted_at=1.0)
        await store.insert_alert(_alert("2.00"), accepted_at=2.0)
        await store.insert_alert(_alert("5.00", metric="ssr", type="SSR_BEARISH"), accepted_at=3.0)

        latest = await store.get_alerts()
        everything = await store.get_alerts(latest_per_metric=False)

        assert [a.value for a in latest] == ["5.00", "2.00"]
        assert len(everything) == 3
        assert latest[0].severity == Severity.MEDIUM

    @pytest.mark.asyncio
    async def test_cleanup_queries(self, store) -> None:
        await store.insert_alert(_alert("1.00"), accepted_at=1.0)
        await store.insert_alert(_alert("2.00"), accepted_at=50.0)
        await store.insert_alert(
            _alert("high", metric="event:1", type=EVENT_ALERT_TYPE, event_id=1, event_date=80.0),
            accepted_at=60.0,
        )

        assert await store.delete_alerts_before(10.0) == 1
        assert await store.delete_duplicate_alerts() == 0
        assert await store.delete_past_event_alerts(now=100.0) == 1
        assert await store.count_alerts() == 1


class TestEvents:
    @pytest.mark.asyncio
    async def test_upsert_is_keyed_by_title_and_time(self, store) -> None:
        first = await store.upsert_event(UpcomingEvent(title="CPI Release", scheduled_at=1000.0, impact="medium"))
        second = await store.upsert_event(UpcomingEvent(title="CPI Release", scheduled_at=1000.0, impact="high"))
        assert first == second

        [event] = await store.get_upcoming_events(0.0, 2000.0)
        assert event.impact == "high"
        assert event.id == first

    @pytest.mark.asyncio
    async def test_range_and_delete(self, store) -> None:
        await store.upsert_event(UpcomingEvent(title="A", scheduled_at=100.0))
        await store.upsert_event(UpcomingEvent(title="B", scheduled_at=300.0))

        assert [e.title for e in await store.get_upcoming_events(200.0, 400.0)] == ["B"]
        assert await store.delete_events_before(200.0) == 1
        assert [e.title for e in await store.get_upcoming_events(0.0, 400.0)] == ["B"]
