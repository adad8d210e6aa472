"""Typed SQLite read/write abstraction for the market data pipeline.

Provides MarketDataStore with typed methods for metric values, sentiment,
correlations, narratives, alerts and upcoming events. All SQL is isolated
behind this interface; upserts are idempotent on their natural keys.

CRITICAL: All market values stored as TEXT in SQLite, restored as Decimal on read.
"""

import json
from decimal import Decimal
from typing import Any

from marketwatch.logging import get_logger
from marketwatch.models import (
    EVENT_ALERT_TYPE,
    AlertCandidate,
    AlertRecord,
    CorrelationPair,
    LogicalMetric,
    NarrativeGroup,
    PricePoint,
    Severity,
    UpcomingEvent,
)
from marketwatch.storage.database import MarketDatabase

logger = get_logger(__name__)


def _ms(seconds: float | None) -> int | None:
    return None if seconds is None else int(seconds * 1000)


def _seconds(ms: int | None) -> float | None:
    return None if ms is None else ms / 1000


class MarketDataStore:
    """Async SQLite store for collected values and pipeline outputs.

    Wraps MarketDatabase with typed read/write methods. All SQL access
    goes through self._database.db (the aiosqlite Connection).

    Usage:
        async with MarketDatabase("data/marketwatch.db") as database:
            store = MarketDataStore(database)
            await store.upsert_metric_value(metric, value, ts_ms, "fred")
    """

    def __init__(self, database: MarketDatabase) -> None:
        self._database = database

    # ──────────────────────────────────────────────
    # Metric values
    # ──────────────────────────────────────────────

    async def upsert_metric_value(
        self,
        metric: LogicalMetric,
        value: Decimal,
        timestamp_ms: int,
        source: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Insert or replace the value of a metric at a timestamp."""
        await self._database.db.execute(
            "INSERT INTO metric_values "
            "(data_type, symbol, timestamp_ms, value, source, metadata) "
            "VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (data_type, symbol, timestamp_ms) DO UPDATE SET "
            "value = excluded.value, source = excluded.source, metadata = excluded.metadata",
            (
                metric.data_type,
                metric.symbol,
                timestamp_ms,
                str(value),
                source,
                json.dumps(metadata or {}, default=str),
            ),
        )
        await self._database.db.commit()

    async def get_metric_history(
        self, metric: LogicalMetric, limit: int
    ) -> list[PricePoint]:
        """Return the last ``limit`` observations of a metric, oldest first."""
        cursor = await self._database.db.execute(
            "SELECT timestamp_ms, value FROM metric_values "
            "WHERE data_type = ? AND symbol = ? "
            "ORDER BY timestamp_ms DESC LIMIT ?",
            (metric.data_type, metric.symbol, limit),
        )
        rows = await cursor.fetchall()
        return [PricePoint(timestamp_ms=row[0], value=Decimal(row[1])) for row in reversed(rows)]

    async def get_latest_metric_value(self, metric: LogicalMetric) -> PricePoint | None:
        history = await self.get_metric_history(metric, 1)
        return history[0] if history else None

    async def get_metric_value_at(
        self, metric: LogicalMetric, at_or_before_ms: int
    ) -> PricePoint | None:
        """Most recent observation at or before a timestamp."""
        cursor = await self._database.db.execute(
            "SELECT timestamp_ms, value FROM metric_values "
            "WHERE data_type = ? AND symbol = ? AND timestamp_ms <= ? "
            "ORDER BY timestamp_ms DESC LIMIT 1",
            (metric.data_type, metric.symbol, at_or_before_ms),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return PricePoint(timestamp_ms=row[0], value=Decimal(row[1]))

    # ──────────────────────────────────────────────
    # Sentiment
    # ──────────────────────────────────────────────

    async def upsert_sentiment(
        self,
        index_name: str,
        value: Decimal,
        classification: str,
        source: str,
        timestamp_ms: int,
    ) -> None:
        await self._database.db.execute(
            "INSERT OR REPLACE INTO sentiment "
            "(index_name, timestamp_ms, value, classification, source) "
            "VALUES (?, ?, ?, ?, ?)",
            (index_name, timestamp_ms, str(value), classification, source),
        )
        await self._database.db.commit()

    async def get_latest_sentiment(self, index_name: str) -> dict | None:
        cursor = await self._database.db.execute(
            "SELECT timestamp_ms, value, classification, source FROM sentiment "
            "WHERE index_name = ? ORDER BY timestamp_ms DESC LIMIT 1",
            (index_name,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return {
            "timestamp_ms": row[0],
            "value": Decimal(row[1]),
            "classification": row[2],
            "source": row[3],
        }

    # ──────────────────────────────────────────────
    # Correlations and narratives
    # ──────────────────────────────────────────────

    async def upsert_correlations(self, pairs: list[CorrelationPair], timestamp_ms: int) -> int:
        """Upsert correlation rows keyed by canonical (symbol1, symbol2, timestamp)."""
        if not pairs:
            return 0
        data = [
            (p.symbol1, p.symbol2, timestamp_ms, str(p.coefficient), p.period_days, p.method)
            for p in pairs
        ]
        await self._database.db.executemany(
            "INSERT INTO correlations "
            "(symbol1, symbol2, timestamp_ms, coefficient, period_days, method) "
            "VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (symbol1, symbol2, timestamp_ms) DO UPDATE SET "
            "coefficient = excluded.coefficient, period_days = excluded.period_days, "
            "method = excluded.method",
            data,
        )
        await self._database.db.commit()
        logger.debug("upserted_correlations", count=len(data))
        return len(data)

    async def get_correlations(self, timestamp_ms: int | None = None) -> list[CorrelationPair]:
        """Correlation rows at ``timestamp_ms``, or at the latest timestamp stored."""
        if timestamp_ms is None:
            cursor = await self._database.db.execute("SELECT MAX(timestamp_ms) FROM correlations")
            row = await cursor.fetchone()
            if row is None or row[0] is None:
                return []
            timestamp_ms = row[0]
        cursor = await self._database.db.execute(
            "SELECT symbol1, symbol2, coefficient, period_days, method, timestamp_ms "
            "FROM correlations WHERE timestamp_ms = ? ORDER BY symbol1, symbol2",
            (timestamp_ms,),
        )
        rows = await cursor.fetchall()
        return [
            CorrelationPair(
                symbol1=row[0],
                symbol2=row[1],
                coefficient=Decimal(row[2]),
                period_days=row[3],
                method=row[4],
                computed_at=row[5] / 1000,
            )
            for row in rows
        ]

    async def replace_narratives(self, groups: list[NarrativeGroup], timestamp_ms: int) -> int:
        """Store one classification pass; a rerun at the same timestamp replaces it."""
        db = self._database.db
        await db.execute("DELETE FROM narratives WHERE timestamp_ms = ?", (timestamp_ms,))
        await db.executemany(
            "INSERT INTO narratives "
            "(timestamp_ms, label, rank, members, total_volume, total_market_cap, "
            "avg_change, sentiment, money_flow_score, relevance_score) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    timestamp_ms,
                    g.label,
                    rank,
                    json.dumps(g.members),
                    str(g.total_volume),
                    str(g.total_market_cap),
                    str(g.avg_change),
                    g.sentiment,
                    str(g.money_flow_score),
                    str(g.relevance_score),
                )
                for rank, g in enumerate(groups, 1)
            ],
        )
        await db.commit()
        return len(groups)

    async def get_latest_narratives(self) -> list[NarrativeGroup]:
        cursor = await self._database.db.execute(
            "SELECT label, members, total_volume, total_market_cap, avg_change, "
            "sentiment, money_flow_score, relevance_score FROM narratives "
            "WHERE timestamp_ms = (SELECT MAX(timestamp_ms) FROM narratives) "
            "ORDER BY rank ASC"
        )
        rows = await cursor.fetchall()
        return [
            NarrativeGroup(
                label=row[0],
                members=json.loads(row[1]),
                total_volume=Decimal(row[2]),
                total_market_cap=Decimal(row[3]),
                avg_change=Decimal(row[4]),
                sentiment=row[5],
                money_flow_score=Decimal(row[6]),
                relevance_score=Decimal(row[7]),
            )
            for row in rows
        ]

    # ──────────────────────────────────────────────
    # Alerts
    # ──────────────────────────────────────────────

    async def alert_exists(self, candidate: AlertCandidate, since: float) -> bool:
        """True if an alert with the candidate's dedup key was accepted after ``since``."""
        if candidate.is_event:
            cursor = await self._database.db.execute(
                "SELECT 1 FROM alerts WHERE type = ? AND event_id = ? "
                "AND accepted_at_ms > ? LIMIT 1",
                (candidate.type, candidate.event_id, _ms(since)),
            )
        else:
            cursor = await self._database.db.execute(
                "SELECT 1 FROM alerts WHERE type = ? AND metric = ? AND value = ? "
                "AND accepted_at_ms > ? LIMIT 1",
                (candidate.type, candidate.metric, candidate.value, _ms(since)),
            )
        return await cursor.fetchone() is not None

    async def insert_alert(self, candidate: AlertCandidate, accepted_at: float) -> AlertRecord:
        cursor = await self._database.db.execute(
            "INSERT INTO alerts "
            "(type, metric, severity, value, message, computed_at_ms, accepted_at_ms, "
            "event_id, event_date_ms, event_title, event_category) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                candidate.type,
                candidate.metric,
                candidate.severity.value,
                candidate.value,
                candidate.message,
                _ms(candidate.computed_at),
                _ms(accepted_at),
                candidate.event_id,
                _ms(candidate.event_date),
                candidate.event_title,
                candidate.event_category,
            ),
        )
        await self._database.db.commit()
        return AlertRecord.from_candidate(candidate, cursor.lastrowid or 0, accepted_at)

    async def get_alerts(self, limit: int = 10, latest_per_metric: bool = True) -> list[AlertRecord]:
        """Most recent alerts, by default only the newest per (type, metric)."""
        query = (
            "SELECT id, type, metric, severity, value, message, computed_at_ms, "
            "accepted_at_ms, event_id, event_date_ms, event_title, event_category FROM alerts"
        )
        if latest_per_metric:
            query += " WHERE id IN (SELECT MAX(id) FROM alerts GROUP BY type, metric)"
        query += " ORDER BY accepted_at_ms DESC, id DESC LIMIT ?"
        cursor = await self._database.db.execute(query, (limit,))
        rows = await cursor.fetchall()
        return [
            AlertRecord(
                id=row[0],
                type=row[1],
                metric=row[2],
                severity=Severity(row[3]),
                value=row[4],
                message=row[5],
                computed_at=row[6] / 1000,
                accepted_at=row[7] / 1000,
                event_id=row[8],
                event_date=_seconds(row[9]),
                event_title=row[10],
                event_category=row[11],
            )
            for row in rows
        ]

    async def count_alerts(self) -> int:
        cursor = await self._database.db.execute("SELECT COUNT(*) FROM alerts")
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def delete_alerts_before(self, cutoff: float) -> int:
        """Delete alerts accepted before ``cutoff``. Returns rows deleted."""
        cursor = await self._database.db.execute(
            "DELETE FROM alerts WHERE accepted_at_ms < ?", (_ms(cutoff),)
        )
        await self._database.db.commit()
        return cursor.rowcount

    async def delete_duplicate_alerts(self) -> int:
        """Keep only the most recent alert per (type, metric)."""
        cursor = await self._database.db.execute(
            "DELETE FROM alerts WHERE id NOT IN "
            "(SELECT MAX(id) FROM alerts GROUP BY type, metric)"
        )
        await self._database.db.commit()
        return cursor.rowcount

    async def delete_past_event_alerts(self, now: float) -> int:
        """Delete event alerts whose event has already taken place."""
        cursor = await self._database.db.execute(
            "DELETE FROM alerts WHERE type = ? AND event_date_ms IS NOT NULL "
            "AND event_date_ms < ?",
            (EVENT_ALERT_TYPE, _ms(now)),
        )
        await self._database.db.commit()
        return cursor.rowcount

    # ──────────────────────────────────────────────
    # Upcoming events
    # ──────────────────────────────────────────────

    async def upsert_event(self, event: UpcomingEvent) -> int:
        """Insert or update an event keyed by (title, scheduled_at). Returns its id."""
        db = self._database.db
        await db.execute(
            "INSERT INTO upcoming_events "
            "(title, scheduled_at_ms, category, impact, source, description) "
            "VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (title, scheduled_at_ms) DO UPDATE SET "
            "category = excluded.category, impact = excluded.impact, "
            "source = excluded.source, description = excluded.description",
            (
                event.title,
                _ms(event.scheduled_at),
                event.category,
                event.impact,
                event.source,
                event.description,
            ),
        )
        await db.commit()
        cursor = await db.execute(
            "SELECT id FROM upcoming_events WHERE title = ? AND scheduled_at_ms = ?",
            (event.title, _ms(event.scheduled_at)),
        )
        row = await cursor.fetchone()
        return row[0]

    async def get_upcoming_events(self, start: float, end: float) -> list[UpcomingEvent]:
        """Events scheduled in [start, end], soonest first."""
        cursor = await self._database.db.execute(
            "SELECT id, title, scheduled_at_ms, category, impact, source, description "
            "FROM upcoming_events WHERE scheduled_at_ms >= ? AND scheduled_at_ms <= ? "
            "ORDER BY scheduled_at_ms ASC, id ASC",
            (_ms(start), _ms(end)),
        )
        rows = await cursor.fetchall()
        return [
            UpcomingEvent(
                id=row[0],
                title=row[1],
                scheduled_at=row[2] / 1000,
                category=row[3],
                impact=row[4],
                source=row[5],
                description=row[6],
            )
            for row in rows
        ]

    async def delete_events_before(self, cutoff: float) -> int:
        cursor = await self._database.db.execute(
            "DELETE FROM upcoming_events WHERE scheduled_at_ms < ?", (_ms(cutoff),)
        )
        await self._database.db.commit()
        return cursor.rowcount
