"""Async SQLite database manager for collected market data, alerts and events.

Uses aiosqlite for non-blocking database operations with WAL mode
for concurrent read/write performance.
"""

import os
from typing import Self

import aiosqlite

from marketwatch.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS metric_values (
    data_type TEXT NOT NULL,
    symbol TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    value TEXT NOT NULL,
    source TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    PRIMARY KEY (data_type, symbol, timestamp_ms)
);

CREATE TABLE IF NOT EXISTS sentiment (
    index_name TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    value TEXT NOT NULL,
    classification TEXT,
    source TEXT NOT NULL,
    PRIMARY KEY (index_name, timestamp_ms)
);

CREATE TABLE IF NOT EXISTS correlations (
    symbol1 TEXT NOT NULL,
    symbol2 TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    coefficient TEXT NOT NULL,
    period_days INTEGER NOT NULL,
    method TEXT NOT NULL,
    PRIMARY KEY (symbol1, symbol2, timestamp_ms)
);

CREATE TABLE IF NOT EXISTS narratives (
    timestamp_ms INTEGER NOT NULL,
    label TEXT NOT NULL,
    rank INTEGER NOT NULL,
    members TEXT NOT NULL,
    total_volume TEXT NOT NULL,
    total_market_cap TEXT NOT NULL,
    avg_change TEXT NOT NULL,
    sentiment TEXT NOT NULL,
    money_flow_score TEXT NOT NULL,
    relevance_score TEXT NOT NULL,
    PRIMARY KEY (timestamp_ms, label)
);

CREATE TABLE IF NOT EXISTS alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    metric TEXT NOT NULL,
    severity TEXT NOT NULL,
    value TEXT NOT NULL,
    message TEXT NOT NULL,
    computed_at_ms INTEGER NOT NULL,
    accepted_at_ms INTEGER NOT NULL,
    event_id INTEGER,
    event_date_ms INTEGER,
    event_title TEXT,
    event_category TEXT
);

CREATE TABLE IF NOT EXISTS upcoming_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    scheduled_at_ms INTEGER NOT NULL,
    category TEXT NOT NULL,
    impact TEXT NOT NULL,
    source TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    UNIQUE (title, scheduled_at_ms)
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_metric_symbol_ts
    ON metric_values(data_type, symbol, timestamp_ms);

CREATE INDEX IF NOT EXISTS idx_alerts_dedup
    ON alerts(type, metric, value, accepted_at_ms);

CREATE INDEX IF NOT EXISTS idx_alerts_event
    ON alerts(type, event_id, accepted_at_ms);

CREATE INDEX IF NOT EXISTS idx_events_scheduled
    ON upcoming_events(scheduled_at_ms);
"""


class MarketDatabase:
    """Async SQLite connection manager for the market data store.

    Manages database lifecycle including schema creation, WAL mode
    configuration, and clean resource cleanup.

    Usage:
        async with MarketDatabase("data/marketwatch.db") as database:
            await database.db.execute("SELECT ...")
    """

    def __init__(self, db_path: str = "data/marketwatch.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    @property
    def db_path(self) -> str:
        return self._db_path

    async def connect(self) -> None:
        """Open the connection, configure pragmas, and create the schema."""
        if self._db_path != ":memory:":
            db_dir = os.path.dirname(self._db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._create_tables()
        await self._ensure_schema_version()

        logger.info("market_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("market_db_closed", db_path=self._db_path)

    async def _create_tables(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)
        await self._connection.commit()

    async def _ensure_schema_version(self) -> None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT version FROM schema_version LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self._connection.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
