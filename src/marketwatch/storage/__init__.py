"""Persistence layer -- SQLite database management and the typed market data store."""

from marketwatch.storage.database import MarketDatabase
from marketwatch.storage.store import MarketDataStore

__all__ = ["MarketDatabase", "MarketDataStore"]
