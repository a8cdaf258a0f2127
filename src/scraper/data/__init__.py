"""Candle persistence layer.

Provides SQLite database management, the typed upsert store shared by
the backfill and streaming paths, and the dead-letter sink used when
store retries are exhausted.
"""

from scraper.data.database import CandleDatabase
from scraper.data.dead_letter import DeadLetterSink
from scraper.data.store import CandleStore

__all__ = [
    "CandleDatabase",
    "CandleStore",
    "DeadLetterSink",
]
