"""SQLite schema and connection lifecycle for the candle store.

Candles, derived metrics and backfill cursors live in one WAL-mode file.
Prices and volumes are TEXT so Decimal values round-trip exactly; times are
epoch milliseconds. Both series tables are keyed on the natural key
(exchange, asset_name, interval, open_time_ms, close_time_ms).
"""

import os
import sqlite3
from typing import Self

import aiosqlite

from scraper.exceptions import ConfigurationError
from scraper.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS candles (
    exchange TEXT NOT NULL,
    asset_name TEXT NOT NULL,
    interval TEXT NOT NULL,
    open_time_ms INTEGER NOT NULL,
    close_time_ms INTEGER NOT NULL,
    open TEXT NOT NULL,
    high TEXT NOT NULL,
    low TEXT NOT NULL,
    close TEXT NOT NULL,
    volume TEXT NOT NULL,
    quote_asset_volume TEXT NOT NULL,
    trades INTEGER,
    taker_buy_base_asset_volume TEXT,
    taker_buy_quote_asset_volume TEXT,
    updated_at_ms INTEGER NOT NULL,
    PRIMARY KEY (exchange, asset_name, interval, open_time_ms, close_time_ms),
    CHECK (open_time_ms < close_time_ms)
);

CREATE TABLE IF NOT EXISTS derived_metrics (
    exchange TEXT NOT NULL,
    asset_name TEXT NOT NULL,
    interval TEXT NOT NULL,
    open_time_ms INTEGER NOT NULL,
    close_time_ms INTEGER NOT NULL,
    return_to_last_candle TEXT,
    return_to_last_candle_pct TEXT,
    updated_at_ms INTEGER NOT NULL,
    PRIMARY KEY (exchange, asset_name, interval, open_time_ms, close_time_ms),
    CHECK (open_time_ms < close_time_ms)
);

CREATE TABLE IF NOT EXISTS backfill_state (
    exchange TEXT NOT NULL,
    asset_name TEXT NOT NULL,
    interval TEXT NOT NULL,
    source TEXT NOT NULL,
    cursor_ms INTEGER NOT NULL,
    updated_at_ms INTEGER NOT NULL,
    PRIMARY KEY (exchange, asset_name, interval, source)
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_candles_series_close
    ON candles(exchange, asset_name, interval, close_time_ms);
"""

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


class CandleDatabase:
    """Owns the single aiosqlite connection shared by every writer.

    Opening the database also brings the schema up to SCHEMA_VERSION, so a
    connected CandleDatabase is always ready for CandleStore.

    Usage:
        async with CandleDatabase(settings.database.db_path) as database:
            store = CandleStore(database)
    """

    def __init__(self, db_path: str = "data/candles.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """The open connection. RuntimeError before connect()."""
        if self._connection is None:
            raise RuntimeError(f"CandleDatabase({self._db_path!r}) is not connected")
        return self._connection

    @property
    def path(self) -> str:
        return self._db_path

    async def connect(self) -> None:
        """Open the file (creating its directory), set pragmas, apply the schema.

        Any OS or sqlite failure here means DATABASE_DB_PATH is unusable and
        is raised as ConfigurationError.
        """
        try:
            parent = os.path.dirname(self._db_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            connection = await aiosqlite.connect(self._db_path)
            for pragma in _PRAGMAS:
                await connection.execute(pragma)
        except (OSError, sqlite3.Error) as e:
            logger.error("database_open_failed", db_path=self._db_path, error=str(e))
            raise ConfigurationError(
                f"cannot open database at '{self._db_path}': {e}"
            ) from e

        self._connection = connection
        version = await self._migrate()
        logger.info("candle_db_connected", db_path=self._db_path, schema_version=version)

    async def close(self) -> None:
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None
        logger.info("candle_db_closed", db_path=self._db_path)

    async def _migrate(self) -> int:
        """Create missing tables and record SCHEMA_VERSION on a fresh file."""
        connection = self.db
        await connection.executescript(_CREATE_TABLES_SQL + _CREATE_INDEXES_SQL)

        async with connection.execute("SELECT MAX(version) FROM schema_version") as cursor:
            (current,) = await cursor.fetchone()
        if current is None:
            await connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )
            current = SCHEMA_VERSION
            logger.info("schema_version_set", version=SCHEMA_VERSION)
        await connection.commit()
        return current

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
