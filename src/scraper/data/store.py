"""Typed SQLite read/write abstraction for candles and derived metrics.

Provides CandleStore with the two upsert operations both ingestion paths
write through, plus the reads used for carry seeding, cursor resume and
status. All SQL is isolated behind this interface.

CRITICAL: All monetary values stored as TEXT in SQLite, restored as Decimal on read.
"""

import asyncio
import sqlite3
import time
from datetime import datetime, timedelta
from decimal import Decimal

from scraper.candles import EPOCH, to_epoch_ms
from scraper.data.database import CandleDatabase
from scraper.exceptions import PersistenceError, SchemaError
from scraper.logging import get_logger
from scraper.models import (
    Candle,
    CarryState,
    DerivedMetric,
    Exchange,
    GridCell,
    Timeframe,
)

logger = get_logger(__name__)

_UPSERT_CANDLES_SQL = (
    "INSERT INTO candles "
    "(exchange, asset_name, interval, open_time_ms, close_time_ms, "
    "open, high, low, close, volume, quote_asset_volume, trades, "
    "taker_buy_base_asset_volume, taker_buy_quote_asset_volume, updated_at_ms) "
    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
    "ON CONFLICT (exchange, asset_name, interval, open_time_ms, close_time_ms) "
    "DO UPDATE SET "
    "open = excluded.open, "
    "high = excluded.high, "
    "low = excluded.low, "
    "close = excluded.close, "
    "volume = excluded.volume, "
    "quote_asset_volume = excluded.quote_asset_volume, "
    "trades = excluded.trades, "
    "taker_buy_base_asset_volume = excluded.taker_buy_base_asset_volume, "
    "taker_buy_quote_asset_volume = excluded.taker_buy_quote_asset_volume, "
    "updated_at_ms = excluded.updated_at_ms"
)

_UPSERT_DERIVED_SQL = (
    "INSERT INTO derived_metrics "
    "(exchange, asset_name, interval, open_time_ms, close_time_ms, "
    "return_to_last_candle, return_to_last_candle_pct, updated_at_ms) "
    "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
    "ON CONFLICT (exchange, asset_name, interval, open_time_ms, close_time_ms) "
    "DO UPDATE SET "
    "return_to_last_candle = excluded.return_to_last_candle, "
    "return_to_last_candle_pct = excluded.return_to_last_candle_pct, "
    "updated_at_ms = excluded.updated_at_ms"
)

_CANDLE_COLUMNS = (
    "exchange, asset_name, interval, open_time_ms, close_time_ms, "
    "open, high, low, close, volume, quote_asset_volume, trades, "
    "taker_buy_base_asset_volume, taker_buy_quote_asset_volume"
)

# Anything else from sqlite3 (locked, disk I/O, busy) is treated as transient,
# apart from the OperationalError messages below
_SCHEMA_ERRORS = (
    sqlite3.IntegrityError,
    sqlite3.ProgrammingError,
    sqlite3.InterfaceError,
    sqlite3.NotSupportedError,
    sqlite3.DataError,
)

# OperationalError also covers statements that no longer match the schema
_SCHEMA_MESSAGES = (
    "no such table",
    "no such column",
    "has no column named",
    "syntax error",
)


def _is_schema_error(error: sqlite3.Error) -> bool:
    if isinstance(error, _SCHEMA_ERRORS):
        return True
    if isinstance(error, sqlite3.OperationalError):
        message = str(error).lower()
        return any(fragment in message for fragment in _SCHEMA_MESSAGES)
    return False


def _text(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def _decimal(value: str | None) -> Decimal | None:
    return None if value is None else Decimal(value)


def _from_ms(ms: int) -> datetime:
    return EPOCH + timedelta(milliseconds=ms)


class CandleStore:
    """Async SQLite store for candles and their derived metrics.

    Wraps CandleDatabase with typed read/write methods. Each upsert call is
    one transaction: either every record of the batch is written or none is.
    Transactions are serialized with a lock because all tasks share a single
    connection.

    Usage:
        async with CandleDatabase("data/candles.db") as database:
            store = CandleStore(database)
            await store.upsert_candles(candles)
    """

    def __init__(self, database: CandleDatabase) -> None:
        self._database = database
        self._lock = asyncio.Lock()

    # ──────────────────────────────────────────────
    # Write methods
    # ──────────────────────────────────────────────

    async def upsert_candles(self, batch: list[Candle]) -> int:
        """Insert or overwrite candles by natural key in one transaction.

        Returns the number of records written. Raises PersistenceError on
        transient failures and SchemaError on constraint/shape mismatches;
        in both cases nothing from the batch is visible afterwards.
        """
        if not batch:
            return 0

        now_ms = int(time.time() * 1000)
        data = [
            (
                c.exchange.value,
                c.asset_name,
                c.interval.value,
                to_epoch_ms(c.open_time),
                to_epoch_ms(c.close_time),
                str(c.open),
                str(c.high),
                str(c.low),
                str(c.close),
                str(c.volume),
                str(c.quote_asset_volume),
                c.trades,
                _text(c.taker_buy_base_asset_volume),
                _text(c.taker_buy_quote_asset_volume),
                now_ms,
            )
            for c in batch
        ]

        await self._execute_batch(_UPSERT_CANDLES_SQL, data, kind="candles")
        logger.debug(
            "upserted_candles",
            exchange=batch[0].exchange.value,
            asset=batch[0].asset_name,
            timeframe=batch[0].interval.value,
            count=len(batch),
        )
        return len(batch)

    async def upsert_derived(self, batch: list[DerivedMetric]) -> int:
        """Insert or overwrite derived metrics by natural key in one transaction."""
        if not batch:
            return 0

        now_ms = int(time.time() * 1000)
        data = [
            (
                m.exchange.value,
                m.asset_name,
                m.interval.value,
                to_epoch_ms(m.open_time),
                to_epoch_ms(m.close_time),
                _text(m.return_to_last_candle),
                _text(m.return_to_last_candle_pct),
                now_ms,
            )
            for m in batch
        ]

        await self._execute_batch(_UPSERT_DERIVED_SQL, data, kind="derived_metrics")
        logger.debug(
            "upserted_derived_metrics",
            exchange=batch[0].exchange.value,
            asset=batch[0].asset_name,
            timeframe=batch[0].interval.value,
            count=len(batch),
        )
        return len(batch)

    async def update_backfill_cursor(
        self, cell: GridCell, source: str, cursor: datetime
    ) -> None:
        """Persist the crawler position for a cell so a restart can resume."""
        now_ms = int(time.time() * 1000)
        await self._execute_batch(
            "INSERT OR REPLACE INTO backfill_state "
            "(exchange, asset_name, interval, source, cursor_ms, updated_at_ms) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [
                (
                    cell.exchange.value,
                    cell.asset,
                    cell.timeframe.value,
                    source,
                    to_epoch_ms(cursor),
                    now_ms,
                )
            ],
            kind="backfill_state",
        )

    async def _execute_batch(self, sql: str, data: list[tuple], kind: str) -> None:
        """Run one statement over all rows inside a single transaction.

        The first DML statement opens the transaction implicitly; any
        failure rolls the whole batch back before the error is classified.
        """
        db = self._database.db
        async with self._lock:
            try:
                await db.executemany(sql, data)
                await db.commit()
            except sqlite3.Error as e:
                await self._rollback(kind)
                if _is_schema_error(e):
                    logger.error(
                        "upsert_schema_error", table=kind, rows=len(data), error=str(e)
                    )
                    raise SchemaError(f"{kind} upsert rejected: {e}") from e
                logger.warning(
                    "upsert_transaction_failed",
                    table=kind,
                    rows=len(data),
                    error=str(e),
                )
                raise PersistenceError(f"{kind} upsert failed: {e}") from e
            except (TypeError, ValueError, OverflowError) as e:
                await self._rollback(kind)
                raise SchemaError(f"{kind} upsert rejected: {e}") from e

    async def _rollback(self, kind: str) -> None:
        try:
            await self._database.db.rollback()
        except sqlite3.Error as e:
            logger.error("rollback_failed", table=kind, error=str(e))

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def get_candles(
        self,
        cell: GridCell,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[Candle]:
        """Query candles of one series, ordered by open time ASC."""
        conditions = ["exchange = ?", "asset_name = ?", "interval = ?"]
        params: list = [cell.exchange.value, cell.asset, cell.timeframe.value]

        if since is not None:
            conditions.append("open_time_ms >= ?")
            params.append(to_epoch_ms(since))
        if until is not None:
            conditions.append("open_time_ms <= ?")
            params.append(to_epoch_ms(until))

        where = " AND ".join(conditions)
        cursor = await self._database.db.execute(
            f"SELECT {_CANDLE_COLUMNS} FROM candles WHERE {where} "
            f"ORDER BY open_time_ms ASC, close_time_ms ASC",
            params,
        )
        rows = await cursor.fetchall()
        return [
            Candle(
                exchange=Exchange(row[0]),
                asset_name=row[1],
                interval=Timeframe(row[2]),
                open_time=_from_ms(row[3]),
                close_time=_from_ms(row[4]),
                open=Decimal(row[5]),
                high=Decimal(row[6]),
                low=Decimal(row[7]),
                close=Decimal(row[8]),
                volume=Decimal(row[9]),
                quote_asset_volume=Decimal(row[10]),
                trades=row[11],
                taker_buy_base_asset_volume=_decimal(row[12]),
                taker_buy_quote_asset_volume=_decimal(row[13]),
            )
            for row in rows
        ]

    async def get_derived(self, cell: GridCell) -> list[DerivedMetric]:
        """Query derived metrics of one series, ordered by open time ASC."""
        cursor = await self._database.db.execute(
            "SELECT exchange, asset_name, interval, open_time_ms, close_time_ms, "
            "return_to_last_candle, return_to_last_candle_pct "
            "FROM derived_metrics "
            "WHERE exchange = ? AND asset_name = ? AND interval = ? "
            "ORDER BY open_time_ms ASC, close_time_ms ASC",
            (cell.exchange.value, cell.asset, cell.timeframe.value),
        )
        rows = await cursor.fetchall()
        return [
            DerivedMetric(
                exchange=Exchange(row[0]),
                asset_name=row[1],
                interval=Timeframe(row[2]),
                open_time=_from_ms(row[3]),
                close_time=_from_ms(row[4]),
                return_to_last_candle=_decimal(row[5]),
                return_to_last_candle_pct=_decimal(row[6]),
            )
            for row in rows
        ]

    async def count_candles(self, cell: GridCell) -> int:
        cursor = await self._database.db.execute(
            "SELECT COUNT(*) FROM candles "
            "WHERE exchange = ? AND asset_name = ? AND interval = ?",
            (cell.exchange.value, cell.asset, cell.timeframe.value),
        )
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def get_last_carry(self, cell: GridCell) -> CarryState:
        """Return the latest stored close of a series as a CarryState.

        Empty carry when the series has no rows.
        """
        cursor = await self._database.db.execute(
            "SELECT close_time_ms, close FROM candles "
            "WHERE exchange = ? AND asset_name = ? AND interval = ? "
            "ORDER BY close_time_ms DESC LIMIT 1",
            (cell.exchange.value, cell.asset, cell.timeframe.value),
        )
        row = await cursor.fetchone()
        if row is None:
            return CarryState.empty()
        return CarryState(close_time=_from_ms(row[0]), close=Decimal(row[1]))

    async def get_backfill_cursor(self, cell: GridCell, source: str) -> datetime | None:
        """Return the persisted crawler position for a cell, or None."""
        cursor = await self._database.db.execute(
            "SELECT cursor_ms FROM backfill_state "
            "WHERE exchange = ? AND asset_name = ? AND interval = ? AND source = ?",
            (cell.exchange.value, cell.asset, cell.timeframe.value, source),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return _from_ms(row[0])
