"""Tests for CandleDatabase and CandleStore.

All tests use a temporary SQLite file; no shared state between tests.
"""

import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from scraper.data.database import CandleDatabase
from scraper.exceptions import ConfigurationError, PersistenceError, SchemaError
from scraper.models import CarryState, DerivedMetric, Exchange, GridCell, Timeframe


# ---------------------------------------------------------------------------
# Database bootstrap
# ---------------------------------------------------------------------------


class TestCandleDatabase:
    """Tests for database lifecycle and schema creation."""

    @pytest.mark.asyncio
    async def test_creates_tables(self, database) -> None:
        cursor = await database.db.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'"
        )
        tables = {row[0] for row in await cursor.fetchall()}
        assert {"candles", "derived_metrics", "backfill_state", "schema_version"} <= tables

    @pytest.mark.asyncio
    async def test_unusable_path_is_configuration_error(self, tmp_path) -> None:
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        database = CandleDatabase(str(blocker / "sub" / "candles.db"))
        with pytest.raises(ConfigurationError):
            await database.connect()

    @pytest.mark.asyncio
    async def test_db_before_connect_raises(self, tmp_path) -> None:
        database = CandleDatabase(str(tmp_path / "x.db"))
        with pytest.raises(RuntimeError):
            _ = database.db


# ---------------------------------------------------------------------------
# Upserts
# ---------------------------------------------------------------------------


class TestUpsertCandles:
    """Tests for natural-key upsert semantics."""

    @pytest.mark.asyncio
    async def test_insert_and_read_back(self, store, make_candle, btc_h1) -> None:
        batch = [make_candle(i, str(100 + i)) for i in range(3)]
        assert await store.upsert_candles(batch) == 3

        stored = await store.get_candles(btc_h1)
        assert stored == batch

    @pytest.mark.asyncio
    async def test_empty_batch(self, store) -> None:
        assert await store.upsert_candles([]) == 0
        assert await store.upsert_derived([]) == 0

    @pytest.mark.asyncio
    async def test_same_key_twice_keeps_second_values(
        self, store, make_candle, btc_h1
    ) -> None:
        """Idempotence: one row, reflecting the second call."""
        await store.upsert_candles([make_candle(0, "100", volume="1")])
        await store.upsert_candles([make_candle(0, "250", volume="9")])

        stored = await store.get_candles(btc_h1)
        assert len(stored) == 1
        assert stored[0].close == Decimal("250")
        assert stored[0].volume == Decimal("9")

    @pytest.mark.asyncio
    async def test_overlapping_batches_stay_disjoint(
        self, store, make_candle, btc_h1
    ) -> None:
        """No two rows of a series share a natural key."""
        await store.upsert_candles([make_candle(i) for i in range(0, 5)])
        await store.upsert_candles([make_candle(i) for i in range(3, 8)])

        stored = await store.get_candles(btc_h1)
        keys = [c.natural_key for c in stored]
        assert len(keys) == len(set(keys)) == 8
        assert await store.count_candles(btc_h1) == 8

    @pytest.mark.asyncio
    async def test_series_are_isolated(self, store, make_candle, btc_h1) -> None:
        await store.upsert_candles([make_candle(0)])
        await store.upsert_candles([make_candle(0, exchange=Exchange.BYBIT)])

        assert await store.count_candles(btc_h1) == 1
        bybit = GridCell(Exchange.BYBIT, "btcusdt", Timeframe.H1)
        assert await store.count_candles(bybit) == 1

    @pytest.mark.asyncio
    async def test_decimal_precision_preserved(self, store, make_candle, btc_h1) -> None:
        await store.upsert_candles([make_candle(0, "42123.123456789012")])
        stored = await store.get_candles(btc_h1)
        assert stored[0].close == Decimal("42123.123456789012")

    @pytest.mark.asyncio
    async def test_optional_fields_round_trip_as_none(
        self, store, make_candle, btc_h1
    ) -> None:
        base = make_candle(0)
        bare = type(base)(
            **{
                **base.__dict__,
                "trades": None,
                "taker_buy_base_asset_volume": None,
                "taker_buy_quote_asset_volume": None,
            }
        )
        await store.upsert_candles([bare])
        stored = await store.get_candles(btc_h1)
        assert stored[0].trades is None
        assert stored[0].taker_buy_quote_asset_volume is None


class TestBatchAtomicity:
    """A failure mid-batch leaves nothing from the batch visible."""

    @pytest.mark.asyncio
    async def test_failure_on_nth_record_rolls_back_batch(
        self, database, store, make_candle, btc_h1
    ) -> None:
        batch = [make_candle(i) for i in range(5)]
        poisoned_ms = int(batch[2].open_time.timestamp() * 1000)

        def _fail(_value):
            raise ValueError("disk went away")

        await database.db.create_function("fail_insert", 1, _fail)
        await database.db.execute(
            "CREATE TRIGGER poison BEFORE INSERT ON candles "
            f"WHEN NEW.open_time_ms = {poisoned_ms} "
            "BEGIN SELECT fail_insert(NEW.open_time_ms); END"
        )
        await database.db.commit()

        with pytest.raises(PersistenceError):
            await store.upsert_candles(batch)

        assert await store.count_candles(btc_h1) == 0

        # The store is usable again once the cause is gone
        await database.db.execute("DROP TRIGGER poison")
        await database.db.commit()
        assert await store.upsert_candles(batch) == 5

    @pytest.mark.asyncio
    async def test_locked_database_is_persistence_error(
        self, database, store, make_candle
    ) -> None:
        with patch.object(
            database.db,
            "executemany",
            AsyncMock(side_effect=sqlite3.OperationalError("database is locked")),
        ):
            with pytest.raises(PersistenceError):
                await store.upsert_candles([make_candle(0)])

    @pytest.mark.asyncio
    async def test_constraint_violation_is_schema_error(self, store) -> None:
        moment = datetime(2024, 1, 1, tzinfo=timezone.utc)
        bad = DerivedMetric(
            exchange=Exchange.BINANCE,
            asset_name="btcusdt",
            interval=Timeframe.H1,
            open_time=moment,
            close_time=moment,
        )
        with pytest.raises(SchemaError):
            await store.upsert_derived([bad])

    @pytest.mark.asyncio
    async def test_missing_column_is_schema_error(
        self, database, store, make_candle, btc_h1
    ) -> None:
        await database.db.execute("ALTER TABLE candles DROP COLUMN trades")
        await database.db.commit()

        with pytest.raises(SchemaError, match="has no column named trades"):
            await store.upsert_candles([make_candle(0)])
        assert await store.count_candles(btc_h1) == 0

    @pytest.mark.asyncio
    async def test_missing_table_is_schema_error(self, database, store, make_candle) -> None:
        await database.db.execute("DROP TABLE derived_metrics")
        await database.db.commit()
        metric = DerivedMetric(
            exchange=Exchange.BINANCE,
            asset_name="btcusdt",
            interval=Timeframe.H1,
            open_time=make_candle(0).open_time,
            close_time=make_candle(0).close_time,
        )

        with pytest.raises(SchemaError):
            await store.upsert_derived([metric])

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "message", ["database is locked", "database table is locked", "disk I/O error"]
    )
    async def test_transient_operational_errors_stay_retryable(
        self, database, store, make_candle, message
    ) -> None:
        with patch.object(
            database.db,
            "executemany",
            AsyncMock(side_effect=sqlite3.OperationalError(message)),
        ):
            with pytest.raises(PersistenceError) as exc_info:
                await store.upsert_candles([make_candle(0)])
        assert not isinstance(exc_info.value, SchemaError)


# ---------------------------------------------------------------------------
# Derived metrics and reads
# ---------------------------------------------------------------------------


class TestDerivedAndReads:
    """Tests for derived metric storage, carry seeding and cursors."""

    @pytest.mark.asyncio
    async def test_derived_upsert_overwrites(self, store, make_candle, btc_h1) -> None:
        candle = make_candle(0)
        metric = DerivedMetric(
            exchange=candle.exchange,
            asset_name=candle.asset_name,
            interval=candle.interval,
            open_time=candle.open_time,
            close_time=candle.close_time,
        )
        await store.upsert_derived([metric])
        updated = DerivedMetric(
            **{**metric.__dict__, "return_to_last_candle": Decimal("-3")}
        )
        await store.upsert_derived([updated])

        stored = await store.get_derived(btc_h1)
        assert len(stored) == 1
        assert stored[0].return_to_last_candle == Decimal("-3")
        assert stored[0].return_to_last_candle_pct is None

    @pytest.mark.asyncio
    async def test_last_carry_empty_series(self, store, btc_h1) -> None:
        assert await store.get_last_carry(btc_h1) == CarryState.empty()

    @pytest.mark.asyncio
    async def test_last_carry_is_latest_close(self, store, make_candle, btc_h1) -> None:
        await store.upsert_candles([make_candle(0, "100"), make_candle(1, "105")])
        carry = await store.get_last_carry(btc_h1)
        assert carry.close == Decimal("105")
        assert carry.close_time == make_candle(1).close_time

    @pytest.mark.asyncio
    async def test_backfill_cursor_round_trip(self, store, btc_h1) -> None:
        assert await store.get_backfill_cursor(btc_h1, "rest") is None

        cursor = datetime(2020, 5, 1, 12, tzinfo=timezone.utc)
        await store.update_backfill_cursor(btc_h1, "rest", cursor)
        await store.update_backfill_cursor(btc_h1, "archive", datetime(2019, 1, 1, tzinfo=timezone.utc))

        assert await store.get_backfill_cursor(btc_h1, "rest") == cursor

    @pytest.mark.asyncio
    async def test_get_candles_time_window(self, store, make_candle, btc_h1) -> None:
        await store.upsert_candles([make_candle(i) for i in range(6)])
        window = await store.get_candles(
            btc_h1, since=make_candle(2).open_time, until=make_candle(4).open_time
        )
        assert [c.open_time for c in window] == [make_candle(i).open_time for i in (2, 3, 4)]
