"""Shared test fixtures for the candle scraper."""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from scraper.config import (
    AppSettings,
    BackfillSettings,
    DatabaseSettings,
    RetrySettings,
    StreamSettings,
)
from scraper.data.database import CandleDatabase
from scraper.data.store import CandleStore
from scraper.models import Candle, CarryState, Exchange, GridCell, Timeframe
from scraper.retry import RetryPolicy

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def mock_settings(tmp_path) -> AppSettings:
    """Return AppSettings with test defaults (temp database, no delays)."""
    return AppSettings(
        log_level="DEBUG",
        database=DatabaseSettings(db_path=str(tmp_path / "candles.db")),
        backfill=BackfillSettings(fetch_delay=0, fetch_retry_base_delay=0),
        stream=StreamSettings(reconnect_delay=0.01, read_timeout=1.0),
        retry=RetrySettings(
            base_delay=0,
            max_attempts=3,
            dead_letter_path=str(tmp_path / "dead_letter.jsonl"),
        ),
    )


@pytest.fixture
def btc_h1() -> GridCell:
    return GridCell(Exchange.BINANCE, "btcusdt", Timeframe.H1)


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Retry policy with no sleeping between attempts."""
    return RetryPolicy(base_delay=0, multiplier=1, max_delay=0, max_attempts=3)


@pytest.fixture
def make_candle() -> Callable[..., Candle]:
    """Factory for hourly BTC candles: make_candle(index, close=...)."""

    def _make(
        index: int = 0,
        close: str | Decimal = "100",
        exchange: Exchange = Exchange.BINANCE,
        asset: str = "btcusdt",
        interval: Timeframe = Timeframe.H1,
        volume: str = "10",
    ) -> Candle:
        open_time = T0 + interval.duration * index
        close_value = Decimal(str(close))
        return Candle(
            exchange=exchange,
            asset_name=asset,
            interval=interval,
            open_time=open_time,
            close_time=open_time + interval.duration - timedelta(milliseconds=1),
            open=close_value,
            high=close_value + 1,
            low=close_value - 1,
            close=close_value,
            volume=Decimal(volume),
            quote_asset_volume=Decimal(volume) * close_value,
            trades=42,
            taker_buy_base_asset_volume=Decimal("1"),
            taker_buy_quote_asset_volume=close_value,
        )

    return _make


@pytest_asyncio.fixture
async def database(tmp_path):
    """Connected CandleDatabase in a temp directory."""
    async with CandleDatabase(str(tmp_path / "candles.db")) as db:
        yield db


@pytest_asyncio.fixture
async def store(database) -> CandleStore:
    return CandleStore(database)


class FakeStore:
    """In-memory stand-in for CandleStore that records every call."""

    def __init__(self) -> None:
        self.candles: dict[tuple, Candle] = {}
        self.derived: dict[tuple, object] = {}
        self.candle_calls: list[list[Candle]] = []
        self.derived_calls: list[list] = []
        self.cursors: dict[tuple, datetime] = {}
        self.cursor_history: list[datetime] = []

    async def upsert_candles(self, batch):
        self.candle_calls.append(list(batch))
        for candle in batch:
            self.candles[candle.natural_key] = candle
        return len(batch)

    async def upsert_derived(self, batch):
        self.derived_calls.append(list(batch))
        for metric in batch:
            key = (
                metric.exchange,
                metric.asset_name,
                metric.interval,
                metric.open_time,
                metric.close_time,
            )
            self.derived[key] = metric
        return len(batch)

    async def get_last_carry(self, cell):
        series = [
            c
            for c in self.candles.values()
            if (c.exchange, c.asset_name, c.interval)
            == (cell.exchange, cell.asset, cell.timeframe)
        ]
        if not series:
            return CarryState.empty()
        last = max(series, key=lambda c: c.close_time)
        return CarryState(close_time=last.close_time, close=last.close)

    async def get_backfill_cursor(self, cell, source):
        return self.cursors.get((cell, source))

    async def update_backfill_cursor(self, cell, source, cursor):
        self.cursors[(cell, source)] = cursor
        self.cursor_history.append(cursor)

    async def count_candles(self, cell):
        return sum(
            1
            for c in self.candles.values()
            if (c.exchange, c.asset_name, c.interval)
            == (cell.exchange, cell.asset, cell.timeframe)
        )


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()
