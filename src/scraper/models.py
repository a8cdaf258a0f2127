"""Core data models for candle ingestion.

CRITICAL: All monetary values use Decimal. Never use float for prices or volumes.
Timestamps are timezone-aware UTC datetimes; the store keeps them as epoch ms.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

from scraper.exceptions import MalformedRecord


class Exchange(str, Enum):
    """Supported market-data sources."""

    BINANCE = "binance"
    BYBIT = "bybit"


class Timeframe(str, Enum):
    """Normalized candle interval tokens."""

    M5 = "m5"
    M15 = "m15"
    H1 = "h1"
    H4 = "h4"
    D1 = "d1"

    @property
    def duration(self) -> timedelta:
        return _TIMEFRAME_DURATIONS[self]


_TIMEFRAME_DURATIONS = {
    Timeframe.M5: timedelta(minutes=5),
    Timeframe.M15: timedelta(minutes=15),
    Timeframe.H1: timedelta(hours=1),
    Timeframe.H4: timedelta(hours=4),
    Timeframe.D1: timedelta(days=1),
}


@dataclass(frozen=True)
class GridCell:
    """One (exchange, asset, timeframe) combination tracked independently."""

    exchange: Exchange
    asset: str
    timeframe: Timeframe

    def __post_init__(self) -> None:
        object.__setattr__(self, "asset", self.asset.lower())

    def log_context(self) -> dict[str, str]:
        """Context bound to every log line produced on behalf of this cell."""
        return {
            "exchange": self.exchange.value,
            "asset": self.asset,
            "timeframe": self.timeframe.value,
        }

    def __str__(self) -> str:
        return f"{self.exchange.value}/{self.asset}/{self.timeframe.value}"


@dataclass(frozen=True)
class Candle:
    """Canonical OHLCV record.

    The natural key is (exchange, asset_name, interval, open_time, close_time).
    Fields not provided by every source (trades, taker volumes) are optional.
    """

    exchange: Exchange
    asset_name: str
    interval: Timeframe
    open_time: datetime
    close_time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    quote_asset_volume: Decimal
    trades: int | None = None
    taker_buy_base_asset_volume: Decimal | None = None
    taker_buy_quote_asset_volume: Decimal | None = None

    def __post_init__(self) -> None:
        if self.open_time >= self.close_time:
            raise MalformedRecord(
                f"open_time {self.open_time.isoformat()} is not before "
                f"close_time {self.close_time.isoformat()}"
            )

    @property
    def natural_key(self) -> tuple:
        return (
            self.exchange,
            self.asset_name,
            self.interval,
            self.open_time,
            self.close_time,
        )


@dataclass(frozen=True)
class DerivedMetric:
    """Return of a candle relative to the previous candle in the same series.

    Both values are None when no previous close was carried.
    """

    exchange: Exchange
    asset_name: str
    interval: Timeframe
    open_time: datetime
    close_time: datetime
    return_to_last_candle: Decimal | None = None
    return_to_last_candle_pct: Decimal | None = None


@dataclass(frozen=True)
class CarryState:
    """Last observed close of a series, owned by one task. Never persisted as such."""

    close_time: datetime | None = None
    close: Decimal | None = None

    @classmethod
    def empty(cls) -> "CarryState":
        return cls()

    @property
    def is_empty(self) -> bool:
        return self.close is None


@dataclass
class Page:
    """One page of historical candles in chronological order."""

    candles: list[Candle] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.candles)

    @property
    def last_close_time(self) -> datetime | None:
        if not self.candles:
            return None
        return self.candles[-1].close_time
