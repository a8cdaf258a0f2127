"""Canonical candle helpers shared by every wire format.

Exchange adapters turn their own payloads (REST kline arrays, stream JSON,
archive CSV rows) into Candle through build_candle(), which funnels every
field through parse_decimal()/parse_epoch_ms() so a bad field always surfaces
as MalformedRecord regardless of the source.

compute_derived() is the only analytics in the system: return of a candle
relative to the carried previous close.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from scraper.exceptions import MalformedRecord
from scraper.models import Candle, CarryState, DerivedMetric, Exchange, Timeframe

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Epoch values at or above this are microseconds (newer Binance archive files)
_MICROSECOND_THRESHOLD = 10**15


def parse_decimal(value: Any, field: str) -> Decimal:
    """Parse a price/volume field into a finite Decimal.

    Strings are parsed directly; floats go through str() to avoid binary
    expansion. Missing, empty, non-numeric or non-finite values raise
    MalformedRecord.
    """
    if value is None or isinstance(value, bool):
        raise MalformedRecord(f"missing numeric field '{field}'")
    if isinstance(value, float):
        value = str(value)
    try:
        result = Decimal(value.strip() if isinstance(value, str) else value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise MalformedRecord(f"field '{field}' is not numeric: {value!r}") from e
    if not result.is_finite():
        raise MalformedRecord(f"field '{field}' is not finite: {value!r}")
    return result


def parse_optional_decimal(value: Any, field: str) -> Decimal | None:
    if value is None or value == "":
        return None
    return parse_decimal(value, field)


def parse_epoch_ms(value: Any, field: str) -> datetime:
    """Parse Unix epoch milliseconds (int or numeric string) into a UTC datetime."""
    if value is None or isinstance(value, bool):
        raise MalformedRecord(f"missing timestamp field '{field}'")
    try:
        ms = int(value.strip()) if isinstance(value, str) else int(value)
    except (TypeError, ValueError) as e:
        raise MalformedRecord(f"field '{field}' is not epoch ms: {value!r}") from e
    if ms < 0:
        raise MalformedRecord(f"field '{field}' is negative: {value!r}")
    if ms >= _MICROSECOND_THRESHOLD:
        ms //= 1000
    try:
        return EPOCH + timedelta(milliseconds=ms)
    except OverflowError as e:
        raise MalformedRecord(f"field '{field}' is out of range: {value!r}") from e


def parse_optional_int(value: Any, field: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise MalformedRecord(f"field '{field}' is not an integer: {value!r}") from e


def to_epoch_ms(moment: datetime) -> int:
    """Convert a tz-aware datetime to epoch milliseconds."""
    return (moment - EPOCH) // timedelta(milliseconds=1)


def build_candle(
    exchange: Exchange,
    asset: str,
    interval: Timeframe,
    *,
    open_time: Any,
    close_time: Any,
    open: Any,
    high: Any,
    low: Any,
    close: Any,
    volume: Any,
    quote_asset_volume: Any,
    trades: Any = None,
    taker_buy_base_asset_volume: Any = None,
    taker_buy_quote_asset_volume: Any = None,
) -> Candle:
    """Build a Candle from raw field values. open_time/close_time may already
    be datetimes (derived by the adapter) or raw epoch milliseconds."""
    return Candle(
        exchange=exchange,
        asset_name=asset.lower(),
        interval=interval,
        open_time=open_time
        if isinstance(open_time, datetime)
        else parse_epoch_ms(open_time, "open_time"),
        close_time=close_time
        if isinstance(close_time, datetime)
        else parse_epoch_ms(close_time, "close_time"),
        open=parse_decimal(open, "open"),
        high=parse_decimal(high, "high"),
        low=parse_decimal(low, "low"),
        close=parse_decimal(close, "close"),
        volume=parse_decimal(volume, "volume"),
        quote_asset_volume=parse_decimal(quote_asset_volume, "quote_asset_volume"),
        trades=parse_optional_int(trades, "trades"),
        taker_buy_base_asset_volume=parse_optional_decimal(
            taker_buy_base_asset_volume, "taker_buy_base_asset_volume"
        ),
        taker_buy_quote_asset_volume=parse_optional_decimal(
            taker_buy_quote_asset_volume, "taker_buy_quote_asset_volume"
        ),
    )


def compute_derived(
    candle: Candle, carry: CarryState
) -> tuple[DerivedMetric, CarryState]:
    """Compute the return against the carried close and the next carry.

    Pure: neither argument is mutated. The carry only moves when the candle
    has a different close_time than the carried one; repeated updates of the
    same still-open candle leave the carry untouched.
    """
    absolute: Decimal | None = None
    pct: Decimal | None = None

    if carry.close is not None:
        absolute = candle.close - carry.close
        if carry.close != 0:
            pct = absolute / carry.close

    metric = DerivedMetric(
        exchange=candle.exchange,
        asset_name=candle.asset_name,
        interval=candle.interval,
        open_time=candle.open_time,
        close_time=candle.close_time,
        return_to_last_candle=absolute,
        return_to_last_candle_pct=pct,
    )

    if candle.close_time != carry.close_time:
        carry = CarryState(close_time=candle.close_time, close=candle.close)

    return metric, carry


def derive_page(
    candles: list[Candle], carry: CarryState
) -> tuple[list[DerivedMetric], CarryState]:
    """Thread one carry through a chronological list of candles."""
    metrics: list[DerivedMetric] = []
    for candle in candles:
        metric, carry = compute_derived(candle, carry)
        metrics.append(metric)
    return metrics, carry
