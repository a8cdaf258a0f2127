"""Binance USD-M futures adapter via ccxt async and the public kline stream.

REST backfill reads continuous-contract klines so the series has no gaps at
contract rolls; live candles come from the matching continuousKline stream,
so both paths produce identical natural keys.

Kline row layout (REST, and the archive CSV files):
    [open_time, open, high, low, close, volume, close_time,
     quote_asset_volume, trades, taker_buy_base, taker_buy_quote, ignore]
"""

from datetime import datetime
from typing import Any

import ccxt.async_support as ccxt_async

from scraper.candles import build_candle, to_epoch_ms
from scraper.exceptions import ExchangeConnectionError, MalformedRecord
from scraper.exchange.client import ExchangeAdapter, decode_message
from scraper.logging import get_logger
from scraper.models import Candle, Exchange, GridCell, Page, Timeframe

logger = get_logger(__name__)

STREAM_BASE_URL = "wss://fstream.binance.com/ws"

INTERVALS = {
    Timeframe.M5: "5m",
    Timeframe.M15: "15m",
    Timeframe.H1: "1h",
    Timeframe.H4: "4h",
    Timeframe.D1: "1d",
}


def normalize_kline_row(row: Any, cell: GridCell) -> Candle:
    """Normalize one 12-field Binance kline array (REST or archive CSV)."""
    if not isinstance(row, (list, tuple)) or len(row) < 11:
        raise MalformedRecord(f"unexpected kline row shape: {row!r}")
    return build_candle(
        Exchange.BINANCE,
        cell.asset,
        cell.timeframe,
        open_time=row[0],
        close_time=row[6],
        open=row[1],
        high=row[2],
        low=row[3],
        close=row[4],
        volume=row[5],
        quote_asset_volume=row[7],
        trades=row[8],
        taker_buy_base_asset_volume=row[9],
        taker_buy_quote_asset_volume=row[10],
    )


class BinanceAdapter(ExchangeAdapter):
    """Binance perpetual futures klines over REST (ccxt) and websocket.

    Usage:
        adapter = BinanceAdapter(page_limit=1000)
        page = await adapter.fetch_historical_page(cell, cursor)
        await adapter.close()
    """

    exchange = Exchange.BINANCE
    source = "rest"

    def __init__(
        self,
        page_limit: int = 1000,
        request_timeout_ms: int = 15_000,
        client: Any = None,
    ) -> None:
        self._page_limit = page_limit
        self._client = client or ccxt_async.binance(
            {
                "enableRateLimit": True,
                "timeout": request_timeout_ms,
                "options": {"defaultType": "future"},
            }
        )

    @property
    def client(self) -> Any:
        """Access the underlying ccxt exchange instance."""
        return self._client

    def interval_token(self, timeframe: Timeframe) -> str:
        return INTERVALS[timeframe]

    # ──────────────────────────────────────────────
    # Historical
    # ──────────────────────────────────────────────

    async def fetch_historical_page(self, cell: GridCell, cursor: datetime) -> Page:
        params = {
            "pair": cell.asset.upper(),
            "contractType": "PERPETUAL",
            "interval": self.interval_token(cell.timeframe),
            "startTime": to_epoch_ms(cursor),
            "limit": self._page_limit,
        }
        try:
            rows = await self._client.fapiPublicGetContinuousKlines(params)
        except ccxt_async.NetworkError as e:
            raise ExchangeConnectionError(f"binance klines request failed: {e}") from e

        if not isinstance(rows, list):
            raise MalformedRecord(f"unexpected klines response: {rows!r}")

        candles = [self.normalize_rest_row(row, cell) for row in rows]
        logger.debug(
            "binance_page_fetched",
            rows=len(candles),
            start_time=params["startTime"],
            **cell.log_context(),
        )
        return Page(candles=candles)

    def normalize_rest_row(self, row: Any, cell: GridCell) -> Candle:
        return normalize_kline_row(row, cell)

    def empty_page_advance(self, cursor: datetime, cell: GridCell) -> datetime:
        return cursor + cell.timeframe.duration * self._page_limit

    # ──────────────────────────────────────────────
    # Streaming
    # ──────────────────────────────────────────────

    def stream_url(self, cell: GridCell) -> str:
        interval = self.interval_token(cell.timeframe)
        return f"{STREAM_BASE_URL}/{cell.asset}_perpetual@continuousKline_{interval}"

    def parse_stream_message(self, raw: str | bytes, cell: GridCell) -> Candle | None:
        payload = decode_message(raw)
        if not isinstance(payload, dict):
            raise MalformedRecord(f"unexpected stream payload: {payload!r}")

        kline = payload.get("k")
        if kline is None:
            # Subscription replies carry "result"/"id" and no kline
            return None
        if not isinstance(kline, dict):
            raise MalformedRecord(f"unexpected kline payload: {kline!r}")

        return build_candle(
            Exchange.BINANCE,
            cell.asset,
            cell.timeframe,
            open_time=kline.get("t"),
            close_time=kline.get("T"),
            open=kline.get("o"),
            high=kline.get("h"),
            low=kline.get("l"),
            close=kline.get("c"),
            volume=kline.get("v"),
            quote_asset_volume=kline.get("q"),
            trades=kline.get("n"),
            taker_buy_base_asset_volume=kline.get("V"),
            taker_buy_quote_asset_volume=kline.get("Q"),
        )

    async def close(self) -> None:
        """Clean up ccxt async resources. CRITICAL: must be called to avoid resource leaks."""
        await self._client.close()
        logger.info("binance_adapter_closed")
