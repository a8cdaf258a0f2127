"""Bybit linear perpetual adapter via ccxt async and the v5 public stream.

CRITICAL implementation notes:
- Bybit v5 kline response is REVERSE-SORTED: newest first
- REST rows carry only the start time; close time is start + interval - 1 ms,
  which is exactly the "end" field of the stream, so keys coincide
- Trade count and taker volumes are not published (stored as NULL)
- The stream drops idle connections; send {"op": "ping"} periodically
"""

import json
from datetime import datetime, timedelta
from typing import Any

import ccxt.async_support as ccxt_async

from scraper.candles import build_candle, parse_epoch_ms, to_epoch_ms
from scraper.exceptions import ExchangeConnectionError, MalformedRecord
from scraper.exchange.client import ExchangeAdapter, decode_message
from scraper.logging import get_logger
from scraper.models import Candle, Exchange, GridCell, Page, Timeframe

logger = get_logger(__name__)

STREAM_URL = "wss://stream.bybit.com/v5/public/linear"

INTERVALS = {
    Timeframe.M5: "5",
    Timeframe.M15: "15",
    Timeframe.H1: "60",
    Timeframe.H4: "240",
    Timeframe.D1: "D",
}

_ONE_MS = timedelta(milliseconds=1)


class BybitAdapter(ExchangeAdapter):
    """Bybit linear perpetual klines over REST (ccxt) and websocket.

    Usage:
        adapter = BybitAdapter(page_limit=1000)
        page = await adapter.fetch_historical_page(cell, cursor)
        await adapter.close()
    """

    exchange = Exchange.BYBIT
    source = "rest"

    def __init__(
        self,
        page_limit: int = 1000,
        request_timeout_ms: int = 15_000,
        client: Any = None,
    ) -> None:
        self._page_limit = page_limit
        self._client = client or ccxt_async.bybit(
            {
                "enableRateLimit": True,
                "timeout": request_timeout_ms,
                "options": {"defaultType": "swap"},
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
        start_ms = to_epoch_ms(cursor)
        params = {
            "category": "linear",
            "symbol": cell.asset.upper(),
            "interval": self.interval_token(cell.timeframe),
            "start": start_ms,
            "end": to_epoch_ms(self.empty_page_advance(cursor, cell)),
            "limit": self._page_limit,
        }
        try:
            response = await self._client.publicGetV5MarketKline(params)
        except ccxt_async.NetworkError as e:
            raise ExchangeConnectionError(f"bybit kline request failed: {e}") from e

        result = response.get("result") if isinstance(response, dict) else None
        rows = result.get("list") if isinstance(result, dict) else None
        if not isinstance(rows, list):
            raise MalformedRecord(f"unexpected kline response: {response!r}")

        # Newest first on the wire
        candles = [self.normalize_rest_row(row, cell) for row in reversed(rows)]
        logger.debug(
            "bybit_page_fetched",
            rows=len(candles),
            start_time=start_ms,
            **cell.log_context(),
        )
        return Page(candles=candles)

    def normalize_rest_row(self, row: Any, cell: GridCell) -> Candle:
        """Normalize one [start, open, high, low, close, volume, turnover] row."""
        if not isinstance(row, (list, tuple)) or len(row) < 7:
            raise MalformedRecord(f"unexpected kline row shape: {row!r}")
        open_time = parse_epoch_ms(row[0], "start")
        return build_candle(
            Exchange.BYBIT,
            cell.asset,
            cell.timeframe,
            open_time=open_time,
            close_time=open_time + cell.timeframe.duration - _ONE_MS,
            open=row[1],
            high=row[2],
            low=row[3],
            close=row[4],
            volume=row[5],
            quote_asset_volume=row[6],
        )

    def empty_page_advance(self, cursor: datetime, cell: GridCell) -> datetime:
        return cursor + cell.timeframe.duration * self._page_limit

    # ──────────────────────────────────────────────
    # Streaming
    # ──────────────────────────────────────────────

    def stream_url(self, cell: GridCell) -> str:
        return STREAM_URL

    def topic(self, cell: GridCell) -> str:
        return f"kline.{self.interval_token(cell.timeframe)}.{cell.asset.upper()}"

    def subscribe_message(self, cell: GridCell) -> str | None:
        return json.dumps({"op": "subscribe", "args": [self.topic(cell)]})

    def heartbeat_message(self) -> str | None:
        return json.dumps({"op": "ping"})

    def parse_stream_message(self, raw: str | bytes, cell: GridCell) -> Candle | None:
        payload = decode_message(raw)
        if not isinstance(payload, dict):
            raise MalformedRecord(f"unexpected stream payload: {payload!r}")

        if "topic" not in payload:
            # Subscribe acks and pongs: {"success": true, "op": ...}
            if payload.get("success") is False:
                logger.warning(
                    "bybit_stream_op_rejected",
                    op=payload.get("op"),
                    ret_msg=payload.get("ret_msg"),
                    **cell.log_context(),
                )
            return None

        data = payload.get("data")
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            raise MalformedRecord(f"unexpected kline data: {data!r}")

        kline = data[0]
        return build_candle(
            Exchange.BYBIT,
            cell.asset,
            cell.timeframe,
            open_time=kline.get("start"),
            close_time=kline.get("end"),
            open=kline.get("open"),
            high=kline.get("high"),
            low=kline.get("low"),
            close=kline.get("close"),
            volume=kline.get("volume"),
            quote_asset_volume=kline.get("turnover"),
        )

    async def close(self) -> None:
        """Clean up ccxt async resources. CRITICAL: must be called to avoid resource leaks."""
        await self._client.close()
        logger.info("bybit_adapter_closed")
