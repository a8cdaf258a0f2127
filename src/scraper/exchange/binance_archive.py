"""Binance monthly kline archives (data.binance.vision) as a backfill source.

One page is one month of spot klines, downloaded as a zipped CSV. Months
that were never published (before listing, or the current month) return
404 and are treated as empty pages so the crawler steps to the next month.

CRITICAL: archive files from 2025 onwards use microsecond timestamps;
parse_epoch_ms() scales them back to milliseconds.
"""

import csv
import io
import zipfile
from datetime import datetime, timedelta, timezone
from typing import Any

import aiohttp

from scraper.exceptions import ExchangeConnectionError, MalformedRecord
from scraper.exchange.binance_client import INTERVALS, normalize_kline_row
from scraper.exchange.client import ExchangeAdapter
from scraper.logging import get_logger
from scraper.models import Candle, Exchange, GridCell, Page, Timeframe

logger = get_logger(__name__)

ARCHIVE_BASE_URL = "https://data.binance.vision/data/spot/monthly/klines"

_ONE_MS = timedelta(milliseconds=1)


def month_start(moment: datetime) -> datetime:
    return datetime(moment.year, moment.month, 1, tzinfo=timezone.utc)


def next_month(moment: datetime) -> datetime:
    if moment.month == 12:
        return datetime(moment.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(moment.year, moment.month + 1, 1, tzinfo=timezone.utc)


class BinanceArchiveAdapter(ExchangeAdapter):
    """Backfill-only source reading Binance monthly kline archives.

    The month fetched is the one containing cursor + 1 ms, i.e. the first
    instant not yet covered by a stored candle.

    Usage:
        adapter = BinanceArchiveAdapter(request_timeout_ms=15000)
        page = await adapter.fetch_historical_page(cell, cursor)
        await adapter.close()
    """

    exchange = Exchange.BINANCE
    source = "archive"
    supports_streaming = False

    def __init__(
        self,
        request_timeout_ms: int = 15_000,
        session: aiohttp.ClientSession | None = None,
        base_url: str = ARCHIVE_BASE_URL,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_ms / 1000)
        self._session = session
        self._owns_session = session is None
        self._base_url = base_url.rstrip("/")

    def interval_token(self, timeframe: Timeframe) -> str:
        return INTERVALS[timeframe]

    def archive_url(self, cell: GridCell, month: datetime) -> str:
        symbol = cell.asset.upper()
        interval = self.interval_token(cell.timeframe)
        return (
            f"{self._base_url}/{symbol}/{interval}/"
            f"{symbol}-{interval}-{month.year:04d}-{month.month:02d}.zip"
        )

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def fetch_historical_page(self, cell: GridCell, cursor: datetime) -> Page:
        month = month_start(cursor + _ONE_MS)
        url = self.archive_url(cell, month)

        try:
            async with self._get_session().get(url) as response:
                if response.status == 404:
                    logger.debug("archive_month_missing", url=url, **cell.log_context())
                    return Page()
                if response.status != 200:
                    raise ExchangeConnectionError(
                        f"archive download returned HTTP {response.status}: {url}"
                    )
                body = await response.read()
        except aiohttp.ClientError as e:
            raise ExchangeConnectionError(f"archive download failed: {e}") from e
        except TimeoutError as e:
            raise ExchangeConnectionError(f"archive download timed out: {url}") from e

        candles = [
            candle
            for candle in self.parse_archive(body, cell)
            if candle.close_time > cursor
        ]
        logger.debug(
            "archive_month_fetched",
            month=month.strftime("%Y-%m"),
            rows=len(candles),
            **cell.log_context(),
        )
        return Page(candles=candles)

    def parse_archive(self, body: bytes, cell: GridCell) -> list[Candle]:
        """Read every CSV member of a zip archive into chronological candles."""
        try:
            archive = zipfile.ZipFile(io.BytesIO(body))
        except zipfile.BadZipFile as e:
            raise MalformedRecord(f"archive is not a valid zip file: {e}") from e

        candles: list[Candle] = []
        with archive:
            for name in archive.namelist():
                if not name.endswith(".csv"):
                    continue
                with archive.open(name) as member:
                    reader = csv.reader(io.TextIOWrapper(member, encoding="utf-8"))
                    for row in reader:
                        candle = self.normalize_csv_row(row, cell)
                        if candle is not None:
                            candles.append(candle)

        candles.sort(key=lambda c: c.open_time)
        return candles

    def normalize_csv_row(self, row: list[str], cell: GridCell) -> Candle | None:
        """Normalize one CSV row. Header and blank rows return None."""
        if not row or not row[0].strip():
            return None
        if row[0].strip() == "open_time":
            # Newer files start with an "open_time,open,..." header
            return None
        return normalize_kline_row(row, cell)

    def empty_page_advance(self, cursor: datetime, cell: GridCell) -> datetime:
        return next_month(cursor + _ONE_MS)

    # ──────────────────────────────────────────────
    # Streaming (not provided by archives)
    # ──────────────────────────────────────────────

    def stream_url(self, cell: GridCell) -> str:
        raise NotImplementedError("monthly archives have no live stream")

    def parse_stream_message(self, raw: Any, cell: GridCell) -> Candle | None:
        raise NotImplementedError("monthly archives have no live stream")

    async def close(self) -> None:
        """Close the HTTP session if this adapter created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
        logger.info("binance_archive_adapter_closed")
