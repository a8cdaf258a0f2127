"""Abstract exchange adapter interface.

Defines the contract every market-data source implements. The backfill
crawler and the streaming ingestor depend only on this interface, keeping
exchange-specific wire formats and pagination isolated in the concrete
implementations.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from scraper.exceptions import MalformedRecord
from scraper.models import Candle, Exchange, GridCell, Page, Timeframe


def decode_message(raw: str | bytes) -> Any:
    """Decode one websocket frame as JSON, raising MalformedRecord on failure."""
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedRecord(f"message is not valid JSON: {e}") from e


class ExchangeAdapter(ABC):
    """Abstract base class for exchange market-data adapters."""

    exchange: Exchange
    source: str = "rest"
    supports_streaming: bool = True

    @abstractmethod
    def interval_token(self, timeframe: Timeframe) -> str:
        """Exchange-native interval string for a normalized timeframe."""
        ...

    @abstractmethod
    async def fetch_historical_page(self, cell: GridCell, cursor: datetime) -> Page:
        """Fetch one page of candles beginning at cursor, in chronological order.

        Returns an empty Page when the source has no data for the window.
        Raises ExchangeConnectionError on transport failures and
        MalformedRecord when a row cannot be normalized.
        """
        ...

    @abstractmethod
    def empty_page_advance(self, cursor: datetime, cell: GridCell) -> datetime:
        """Where to move the cursor when a page comes back empty.

        Must be strictly after cursor so the crawler always makes progress.
        """
        ...

    @abstractmethod
    def stream_url(self, cell: GridCell) -> str:
        """Websocket URL serving live candles for a cell."""
        ...

    def subscribe_message(self, cell: GridCell) -> str | None:
        """Frame sent right after connecting, if the source needs one."""
        return None

    def heartbeat_message(self) -> str | None:
        """Application-level keepalive frame, if the source needs one."""
        return None

    @abstractmethod
    def parse_stream_message(self, raw: str | bytes, cell: GridCell) -> Candle | None:
        """Normalize one stream frame.

        Returns None for control frames (subscription acks, pongs).
        Raises MalformedRecord when a data frame cannot be parsed.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release transport resources (CRITICAL for ccxt async and aiohttp)."""
        ...
