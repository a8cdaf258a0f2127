"""Exchange adapter layer -- Binance and Bybit kline sources."""

from scraper.exchange.binance_archive import BinanceArchiveAdapter
from scraper.exchange.binance_client import BinanceAdapter
from scraper.exchange.bybit_client import BybitAdapter
from scraper.exchange.client import ExchangeAdapter

__all__ = [
    "BinanceAdapter",
    "BinanceArchiveAdapter",
    "BybitAdapter",
    "ExchangeAdapter",
]
