"""Live candle ingestion -- one websocket task per grid cell."""

from scraper.streaming.ingestor import StreamIngestor, StreamState

__all__ = ["StreamIngestor", "StreamState"]
