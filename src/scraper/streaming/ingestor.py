"""Live candle ingestion for one grid cell over a websocket.

Each StreamIngestor owns exactly one connection, one subscription and one
CarryState. Messages are normalized by the exchange adapter and upserted
one row at a time through the retry wrapper.

CRITICAL implementation notes:
- A failed connect returns immediately; the supervisor restarts the task
- A closed or silent connection reconnects inside the task after
  reconnect_delay, with a fresh carry (the first derived metric after a
  reconnect is None)
- Still-open candles are re-sent many times; the natural-key upsert
  overwrites them in place
- SchemaError and RetryExhausted end the task
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from scraper.candles import compute_derived
from scraper.config import StreamSettings
from scraper.data.dead_letter import DeadLetterSink
from scraper.data.store import CandleStore
from scraper.exceptions import ExchangeConnectionError, MalformedRecord
from scraper.exchange.client import ExchangeAdapter
from scraper.logging import get_logger
from scraper.models import Candle, CarryState, GridCell
from scraper.retry import RetryPolicy, retry_persistence

logger = get_logger(__name__)


class StreamState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    MESSAGE_RECEIVED = "message_received"
    NORMALIZING = "normalizing"
    UPSERTING = "upserting"


class StreamIngestor:
    """Streams one (exchange, asset, timeframe) channel into the store.

    Usage:
        ingestor = StreamIngestor(cell, adapter, store, settings.stream, policy)
        task = asyncio.create_task(ingestor.run())
        ...
        ingestor.stop()
        task.cancel()
    """

    def __init__(
        self,
        cell: GridCell,
        adapter: ExchangeAdapter,
        store: CandleStore,
        settings: StreamSettings,
        retry_policy: RetryPolicy,
        dead_letter: DeadLetterSink | None = None,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._cell = cell
        self._adapter = adapter
        self._store = store
        self._settings = settings
        self._retry_policy = retry_policy
        self._dead_letter = dead_letter
        self._connect = connect

        self._context = cell.log_context()
        self._stop_event = asyncio.Event()
        self._state = StreamState.DISCONNECTED
        self._messages_processed = 0
        self._malformed_messages = 0
        self._reconnects = 0
        self._last_message_at: datetime | None = None
        self._last_error: str | None = None

    # ──────────────────────────────────────────────
    # Status
    # ──────────────────────────────────────────────

    @property
    def cell(self) -> GridCell:
        return self._cell

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def messages_processed(self) -> int:
        return self._messages_processed

    @property
    def malformed_messages(self) -> int:
        return self._malformed_messages

    @property
    def reconnects(self) -> int:
        return self._reconnects

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def snapshot(self) -> dict:
        return {
            "cell": str(self._cell),
            "state": self._state.value,
            "messages_processed": self._messages_processed,
            "malformed_messages": self._malformed_messages,
            "reconnects": self._reconnects,
            "last_message_at": (
                self._last_message_at.isoformat() if self._last_message_at else None
            ),
            "last_error": self._last_error,
        }

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    def stop(self) -> None:
        """Ask the ingestor to finish after the current message."""
        self._stop_event.set()

    async def run(self) -> None:
        """Connect, consume and reconnect until stopped or a connect fails."""
        url = self._adapter.stream_url(self._cell)

        while not self._stop_event.is_set():
            self._state = StreamState.CONNECTING
            logger.info("stream_connecting", url=url, **self._context)
            try:
                ws = await self._connect(
                    url,
                    open_timeout=self._settings.open_timeout,
                    ping_interval=self._settings.heartbeat_interval,
                    ping_timeout=self._settings.heartbeat_interval,
                )
            except (OSError, TimeoutError, WebSocketException) as e:
                self._state = StreamState.DISCONNECTED
                error = ExchangeConnectionError(f"connect to {url} failed: {e}")
                self._last_error = str(error)
                logger.error("stream_connect_failed", error=str(e), **self._context)
                return

            try:
                await self._consume(ws)
            finally:
                self._state = StreamState.DISCONNECTED
                await self._close_quietly(ws)

            if self._stop_event.is_set():
                break

            self._reconnects += 1
            logger.info(
                "stream_reconnect_scheduled",
                delay=self._settings.reconnect_delay,
                reconnects=self._reconnects,
                **self._context,
            )
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._settings.reconnect_delay
                )
            except asyncio.TimeoutError:
                pass

        logger.info("stream_stopped", **self._context)

    # ──────────────────────────────────────────────
    # Connection handling
    # ──────────────────────────────────────────────

    async def _consume(self, ws: Any) -> None:
        """Read messages until the connection closes, stalls or misbehaves."""
        carry = CarryState.empty()

        subscribe = self._adapter.subscribe_message(self._cell)
        if subscribe is not None:
            try:
                await ws.send(subscribe)
            except ConnectionClosed as e:
                self._last_error = f"connection closed: {e}"
                logger.warning(
                    "stream_subscribe_failed", reason=str(e), **self._context
                )
                return
        self._state = StreamState.SUBSCRIBED
        logger.info("stream_subscribed", **self._context)

        heartbeat_task: asyncio.Task | None = None
        if self._adapter.heartbeat_message() is not None:
            heartbeat_task = asyncio.create_task(self._heartbeat(ws))

        try:
            while not self._stop_event.is_set():
                try:
                    raw = await asyncio.wait_for(
                        ws.recv(), timeout=self._settings.read_timeout
                    )
                except asyncio.TimeoutError:
                    self._last_error = "read timeout"
                    logger.warning(
                        "stream_read_timeout",
                        timeout=self._settings.read_timeout,
                        **self._context,
                    )
                    return
                except ConnectionClosed as e:
                    self._last_error = f"connection closed: {e}"
                    logger.warning(
                        "stream_connection_closed", reason=str(e), **self._context
                    )
                    return

                self._state = StreamState.MESSAGE_RECEIVED
                self._last_message_at = datetime.now(timezone.utc)

                self._state = StreamState.NORMALIZING
                try:
                    candle = self._adapter.parse_stream_message(raw, self._cell)
                except MalformedRecord as e:
                    self._malformed_messages += 1
                    self._last_error = str(e)
                    if self._settings.malformed_message_policy == "skip":
                        logger.warning(
                            "stream_message_skipped", error=str(e), **self._context
                        )
                        self._state = StreamState.SUBSCRIBED
                        continue
                    logger.error(
                        "stream_malformed_message", error=str(e), **self._context
                    )
                    return

                if candle is not None:
                    carry = await self._ingest(candle, carry)
                self._state = StreamState.SUBSCRIBED
        finally:
            if heartbeat_task is not None:
                heartbeat_task.cancel()
                try:
                    await heartbeat_task
                except asyncio.CancelledError:
                    pass

    async def _ingest(self, candle: Candle, carry: CarryState) -> CarryState:
        metric, carry = compute_derived(candle, carry)

        self._state = StreamState.UPSERTING
        await retry_persistence(
            lambda: self._store.upsert_candles([candle]),
            self._retry_policy,
            context=self._context,
            dead_letter=self._dead_letter,
            records=[candle],
            kind="candles",
        )
        await retry_persistence(
            lambda: self._store.upsert_derived([metric]),
            self._retry_policy,
            context=self._context,
            dead_letter=self._dead_letter,
            records=[metric],
            kind="derived_metrics",
        )
        self._messages_processed += 1
        return carry

    async def _heartbeat(self, ws: Any) -> None:
        """Send the adapter's keepalive frame every heartbeat_interval."""
        message = self._adapter.heartbeat_message()
        try:
            while True:
                await asyncio.sleep(self._settings.heartbeat_interval)
                await ws.send(message)
        except ConnectionClosed:
            logger.debug("stream_heartbeat_stopped", **self._context)

    async def _close_quietly(self, ws: Any) -> None:
        try:
            await ws.close()
        except (OSError, WebSocketException) as e:
            logger.debug("stream_close_failed", error=str(e), **self._context)
