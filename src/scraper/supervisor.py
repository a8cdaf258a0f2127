"""Supervisor -- owns every streaming task and the backfill task.

A level-triggered reconciliation loop: every poll_interval it inspects all
tracked tasks and restarts any that are no longer running, whatever the
reason (clean exit, connect failure, exception, cancellation). Failures are
isolated per cell; the process never exits because one cell failed.

The monthly re-sweep is gated by BackfillLatch so it fires at most once on
the trigger day and only re-arms after the day has moved on.
"""

import asyncio
from collections.abc import Callable, Iterable, Mapping
from datetime import date, datetime, timezone

from scraper.backfill.crawler import BackfillCrawler
from scraper.config import StreamSettings, SupervisorSettings
from scraper.data.dead_letter import DeadLetterSink
from scraper.data.store import CandleStore
from scraper.exchange.client import ExchangeAdapter
from scraper.logging import get_logger
from scraper.models import Exchange, GridCell
from scraper.retry import RetryPolicy
from scraper.streaming.ingestor import StreamIngestor

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BackfillLatch:
    """Fires once per visit to the trigger day.

    Armed while the day differs from the trigger day; the first check on
    the trigger day fires and disarms it. Starts disarmed, so a process
    started on the trigger day does not fire until the next month.
    """

    def __init__(self, trigger_day: int = 2) -> None:
        self._trigger_day = trigger_day
        self._armed = False

    @property
    def armed(self) -> bool:
        return self._armed

    @property
    def trigger_day(self) -> int:
        return self._trigger_day

    def should_fire(self, today: date) -> bool:
        if today.day != self._trigger_day:
            self._armed = True
            return False
        if self._armed:
            self._armed = False
            return True
        return False


class Supervisor:
    """Runs and reconciles the streaming grid plus the backfill sweeps.

    Usage:
        supervisor = Supervisor(cells, adapters, crawler, store, ...)
        task = asyncio.create_task(supervisor.run())
        ...
        await supervisor.stop()
    """

    def __init__(
        self,
        cells: Iterable[GridCell],
        stream_adapters: Mapping[Exchange, ExchangeAdapter],
        crawler: BackfillCrawler,
        store: CandleStore,
        stream_settings: StreamSettings,
        settings: SupervisorSettings,
        retry_policy: RetryPolicy,
        dead_letter: DeadLetterSink | None = None,
        ingestor_factory: Callable[[GridCell], StreamIngestor] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._cells = list(cells)
        self._stream_adapters = stream_adapters
        self._crawler = crawler
        self._store = store
        self._stream_settings = stream_settings
        self._settings = settings
        self._retry_policy = retry_policy
        self._dead_letter = dead_letter
        self._ingestor_factory = ingestor_factory or self._build_ingestor
        self._clock = clock

        self._latch = BackfillLatch(settings.backfill_trigger_day)
        self._running = False
        self._stop_event = asyncio.Event()
        self._tasks: dict[GridCell, asyncio.Task] = {}
        self._ingestors: dict[GridCell, StreamIngestor] = {}
        self._restarts: dict[GridCell, int] = {}
        self._backfill_task: asyncio.Task | None = None
        self._sweeps_started = 0
        self._last_sweep_result: dict | None = None

    @property
    def latch(self) -> BackfillLatch:
        return self._latch

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def backfill_running(self) -> bool:
        return self._backfill_task is not None and not self._backfill_task.done()

    @property
    def streaming_cells(self) -> list[GridCell]:
        """Grid cells whose exchange has a stream-capable adapter."""
        return [
            cell
            for cell in self._cells
            if cell.exchange in self._stream_adapters
            and self._stream_adapters[cell.exchange].supports_streaming
        ]

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def run(self) -> None:
        """Start all tasks, then reconcile every poll_interval until stopped."""
        self._running = True
        self._stop_event.clear()
        cells = self.streaming_cells
        logger.info(
            "supervisor_starting",
            stream_cells=len(cells),
            grid_cells=len(self._cells),
            poll_interval=self._settings.poll_interval,
        )

        for cell in cells:
            self._start_stream(cell)
        if self._settings.backfill_on_start:
            self._start_backfill(reason="startup")

        try:
            while self._running:
                self.reconcile()
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(), timeout=self._settings.poll_interval
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await self._shutdown()
            logger.info("supervisor_stopped")

    async def stop(self) -> None:
        """Stop reconciling and cancel every task."""
        logger.info("supervisor_stopping")
        self._running = False
        self._stop_event.set()
        await self._shutdown()

    def reconcile(self) -> None:
        """One reconciliation pass over streams, backfill and the latch."""
        for cell, task in list(self._tasks.items()):
            if not task.done():
                continue
            self._log_stream_exit(cell, task)
            if self._running:
                self._restarts[cell] = self._restarts.get(cell, 0) + 1
                self._start_stream(cell)

        if self._backfill_task is not None and self._backfill_task.done():
            self._log_backfill_exit(self._backfill_task)
            self._backfill_task = None

        if self._latch.should_fire(self._clock().date()):
            if self.backfill_running:
                logger.info("backfill_trigger_skipped_running")
            else:
                self._start_backfill(reason="schedule")

    # ──────────────────────────────────────────────
    # Task management
    # ──────────────────────────────────────────────

    def _build_ingestor(self, cell: GridCell) -> StreamIngestor:
        return StreamIngestor(
            cell,
            self._stream_adapters[cell.exchange],
            self._store,
            self._stream_settings,
            self._retry_policy,
            dead_letter=self._dead_letter,
        )

    def _start_stream(self, cell: GridCell) -> None:
        ingestor = self._ingestor_factory(cell)
        self._ingestors[cell] = ingestor
        self._tasks[cell] = asyncio.create_task(
            ingestor.run(), name=f"stream:{cell}"
        )

    def _start_backfill(self, reason: str) -> None:
        self._sweeps_started += 1
        logger.info("backfill_sweep_triggered", reason=reason, sweep=self._sweeps_started)
        self._backfill_task = asyncio.create_task(
            self._crawler.run_sweep(self._cells), name="backfill"
        )

    def _log_stream_exit(self, cell: GridCell, task: asyncio.Task) -> None:
        context = cell.log_context()
        if task.cancelled():
            logger.warning("stream_task_cancelled", **context)
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "stream_task_failed",
                error=str(error),
                error_type=type(error).__name__,
                **context,
            )
        else:
            logger.info("stream_task_exited", **context)

    def _log_backfill_exit(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("backfill_task_cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "backfill_task_failed", error=str(error), error_type=type(error).__name__
            )
            return
        self._last_sweep_result = task.result()
        logger.info("backfill_task_finished", **(self._last_sweep_result or {}))

    async def _shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for ingestor in self._ingestors.values():
            ingestor.stop()
        if self._backfill_task is not None:
            tasks.append(self._backfill_task)

        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._tasks.clear()
        self._backfill_task = None

    # ──────────────────────────────────────────────
    # Status
    # ──────────────────────────────────────────────

    def status(self) -> dict:
        """Snapshot of every task for the status API."""
        streams = []
        for cell in self.streaming_cells:
            ingestor = self._ingestors.get(cell)
            task = self._tasks.get(cell)
            entry = ingestor.snapshot() if ingestor else {"cell": str(cell)}
            entry["alive"] = task is not None and not task.done()
            entry["restarts"] = self._restarts.get(cell, 0)
            streams.append(entry)

        crawler_cell = self._crawler.current_cell
        crawler_cursor = self._crawler.cursor
        return {
            "running": self._running,
            "streams": streams,
            "backfill": {
                "running": self.backfill_running,
                "state": self._crawler.state.value,
                "current_cell": str(crawler_cell) if crawler_cell else None,
                "cursor": crawler_cursor.isoformat() if crawler_cursor else None,
                "sweeps_started": self._sweeps_started,
                "last_result": self._last_sweep_result,
            },
            "latch": {
                "armed": self._latch.armed,
                "trigger_day": self._latch.trigger_day,
            },
        }
