"""Historical backfill crawler.

Walks every grid cell forward from a fixed start date (or its persisted
cursor) to today, one page at a time. Each page is normalized, run through
the carried derived-metric computation, and upserted through the retry
wrapper before the cursor advances, so at most one page of data is ever
held in memory and a restart redoes at most one page.

CRITICAL implementation notes:
- The last candle's close_time is authoritative for the next cursor; page
  sizes differ between exchanges and may come back short
- Empty pages advance by the adapter's calendar step, never in place
- "today" is re-read from the clock every iteration; a full sweep can run
  across midnight
- Cells are crawled one at a time to stay inside exchange rate limits
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import datetime, time, timezone
from enum import Enum

from scraper.candles import derive_page
from scraper.config import BackfillSettings
from scraper.data.dead_letter import DeadLetterSink
from scraper.data.store import CandleStore
from scraper.exceptions import ExchangeConnectionError
from scraper.exchange.client import ExchangeAdapter
from scraper.logging import get_logger
from scraper.models import CarryState, Exchange, GridCell, Page, Timeframe
from scraper.retry import RetryPolicy, retry_persistence

logger = get_logger(__name__)

_TIMEFRAME_ORDER = {tf: i for i, tf in enumerate(Timeframe)}


class CrawlState(str, Enum):
    POSITIONED = "positioned"
    FETCHING = "fetching"
    PAGE_RECEIVED = "page_received"
    NORMALIZING = "normalizing"
    UPSERTING = "upserting"
    EMPTY = "empty"
    DONE = "done"


def sweep_order(cells: Iterable[GridCell]) -> list[GridCell]:
    """Fixed nested order: exchange, then asset, then timeframe."""
    return sorted(
        cells,
        key=lambda c: (c.exchange.value, c.asset, _TIMEFRAME_ORDER[c.timeframe]),
    )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BackfillCrawler:
    """Pages historical candles for each cell into the store.

    Usage:
        crawler = BackfillCrawler(adapters, store, settings.backfill, policy)
        await crawler.run_sweep(cells)
    """

    def __init__(
        self,
        adapters: Mapping[Exchange, ExchangeAdapter],
        store: CandleStore,
        settings: BackfillSettings,
        retry_policy: RetryPolicy,
        dead_letter: DeadLetterSink | None = None,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._adapters = adapters
        self._store = store
        self._settings = settings
        self._retry_policy = retry_policy
        self._dead_letter = dead_letter
        self._clock = clock
        self._sleep = sleep

        self._state = CrawlState.DONE
        self._current_cell: GridCell | None = None
        self._cursor: datetime | None = None

    @property
    def state(self) -> CrawlState:
        return self._state

    @property
    def current_cell(self) -> GridCell | None:
        return self._current_cell

    @property
    def cursor(self) -> datetime | None:
        return self._cursor

    @property
    def start_cursor(self) -> datetime:
        return datetime.combine(self._settings.start_date, time.min, tzinfo=timezone.utc)

    # ──────────────────────────────────────────────
    # Public methods
    # ──────────────────────────────────────────────

    async def run_sweep(self, cells: Iterable[GridCell]) -> dict[str, int]:
        """Crawl every cell serially. A failing cell is logged and skipped.

        Returns counts of completed and failed cells.
        """
        ordered = sweep_order(cells)
        completed = 0
        failed = 0

        logger.info("backfill_sweep_started", cells=len(ordered))
        for i, cell in enumerate(ordered, 1):
            if cell.exchange not in self._adapters:
                logger.warning("backfill_no_adapter", **cell.log_context())
                failed += 1
                continue
            try:
                written = await self.crawl_cell(cell)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failed += 1
                logger.error(
                    "backfill_cell_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    cursor=self._cursor.isoformat() if self._cursor else None,
                    progress=f"{i}/{len(ordered)}",
                    **cell.log_context(),
                )
                continue
            completed += 1
            logger.info(
                "backfill_cell_complete",
                candles=written,
                progress=f"{i}/{len(ordered)}",
                **cell.log_context(),
            )

        self._current_cell = None
        logger.info("backfill_sweep_finished", completed=completed, failed=failed)
        return {"completed": completed, "failed": failed}

    async def crawl_cell(self, cell: GridCell) -> int:
        """Crawl one cell from its initial cursor to today.

        Returns the number of candles written. MalformedRecord, SchemaError
        and RetryExhausted propagate and abort the cell.
        """
        adapter = self._adapters[cell.exchange]
        context = {**cell.log_context(), "source": adapter.source}

        self._current_cell = cell
        cursor = await self._initial_cursor(cell, adapter)
        carry = (
            await self._store.get_last_carry(cell)
            if self._settings.seed_carry_from_store
            else CarryState.empty()
        )
        written = 0

        self._set_position(cursor)
        logger.info("backfill_cell_started", cursor=cursor.isoformat(), **context)

        while True:
            if cursor.date() >= self._clock().date():
                self._state = CrawlState.DONE
                return written

            self._state = CrawlState.FETCHING
            page = await self._fetch_with_retry(adapter, cell, cursor, context)

            if not page.candles:
                self._state = CrawlState.EMPTY
                next_cursor = adapter.empty_page_advance(cursor, cell)
                logger.debug(
                    "backfill_empty_page",
                    cursor=cursor.isoformat(),
                    next_cursor=next_cursor.isoformat(),
                    **context,
                )
            else:
                self._state = CrawlState.PAGE_RECEIVED
                candles = page.candles

                self._state = CrawlState.NORMALIZING
                metrics, carry = derive_page(candles, carry)

                self._state = CrawlState.UPSERTING
                await self._persist(candles, metrics, context)
                written += len(candles)

                next_cursor = page.last_close_time
                if next_cursor is None or next_cursor <= cursor:
                    next_cursor = adapter.empty_page_advance(cursor, cell)
                    logger.warning(
                        "backfill_page_no_progress",
                        cursor=cursor.isoformat(),
                        next_cursor=next_cursor.isoformat(),
                        **context,
                    )

            cursor = next_cursor
            await self._save_cursor(cell, adapter.source, cursor, context)
            self._set_position(cursor)

            if self._settings.fetch_delay > 0:
                await self._sleep(self._settings.fetch_delay)

    # ──────────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────────

    def _set_position(self, cursor: datetime) -> None:
        self._cursor = cursor
        self._state = CrawlState.POSITIONED

    async def _initial_cursor(self, cell: GridCell, adapter: ExchangeAdapter) -> datetime:
        start = self.start_cursor
        if not self._settings.resume_from_cursor:
            return start
        saved = await self._store.get_backfill_cursor(cell, adapter.source)
        if saved is not None and saved > start:
            logger.info(
                "backfill_resuming",
                cursor=saved.isoformat(),
                source=adapter.source,
                **cell.log_context(),
            )
            return saved
        return start

    async def _persist(self, candles, metrics, context: dict) -> None:
        await retry_persistence(
            lambda: self._store.upsert_candles(candles),
            self._retry_policy,
            context=context,
            dead_letter=self._dead_letter,
            records=candles,
            kind="candles",
        )
        await retry_persistence(
            lambda: self._store.upsert_derived(metrics),
            self._retry_policy,
            context=context,
            dead_letter=self._dead_letter,
            records=metrics,
            kind="derived_metrics",
        )

    async def _save_cursor(
        self, cell: GridCell, source: str, cursor: datetime, context: dict
    ) -> None:
        await retry_persistence(
            lambda: self._store.update_backfill_cursor(cell, source, cursor),
            self._retry_policy,
            context=context,
            kind="backfill_state",
        )

    async def _fetch_with_retry(
        self,
        adapter: ExchangeAdapter,
        cell: GridCell,
        cursor: datetime,
        context: dict,
    ) -> Page:
        """Fetch one page with exponential backoff on transport failures.

        Re-raises on final failure.
        """
        max_retries = self._settings.fetch_max_retries
        base_delay = self._settings.fetch_retry_base_delay

        for attempt in range(max_retries):
            try:
                return await adapter.fetch_historical_page(cell, cursor)
            except ExchangeConnectionError as e:
                if attempt == max_retries - 1:
                    logger.error(
                        "fetch_failed_permanently",
                        error=str(e),
                        attempts=max_retries,
                        **context,
                    )
                    raise

                delay = base_delay * (2**attempt)
                logger.warning(
                    "fetch_retry",
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    delay=delay,
                    error=str(e),
                    **context,
                )
                await self._sleep(delay)

        return Page()  # Unreachable, but satisfies type checker
