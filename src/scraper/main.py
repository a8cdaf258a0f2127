"""Entry point for the candle scraper.

Wires all components together, optionally embeds the FastAPI status API,
and starts the supervisor. When the status API is enabled, the supervisor
and the API share a single asyncio event loop via uvicorn's programmatic
API and FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown.

Component wiring order (in _build_components):
1. AppSettings (configuration)
2. Logging setup
3. CandleDatabase + CandleStore (fatal on an unusable path)
4. DeadLetterSink and RetryPolicy
5. Exchange adapters (stream and backfill; archive replaces Binance REST
   for backfill when enabled)
6. BackfillCrawler
7. Supervisor
"""

import asyncio
import signal
import sys
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from scraper.backfill.crawler import BackfillCrawler
from scraper.config import AppSettings, load_settings
from scraper.data.database import CandleDatabase
from scraper.data.dead_letter import DeadLetterSink
from scraper.data.store import CandleStore
from scraper.exceptions import ConfigurationError
from scraper.exchange.binance_archive import BinanceArchiveAdapter
from scraper.exchange.binance_client import BinanceAdapter
from scraper.exchange.bybit_client import BybitAdapter
from scraper.exchange.client import ExchangeAdapter
from scraper.logging import get_logger, setup_logging
from scraper.models import Exchange, GridCell
from scraper.retry import RetryPolicy
from scraper.supervisor import Supervisor


def build_grid(settings: AppSettings) -> list[GridCell]:
    """Every configured (exchange, asset, timeframe) combination."""
    return [
        GridCell(exchange, asset, timeframe)
        for exchange in settings.grid.exchanges
        for asset in settings.grid.assets
        for timeframe in settings.grid.timeframes
    ]


def build_adapters(
    settings: AppSettings,
) -> tuple[dict[Exchange, ExchangeAdapter], dict[Exchange, ExchangeAdapter]]:
    """Create stream adapters and backfill adapters for configured exchanges.

    Returns:
        (stream_adapters, backfill_adapters). They share instances except
        when the Binance archive source replaces Binance REST for backfill.
    """
    backfill = settings.backfill
    stream_adapters: dict[Exchange, ExchangeAdapter] = {}
    for exchange in settings.grid.exchanges:
        if exchange == Exchange.BINANCE:
            stream_adapters[exchange] = BinanceAdapter(
                page_limit=backfill.page_limit,
                request_timeout_ms=backfill.request_timeout_ms,
            )
        elif exchange == Exchange.BYBIT:
            stream_adapters[exchange] = BybitAdapter(
                page_limit=backfill.page_limit,
                request_timeout_ms=backfill.request_timeout_ms,
            )

    backfill_adapters = dict(stream_adapters)
    if backfill.use_archive and Exchange.BINANCE in backfill_adapters:
        backfill_adapters[Exchange.BINANCE] = BinanceArchiveAdapter(
            request_timeout_ms=backfill.request_timeout_ms
        )

    return stream_adapters, backfill_adapters


async def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all scraper components from settings.

    Opens the database, so a bad DATABASE_DB_PATH fails here with
    ConfigurationError before any network activity.

    Args:
        settings: Application-wide settings.

    Returns:
        Dict mapping component names to instances.
    """
    # 3. Database and store
    database = CandleDatabase(settings.database.db_path)
    await database.connect()
    store = CandleStore(database)

    # 4. Retry policy and dead-letter sink
    dead_letter = (
        DeadLetterSink(settings.retry.dead_letter_path)
        if settings.retry.dead_letter_path
        else None
    )
    retry_policy = RetryPolicy.from_settings(settings.retry)

    # 5. Exchange adapters
    stream_adapters, backfill_adapters = build_adapters(settings)

    # 6. Backfill crawler
    crawler = BackfillCrawler(
        backfill_adapters,
        store,
        settings.backfill,
        retry_policy,
        dead_letter=dead_letter,
    )

    # 7. Supervisor
    supervisor = Supervisor(
        build_grid(settings),
        stream_adapters,
        crawler,
        store,
        settings.stream,
        settings.supervisor,
        retry_policy,
        dead_letter=dead_letter,
    )

    adapters = {id(a): a for a in [*stream_adapters.values(), *backfill_adapters.values()]}
    return {
        "database": database,
        "store": store,
        "dead_letter": dead_letter,
        "adapters": list(adapters.values()),
        "crawler": crawler,
        "supervisor": supervisor,
    }


async def _close_components(components: dict[str, Any]) -> None:
    """Close every adapter and the database."""
    logger = get_logger("scraper.main")
    for adapter in components["adapters"]:
        try:
            await adapter.close()
        except Exception as e:
            logger.error(
                "adapter_close_failed",
                exchange=adapter.exchange.value,
                source=adapter.source,
                error=str(e),
            )
    await components["database"].close()


# Strong references to fire-and-forget tasks until they finish
_background_tasks: set[asyncio.Task] = set()


def _request_shutdown(supervisor: Supervisor) -> asyncio.Task:
    """Schedule supervisor.stop() from a synchronous signal callback."""
    task = asyncio.create_task(supervisor.stop(), name="graceful_shutdown")
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def _setup_signal_handlers(supervisor: Supervisor) -> None:
    """Register SIGINT/SIGTERM to stop the supervisor gracefully.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("scraper.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        _request_shutdown(supervisor)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the supervisor for the lifetime of the status application.

    On startup: starts the supervisor as a background task.
    On shutdown: stops the supervisor, then closes adapters and database.
    """
    logger = get_logger("scraper.main")
    components = app.state.components
    supervisor = components["supervisor"]

    _setup_signal_handlers(supervisor)

    supervisor_task = asyncio.create_task(supervisor.run())
    logger.info("lifespan_started")

    yield

    await supervisor.stop()
    supervisor_task.cancel()
    try:
        await supervisor_task
    except asyncio.CancelledError:
        pass

    await _close_components(components)
    logger.info("candle_scraper_stopped")


async def run() -> None:
    """Run the candle scraper.

    When the status API is enabled (STATUS_ENABLED=true):
    - Creates the FastAPI status app with lifespan
    - Runs supervisor and API in a single asyncio event loop via uvicorn

    When disabled (the default):
    - Runs the supervisor directly without a web server
    """
    # 1. Load settings
    settings = load_settings()

    # 2. Setup logging
    setup_logging(settings.log_level, settings.log_path)
    logger = get_logger("scraper.main")

    # 3-7. Build all components
    components = await _build_components(settings)
    cells = build_grid(settings)

    if settings.status.enabled:
        from scraper.status.app import create_status_app

        app = create_status_app(
            components["supervisor"], store=components["store"], lifespan=lifespan
        )
        app.state.components = components

        logger.info(
            "starting_with_status_api",
            host=settings.status.host,
            port=settings.status.port,
            cells=len(cells),
        )

        config = uvicorn.Config(
            app,
            host=settings.status.host,
            port=settings.status.port,
            log_level="warning",  # Suppress uvicorn access logs
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        _setup_signal_handlers(components["supervisor"])

        logger.info(
            "starting_without_status_api",
            cells=len(cells),
            exchanges=[e.value for e in settings.grid.exchanges],
            assets=settings.grid.assets,
            timeframes=[t.value for t in settings.grid.timeframes],
        )

        try:
            await components["supervisor"].run()
        finally:
            await _close_components(components)
            logger.info("candle_scraper_stopped")


def main() -> None:
    """Synchronous entry point. Exits with status 2 on invalid configuration."""
    try:
        asyncio.run(run())
    except ConfigurationError as e:
        print(f"candle-scraper: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
