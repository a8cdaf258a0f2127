"""structlog configuration for the scraper.

Every component logs through get_logger(__name__) with snake_case event
names and key/value context; cell-scoped events carry exchange, asset and
timeframe. LOG_FORMAT=json switches the console to machine-readable output.
"""

import logging
import os
from logging.handlers import TimedRotatingFileHandler

import structlog

# Third-party loggers that flood DEBUG output
_QUIET_LOGGERS = ("websockets", "ccxt", "aiosqlite", "asyncio")


def _formatter(renderer: structlog.types.Processor) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def _file_handler(log_path: str) -> logging.Handler:
    """JSON lines to log_path, rolled over at UTC midnight."""
    log_dir = os.path.dirname(log_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    handler = TimedRotatingFileHandler(log_path, when="midnight", utc=True, encoding="utf-8")
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
    return handler


def setup_logging(log_level: str = "INFO", log_path: str | None = None) -> None:
    """Route structlog through stdlib logging.

    Context is merged from structlog.contextvars so values bound inside one
    asyncio task never leak into another.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if os.environ.get("LOG_FORMAT", "console").lower() == "json":
        console_renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        console_renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler()
    console.setFormatter(_formatter(console_renderer))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    if log_path:
        root.addHandler(_file_handler(log_path))
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a bound structlog logger with the given name."""
    return structlog.get_logger(name)
