"""Configuration system using pydantic-settings with environment variable loading."""

from datetime import date
from typing import Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from scraper.exceptions import ConfigurationError
from scraper.models import Exchange, Timeframe


class DatabaseSettings(BaseSettings):
    """SQLite store location."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    db_path: str = "data/candles.db"

    @field_validator("db_path")
    @classmethod
    def _non_empty_path(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("db_path must not be empty")
        return value


class GridSettings(BaseSettings):
    """The (exchange, asset, timeframe) grid tracked by this process.

    Lists are read from the environment as JSON, e.g.
    GRID_ASSETS='["btcusdt", "solusdt"]'.
    """

    model_config = SettingsConfigDict(env_prefix="GRID_")

    exchanges: list[Exchange] = [Exchange.BINANCE, Exchange.BYBIT]
    assets: list[str] = ["btcusdt", "ethusdt"]
    timeframes: list[Timeframe] = [
        Timeframe.M5,
        Timeframe.M15,
        Timeframe.H1,
        Timeframe.H4,
        Timeframe.D1,
    ]

    @field_validator("assets")
    @classmethod
    def _normalize_assets(cls, value: list[str]) -> list[str]:
        assets = [a.strip().lower() for a in value if a.strip()]
        if not assets:
            raise ValueError("at least one asset is required")
        return assets

    @field_validator("exchanges", "timeframes")
    @classmethod
    def _non_empty(cls, value: list) -> list:
        if not value:
            raise ValueError("grid dimension must not be empty")
        return value


class BackfillSettings(BaseSettings):
    """Historical backfill crawler configuration."""

    model_config = SettingsConfigDict(env_prefix="BACKFILL_")

    start_date: date = date(2017, 1, 1)  # earliest data on both exchanges
    page_limit: int = 1000
    fetch_delay: float = 0.2  # seconds between pages
    resume_from_cursor: bool = True
    seed_carry_from_store: bool = False
    use_archive: bool = False  # crawl Binance monthly archives instead of REST
    request_timeout_ms: int = 15_000
    fetch_max_retries: int = 5
    fetch_retry_base_delay: float = 1.0  # seconds, doubled per attempt

    @field_validator("page_limit")
    @classmethod
    def _positive_limit(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("page_limit must be positive")
        return value

    @field_validator("fetch_max_retries")
    @classmethod
    def _at_least_one_attempt(cls, value: int) -> int:
        if value < 1:
            raise ValueError("fetch_max_retries must be >= 1")
        return value


class StreamSettings(BaseSettings):
    """Streaming ingestor configuration."""

    model_config = SettingsConfigDict(env_prefix="STREAM_")

    reconnect_delay: float = 1.0
    open_timeout: float = 10.0
    read_timeout: float = 120.0
    heartbeat_interval: float = 20.0
    malformed_message_policy: Literal["disconnect", "skip"] = "disconnect"


class RetrySettings(BaseSettings):
    """Retry wrapper around store upserts. max_attempts=0 retries forever."""

    model_config = SettingsConfigDict(env_prefix="RETRY_")

    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    max_attempts: int = 10
    dead_letter_path: str | None = "data/dead_letter.jsonl"

    @field_validator("max_attempts")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_attempts must be >= 0")
        return value


class SupervisorSettings(BaseSettings):
    """Supervisor reconciliation loop and backfill schedule."""

    model_config = SettingsConfigDict(env_prefix="SUPERVISOR_")

    poll_interval: float = 0.5
    backfill_trigger_day: int = 2  # day of month for the full re-sweep
    backfill_on_start: bool = True

    @field_validator("backfill_trigger_day")
    @classmethod
    def _valid_day(cls, value: int) -> int:
        if not 1 <= value <= 28:
            raise ValueError("backfill_trigger_day must be between 1 and 28")
        return value


class StatusSettings(BaseSettings):
    """Read-only status API served next to the supervisor."""

    model_config = SettingsConfigDict(env_prefix="STATUS_")

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_path: str | None = None
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    grid: GridSettings = Field(default_factory=GridSettings)
    backfill: BackfillSettings = Field(default_factory=BackfillSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    supervisor: SupervisorSettings = Field(default_factory=SupervisorSettings)
    status: StatusSettings = Field(default_factory=StatusSettings)


def load_settings(**overrides) -> AppSettings:
    """Load AppSettings from the environment, turning validation failures
    into ConfigurationError so the entry point can refuse to start."""
    try:
        return AppSettings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"invalid configuration: {e}") from e
