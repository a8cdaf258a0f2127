"""Custom exceptions for the candle scraper.

The ingestion paths, the store and the retry wrapper all raise from this
module so callers can tell transient failures from permanent ones without
importing each other.
"""


class ScraperError(Exception):
    """Base exception for all scraper errors."""


class MalformedRecord(ScraperError):
    """Raised when an upstream record is missing a field or cannot be parsed.

    The streaming path logs and skips (or reconnects, depending on policy);
    the backfill path aborts the cell, since a bad historical row means the
    parser and the source format disagree.
    """


class PersistenceError(ScraperError):
    """Transient store failure (locked database, I/O, lost connection). Retried."""


class RetryExhausted(PersistenceError):
    """Raised when the retry wrapper gives up on a persistence operation."""


class SchemaError(ScraperError):
    """Non-transient store failure (constraint or shape mismatch). Never retried."""


class ExchangeConnectionError(ScraperError):
    """Raised when a transport to an exchange cannot be established or is lost."""


class ConfigurationError(ScraperError):
    """Raised for invalid settings at startup. Fatal: the process does not start."""
