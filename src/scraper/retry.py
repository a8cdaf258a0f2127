"""Retry wrapper for store operations.

Only PersistenceError is retried. SchemaError and anything else propagate on
the first occurrence, since repeating a rejected write cannot succeed. The
calling task blocks for the whole retry duration.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from scraper.config import RetrySettings
from scraper.data.dead_letter import DeadLetterSink
from scraper.exceptions import PersistenceError, RetryExhausted
from scraper.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff schedule. max_attempts=0 retries forever."""

    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    max_attempts: int = 10

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        return cls(
            base_delay=settings.base_delay,
            multiplier=settings.multiplier,
            max_delay=settings.max_delay,
            max_attempts=settings.max_attempts,
        )

    @property
    def unbounded(self) -> bool:
        return self.max_attempts == 0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 1-based failed attempt, never above max_delay.

        Long unbounded outages push the float power past its range; from
        there on the delay simply stays at max_delay.
        """
        if self.base_delay <= 0:
            return 0.0
        try:
            delay = self.base_delay * self.multiplier ** (attempt - 1)
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)


async def retry_persistence(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    context: dict[str, Any] | None = None,
    dead_letter: DeadLetterSink | None = None,
    records: list[Any] | None = None,
    kind: str = "records",
) -> T:
    """Run operation until it succeeds or the policy is exhausted.

    On exhaustion the records (if any) go to the dead-letter sink and
    RetryExhausted is raised with the last failure chained.
    """
    context = context or {}
    attempt = 0

    while True:
        attempt += 1
        try:
            return await operation()
        except RetryExhausted:
            raise
        except PersistenceError as e:
            if not policy.unbounded and attempt >= policy.max_attempts:
                logger.critical(
                    "persistence_retry_exhausted",
                    kind=kind,
                    attempts=attempt,
                    error=str(e),
                    **context,
                )
                if dead_letter is not None and records:
                    dead_letter.write(kind, records, error=str(e), context=context)
                raise RetryExhausted(
                    f"{kind} write failed after {attempt} attempts: {e}"
                ) from e

            delay = policy.delay_for(attempt)
            logger.warning(
                "persistence_retry",
                kind=kind,
                attempt=attempt,
                max_attempts=policy.max_attempts or None,
                delay=delay,
                error=str(e),
                **context,
            )
            await asyncio.sleep(delay)
