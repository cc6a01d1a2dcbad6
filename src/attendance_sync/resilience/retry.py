"""
Retry executor with exponential backoff.

Backoff is deterministic (no jitter) and is stretched by the number of errors
already accumulated in the surrounding batch, so a struggling upstream is
called less aggressively.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from ..config import RetrySettings
from ..errors import ErrorCategory, RetryExhaustedError, classify_error

T = TypeVar("T")
logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class RetryOutcome(Generic[T]):
    """Value returned by a successful call plus the retries it took."""

    value: T
    retries: int = 0


class RetryExecutor:
    """Runs an async callable with retries on retryable failures."""

    def __init__(
        self,
        config: RetrySettings | None = None,
        sleep: Sleep = asyncio.sleep,
        on_retry: Callable[[int, BaseException], None] | None = None,
    ):
        self.config = config or RetrySettings()
        self._sleep = sleep
        self._on_retry = on_retry

    def calculate_delay(self, attempt_index: int, accumulated_errors: int = 0) -> float:
        """Delay before the attempt following failed attempt ``attempt_index`` (0-based)."""
        delay = self.config.base_delay * (self.config.multiplier**attempt_index)
        delay *= 1 + self.config.throttle_factor * accumulated_errors
        return min(delay, self.config.max_delay)

    async def execute(
        self,
        func: Callable[[], Awaitable[T]],
        accumulated_errors: int = 0,
    ) -> RetryOutcome[T]:
        """Execute ``func`` until it succeeds, fails fatally, or runs out of attempts."""
        max_attempts = self.config.max_attempts
        last_exception: Exception | None = None

        for attempt in range(max_attempts):
            try:
                value = await func()
            except Exception as e:
                last_exception = e
                category = classify_error(e)
                if category is not ErrorCategory.RETRYABLE:
                    # Fatal and circuit-open failures never consume retry budget.
                    raise

                logger.warning(
                    "Attempt %d/%d failed: %s", attempt + 1, max_attempts, type(e).__name__
                )
                if attempt + 1 >= max_attempts:
                    break

                delay = self.calculate_delay(attempt, accumulated_errors)
                if self._on_retry:
                    self._on_retry(attempt + 1, e)
                logger.debug("Waiting %.2f seconds before retry", delay)
                await self._sleep(delay)
                continue

            if attempt > 0:
                logger.info("Call succeeded on attempt %d", attempt + 1)
            return RetryOutcome(value=value, retries=attempt)

        raise RetryExhaustedError(
            f"Call failed after {max_attempts} attempts",
            max_attempts,
            last_exception,
        ) from last_exception
