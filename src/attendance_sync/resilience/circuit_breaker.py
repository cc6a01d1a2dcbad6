"""
Circuit breaker for upstream endpoints.

A breaker guards one logical endpoint. It trips after a run of consecutive
failures, rejects calls while open, and lets a fixed number of trial calls
through once the reset timeout has elapsed.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from ..config import CircuitBreakerSettings
from ..errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

StateChangeListener = Callable[[str, "CircuitState", "CircuitState"], None]


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Circuit breaker for a single endpoint."""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: StateChangeListener | None = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerSettings()
        self._clock = clock
        self._on_state_change = on_state_change

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: float | None = None

        self._trial_admitted = 0
        self._trial_succeeded = 0

        self.total_calls = 0
        self.total_failures = 0
        self.total_rejections = 0

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under breaker protection."""
        self._admit()

        self.total_calls += 1
        try:
            result = await operation()
        except Exception as e:
            self._record_failure(e)
            raise

        self._record_success()
        return result

    def _admit(self) -> None:
        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self._transition(CircuitState.HALF_OPEN)
            else:
                self.total_rejections += 1
                raise CircuitOpenError(self.name)

        if self.state == CircuitState.HALF_OPEN:
            if self._trial_admitted >= self.config.half_open_trial_count:
                self.total_rejections += 1
                raise CircuitOpenError(self.name)
            self._trial_admitted += 1

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True
        return self._clock() - self.last_failure_time > self.config.reset_timeout

    def _record_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self._trial_succeeded += 1
            if self._trial_succeeded >= self.config.half_open_trial_count:
                self.failure_count = 0
                self._transition(CircuitState.CLOSED)
        elif self.state == CircuitState.CLOSED:
            self.failure_count = 0
        # A late success after the breaker re-opened changes nothing.

    def _record_failure(self, exception: Exception) -> None:
        self.total_failures += 1
        self.last_failure_time = self._clock()

        if self.state == CircuitState.HALF_OPEN:
            logger.warning("Circuit breaker %s trial call failed: %s", self.name, type(exception).__name__)
            self._transition(CircuitState.OPEN)
            return

        if self.state == CircuitState.CLOSED:
            self.failure_count += 1
            if self.failure_count >= self.config.failure_threshold:
                self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self.state
        if old_state == new_state:
            return

        self.state = new_state
        self._trial_admitted = 0
        self._trial_succeeded = 0

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "Circuit breaker %s: %s -> %s (failures=%d)",
            self.name,
            old_state.value,
            new_state.value,
            self.failure_count,
        )

        if self._on_state_change:
            try:
                self._on_state_change(self.name, old_state, new_state)
            except Exception as e:
                logger.error("Circuit state listener failed for %s: %s", self.name, e)

    def get_state(self) -> dict[str, Any]:
        """Get current circuit breaker state."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_rejections": self.total_rejections,
        }

    def reset(self) -> None:
        """Reset circuit breaker to closed state."""
        self.failure_count = 0
        self.last_failure_time = None
        self._transition(CircuitState.CLOSED)
        logger.info("Circuit breaker %s has been reset", self.name)


class CircuitBreakerRegistry:
    """Hands out one breaker per logical endpoint."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: StateChangeListener | None = None,
    ):
        self._clock = clock
        self._on_state_change = on_state_change
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, endpoint: str, config: CircuitBreakerSettings | None = None) -> CircuitBreaker:
        """Return the breaker for ``endpoint``, creating it on first use.

        ``config`` only applies when the breaker is created; later calls reuse
        the existing breaker and its state.
        """
        breaker = self._breakers.get(endpoint)
        if breaker is None:
            breaker = CircuitBreaker(
                endpoint,
                config,
                clock=self._clock,
                on_state_change=self._on_state_change,
            )
            self._breakers[endpoint] = breaker
        return breaker

    def get_all_states(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.get_state() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def __len__(self) -> int:
        return len(self._breakers)
