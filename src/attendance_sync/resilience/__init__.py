"""Fault tolerance primitives: circuit breaker and retry."""

from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from .retry import RetryExecutor, RetryOutcome

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "RetryExecutor",
    "RetryOutcome",
]
