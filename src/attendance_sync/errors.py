"""
Error taxonomy for the attendance sync engine.

Every failure raised inside the engine is mapped onto one of a small number of
categories that drive retry, dead-letter and propagation decisions.
"""

import asyncio
import errno
import socket
import ssl
from enum import Enum


class ErrorCategory(Enum):
    """How a failure should be treated by the retry and routing layers."""

    FATAL = "fatal"
    RETRYABLE = "retryable"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"


class SyncError(Exception):
    """Base class for all sync engine errors."""

    category: ErrorCategory | None = None


class FatalSyncError(SyncError):
    """Non-retryable failure; aborts the enclosing chunk."""

    category = ErrorCategory.FATAL


class RetryableSyncError(SyncError):
    """Transient failure that may succeed on a later attempt."""

    category = ErrorCategory.RETRYABLE


class UpstreamError(SyncError):
    """Failure reported by the upstream student-information API."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class CircuitOpenError(SyncError):
    """Raised when a circuit breaker rejects a call without attempting it."""

    category = ErrorCategory.CIRCUIT_OPEN

    def __init__(self, endpoint: str):
        super().__init__(f"Circuit breaker {endpoint} is open")
        self.endpoint = endpoint


class RetryExhaustedError(SyncError):
    """Raised when all retry attempts are exhausted."""

    category = ErrorCategory.FATAL

    def __init__(self, message: str, attempts: int, last_exception: BaseException):
        super().__init__(message)
        self.attempts = attempts
        self.last_exception = last_exception


class RecordValidationError(SyncError):
    """A single upstream record failed validation."""

    def __init__(self, reasons: list[str]):
        super().__init__("; ".join(reasons))
        self.reasons = reasons


class PersistenceError(SyncError):
    """The store rejected a single record write."""


class WorkflowValidationError(SyncError):
    """Workflow definition is invalid (unknown operation reference, etc)."""

    category = ErrorCategory.FATAL


class CycleDetectedError(WorkflowValidationError):
    """Workflow dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")
        self.cycle = cycle


class TransactionError(SyncError):
    """Base error for transaction management."""

    category = ErrorCategory.FATAL


class TransactionNotFoundError(TransactionError):
    """No active transaction exists for the given id."""


class TransactionTimeoutError(TransactionError):
    """Transaction deadline elapsed before the unit of work started."""


class SagaError(SyncError):
    """Saga execution failure."""

    category = ErrorCategory.FATAL


class SagaTimeoutError(SagaError):
    """Saga deadline elapsed at a step boundary."""


class ResourceBudgetError(SyncError):
    """A resource request can never be satisfied by the configured limits."""

    category = ErrorCategory.FATAL


class SyncCancelledError(SyncError):
    """Cooperative cancellation was observed at a phase or chunk boundary."""

    category = ErrorCategory.CANCELLED


class DeadLetterEntryNotFoundError(SyncError):
    """No dead-letter entry exists for the given id."""


class ConfigurationError(SyncError):
    """Settings could not be loaded or failed validation."""


FATAL_STATUS_CODES = frozenset({400, 401, 403, 404, 405, 409, 410, 422})
FATAL_ERRNOS = frozenset({errno.ECONNREFUSED})


def _classify_status(status: int) -> ErrorCategory:
    if status == 429 or status >= 500 or status == 408:
        return ErrorCategory.RETRYABLE
    return ErrorCategory.FATAL


def classify_error(exc: BaseException) -> ErrorCategory:
    """Map an exception onto an :class:`ErrorCategory`.

    Authentication, certificate, connection-refused and DNS failures are fatal.
    Timeouts, 5xx and rate-limit responses are retryable. Anything unknown is
    treated as fatal so that it never silently burns retry budget.
    """
    if isinstance(exc, SyncError) and exc.category is not None:
        return exc.category

    if isinstance(exc, asyncio.CancelledError):
        return ErrorCategory.CANCELLED

    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return _classify_status(status)

    if isinstance(exc, ssl.SSLError | ssl.CertificateError):
        return ErrorCategory.FATAL
    if isinstance(exc, socket.gaierror):
        return ErrorCategory.FATAL
    if isinstance(exc, ConnectionRefusedError):
        return ErrorCategory.FATAL
    if isinstance(exc, TimeoutError | asyncio.TimeoutError):
        return ErrorCategory.RETRYABLE
    if isinstance(exc, OSError) and exc.errno in FATAL_ERRNOS:
        return ErrorCategory.FATAL
    if isinstance(exc, ConnectionResetError | ConnectionAbortedError):
        return ErrorCategory.RETRYABLE

    return ErrorCategory.FATAL


def is_retryable(exc: BaseException) -> bool:
    """Check whether an exception should consume retry budget."""
    return classify_error(exc) is ErrorCategory.RETRYABLE


def summarize_error(exc: BaseException) -> str:
    """Build a non-sensitive error summary suitable for a SyncResult."""
    root = exc
    if isinstance(exc, RetryExhaustedError):
        root = exc.last_exception
    category = classify_error(exc)
    summary = f"{category.value}: {type(root).__name__}"
    status = getattr(root, "status", None)
    if isinstance(status, int):
        summary += f" (status {status})"
    if isinstance(exc, RetryExhaustedError):
        summary += f" after {exc.attempts} attempts"
    return summary
