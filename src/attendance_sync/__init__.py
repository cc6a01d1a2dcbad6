"""
Attendance synchronization engine.

Pulls date-ranged attendance datasets from an upstream student-information
API and writes them to a persistent store with fault tolerance (circuit
breaker, retry, dead-letter queue), ordering (dependency-ordered workflows),
consistency (chunk transactions and sagas), resumability (checkpoints) and
operational visibility (progress, metrics, events).
"""

from .config import SyncSettings, load_settings
from .errors import (
    CircuitOpenError,
    ConfigurationError,
    CycleDetectedError,
    ErrorCategory,
    FatalSyncError,
    RetryableSyncError,
    RetryExhaustedError,
    SyncError,
    UpstreamError,
    WorkflowValidationError,
    classify_error,
)
from .interfaces import (
    ComplianceValidator,
    ComplianceVerdict,
    FetchResponse,
    PersistenceTarget,
    UpsertResult,
    UpstreamSource,
)
from .models import (
    DateRange,
    SyncOperation,
    SyncOperationKind,
    SyncOptions,
    SyncPriority,
    SyncResult,
)
from .service import SyncPipeline, SyncService

__version__ = "0.1.0"

__all__ = [
    "CircuitOpenError",
    "ComplianceValidator",
    "ComplianceVerdict",
    "ConfigurationError",
    "CycleDetectedError",
    "DateRange",
    "ErrorCategory",
    "FatalSyncError",
    "FetchResponse",
    "PersistenceTarget",
    "RetryExhaustedError",
    "RetryableSyncError",
    "SyncError",
    "SyncOperation",
    "SyncOperationKind",
    "SyncOptions",
    "SyncPipeline",
    "SyncPriority",
    "SyncResult",
    "SyncService",
    "SyncSettings",
    "UpsertResult",
    "UpstreamError",
    "UpstreamSource",
    "WorkflowValidationError",
    "classify_error",
    "load_settings",
]
