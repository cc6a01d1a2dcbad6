"""
Core data model for the attendance sync engine.

Sync operations are immutable once submitted; results are produced exactly once
per operation attempt and appended to the operation's history.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOperationKind(Enum):
    """Kinds of sync operation the engine knows how to run."""

    REALTIME_ATTENDANCE = "realtime_attendance"
    BATCH_ATTENDANCE = "batch_attendance"
    DIAGNOSTIC_BATCH = "diagnostic_batch"
    INTERVENTION_BATCH = "intervention_batch"
    DISTRICT_ATTENDANCE = "district_attendance"
    FULL_DISTRICT_ATTENDANCE = "full_district_attendance"

    @property
    def is_attendance(self) -> bool:
        return self in ATTENDANCE_KINDS


ATTENDANCE_KINDS = frozenset(
    {
        SyncOperationKind.REALTIME_ATTENDANCE,
        SyncOperationKind.BATCH_ATTENDANCE,
        SyncOperationKind.DISTRICT_ATTENDANCE,
        SyncOperationKind.FULL_DISTRICT_ATTENDANCE,
    }
)


class SyncPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True, order=True)
class DateRange:
    """Inclusive calendar date range."""

    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"Range start {self.start} is after end {self.end}")

    @classmethod
    def parse(cls, start: str | date, end: str | date) -> "DateRange":
        return cls(as_date(start), as_date(end))

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def __str__(self) -> str:
        return f"{self.start.isoformat()}..{self.end.isoformat()}"


def as_date(value: str | date) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


@dataclass(frozen=True)
class SyncOptions:
    """Per-operation tunables; None means "use the service settings"."""

    batch_size: int | None = None
    chunk_days: int | None = None
    max_parallel_chunks: int = 1
    max_attempts: int | None = None
    base_delay: float | None = None
    max_delay: float | None = None
    multiplier: float | None = None
    failure_threshold: int | None = None
    reset_timeout: float | None = None
    half_open_trial_count: int | None = None
    correction_window: bool | None = None
    expected_record_count: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class SyncOperation:
    """A single unit of sync work over a date range and scope."""

    kind: SyncOperationKind
    date_range: DateRange
    scope: tuple[str, ...] = ()
    options: SyncOptions = field(default_factory=SyncOptions)
    priority: SyncPriority = SyncPriority.MEDIUM
    operation_id: str = field(default_factory=lambda: f"sync-{uuid.uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        # Lists are accepted for convenience but stored as tuples to stay immutable.
        if not isinstance(self.scope, tuple):
            object.__setattr__(self, "scope", tuple(self.scope))


@dataclass
class CompensationRecord:
    """Outcome of one compensating action."""

    step_name: str
    executed_at: datetime = field(default_factory=utcnow)
    success: bool = True
    error: str | None = None


@dataclass
class SyncResult:
    """Outcome of one sync operation attempt."""

    operation_id: str
    success: bool
    started_at: datetime
    finished_at: datetime
    records_processed: int = 0
    records_successful: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    retry_attempts: int = 0
    dead_lettered: bool = False
    compensations: list[CompensationRecord] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def execution_time(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "execution_time": self.execution_time,
            "records_processed": self.records_processed,
            "records_successful": self.records_successful,
            "records_failed": self.records_failed,
            "records_skipped": self.records_skipped,
            "retry_attempts": self.retry_attempts,
            "dead_lettered": self.dead_lettered,
            "compensations": [
                {"step_name": c.step_name, "success": c.success, "error": c.error}
                for c in self.compensations
            ],
            "metadata": self.metadata,
            "error": self.error,
        }
