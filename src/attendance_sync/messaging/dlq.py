"""
Dead Letter Queue (DLQ) for failed sync chunks.

Chunks that fail beyond recovery (fatal error, exhausted retries or an open
circuit) are parked here with enough context to replay them later as a fresh
operation covering just the failed chunk and scope.
"""

import asyncio
import dataclasses
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..config import DeadLetterSettings
from ..errors import DeadLetterEntryNotFoundError
from ..models import DateRange, SyncOperation, SyncResult, utcnow
from ..observability.events import EventPublisher, EventSeverity, SyncEventType
from ..observability.metrics import SyncMetrics

logger = logging.getLogger(__name__)

ReplayExecutor = Callable[[SyncOperation], Awaitable[SyncResult]]


def dead_letter_id(operation_id: str, chunk: DateRange, scope: str | None) -> str:
    return f"{operation_id}:{chunk}:{scope or '*'}"


@dataclass
class DeadLetterEntry:
    entry_id: str
    operation: SyncOperation
    chunk: DateRange
    scope: str | None
    error: str
    error_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    enqueued_at: datetime = field(default_factory=utcnow)
    retry_count: int = 0
    last_retry_at: datetime | None = None
    # Clock reading used for retention.
    enqueued_clock: float = 0.0

    @property
    def operation_id(self) -> str:
        return self.operation.operation_id

    def replay_operation(self) -> SyncOperation:
        """Build a fresh operation covering only this entry's chunk and scope."""
        options = dataclasses.replace(
            self.operation.options,
            metadata={**self.operation.options.metadata, "replay_of": self.entry_id},
        )
        return SyncOperation(
            kind=self.operation.kind,
            date_range=self.chunk,
            scope=(self.scope,) if self.scope else (),
            options=options,
            priority=self.operation.priority,
        )


@dataclass
class DLQStats:
    current_size: int = 0
    total_enqueued: int = 0
    total_evicted: int = 0
    total_replayed: int = 0
    total_replay_failures: int = 0
    failure_reasons: dict[str, int] = field(default_factory=dict)


class DeadLetterQueue:
    """Bounded, in-process dead-letter store."""

    def __init__(
        self,
        config: DeadLetterSettings | None = None,
        publisher: EventPublisher | None = None,
        metrics: SyncMetrics | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or DeadLetterSettings()
        self.publisher = publisher
        self.metrics = metrics
        self._clock = clock
        self._entries: OrderedDict[str, DeadLetterEntry] = OrderedDict()
        self._stats = DLQStats()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def enqueue(
        self,
        operation: SyncOperation,
        chunk: DateRange,
        scope: str | None,
        error: str,
        error_type: str,
        payload: dict[str, Any] | None = None,
    ) -> DeadLetterEntry:
        entry = DeadLetterEntry(
            entry_id=dead_letter_id(operation.operation_id, chunk, scope),
            operation=operation,
            chunk=chunk,
            scope=scope,
            error=error,
            error_type=error_type,
            payload=payload or {},
            enqueued_clock=self._clock(),
        )

        async with self._lock:
            existing = self._entries.pop(entry.entry_id, None)
            if existing is not None:
                entry.retry_count = existing.retry_count

            self._purge_expired_locked()
            while len(self._entries) >= self.config.max_size:
                _, oldest = self._entries.popitem(last=False)
                self._record_eviction(oldest, "capacity")

            self._entries[entry.entry_id] = entry
            self._stats.total_enqueued += 1
            self._stats.failure_reasons[error_type] = self._stats.failure_reasons.get(error_type, 0) + 1
            self._update_size()

        logger.warning("Dead-lettered %s: %s", entry.entry_id, error)
        if self.publisher:
            self.publisher.emit(
                SyncEventType.DLQ_ENQUEUED,
                EventSeverity.WARNING,
                entry_id=entry.entry_id,
                operation_id=operation.operation_id,
                error=error,
                error_type=error_type,
            )
        return entry

    async def purge_expired(self) -> int:
        """Evict entries older than the retention period; returns how many."""
        async with self._lock:
            return self._purge_expired_locked()

    async def get(self, entry_id: str) -> DeadLetterEntry:
        async with self._lock:
            self._purge_expired_locked()
            entry = self._entries.get(entry_id)
        if entry is None:
            raise DeadLetterEntryNotFoundError(f"No dead-letter entry {entry_id}")
        return entry

    async def entries(self) -> list[DeadLetterEntry]:
        """All unexpired entries, oldest first."""
        async with self._lock:
            self._purge_expired_locked()
            return list(self._entries.values())

    async def remove(self, entry_id: str) -> DeadLetterEntry:
        async with self._lock:
            entry = self._entries.pop(entry_id, None)
            self._update_size()
        if entry is None:
            raise DeadLetterEntryNotFoundError(f"No dead-letter entry {entry_id}")
        return entry

    async def replay(self, entry_id: str, executor: ReplayExecutor) -> SyncResult:
        """Re-run an entry as a fresh operation; remove it if the run succeeds."""
        entry = await self.get(entry_id)
        operation = entry.replay_operation()
        logger.info("Replaying %s as %s", entry_id, operation.operation_id)

        result = await executor(operation)

        async with self._lock:
            if result.success:
                self._entries.pop(entry_id, None)
                self._stats.total_replayed += 1
            else:
                entry.retry_count += 1
                entry.last_retry_at = utcnow()
                self._stats.total_replay_failures += 1
            self._update_size()

        if self.publisher:
            self.publisher.emit(
                SyncEventType.DLQ_REPLAYED,
                EventSeverity.INFO if result.success else EventSeverity.WARNING,
                entry_id=entry_id,
                replay_operation_id=operation.operation_id,
                success=result.success,
                retry_count=entry.retry_count,
            )
        return result

    def stats(self) -> DLQStats:
        return dataclasses.replace(
            self._stats,
            current_size=len(self._entries),
            failure_reasons=dict(self._stats.failure_reasons),
        )

    def _purge_expired_locked(self) -> int:
        # Caller holds the lock.
        cutoff = self._clock() - self.config.retention_seconds
        expired = [e for e in self._entries.values() if e.enqueued_clock < cutoff]
        for entry in expired:
            del self._entries[entry.entry_id]
            self._record_eviction(entry, "expired")

        if expired:
            self._update_size()
            logger.info("Purged %d expired dead-letter entries", len(expired))
        return len(expired)

    def _record_eviction(self, entry: DeadLetterEntry, reason: str) -> None:
        self._stats.total_evicted += 1
        logger.warning("Evicted dead-letter entry %s (%s)", entry.entry_id, reason)
        if self.metrics:
            self.metrics.record_eviction(reason)
        if self.publisher:
            self.publisher.emit(
                SyncEventType.DLQ_EVICTED,
                EventSeverity.WARNING,
                entry_id=entry.entry_id,
                operation_id=entry.operation_id,
                reason=reason,
            )

    def _update_size(self) -> None:
        if self.metrics:
            self.metrics.set_dead_letter_size(len(self._entries))
