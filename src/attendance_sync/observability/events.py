"""
Structured operational events.

Every significant state transition in the engine is published as a
:class:`SyncEvent`. The publisher logs each event and fans it out to the
registered listeners.
"""

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..logging import get_correlation_id
from ..models import utcnow

logger = logging.getLogger(__name__)


class EventSeverity(Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_LOG_LEVELS = {
    EventSeverity.DEBUG: logging.DEBUG,
    EventSeverity.INFO: logging.INFO,
    EventSeverity.WARNING: logging.WARNING,
    EventSeverity.ERROR: logging.ERROR,
    EventSeverity.CRITICAL: logging.CRITICAL,
}


class SyncEventType(Enum):
    OPERATION_STARTED = "operation.started"
    OPERATION_COMPLETED = "operation.completed"
    OPERATION_FAILED = "operation.failed"
    CHUNK_FAILED = "chunk.failed"
    BATCH_PROCESSED = "batch.processed"
    CIRCUIT_STATE_CHANGED = "circuit.state_changed"
    DLQ_ENQUEUED = "dlq.enqueued"
    DLQ_EVICTED = "dlq.evicted"
    DLQ_REPLAYED = "dlq.replayed"
    WORKFLOW_QUEUED = "workflow.queued"
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"
    WORKFLOW_CANCELLED = "workflow.cancelled"
    ALERT_HIGH_ERROR_RATE = "alert.high_error_rate"
    ALERT_FAILURE_COUNT = "alert.failure_count"


@dataclass
class SyncEvent:
    event_type: SyncEventType
    severity: EventSeverity = EventSeverity.INFO
    details: dict[str, Any] = field(default_factory=dict)
    correlation_id: str | None = field(default_factory=get_correlation_id)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type.value,
            "severity": self.severity.value,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }


EventListener = Callable[[SyncEvent], None]


class EventPublisher:
    """Logs events and fans them out to listeners."""

    def __init__(self, history_size: int = 1000):
        self._listeners: list[EventListener] = []
        self.history: deque[SyncEvent] = deque(maxlen=history_size)

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: SyncEvent) -> None:
        self.history.append(event)
        logger.log(
            _LOG_LEVELS[event.severity],
            "Sync event %s",
            event.event_type.value,
            extra={"event": event.to_dict()},
        )

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("Event listener failed for %s: %s", event.event_type.value, e)

    def emit(
        self,
        event_type: SyncEventType,
        severity: EventSeverity = EventSeverity.INFO,
        **details: Any,
    ) -> SyncEvent:
        event = SyncEvent(event_type=event_type, severity=severity, details=details)
        self.publish(event)
        return event

    def events_of(self, event_type: SyncEventType) -> list[SyncEvent]:
        return [e for e in self.history if e.event_type == event_type]
