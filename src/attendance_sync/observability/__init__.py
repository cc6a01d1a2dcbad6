"""Operational visibility: events, metrics and progress."""

from .events import EventPublisher, EventSeverity, SyncEvent, SyncEventType
from .metrics import MetricsSnapshot, SyncMetrics
from .progress import ProgressChannel, ProgressSubscription, ProgressTracker, ProgressUpdate

__all__ = [
    "EventPublisher",
    "EventSeverity",
    "MetricsSnapshot",
    "ProgressChannel",
    "ProgressSubscription",
    "ProgressTracker",
    "ProgressUpdate",
    "SyncEvent",
    "SyncEventType",
    "SyncMetrics",
]
