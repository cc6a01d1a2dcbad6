"""
Prometheus metrics and alert thresholds for the sync engine.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

from ..config import AlertThresholds
from ..models import SyncOperationKind, SyncResult, utcnow
from ..resilience.circuit_breaker import CircuitState
from .events import EventPublisher, EventSeverity, SyncEventType

logger = logging.getLogger(__name__)

CIRCUIT_STATE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


@dataclass
class MetricsSnapshot:
    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    records_processed: int = 0
    total_execution_time: float = 0.0
    last_updated: datetime = field(default_factory=utcnow)

    @property
    def success_rate(self) -> float:
        if not self.total_operations:
            return 0.0
        return self.successful_operations / self.total_operations

    @property
    def error_rate(self) -> float:
        if not self.total_operations:
            return 0.0
        return self.failed_operations / self.total_operations

    @property
    def average_execution_time(self) -> float:
        if not self.total_operations:
            return 0.0
        return self.total_execution_time / self.total_operations

    @property
    def throughput(self) -> float:
        """Records per second of execution time."""
        if self.total_execution_time <= 0:
            return 0.0
        return self.records_processed / self.total_execution_time


class SyncMetrics:
    """Sync engine metrics registered on a (by default private) registry."""

    def __init__(
        self,
        registry: CollectorRegistry | None = None,
        publisher: EventPublisher | None = None,
        thresholds: AlertThresholds | None = None,
        enable_alerting: bool = True,
        namespace: str = "attendance_sync",
    ):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.publisher = publisher
        self.thresholds = thresholds or AlertThresholds()
        self.enable_alerting = enable_alerting
        self._snapshot = MetricsSnapshot()
        self._active_alerts: set[SyncEventType] = set()
        # Outcomes of the most recent operations, True for success.
        self._recent: deque[bool] = deque(maxlen=self.thresholds.failure_window)

        self.operations_total = Counter(
            f"{namespace}_operations_total",
            "Sync operations by kind and outcome",
            ["kind", "status"],
            registry=self.registry,
        )
        self.records_total = Counter(
            f"{namespace}_records_total",
            "Records by kind and outcome",
            ["kind", "outcome"],
            registry=self.registry,
        )
        self.retries_total = Counter(
            f"{namespace}_retries_total",
            "Upstream retries by endpoint",
            ["endpoint"],
            registry=self.registry,
        )
        self.dead_letter_size = Gauge(
            f"{namespace}_dead_letter_size",
            "Entries currently in the dead-letter queue",
            registry=self.registry,
        )
        self.dead_letter_evictions_total = Counter(
            f"{namespace}_dead_letter_evictions_total",
            "Dead-letter entries evicted, by reason",
            ["reason"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            f"{namespace}_circuit_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
            ["endpoint"],
            registry=self.registry,
        )
        self.active_operations = Gauge(
            f"{namespace}_active_operations",
            "Sync operations currently running",
            registry=self.registry,
        )
        self.operation_duration = Histogram(
            f"{namespace}_operation_duration_seconds",
            "Sync operation duration",
            ["kind"],
            buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 3600.0],
            registry=self.registry,
        )

    def operation_started(self) -> None:
        self.active_operations.inc()

    def record_operation(self, kind: SyncOperationKind, result: SyncResult) -> None:
        """Record a finished operation and evaluate the alert thresholds."""
        self.active_operations.dec()
        status = "success" if result.success else "failure"
        self.operations_total.labels(kind=kind.value, status=status).inc()
        self.operation_duration.labels(kind=kind.value).observe(result.execution_time)

        for outcome, count in (
            ("successful", result.records_successful),
            ("failed", result.records_failed),
            ("skipped", result.records_skipped),
        ):
            if count:
                self.records_total.labels(kind=kind.value, outcome=outcome).inc(count)

        snapshot = self._snapshot
        snapshot.total_operations += 1
        if result.success:
            snapshot.successful_operations += 1
        else:
            snapshot.failed_operations += 1
        snapshot.records_processed += result.records_processed
        snapshot.total_execution_time += result.execution_time
        snapshot.last_updated = utcnow()
        self._recent.append(result.success)

        self._check_alerts()

    def record_retry(self, endpoint: str) -> None:
        self.retries_total.labels(endpoint=endpoint).inc()

    def set_circuit_state(self, endpoint: str, state: CircuitState) -> None:
        self.circuit_state.labels(endpoint=endpoint).set(CIRCUIT_STATE_VALUES[state])

    def set_dead_letter_size(self, size: int) -> None:
        self.dead_letter_size.set(size)

    def record_eviction(self, reason: str) -> None:
        self.dead_letter_evictions_total.labels(reason=reason).inc()

    def snapshot(self) -> MetricsSnapshot:
        s = self._snapshot
        return MetricsSnapshot(
            total_operations=s.total_operations,
            successful_operations=s.successful_operations,
            failed_operations=s.failed_operations,
            records_processed=s.records_processed,
            total_execution_time=s.total_execution_time,
            last_updated=s.last_updated,
        )

    def _check_alerts(self) -> None:
        if not self.enable_alerting:
            return

        snapshot = self._snapshot
        self._set_alert(
            SyncEventType.ALERT_HIGH_ERROR_RATE,
            snapshot.error_rate > self.thresholds.error_rate,
            EventSeverity.WARNING,
            error_rate=snapshot.error_rate,
            threshold=self.thresholds.error_rate,
        )
        recent_failures = self._recent.count(False)
        self._set_alert(
            SyncEventType.ALERT_FAILURE_COUNT,
            recent_failures >= self.thresholds.failure_count,
            EventSeverity.CRITICAL,
            failed_operations=recent_failures,
            window=len(self._recent),
            threshold=self.thresholds.failure_count,
        )

    def _set_alert(self, alert: SyncEventType, firing: bool, severity: EventSeverity, **details) -> None:
        # Alerts publish once when they start firing and re-arm once they clear.
        if not firing:
            self._active_alerts.discard(alert)
            return
        if alert in self._active_alerts:
            return

        self._active_alerts.add(alert)
        logger.warning("Alert raised: %s %s", alert.value, details)
        if self.publisher:
            self.publisher.emit(alert, severity, **details)
