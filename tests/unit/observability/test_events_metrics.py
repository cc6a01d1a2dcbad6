"""
Event publisher and metrics tests.
"""

from datetime import timedelta

import pytest

from attendance_sync.config import AlertThresholds
from attendance_sync.logging import correlation_scope
from attendance_sync.models import SyncOperationKind, SyncResult, utcnow
from attendance_sync.observability import (
    EventPublisher,
    EventSeverity,
    SyncEventType,
    SyncMetrics,
)
from attendance_sync.resilience import CircuitState

KIND = SyncOperationKind.BATCH_ATTENDANCE


def result(success=True, seconds=2.0, processed=10, successful=10, failed=0):
    started = utcnow()
    return SyncResult(
        operation_id="sync-1",
        success=success,
        started_at=started,
        finished_at=started + timedelta(seconds=seconds),
        records_processed=processed,
        records_successful=successful,
        records_failed=failed,
    )


class TestEventPublisher:
    def test_listeners_receive_events(self):
        publisher = EventPublisher()
        received = []
        publisher.subscribe(received.append)

        event = publisher.emit(SyncEventType.OPERATION_STARTED, operation_id="sync-1")

        assert received == [event]
        assert event.severity == EventSeverity.INFO
        assert event.to_dict()["type"] == "operation.started"
        assert event.to_dict()["details"] == {"operation_id": "sync-1"}

    def test_correlation_id_from_context(self):
        publisher = EventPublisher()

        with correlation_scope("wf-123"):
            inside = publisher.emit(SyncEventType.WORKFLOW_STARTED)
        outside = publisher.emit(SyncEventType.WORKFLOW_STARTED)

        assert inside.correlation_id == "wf-123"
        assert outside.correlation_id is None

    def test_failing_listener_does_not_break_others(self):
        publisher = EventPublisher()
        received = []

        def broken(event):
            raise RuntimeError("listener down")

        publisher.subscribe(broken)
        publisher.subscribe(received.append)
        publisher.emit(SyncEventType.CHUNK_FAILED, EventSeverity.ERROR)

        assert len(received) == 1

    def test_unsubscribe_and_history(self):
        publisher = EventPublisher(history_size=2)
        received = []
        publisher.subscribe(received.append)
        publisher.unsubscribe(received.append)

        for _ in range(3):
            publisher.emit(SyncEventType.BATCH_PROCESSED)

        assert received == []
        assert len(publisher.history) == 2


class TestSyncMetrics:
    def test_operation_counters(self, registry, metrics):
        metrics.operation_started()
        metrics.record_operation(KIND, result(successful=8, failed=2))

        assert registry.get_sample_value(
            "attendance_sync_operations_total", {"kind": "batch_attendance", "status": "success"}
        ) == 1.0
        assert registry.get_sample_value(
            "attendance_sync_records_total", {"kind": "batch_attendance", "outcome": "failed"}
        ) == 2.0
        assert registry.get_sample_value("attendance_sync_active_operations") == 0.0
        assert registry.get_sample_value(
            "attendance_sync_operation_duration_seconds_count", {"kind": "batch_attendance"}
        ) == 1.0

    def test_circuit_state_gauge(self, registry, metrics):
        metrics.set_circuit_state("batch_attendance:001", CircuitState.OPEN)

        assert registry.get_sample_value(
            "attendance_sync_circuit_state", {"endpoint": "batch_attendance:001"}
        ) == 2.0

    def test_snapshot_rates(self, metrics):
        metrics.operation_started()
        metrics.record_operation(KIND, result(seconds=4.0, processed=20))
        metrics.operation_started()
        metrics.record_operation(KIND, result(success=False, seconds=1.0, processed=5))

        snapshot = metrics.snapshot()

        assert snapshot.total_operations == 2
        assert snapshot.success_rate == 0.5
        assert snapshot.error_rate == 0.5
        assert snapshot.average_execution_time == 2.5
        assert snapshot.throughput == 5.0

    def test_separate_registries_do_not_collide(self):
        SyncMetrics()
        SyncMetrics()


class TestAlerts:
    def test_error_rate_alert_is_edge_triggered(self, events, registry):
        metrics = SyncMetrics(
            registry=registry,
            publisher=events,
            thresholds=AlertThresholds(error_rate=0.4, failure_count=100),
        )

        for _ in range(3):
            metrics.operation_started()
            metrics.record_operation(KIND, result(success=False))

        alerts = events.events_of(SyncEventType.ALERT_HIGH_ERROR_RATE)
        assert len(alerts) == 1
        assert alerts[0].severity == EventSeverity.WARNING

    def test_alert_rearms_after_clearing(self, events, registry):
        metrics = SyncMetrics(
            registry=registry,
            publisher=events,
            thresholds=AlertThresholds(error_rate=0.5, failure_count=100),
        )

        outcomes = [False, True, True, False, False, False]
        for success in outcomes:
            metrics.operation_started()
            metrics.record_operation(KIND, result(success=success))

        # Fires at 1/1, clears at 1/2, fires again at 3/5.
        assert len(events.events_of(SyncEventType.ALERT_HIGH_ERROR_RATE)) == 2

    def test_failure_count_alert_is_critical(self, events, registry):
        metrics = SyncMetrics(
            registry=registry,
            publisher=events,
            thresholds=AlertThresholds(error_rate=1.0, failure_count=2),
        )

        for _ in range(2):
            metrics.operation_started()
            metrics.record_operation(KIND, result(success=False))

        alerts = events.events_of(SyncEventType.ALERT_FAILURE_COUNT)
        assert len(alerts) == 1
        assert alerts[0].severity == EventSeverity.CRITICAL

    def test_failure_count_alert_clears_and_rearms(self, events, registry):
        metrics = SyncMetrics(
            registry=registry,
            publisher=events,
            thresholds=AlertThresholds(error_rate=1.0, failure_count=2, failure_window=3),
        )

        outcomes = [False, False, True, True, False, False]
        for success in outcomes:
            metrics.operation_started()
            metrics.record_operation(KIND, result(success=success))

        # Fires on F,F, clears at F,T,T and fires again on T,F,F.
        alerts = events.events_of(SyncEventType.ALERT_FAILURE_COUNT)
        assert len(alerts) == 2
        assert alerts[-1].details["failed_operations"] == 2
        assert alerts[-1].details["window"] == 3
        assert metrics.snapshot().failed_operations == 4

    def test_alerting_disabled(self, events, registry):
        metrics = SyncMetrics(
            registry=registry,
            publisher=events,
            thresholds=AlertThresholds(error_rate=0.0, failure_count=1),
            enable_alerting=False,
        )
        metrics.operation_started()
        metrics.record_operation(KIND, result(success=False))

        assert events.events_of(SyncEventType.ALERT_FAILURE_COUNT) == []
