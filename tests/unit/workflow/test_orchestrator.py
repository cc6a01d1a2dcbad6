"""
Workflow planning and orchestrator tests.
"""

import asyncio
from datetime import date

import pytest

from attendance_sync.config import OrchestratorSettings
from attendance_sync.errors import CycleDetectedError, WorkflowValidationError
from attendance_sync.models import DateRange, SyncOperation, SyncOperationKind, SyncResult, utcnow
from attendance_sync.observability import EventPublisher, SyncEventType
from attendance_sync.workflow import (
    CancellationToken,
    SyncOrchestrator,
    SyncWorkflow,
    WorkflowDependency,
    WorkflowStatus,
    compile_plan,
)


def op(operation_id: str) -> SyncOperation:
    return SyncOperation(
        kind=SyncOperationKind.BATCH_ATTENDANCE,
        date_range=DateRange(date(2024, 1, 1), date(2024, 1, 31)),
        operation_id=operation_id,
    )


def ok(operation_id: str, success: bool = True) -> SyncResult:
    now = utcnow()
    return SyncResult(operation_id=operation_id, success=success, started_at=now, finished_at=now)


class RecordingExecutor:
    """Executor that yields a few times and records call order."""

    def __init__(self, failing=(), gate: asyncio.Event | None = None):
        self.failing = set(failing)
        self.gate = gate
        self.calls: list[str] = []

    async def __call__(self, operation, token):
        self.calls.append(operation.operation_id)
        if self.gate is not None:
            await self.gate.wait()
        for _ in range(3):
            await asyncio.sleep(0)
        if operation.operation_id == "boom":
            raise RuntimeError("executor crashed")
        return ok(operation.operation_id, operation.operation_id not in self.failing)


def orchestrator(executor, sleep=None, **settings):
    kwargs = {"sleep": sleep} if sleep is not None else {}
    return SyncOrchestrator(
        executor, OrchestratorSettings(**settings), publisher=EventPublisher(), **kwargs
    )


class TestPlanning:
    def test_phases_follow_dependencies(self):
        workflow = SyncWorkflow(
            "nightly",
            [op("a"), op("b"), op("c"), op("d")],
            [WorkflowDependency("c", ["a", "b"]), WorkflowDependency("d", "c")],
        )

        phases = compile_plan(workflow)

        assert [p.operation_ids for p in phases] == [("a", "b"), ("c",), ("d",)]

    def test_cycle_detected(self):
        workflow = SyncWorkflow(
            "loop", [op("A"), op("B")], [WorkflowDependency("A", "B"), WorkflowDependency("B", "A")]
        )

        with pytest.raises(CycleDetectedError) as exc_info:
            compile_plan(workflow)

        assert exc_info.value.cycle[0] == exc_info.value.cycle[-1]
        assert set(exc_info.value.cycle) == {"A", "B"}

    def test_unknown_reference(self):
        workflow = SyncWorkflow("bad", [op("a")], [WorkflowDependency("a", "ghost")])

        with pytest.raises(WorkflowValidationError):
            compile_plan(workflow)

    def test_duplicate_ids_and_empty(self):
        with pytest.raises(WorkflowValidationError):
            compile_plan(SyncWorkflow("dup", [op("a"), op("a")]))
        with pytest.raises(WorkflowValidationError):
            compile_plan(SyncWorkflow("empty", []))


class TestExecution:
    @pytest.mark.asyncio
    async def test_cycle_rejected_before_any_execution(self):
        executor = RecordingExecutor()
        orch = orchestrator(executor)
        workflow = SyncWorkflow(
            "loop", [op("A"), op("B")], [WorkflowDependency("A", "B"), WorkflowDependency("B", "A")]
        )

        with pytest.raises(CycleDetectedError):
            await orch.submit_workflow(workflow)
        with pytest.raises(CycleDetectedError):
            await orch.execute_workflow(workflow)

        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_bounded_concurrency(self):
        """Test three independent operations never exceed two in flight."""
        executor = RecordingExecutor()
        orch = orchestrator(executor, max_concurrent_operations=2)

        result = await orch.execute_workflow(SyncWorkflow("three", [op("a"), op("b"), op("c")]))

        assert result.status == WorkflowStatus.COMPLETED
        assert result.successful_operations == 3
        assert orch.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_workflow_limit_overrides_settings(self):
        orch = orchestrator(RecordingExecutor(), max_concurrent_operations=3)

        await orch.execute_workflow(
            SyncWorkflow("serial", [op("a"), op("b"), op("c")], max_concurrent_operations=1)
        )

        assert orch.max_in_flight == 1

    @pytest.mark.asyncio
    async def test_phases_run_in_order(self):
        executor = RecordingExecutor()
        orch = orchestrator(executor)
        workflow = SyncWorkflow(
            "ordered", [op("c"), op("a"), op("b")], [WorkflowDependency("c", ["a", "b"])]
        )

        result = await orch.execute_workflow(workflow)

        assert executor.calls.index("c") == 2
        assert [p.operation_ids for p in result.phases] == [("a", "b"), ("c",)]

    @pytest.mark.asyncio
    async def test_failed_dependency_skips_dependents(self):
        executor = RecordingExecutor(failing={"a"})
        orch = orchestrator(executor)
        workflow = SyncWorkflow(
            "partial",
            [op("a"), op("b"), op("c"), op("x")],
            [WorkflowDependency("b", "a"), WorkflowDependency("c", "b")],
        )

        result = await orch.execute_workflow(workflow)

        assert result.status == WorkflowStatus.FAILED
        assert result.skipped == ["b", "c"]
        assert set(result.results) == {"a", "x"}
        assert result.results["x"].success
        assert "b" not in executor.calls

    @pytest.mark.asyncio
    async def test_executor_exception_becomes_failed_result(self):
        orch = orchestrator(RecordingExecutor())

        result = await orch.execute_workflow(SyncWorkflow("crash", [op("boom"), op("fine")]))

        assert result.status == WorkflowStatus.FAILED
        assert result.results["boom"].error == "fatal: RuntimeError"
        assert result.results["fine"].success

    @pytest.mark.asyncio
    async def test_timeout_checked_between_phases(self, clock):
        async def slow(operation, token):
            clock.advance(10)
            return ok(operation.operation_id)

        orch = SyncOrchestrator(slow, OrchestratorSettings(), clock=clock)
        workflow = SyncWorkflow("slow", [op("a"), op("b")], [WorkflowDependency("b", "a")], timeout=5)

        result = await orch.execute_workflow(workflow)

        assert result.status == WorkflowStatus.FAILED
        assert "timed out" in result.error
        assert set(result.results) == {"a"}

    @pytest.mark.asyncio
    async def test_pre_cancelled_token(self):
        executor = RecordingExecutor()
        token = CancellationToken()
        token.cancel("operator request")

        result = await orchestrator(executor).execute_workflow(SyncWorkflow("x", [op("a")]), token)

        assert result.status == WorkflowStatus.CANCELLED
        assert executor.calls == []


class TestQueueing:
    @pytest.mark.asyncio
    async def test_fifo_queue_and_cancel_queued(self):
        gate = asyncio.Event()
        executor = RecordingExecutor(gate=gate)
        orch = orchestrator(executor, max_concurrent_workflows=1)

        first = await orch.submit_workflow(SyncWorkflow("first", [op("a")]))
        second = await orch.submit_workflow(SyncWorkflow("second", [op("b")]))
        third = await orch.submit_workflow(SyncWorkflow("third", [op("c")]))
        await asyncio.sleep(0)

        assert orch.get_workflow_status(second)["status"] == "pending"
        assert orch.get_metrics()["queued_workflows"] == 2

        assert orch.cancel_workflow(second)
        assert orch.get_workflow_status(second)["status"] == "cancelled"

        gate.set()
        assert (await orch.wait_for_workflow(first, timeout=1)).status == WorkflowStatus.COMPLETED
        assert (await orch.wait_for_workflow(third, timeout=1)).status == WorkflowStatus.COMPLETED
        assert executor.calls == ["a", "c"]

        cancelled = orch.publisher.events_of(SyncEventType.WORKFLOW_CANCELLED)
        assert [e.details["workflow_id"] for e in cancelled] == [second]

    @pytest.mark.asyncio
    async def test_cancel_running_lets_dispatched_finish(self):
        gate = asyncio.Event()
        executor = RecordingExecutor(gate=gate)
        orch = orchestrator(executor)
        workflow = SyncWorkflow("running", [op("a"), op("b")], [WorkflowDependency("b", "a")])

        workflow_id = await orch.submit_workflow(workflow)
        await asyncio.sleep(0)
        assert orch.cancel_workflow(workflow_id)
        gate.set()

        result = await orch.wait_for_workflow(workflow_id, timeout=1)

        assert result.status == WorkflowStatus.CANCELLED
        assert result.results["a"].success
        assert executor.calls == ["a"]
        assert not orch.cancel_workflow(workflow_id)

    @pytest.mark.asyncio
    async def test_status_and_metrics(self):
        orch = orchestrator(RecordingExecutor())

        workflow_id = await orch.submit_workflow(SyncWorkflow("one", [op("a"), op("b")]))
        await orch.wait_for_workflow(workflow_id, timeout=1)

        status = orch.get_workflow_status(workflow_id)
        assert status["status"] == "completed"
        assert status["percentage"] == 100.0
        assert status["total_phases"] == 1
        metrics = orch.get_metrics()
        assert metrics["completed_workflows"] == 1
        assert metrics["active_workflows"] == 0
        assert orch.list_workflows([WorkflowStatus.COMPLETED]) == [workflow_id]
        assert orch.get_workflow_status("wf-missing") is None

    @pytest.mark.asyncio
    async def test_finished_runs_are_bounded(self):
        orch = orchestrator(RecordingExecutor(), max_retained_workflows=2)

        ids = []
        for name in ("w1", "w2", "w3"):
            workflow_id = await orch.submit_workflow(SyncWorkflow(name, [op(f"{name}-a")]))
            await orch.wait_for_workflow(workflow_id, timeout=1)
            ids.append(workflow_id)

        assert orch.list_workflows() == ids[1:]
        assert orch.get_workflow_status(ids[0]) is None
        assert orch.get_metrics()["completed_workflows"] == 3

    @pytest.mark.asyncio
    async def test_tick_loop_polls_queue(self, sleep):
        orch = orchestrator(RecordingExecutor(), sleep=sleep)
        await orch.start()
        for _ in range(3):
            await asyncio.sleep(0)

        await orch.close()

        assert sleep.delays
        assert set(sleep.delays) == {5.0}

    @pytest.mark.asyncio
    async def test_close_cancels_queued_and_waits_for_running(self):
        gate = asyncio.Event()
        orch = orchestrator(RecordingExecutor(gate=gate), max_concurrent_workflows=1)

        running = await orch.submit_workflow(SyncWorkflow("running", [op("a"), op("b")]))
        queued = await orch.submit_workflow(SyncWorkflow("queued", [op("c")]))
        await asyncio.sleep(0)

        closing = asyncio.create_task(orch.close())
        await asyncio.sleep(0)
        assert orch.get_workflow_status(queued)["status"] == "cancelled"
        assert not closing.done()

        gate.set()
        await closing

        assert orch.get_workflow_status(running)["status"] == "cancelled"
        assert orch.get_metrics()["active_workflows"] == 0
