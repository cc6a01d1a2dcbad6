"""
Workflow planning and orchestration.

A workflow is a named set of sync operations plus dependencies between them.
It is validated and compiled into ordered phases; phase ``k`` holds every
operation whose dependencies are all satisfied by phases ``0..k-1``. Phases run
strictly in order, and the operations of a phase run in concurrent batches
that are admitted by the resource monitor.
"""

import asyncio
import logging
import time
import uuid
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..config import OrchestratorSettings
from ..errors import CycleDetectedError, WorkflowValidationError, summarize_error
from ..logging import correlation_scope
from ..models import SyncOperation, SyncResult, utcnow
from ..observability.events import EventPublisher, EventSeverity, SyncEventType
from .cancellation import CancellationToken
from .resources import ResourceMonitor, ResourceUsage

logger = logging.getLogger(__name__)

OperationExecutor = Callable[[SyncOperation, CancellationToken], Awaitable[SyncResult]]

DEFAULT_BATCH_REQUEST = ResourceUsage(memory_mb=256.0, cpu_percent=10.0, connections=5)


class WorkflowStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED)


@dataclass(frozen=True)
class WorkflowDependency:
    """``operation_id`` may only start after every id in ``depends_on`` succeeded."""

    operation_id: str
    depends_on: tuple[str, ...]

    def __post_init__(self):
        if isinstance(self.depends_on, str):
            object.__setattr__(self, "depends_on", (self.depends_on,))
        elif not isinstance(self.depends_on, tuple):
            object.__setattr__(self, "depends_on", tuple(self.depends_on))


@dataclass
class SyncWorkflow:
    name: str
    operations: list[SyncOperation]
    dependencies: list[WorkflowDependency] = field(default_factory=list)
    max_concurrent_operations: int | None = None
    resource_request: ResourceUsage = DEFAULT_BATCH_REQUEST
    timeout: float | None = None
    workflow_id: str = field(default_factory=lambda: f"wf-{uuid.uuid4().hex[:12]}")


@dataclass(frozen=True)
class ExecutionPhase:
    index: int
    operation_ids: tuple[str, ...]


@dataclass
class WorkflowResult:
    workflow_id: str
    status: WorkflowStatus
    started_at: datetime
    finished_at: datetime
    phases: list[ExecutionPhase] = field(default_factory=list)
    results: dict[str, SyncResult] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def successful_operations(self) -> int:
        return sum(1 for r in self.results.values() if r.success)

    @property
    def failed_operations(self) -> int:
        return sum(1 for r in self.results.values() if not r.success)

    @property
    def execution_time(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


def _dependency_map(workflow: SyncWorkflow) -> dict[str, set[str]]:
    deps: dict[str, set[str]] = {op.operation_id: set() for op in workflow.operations}
    for dependency in workflow.dependencies:
        deps.setdefault(dependency.operation_id, set()).update(dependency.depends_on)
    return deps


def validate_workflow(workflow: SyncWorkflow) -> dict[str, set[str]]:
    """Check references and cycles; returns the dependency map."""
    ids = [op.operation_id for op in workflow.operations]
    if not ids:
        raise WorkflowValidationError(f"Workflow {workflow.name} has no operations")
    if len(set(ids)) != len(ids):
        raise WorkflowValidationError(f"Workflow {workflow.name} has duplicate operation ids")

    known = set(ids)
    for dependency in workflow.dependencies:
        for ref in (dependency.operation_id, *dependency.depends_on):
            if ref not in known:
                raise WorkflowValidationError(
                    f"Workflow {workflow.name} references unknown operation {ref}"
                )

    deps = _dependency_map(workflow)
    visited: set[str] = set()
    stack: list[str] = []
    on_stack: set[str] = set()

    def visit(node: str) -> None:
        visited.add(node)
        stack.append(node)
        on_stack.add(node)
        for dep in sorted(deps[node]):
            if dep in on_stack:
                raise CycleDetectedError(stack[stack.index(dep):] + [dep])
            if dep not in visited:
                visit(dep)
        stack.pop()
        on_stack.discard(node)

    for op_id in ids:
        if op_id not in visited:
            visit(op_id)

    return deps


def compile_plan(workflow: SyncWorkflow) -> list[ExecutionPhase]:
    """Validate ``workflow`` and compile it into ordered execution phases."""
    deps = validate_workflow(workflow)

    phases: list[ExecutionPhase] = []
    scheduled: set[str] = set()
    remaining = [op.operation_id for op in workflow.operations]
    while remaining:
        ready = tuple(op_id for op_id in remaining if deps[op_id] <= scheduled)
        phases.append(ExecutionPhase(index=len(phases), operation_ids=ready))
        scheduled.update(ready)
        remaining = [op_id for op_id in remaining if op_id not in scheduled]
    return phases


@dataclass
class _WorkflowRun:
    workflow: SyncWorkflow
    phases: list[ExecutionPhase]
    token: CancellationToken
    status: WorkflowStatus = WorkflowStatus.PENDING
    submitted_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    started_clock: float | None = None
    current_phase: int | None = None
    results: dict[str, SyncResult] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    result: WorkflowResult | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None


class SyncOrchestrator:
    """Runs workflows of sync operations with bounded concurrency."""

    def __init__(
        self,
        executor: OperationExecutor,
        settings: OrchestratorSettings | None = None,
        resource_monitor: ResourceMonitor | None = None,
        publisher: EventPublisher | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.executor = executor
        self.settings = settings or OrchestratorSettings()
        self.resource_monitor = resource_monitor or ResourceMonitor(
            self.settings.resource_limits,
            poll_interval=self.settings.resource_poll_interval,
            sleep=sleep,
        )
        self.publisher = publisher or EventPublisher()
        self._clock = clock
        self._sleep = sleep

        self._runs: dict[str, _WorkflowRun] = {}
        self._queue: deque[str] = deque()
        self._running: set[str] = set()
        self._tick_task: asyncio.Task | None = None

        self._in_flight = 0
        self.max_in_flight = 0
        self._finished: Counter[WorkflowStatus] = Counter()
        self._duration_total = 0.0
        self._duration_count = 0

    # Lifecycle

    async def start(self) -> None:
        """Start the periodic queue tick."""
        if self._tick_task is None:
            self._tick_task = asyncio.create_task(self._tick_loop())
            logger.info("Sync orchestrator started")

    async def close(self) -> None:
        """Stop the tick, cancel queued workflows and wait for running ones."""
        if self._tick_task is not None:
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
            self._tick_task = None

        while self._queue:
            self._finish_cancelled_before_start(self._runs[self._queue.popleft()])

        running = [self._runs[wf_id] for wf_id in list(self._running) if wf_id in self._runs]
        for run in running:
            run.token.cancel("orchestrator closing")
        tasks = [run.task for run in running if run.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Sync orchestrator stopped")

    async def _tick_loop(self) -> None:
        while True:
            await self._sleep(self.settings.queue_poll_interval)
            self._process_queue()

    # Submission

    async def submit_workflow(self, workflow: SyncWorkflow) -> str:
        """Validate and enqueue ``workflow``; returns its id."""
        phases = compile_plan(workflow)
        if workflow.workflow_id in self._runs:
            raise WorkflowValidationError(f"Workflow {workflow.workflow_id} already submitted")

        run = _WorkflowRun(workflow=workflow, phases=phases, token=CancellationToken())
        self._runs[workflow.workflow_id] = run
        self._queue.append(workflow.workflow_id)
        self.publisher.emit(
            SyncEventType.WORKFLOW_QUEUED,
            workflow_id=workflow.workflow_id,
            name=workflow.name,
            queue_position=len(self._queue),
        )
        self._process_queue()
        return workflow.workflow_id

    def _process_queue(self) -> None:
        while self._queue and len(self._running) < self.settings.max_concurrent_workflows:
            workflow_id = self._queue.popleft()
            run = self._runs[workflow_id]
            self._running.add(workflow_id)
            run.task = asyncio.create_task(self._run_queued(run))

    async def _run_queued(self, run: _WorkflowRun) -> None:
        try:
            await self._execute(run)
        except Exception as e:
            logger.exception("Workflow %s crashed: %s", run.workflow.workflow_id, e)
        finally:
            self._running.discard(run.workflow.workflow_id)
            self._process_queue()

    async def execute_workflow(
        self, workflow: SyncWorkflow, token: CancellationToken | None = None
    ) -> WorkflowResult:
        """Run ``workflow`` immediately, bypassing the queue."""
        phases = compile_plan(workflow)
        run = _WorkflowRun(workflow=workflow, phases=phases, token=token or CancellationToken())
        self._runs[workflow.workflow_id] = run
        return await self._execute(run)

    # Execution

    async def _execute(self, run: _WorkflowRun) -> WorkflowResult:
        workflow = run.workflow
        with correlation_scope(workflow.workflow_id):
            if run.token.is_cancelled:
                return self._finish(run, WorkflowStatus.CANCELLED, "cancelled before start")

            run.status = WorkflowStatus.RUNNING
            run.started_at = utcnow()
            run.started_clock = self._clock()
            self.publisher.emit(
                SyncEventType.WORKFLOW_STARTED,
                workflow_id=workflow.workflow_id,
                name=workflow.name,
                phases=len(run.phases),
            )
            logger.info(
                "Workflow %s started: %d operations in %d phases",
                workflow.name,
                len(workflow.operations),
                len(run.phases),
            )

            deadline = None if workflow.timeout is None else run.started_clock + workflow.timeout
            try:
                for phase in run.phases:
                    if run.token.is_cancelled:
                        return self._finish(run, WorkflowStatus.CANCELLED, run.token.reason)
                    if deadline is not None and self._clock() > deadline:
                        return self._finish(
                            run, WorkflowStatus.FAILED, f"workflow timed out after {workflow.timeout}s"
                        )
                    run.current_phase = phase.index
                    await self._execute_phase(run, phase)
            except Exception as e:
                logger.error("Workflow %s failed: %s", workflow.name, e)
                return self._finish(run, WorkflowStatus.FAILED, summarize_error(e))

            if run.token.is_cancelled:
                return self._finish(run, WorkflowStatus.CANCELLED, run.token.reason)

            failed = [op_id for op_id, r in run.results.items() if not r.success]
            if failed or run.skipped:
                return self._finish(
                    run,
                    WorkflowStatus.FAILED,
                    f"{len(failed)} operations failed, {len(run.skipped)} skipped",
                )
            return self._finish(run, WorkflowStatus.COMPLETED)

    async def _execute_phase(self, run: _WorkflowRun, phase: ExecutionPhase) -> None:
        workflow = run.workflow
        operations = {op.operation_id: op for op in workflow.operations}
        deps = _dependency_map(workflow)
        blocked = set(run.skipped) | {op_id for op_id, r in run.results.items() if not r.success}

        runnable = []
        for op_id in phase.operation_ids:
            if deps[op_id] & blocked:
                run.skipped.append(op_id)
                logger.warning("Skipping %s: a dependency did not succeed", op_id)
            else:
                runnable.append(operations[op_id])

        max_concurrent = workflow.max_concurrent_operations or self.settings.max_concurrent_operations
        for i in range(0, len(runnable), max_concurrent):
            if run.token.is_cancelled:
                return
            batch = runnable[i : i + max_concurrent]
            async with self.resource_monitor.acquire(workflow.resource_request):
                results = await asyncio.gather(
                    *(self._execute_operation(op, run.token) for op in batch)
                )
            for op, result in zip(batch, results):
                run.results[op.operation_id] = result

    async def _execute_operation(self, operation: SyncOperation, token: CancellationToken) -> SyncResult:
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        started = utcnow()
        try:
            return await self.executor(operation, token)
        except Exception as e:
            logger.error("Operation %s raised: %s", operation.operation_id, e)
            return SyncResult(
                operation_id=operation.operation_id,
                success=False,
                started_at=started,
                finished_at=utcnow(),
                error=summarize_error(e),
            )
        finally:
            self._in_flight -= 1

    def _finish(self, run: _WorkflowRun, status: WorkflowStatus, error: str | None = None) -> WorkflowResult:
        # A cancel request wins over whatever the run ended with.
        if run.status == WorkflowStatus.CANCELLED or run.token.is_cancelled:
            status = WorkflowStatus.CANCELLED
            error = error or run.token.reason

        run.status = status
        finished_at = utcnow()
        run.result = WorkflowResult(
            workflow_id=run.workflow.workflow_id,
            status=status,
            started_at=run.started_at or finished_at,
            finished_at=finished_at,
            phases=run.phases,
            results=dict(run.results),
            skipped=list(run.skipped),
            error=error,
        )
        self._finished[status] += 1
        if run.started_clock is not None:
            self._duration_total += self._clock() - run.started_clock
            self._duration_count += 1

        event_type, severity = {
            WorkflowStatus.COMPLETED: (SyncEventType.WORKFLOW_COMPLETED, EventSeverity.INFO),
            WorkflowStatus.FAILED: (SyncEventType.WORKFLOW_FAILED, EventSeverity.ERROR),
            WorkflowStatus.CANCELLED: (SyncEventType.WORKFLOW_CANCELLED, EventSeverity.WARNING),
        }[status]
        self.publisher.emit(
            event_type,
            severity,
            workflow_id=run.workflow.workflow_id,
            successful=run.result.successful_operations,
            failed=run.result.failed_operations,
            skipped=len(run.skipped),
            error=error,
        )
        logger.info("Workflow %s finished: %s", run.workflow.name, status.value)
        run.done.set()
        self._prune_finished()
        return run.result

    def _prune_finished(self) -> None:
        # Oldest finished runs go first; runs still in flight are never dropped.
        finished = [wf_id for wf_id, run in self._runs.items() if run.done.is_set()]
        excess = len(finished) - self.settings.max_retained_workflows
        for wf_id in finished[: max(excess, 0)]:
            del self._runs[wf_id]
            logger.debug("Released finished workflow %s", wf_id)

    def _finish_cancelled_before_start(self, run: _WorkflowRun) -> None:
        run.token.cancel("cancelled before start")
        run.status = WorkflowStatus.CANCELLED
        self._finish(run, WorkflowStatus.CANCELLED, "cancelled before start")

    # Control and queries

    def cancel_workflow(self, workflow_id: str) -> bool:
        """Request cooperative cancellation; dispatched operations still finish."""
        run = self._runs.get(workflow_id)
        if run is None or run.status.is_terminal:
            return False

        if workflow_id in self._queue:
            self._queue.remove(workflow_id)
            self._finish_cancelled_before_start(run)
            return True

        run.token.cancel("cancelled by request")
        run.status = WorkflowStatus.CANCELLED
        logger.info("Cancellation requested for workflow %s", workflow_id)
        return True

    async def wait_for_workflow(self, workflow_id: str, timeout: float | None = None) -> WorkflowResult:
        run = self._runs.get(workflow_id)
        if run is None:
            raise WorkflowValidationError(f"Unknown workflow {workflow_id}")
        await asyncio.wait_for(run.done.wait(), timeout)
        return run.result

    def get_workflow_status(self, workflow_id: str) -> dict[str, Any] | None:
        run = self._runs.get(workflow_id)
        if run is None:
            return None

        total = len(run.workflow.operations)
        done = len(run.results) + len(run.skipped)
        eta = None
        if run.started_clock is not None and not run.status.is_terminal and run.results:
            elapsed = self._clock() - run.started_clock
            eta = (total - done) * (elapsed / len(run.results))

        return {
            "workflow_id": workflow_id,
            "name": run.workflow.name,
            "status": run.status.value,
            "current_phase": run.current_phase,
            "total_phases": len(run.phases),
            "operations_completed": done,
            "total_operations": total,
            "percentage": (done / total * 100) if total else 0.0,
            "estimated_time_remaining": eta,
            "submitted_at": run.submitted_at.isoformat(),
            "started_at": run.started_at.isoformat() if run.started_at else None,
        }

    def get_metrics(self) -> dict[str, Any]:
        usage = self.resource_monitor.current_usage()
        return {
            "active_workflows": len(self._running),
            "queued_workflows": len(self._queue),
            "completed_workflows": self._finished[WorkflowStatus.COMPLETED],
            "failed_workflows": self._finished[WorkflowStatus.FAILED],
            "cancelled_workflows": self._finished[WorkflowStatus.CANCELLED],
            "average_workflow_time": (
                self._duration_total / self._duration_count if self._duration_count else 0.0
            ),
            "max_in_flight_operations": self.max_in_flight,
            "resource_utilization": {
                "memory_mb": usage.memory_mb,
                "cpu_percent": usage.cpu_percent,
                "connections": usage.connections,
            },
        }

    def list_workflows(self, statuses: Sequence[WorkflowStatus] | None = None) -> list[str]:
        return [
            wf_id
            for wf_id, run in self._runs.items()
            if statuses is None or run.status in statuses
        ]
