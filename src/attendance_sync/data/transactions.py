"""
Logical transactions and sagas.

A transaction groups units of work that each register a compensating action;
rolling back runs the registered compensations in reverse order. A saga is an
ordered list of steps with per-step compensation and a wall-clock deadline
checked at every step boundary.
"""

import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from ..errors import (
    SagaError,
    SagaTimeoutError,
    TransactionNotFoundError,
    TransactionTimeoutError,
)
from ..models import CompensationRecord, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

Compensation = Callable[[], Awaitable[Any]]


class IsolationLevel(Enum):
    READ_COMMITTED = "read_committed"
    REPEATABLE_READ = "repeatable_read"
    SERIALIZABLE = "serializable"


class TransactionStatus(Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class OperationStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TransactionOperation:
    name: str
    status: OperationStatus
    started_at: datetime
    finished_at: datetime
    error: str | None = None


@dataclass
class TransactionContext:
    transaction_id: str
    isolation: IsolationLevel
    timeout: float
    deadline: float
    started_at: datetime = field(default_factory=utcnow)
    operations: list[TransactionOperation] = field(default_factory=list)
    compensations: list[tuple[str, Compensation]] = field(default_factory=list)
    status: TransactionStatus = TransactionStatus.ACTIVE


class SagaStatus(Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"


class StepStatus(Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"


@dataclass
class SagaStepDefinition:
    name: str
    action: Callable[[], Awaitable[Any]]
    compensation: Compensation | None = None


@dataclass
class SagaStepState:
    name: str
    status: StepStatus = StepStatus.PENDING
    error: str | None = None


@dataclass
class SagaContext:
    saga_id: str
    definitions: list[SagaStepDefinition]
    steps: list[SagaStepState]
    timeout: float
    deadline: float
    status: SagaStatus = SagaStatus.PENDING
    results: dict[str, Any] = field(default_factory=dict)


@dataclass
class SagaResult:
    saga_id: str
    status: SagaStatus
    error: str | None = None
    completed_steps: list[str] = field(default_factory=list)
    compensations: list[CompensationRecord] = field(default_factory=list)
    steps: list[SagaStepState] = field(default_factory=list)
    results: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == SagaStatus.COMPLETED


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class TransactionManager:
    """Coordinates logical transactions and sagas for one service instance."""

    def __init__(self, default_timeout: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.default_timeout = default_timeout
        self._clock = clock
        self._transactions: dict[str, TransactionContext] = {}
        self._sagas: dict[str, SagaContext] = {}

    # Transactions

    def begin(
        self,
        isolation: IsolationLevel = IsolationLevel.READ_COMMITTED,
        timeout: float | None = None,
    ) -> TransactionContext:
        timeout = self.default_timeout if timeout is None else timeout
        context = TransactionContext(
            transaction_id=f"txn-{uuid.uuid4().hex[:12]}",
            isolation=isolation,
            timeout=timeout,
            deadline=self._clock() + timeout,
        )
        self._transactions[context.transaction_id] = context
        logger.debug("Began transaction %s (%s)", context.transaction_id, isolation.value)
        return context

    def get(self, transaction_id: str) -> TransactionContext:
        context = self._transactions.get(transaction_id)
        if context is None:
            raise TransactionNotFoundError(f"No active transaction {transaction_id}")
        return context

    @property
    def active_transactions(self) -> int:
        return len(self._transactions)

    @property
    def active_sagas(self) -> int:
        return len(self._sagas)

    async def execute_in_transaction(
        self,
        transaction_id: str,
        work: Callable[[], Awaitable[T]],
        compensation: Compensation | None = None,
        name: str | None = None,
    ) -> T:
        """Run ``work`` inside the transaction, registering ``compensation`` on success."""
        context = self.get(transaction_id)
        op_name = name or getattr(work, "__name__", "operation")

        if self._clock() > context.deadline:
            raise TransactionTimeoutError(
                f"Transaction {transaction_id} exceeded its {context.timeout}s timeout"
            )

        started = utcnow()
        try:
            result = await work()
        except Exception as e:
            context.operations.append(
                TransactionOperation(op_name, OperationStatus.FAILED, started, utcnow(), _describe(e))
            )
            raise

        context.operations.append(
            TransactionOperation(op_name, OperationStatus.COMPLETED, started, utcnow())
        )
        if compensation is not None:
            context.compensations.append((op_name, compensation))
        return result

    async def commit(self, transaction_id: str) -> TransactionContext:
        context = self._transactions.pop(transaction_id, None)
        if context is None:
            raise TransactionNotFoundError(f"No active transaction {transaction_id}")
        context.status = TransactionStatus.COMMITTED
        context.compensations.clear()
        logger.debug(
            "Committed transaction %s (%d operations)", transaction_id, len(context.operations)
        )
        return context

    async def rollback(self, transaction_id: str) -> list[CompensationRecord]:
        """Run registered compensations newest first and discard the transaction."""
        context = self._transactions.pop(transaction_id, None)
        if context is None:
            raise TransactionNotFoundError(f"No active transaction {transaction_id}")

        records = await self._run_compensations(list(reversed(context.compensations)))
        context.status = TransactionStatus.ROLLED_BACK
        logger.info(
            "Rolled back transaction %s (%d compensations, %d failed)",
            transaction_id,
            len(records),
            sum(1 for r in records if not r.success),
        )
        return records

    @asynccontextmanager
    async def transaction(
        self,
        isolation: IsolationLevel = IsolationLevel.READ_COMMITTED,
        timeout: float | None = None,
    ) -> AsyncIterator[TransactionContext]:
        """Commit on normal exit, roll back when the block raises."""
        context = self.begin(isolation, timeout)
        try:
            yield context
        except BaseException:
            await self.rollback(context.transaction_id)
            raise
        await self.commit(context.transaction_id)

    async def _run_compensations(
        self, compensations: Sequence[tuple[str, Compensation]]
    ) -> list[CompensationRecord]:
        records = []
        for step_name, compensation in compensations:
            try:
                await compensation()
                records.append(CompensationRecord(step_name=step_name))
            except Exception as e:
                logger.error("Compensation for %s failed: %s", step_name, _describe(e))
                records.append(CompensationRecord(step_name=step_name, success=False, error=_describe(e)))
        return records

    # Sagas

    def begin_saga(self, steps: Sequence[SagaStepDefinition], timeout: float | None = None) -> SagaContext:
        if not steps:
            raise SagaError("A saga needs at least one step")
        timeout = self.default_timeout if timeout is None else timeout
        saga = SagaContext(
            saga_id=f"saga-{uuid.uuid4().hex[:12]}",
            definitions=list(steps),
            steps=[SagaStepState(step.name) for step in steps],
            timeout=timeout,
            deadline=self._clock() + timeout,
        )
        self._sagas[saga.saga_id] = saga
        return saga

    def get_saga(self, saga_id: str) -> SagaContext:
        saga = self._sagas.get(saga_id)
        if saga is None:
            raise SagaError(f"Unknown saga {saga_id}")
        return saga

    async def run_saga(self, saga_id: str) -> SagaResult:
        """Execute the saga's steps in order, compensating on failure or timeout.

        A finished saga is dropped from the manager; its step states and
        results travel on the returned :class:`SagaResult`.
        """
        saga = self.get_saga(saga_id)
        try:
            return await self._run_saga_steps(saga)
        finally:
            self._sagas.pop(saga_id, None)

    async def _run_saga_steps(self, saga: SagaContext) -> SagaResult:
        saga_id = saga.saga_id
        saga.status = SagaStatus.EXECUTING
        completed: list[int] = []

        for index, (definition, state) in enumerate(zip(saga.definitions, saga.steps)):
            try:
                if self._clock() > saga.deadline:
                    raise SagaTimeoutError(
                        f"Saga {saga_id} exceeded its {saga.timeout}s timeout before step {definition.name}"
                    )
                state.status = StepStatus.EXECUTING
                saga.results[definition.name] = await definition.action()
                state.status = StepStatus.COMPLETED
                completed.append(index)
            except Exception as e:
                if state.status == StepStatus.EXECUTING:
                    state.status = StepStatus.FAILED
                    state.error = _describe(e)
                logger.warning("Saga %s failed at step %s: %s", saga_id, definition.name, _describe(e))
                return await self._compensate_saga(saga, completed, e)

        saga.status = SagaStatus.COMPLETED
        logger.info("Saga completed successfully: %s", saga_id)
        return SagaResult(
            saga_id=saga_id,
            status=saga.status,
            completed_steps=[saga.steps[i].name for i in completed],
            steps=saga.steps,
            results=saga.results,
        )

    async def execute_saga(
        self, steps: Sequence[SagaStepDefinition], timeout: float | None = None
    ) -> SagaResult:
        return await self.run_saga(self.begin_saga(steps, timeout).saga_id)

    async def _compensate_saga(
        self, saga: SagaContext, completed: list[int], error: Exception
    ) -> SagaResult:
        saga.status = SagaStatus.COMPENSATING

        pending = [
            (saga.definitions[i].name, saga.definitions[i].compensation)
            for i in reversed(completed)
            if saga.definitions[i].compensation is not None
        ]
        records = await self._run_compensations(pending)

        succeeded = {r.step_name for r in records if r.success}
        for i in completed:
            step = saga.steps[i]
            if saga.definitions[i].compensation is None or step.name in succeeded:
                step.status = StepStatus.COMPENSATED

        if all(r.success for r in records):
            saga.status = SagaStatus.COMPENSATED
        else:
            saga.status = SagaStatus.FAILED

        logger.info("Saga compensation completed: %s (state: %s)", saga.saga_id, saga.status.value)
        return SagaResult(
            saga_id=saga.saga_id,
            status=saga.status,
            error=_describe(error),
            completed_steps=[saga.steps[i].name for i in completed],
            compensations=records,
            steps=saga.steps,
            results=saga.results,
        )
