"""
Sync service: executes one SyncOperation end to end.

For every (chunk, scope) pair of an operation the service fetches batches
through a per-endpoint circuit breaker wrapping the retry executor, validates
and transforms each record, resolves conflicts across the chunk, and upserts
the survivors inside a chunk transaction through a store breaker of their own.
A rejected upsert fails one record; a store error aborts the chunk. A
committed chunk is checkpointed; a chunk that fails beyond recovery is rolled
back and dead-lettered while the remaining chunks carry on.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .config import (
    SyncSettings,
    resolve_chunking,
    resolve_circuit_breaker,
    resolve_correction_window,
    resolve_retry,
)
from .data.checkpoints import CheckpointStore, InMemoryCheckpointStore, checkpoint_key
from .data.transactions import TransactionManager
from .errors import (
    PersistenceError,
    SyncCancelledError,
    SyncError,
    classify_error,
    summarize_error,
)
from .ingestion.chunking import chunk_date_range
from .ingestion.conflicts import ConflictResolver
from .ingestion.fetcher import Batch, BatchFetcher
from .ingestion.validation import RecordTransformer
from .interfaces import (
    DeletablePersistenceTarget,
    FetchResponse,
    PersistenceTarget,
    UpsertResult,
    UpstreamSource,
)
from .logging import correlation_scope
from .messaging.dlq import DeadLetterQueue
from .models import (
    CompensationRecord,
    DateRange,
    SyncOperation,
    SyncOperationKind,
    SyncResult,
    utcnow,
)
from .observability.events import EventPublisher, EventSeverity, SyncEventType
from .observability.metrics import SyncMetrics
from .observability.progress import ProgressChannel, ProgressTracker
from .resilience.circuit_breaker import CircuitBreakerRegistry, CircuitState
from .resilience.retry import RetryExecutor, RetryOutcome
from .workflow.cancellation import CancellationToken
from .workflow.engine import SyncOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class SyncPipeline:
    """Upstream source plus record handling for one operation kind."""

    source: UpstreamSource
    transformer: RecordTransformer
    conflict_resolver: ConflictResolver | None = None

    def __post_init__(self):
        if self.conflict_resolver is None:
            self.conflict_resolver = ConflictResolver(key_fields=self.transformer.key_fields)


@dataclass
class _RunState:
    """Counters shared by all chunks of one operation run."""

    operation: SyncOperation
    pipeline: SyncPipeline
    token: CancellationToken
    dead_letter: bool
    checkpoints: set[str]
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    retries: int = 0
    conflicts: int = 0
    manual_review: int = 0
    chunks_completed: int = 0
    chunks_skipped: int = 0
    chunk_errors: list[str] = field(default_factory=list)
    dead_letter_ids: list[str] = field(default_factory=list)
    compensations: list[CompensationRecord] = field(default_factory=list)
    cancelled: str | None = None


@dataclass
class _ChunkCounts:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    fetch_errors: int = 0


def endpoint_name(kind: SyncOperationKind, scope: str | None) -> str:
    return f"{kind.value}:{scope or 'all'}"


def store_endpoint_name(kind: SyncOperationKind) -> str:
    return f"store:{kind.value}"


class SyncService:
    """Runs sync operations against an injected upstream and store."""

    def __init__(
        self,
        store: PersistenceTarget,
        settings: SyncSettings | None = None,
        pipelines: dict[SyncOperationKind, SyncPipeline] | None = None,
        dlq: DeadLetterQueue | None = None,
        progress: ProgressTracker | None = None,
        events: EventPublisher | None = None,
        metrics: SyncMetrics | None = None,
        transaction_manager: TransactionManager | None = None,
        checkpoint_store: CheckpointStore | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.settings = settings or SyncSettings()
        self.events = events or EventPublisher()
        self.metrics = metrics or SyncMetrics(
            publisher=self.events,
            thresholds=self.settings.monitoring.alert_thresholds,
            enable_alerting=self.settings.monitoring.enable_alerting,
        )
        self.dlq = dlq or DeadLetterQueue(
            self.settings.dead_letter, publisher=self.events, metrics=self.metrics, clock=clock
        )
        self.progress = progress or ProgressTracker(
            ProgressChannel(self.settings.monitoring.progress_queue_size), clock=clock
        )
        self.transactions = transaction_manager or TransactionManager(clock=clock)
        self.checkpoints = checkpoint_store or InMemoryCheckpointStore()
        self.breakers = breakers or CircuitBreakerRegistry(
            clock=clock, on_state_change=self._on_circuit_change
        )
        self._track_progress = self.settings.monitoring.enable_progress_tracking
        self._sleep = sleep
        self._pipelines: dict[SyncOperationKind, SyncPipeline] = dict(pipelines or {})
        self._history: dict[str, list[SyncResult]] = {}
        self._orchestrators: list[SyncOrchestrator] = []
        self._closed = False

    # Setup and lifecycle

    def register_pipeline(self, kind: SyncOperationKind, pipeline: SyncPipeline) -> None:
        self._pipelines[kind] = pipeline
        logger.debug("Registered pipeline for %s", kind.value)

    def create_orchestrator(self, **kwargs: Any) -> SyncOrchestrator:
        """Build an orchestrator that executes operations through this service."""
        orchestrator = SyncOrchestrator(
            executor=self.execute,
            settings=kwargs.pop("settings", self.settings.orchestrator),
            publisher=kwargs.pop("publisher", self.events),
            sleep=kwargs.pop("sleep", self._sleep),
            **kwargs,
        )
        self._orchestrators.append(orchestrator)
        return orchestrator

    async def close(self) -> None:
        """Stop owned orchestrators and drop expired dead-letter entries."""
        if self._closed:
            return
        for orchestrator in self._orchestrators:
            await orchestrator.close()
        self._orchestrators.clear()
        self._closed = True
        await self.dlq.purge_expired()
        logger.info("Sync service closed")

    async def __aenter__(self) -> "SyncService":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # Public operations

    async def execute(
        self, operation: SyncOperation, token: CancellationToken | None = None
    ) -> SyncResult:
        """Run ``operation``; checkpointed chunks of the same operation are skipped."""
        return await self._run(operation, token or CancellationToken(), dead_letter=True)

    async def resume(
        self, operation: SyncOperation, token: CancellationToken | None = None
    ) -> SyncResult:
        """Re-run an interrupted operation, skipping its committed chunks."""
        done = await self.checkpoints.load(operation.operation_id)
        logger.info("Resuming %s with %d committed chunks", operation.operation_id, len(done))
        return await self.execute(operation, token)

    async def replay_dead_letter(self, entry_id: str) -> SyncResult:
        # Replays never re-enqueue; a failed replay only bumps the entry's retry count.
        return await self.dlq.replay(
            entry_id, lambda op: self._run(op, CancellationToken(), dead_letter=False)
        )

    def get_history(self, operation_id: str) -> list[SyncResult]:
        return list(self._history.get(operation_id, []))

    # Execution

    async def _run(
        self, operation: SyncOperation, token: CancellationToken, dead_letter: bool
    ) -> SyncResult:
        if self._closed:
            raise SyncError("Sync service is closed")

        started_at = utcnow()
        with correlation_scope(operation.operation_id):
            pipeline = self._pipelines.get(operation.kind)
            if pipeline is None:
                logger.error("No pipeline registered for %s", operation.kind.value)
                result = SyncResult(
                    operation_id=operation.operation_id,
                    success=False,
                    started_at=started_at,
                    finished_at=utcnow(),
                    error=f"fatal: no pipeline registered for {operation.kind.value}",
                )
                self._record_history(result)
                return result

            self.metrics.operation_started()
            self.events.emit(
                SyncEventType.OPERATION_STARTED,
                operation_id=operation.operation_id,
                kind=operation.kind.value,
                date_range=str(operation.date_range),
                scope=list(operation.scope),
            )

            try:
                state = await self._process(operation, pipeline, token, dead_letter)
            except Exception as e:
                # Setup failures such as invalid per-operation options.
                logger.error("Operation %s failed before processing: %s", operation.operation_id, e)
                result = SyncResult(
                    operation_id=operation.operation_id,
                    success=False,
                    started_at=started_at,
                    finished_at=utcnow(),
                    error=summarize_error(e),
                )
            else:
                result = self._build_result(state, started_at)

            await self._finish(operation, result)
            return result

    async def _process(
        self,
        operation: SyncOperation,
        pipeline: SyncPipeline,
        token: CancellationToken,
        dead_letter: bool,
    ) -> _RunState:
        options = operation.options
        chunking = resolve_chunking(self.settings, options)
        chunks = chunk_date_range(operation.date_range.start, operation.date_range.end, chunking.chunk_days)
        scopes: tuple[str | None, ...] = operation.scope or (None,)

        state = _RunState(
            operation=operation,
            pipeline=pipeline,
            token=token,
            dead_letter=dead_letter,
            checkpoints=set(await self.checkpoints.load(operation.operation_id)),
        )
        units = [(chunk, scope) for chunk in chunks for scope in scopes]
        logger.info(
            "Starting %s %s over %s: %d chunks x %d scopes",
            operation.kind.value,
            operation.operation_id,
            operation.date_range,
            len(chunks),
            len(scopes),
        )

        if self._track_progress:
            await self.progress.start(
                operation.operation_id, total=options.expected_record_count or 0, step="fetching"
            )

        if options.max_parallel_chunks <= 1:
            for chunk, scope in units:
                if not await self._process_unit(state, chunk, scope, chunking.batch_size):
                    break
        else:
            semaphore = asyncio.Semaphore(options.max_parallel_chunks)

            async def bounded(chunk: DateRange, scope: str | None) -> None:
                async with semaphore:
                    await self._process_unit(state, chunk, scope, chunking.batch_size)

            await asyncio.gather(*(bounded(chunk, scope) for chunk, scope in units))

        return state

    async def _process_unit(
        self, state: _RunState, chunk: DateRange, scope: str | None, batch_size: int
    ) -> bool:
        """Process one (chunk, scope) pair; returns False once cancelled."""
        operation = state.operation
        try:
            state.token.raise_if_cancelled()
        except SyncCancelledError as e:
            if state.cancelled is None:
                state.cancelled = str(e)
                logger.warning("Operation %s cancelled: %s", operation.operation_id, e)
            return False

        if checkpoint_key(chunk, scope) in state.checkpoints:
            state.chunks_skipped += 1
            logger.debug("Skipping checkpointed chunk %s scope=%s", chunk, scope or "all")
            return True

        endpoint = endpoint_name(operation.kind, scope)
        counts = _ChunkCounts()
        breaker = self.breakers.get(endpoint, resolve_circuit_breaker(self.settings, operation.options))

        def on_retry(attempt: int, error: BaseException) -> None:
            state.retries += 1
            counts.fetch_errors += 1
            self.metrics.record_retry(endpoint)

        retry = RetryExecutor(
            resolve_retry(self.settings, operation.options), sleep=self._sleep, on_retry=on_retry
        )

        async def guard(fetch: Callable[[], Awaitable[FetchResponse]]) -> RetryOutcome[FetchResponse]:
            accumulated = counts.fetch_errors
            return await breaker.call(lambda: retry.execute(fetch, accumulated_errors=accumulated))

        fetcher = BatchFetcher(state.pipeline.source, batch_size, guard=guard, sleep=self._sleep)
        txn = self.transactions.begin()

        try:
            records = []
            async for batch in fetcher.iter_batches(chunk, scope):
                records.extend(self._transform_batch(state, batch, counts))
                await self._publish_batch(state, batch)

            await self._write_chunk(state, txn.transaction_id, records, counts)
            await self.transactions.commit(txn.transaction_id)
        except Exception as e:
            await self._fail_chunk(state, chunk, scope, txn.transaction_id, counts, e)
            return True

        await self.checkpoints.mark_complete(operation.operation_id, chunk, scope, counts.successful)
        state.checkpoints.add(checkpoint_key(chunk, scope))
        state.chunks_completed += 1
        self._merge_counts(state, counts)
        logger.info(
            "Chunk %s scope=%s committed: %d processed, %d written, %d failed, %d skipped",
            chunk,
            scope or "all",
            counts.processed,
            counts.successful,
            counts.failed,
            counts.skipped,
        )
        return True

    def _transform_batch(self, state: _RunState, batch: Batch, counts: _ChunkCounts) -> list[Any]:
        correction_window = resolve_correction_window(self.settings, state.operation.options)
        window_days = self.settings.correction_window.days
        valid = []
        for fetched in batch.records:
            counts.processed += 1
            outcome = state.pipeline.transformer.transform(
                fetched, correction_window=correction_window, correction_window_days=window_days
            )
            if outcome.valid:
                valid.append(outcome.record)
            else:
                counts.failed += 1
                logger.debug(
                    "Rejected record in batch %d: %s", batch.sequence, "; ".join(outcome.reasons)
                )
        return valid

    async def _publish_batch(self, state: _RunState, batch: Batch) -> None:
        operation_id = state.operation.operation_id
        if self._track_progress:
            await self.progress.update(
                operation_id,
                advance=len(batch),
                step=f"batch {batch.sequence} of {batch.metadata.chunk} scope={batch.metadata.scope or 'all'}",
            )
        self.events.emit(
            SyncEventType.BATCH_PROCESSED,
            EventSeverity.DEBUG,
            operation_id=operation_id,
            batch_sequence=batch.sequence,
            chunk=str(batch.metadata.chunk),
            scope=batch.metadata.scope,
            records=len(batch),
            retries=batch.retries,
        )

    async def _write_chunk(
        self, state: _RunState, transaction_id: str, records: list[Any], counts: _ChunkCounts
    ) -> None:
        pipeline = state.pipeline
        resolver = pipeline.conflict_resolver
        resolution = resolver.resolve_batch(records)

        state.conflicts += len(resolution.conflicts)
        state.manual_review += len(resolution.review_required)
        counts.skipped += resolution.blocked_count
        # Losing duplicates were superseded rather than written.
        counts.skipped += sum(
            len(c.conflict.records) - 1 for c in resolution.conflicts if not c.manual_review_required
        )

        operation = state.operation
        endpoint = store_endpoint_name(operation.kind)
        breaker = self.breakers.get(endpoint, resolve_circuit_breaker(self.settings, operation.options))

        def on_retry(attempt: int, error: BaseException) -> None:
            state.retries += 1
            self.metrics.record_retry(endpoint)

        retry = RetryExecutor(
            resolve_retry(self.settings, operation.options), sleep=self._sleep, on_retry=on_retry
        )

        async def upsert(row: dict[str, Any], key: tuple[Any, ...]) -> UpsertResult:
            outcome = await breaker.call(lambda: retry.execute(lambda: self.store.upsert(row, key)))
            result = UpsertResult.coerce(outcome.value)
            if not result.success:
                raise PersistenceError(result.error or "upsert rejected")
            return result

        deletable = isinstance(self.store, DeletablePersistenceTarget)
        for record in resolution.records:
            key = resolver.key_of(record)
            row = pipeline.transformer.to_row(record)
            compensation = (lambda k=key: self.store.delete(k)) if deletable else None
            try:
                await self.transactions.execute_in_transaction(
                    transaction_id,
                    lambda r=row, k=key: upsert(r, k),
                    compensation=compensation,
                    name=f"upsert:{key}",
                )
            except PersistenceError as e:
                # Only a rejected reply fails the record; anything the store raises aborts the chunk.
                counts.failed += 1
                logger.warning("Write failed for %s: %s", key, summarize_error(e))
            else:
                counts.successful += 1

    async def _fail_chunk(
        self,
        state: _RunState,
        chunk: DateRange,
        scope: str | None,
        transaction_id: str,
        counts: _ChunkCounts,
        error: Exception,
    ) -> None:
        operation = state.operation
        summary = summarize_error(error)
        category = classify_error(error)
        logger.error("Chunk %s scope=%s failed: %s", chunk, scope or "all", summary)

        state.compensations.extend(await self.transactions.rollback(transaction_id))
        state.chunk_errors.append(summary)
        # Rolled back writes no longer count as successful.
        counts.failed += counts.successful
        counts.successful = 0
        self._merge_counts(state, counts)

        self.events.emit(
            SyncEventType.CHUNK_FAILED,
            EventSeverity.ERROR,
            operation_id=operation.operation_id,
            chunk=str(chunk),
            scope=scope,
            category=category.value,
            error=summary,
        )

        if state.dead_letter:
            entry = await self.dlq.enqueue(
                operation,
                chunk,
                scope,
                error=summary,
                error_type=type(error).__name__,
                payload={"records_processed": counts.processed, "category": category.value},
            )
            state.dead_letter_ids.append(entry.entry_id)

    @staticmethod
    def _merge_counts(state: _RunState, counts: _ChunkCounts) -> None:
        state.processed += counts.processed
        state.successful += counts.successful
        state.failed += counts.failed
        state.skipped += counts.skipped

    def _build_result(self, state: _RunState, started_at: datetime) -> SyncResult:
        error = None
        if state.chunk_errors:
            error = f"{len(state.chunk_errors)} chunk(s) failed; first: {state.chunk_errors[0]}"
        if state.cancelled:
            error = f"cancelled: {state.cancelled}" + (f"; {error}" if error else "")

        return SyncResult(
            operation_id=state.operation.operation_id,
            success=not state.chunk_errors and state.cancelled is None,
            started_at=started_at,
            finished_at=utcnow(),
            records_processed=state.processed,
            records_successful=state.successful,
            records_failed=state.failed,
            records_skipped=state.skipped,
            retry_attempts=state.retries,
            dead_lettered=bool(state.dead_letter_ids),
            compensations=list(state.compensations),
            metadata={
                "kind": state.operation.kind.value,
                "chunks_completed": state.chunks_completed,
                "chunks_skipped": state.chunks_skipped,
                "chunks_failed": len(state.chunk_errors),
                "conflicts": state.conflicts,
                "manual_review": state.manual_review,
                "dead_letter_ids": list(state.dead_letter_ids),
                "cancelled": state.cancelled is not None,
                "replay_of": state.operation.options.metadata.get("replay_of"),
            },
            error=error,
        )

    async def _finish(self, operation: SyncOperation, result: SyncResult) -> None:
        self.metrics.record_operation(operation.kind, result)
        if self._track_progress:
            await self.progress.complete(
                operation.operation_id, step="completed" if result.success else "failed"
            )
        if result.success:
            self.events.emit(
                SyncEventType.OPERATION_COMPLETED,
                operation_id=operation.operation_id,
                records_processed=result.records_processed,
                records_successful=result.records_successful,
                retry_attempts=result.retry_attempts,
                execution_time=result.execution_time,
            )
        else:
            self.events.emit(
                SyncEventType.OPERATION_FAILED,
                EventSeverity.ERROR,
                operation_id=operation.operation_id,
                error=result.error,
                dead_lettered=result.dead_lettered,
            )
        logger.info(
            "Operation %s finished: success=%s processed=%d failed=%d retries=%d",
            operation.operation_id,
            result.success,
            result.records_processed,
            result.records_failed,
            result.retry_attempts,
        )
        self._record_history(result)

    def _record_history(self, result: SyncResult) -> None:
        self._history.setdefault(result.operation_id, []).append(result)

    # Breaker callbacks

    def _on_circuit_change(self, endpoint: str, old: CircuitState, new: CircuitState) -> None:
        self.metrics.set_circuit_state(endpoint, new)
        self.events.emit(
            SyncEventType.CIRCUIT_STATE_CHANGED,
            EventSeverity.WARNING if new == CircuitState.OPEN else EventSeverity.INFO,
            endpoint=endpoint,
            old_state=old.value,
            new_state=new.value,
        )
