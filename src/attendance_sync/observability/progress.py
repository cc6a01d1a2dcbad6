"""
Progress tracking for running sync operations.

Updates are published on a :class:`ProgressChannel`. Each subscriber owns a
bounded queue and ``publish`` waits for space, so a slow subscriber applies
backpressure instead of losing updates. Delivery is at-least-once per
subscriber and preserves publish order for a given operation.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime

from ..models import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressUpdate:
    operation_id: str
    percentage: float
    step: str
    processed: int
    total: int
    throughput: float
    estimated_time_remaining: float | None
    timestamp: datetime = field(default_factory=utcnow)


ProgressListener = Callable[[ProgressUpdate], None | Awaitable[None]]


class ProgressSubscription:
    """A subscriber's bounded view of the channel."""

    def __init__(self, channel: "ProgressChannel", maxsize: int):
        self._channel = channel
        self.queue: asyncio.Queue[ProgressUpdate] = asyncio.Queue(maxsize=maxsize)

    async def get(self) -> ProgressUpdate:
        return await self.queue.get()

    def get_nowait(self) -> ProgressUpdate:
        return self.queue.get_nowait()

    def drain(self) -> list[ProgressUpdate]:
        updates = []
        while not self.queue.empty():
            updates.append(self.queue.get_nowait())
        return updates

    def close(self) -> None:
        self._channel.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[ProgressUpdate]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProgressUpdate]:
        while True:
            yield await self.queue.get()


class ProgressChannel:
    """Fan-out of progress updates to bounded subscriber queues and callbacks."""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscriptions: list[ProgressSubscription] = []
        self._listeners: list[ProgressListener] = []

    def subscribe(self) -> ProgressSubscription:
        subscription = ProgressSubscription(self, self.max_queue_size)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: ProgressSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def add_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ProgressListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, update: ProgressUpdate) -> None:
        for subscription in list(self._subscriptions):
            await subscription.queue.put(update)

        for listener in list(self._listeners):
            try:
                result = listener(update)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Progress listener failed for %s: %s", update.operation_id, e)


@dataclass
class _OperationProgress:
    total: int
    processed: int
    step: str
    started: float


class ProgressTracker:
    """Tracks processed/total counts for active operations."""

    def __init__(
        self,
        channel: ProgressChannel | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.channel = channel or ProgressChannel()
        self._clock = clock
        self._active: dict[str, _OperationProgress] = {}
        self._lock = asyncio.Lock()

    def _snapshot(self, operation_id: str, state: _OperationProgress, force_complete: bool = False) -> ProgressUpdate:
        if force_complete:
            percentage = 100.0
        elif state.total <= 0:
            percentage = 0.0
        else:
            percentage = min(100.0, max(0.0, state.processed / state.total * 100))

        elapsed = self._clock() - state.started
        throughput = state.processed / elapsed if elapsed > 0 else 0.0
        remaining = max(0, state.total - state.processed)
        eta = remaining / throughput if throughput > 0 else None
        if force_complete:
            eta = 0.0

        return ProgressUpdate(
            operation_id=operation_id,
            percentage=percentage,
            step=state.step,
            processed=state.processed,
            total=state.total,
            throughput=throughput,
            estimated_time_remaining=eta,
        )

    async def start(self, operation_id: str, total: int = 0, step: str = "starting") -> ProgressUpdate:
        async with self._lock:
            state = _OperationProgress(total=max(0, total), processed=0, step=step, started=self._clock())
            self._active[operation_id] = state
            update = self._snapshot(operation_id, state)
        await self.channel.publish(update)
        return update

    async def update(
        self,
        operation_id: str,
        *,
        processed: int | None = None,
        advance: int = 0,
        step: str | None = None,
    ) -> ProgressUpdate | None:
        """Set or advance the processed count; unknown operations are ignored."""
        async with self._lock:
            state = self._active.get(operation_id)
            if state is None:
                return None
            if processed is not None:
                state.processed = processed
            state.processed += advance
            if step is not None:
                state.step = step
            update = self._snapshot(operation_id, state)
        await self.channel.publish(update)
        return update

    async def add_to_total(self, operation_id: str, count: int) -> None:
        async with self._lock:
            state = self._active.get(operation_id)
            if state is not None:
                state.total += count

    async def complete(self, operation_id: str, step: str = "completed") -> ProgressUpdate | None:
        async with self._lock:
            state = self._active.pop(operation_id, None)
            if state is None:
                return None
            state.step = step
            update = self._snapshot(operation_id, state, force_complete=True)
        await self.channel.publish(update)
        return update

    async def get_progress(self, operation_id: str) -> ProgressUpdate | None:
        async with self._lock:
            state = self._active.get(operation_id)
            return self._snapshot(operation_id, state) if state else None

    async def active_operations(self) -> list[str]:
        async with self._lock:
            return list(self._active)
