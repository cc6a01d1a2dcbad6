"""
Paginated batch fetching from the upstream source.

The fetcher walks one chunk for one scope page by page, tagging every record
with the metadata of the batch it arrived in.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..errors import UpstreamError
from ..interfaces import FetchResponse, UpstreamSource
from ..models import DateRange, utcnow
from ..resilience.retry import RetryOutcome

logger = logging.getLogger(__name__)

# A guard runs one remote call under breaker and retry protection.
Guard = Callable[[Callable[[], Awaitable[FetchResponse]]], Awaitable[RetryOutcome[FetchResponse]]]


async def unguarded(func: Callable[[], Awaitable[FetchResponse]]) -> RetryOutcome[FetchResponse]:
    """Guard that makes the call exactly once."""
    return RetryOutcome(value=await func())


@dataclass(frozen=True)
class BatchMetadata:
    sequence: int
    chunk: DateRange
    scope: str | None
    offset: int
    fetched_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict[str, Any]:
        return {
            "batch_sequence": self.sequence,
            "chunk_start": self.chunk.start.isoformat(),
            "chunk_end": self.chunk.end.isoformat(),
            "scope": self.scope,
            "offset": self.offset,
            "fetched_at": self.fetched_at.isoformat(),
        }


@dataclass(frozen=True)
class FetchedRecord:
    payload: dict[str, Any]
    batch: BatchMetadata


@dataclass
class Batch:
    """One page of upstream records."""

    metadata: BatchMetadata
    records: list[FetchedRecord]
    retries: int = 0

    @property
    def sequence(self) -> int:
        return self.metadata.sequence

    def __len__(self) -> int:
        return len(self.records)


def _has_more(pagination: dict[str, Any] | None) -> bool:
    if not pagination:
        return True
    has_more = pagination.get("has_more", pagination.get("hasMore"))
    return True if has_more is None else bool(has_more)


class BatchFetcher:
    """Fetches one chunk of one scope as a sequence of batches."""

    def __init__(
        self,
        source: UpstreamSource,
        batch_size: int,
        guard: Guard = unguarded,
        page_delay: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.source = source
        self.batch_size = batch_size
        self.guard = guard
        self.page_delay = page_delay
        self._sleep = sleep

    async def _fetch_page(self, chunk: DateRange, scope: str | None, offset: int) -> FetchResponse:
        raw = await self.source.fetch_records(
            chunk.start, chunk.end, scope, limit=self.batch_size, offset=offset
        )
        response = FetchResponse.coerce(raw)
        if not response.success:
            raise UpstreamError(response.error or "Upstream fetch failed", status=response.status)
        return response

    async def iter_batches(self, chunk: DateRange, scope: str | None) -> AsyncIterator[Batch]:
        """Yield batches for ``chunk`` and ``scope`` until the source is drained."""
        offset = 0
        sequence = 0

        while True:
            page_offset = offset
            outcome = await self.guard(lambda: self._fetch_page(chunk, scope, page_offset))
            response = outcome.value
            if not response.data:
                break

            sequence += 1
            metadata = BatchMetadata(sequence=sequence, chunk=chunk, scope=scope, offset=offset)
            batch = Batch(
                metadata=metadata,
                records=[FetchedRecord(payload=dict(item), batch=metadata) for item in response.data],
                retries=outcome.retries,
            )
            logger.debug(
                "Fetched batch %d for %s scope=%s (%d records)",
                sequence,
                chunk,
                scope or "all",
                len(batch),
            )
            yield batch

            if len(response.data) < self.batch_size or not _has_more(response.pagination):
                break

            offset += self.batch_size
            if self.page_delay > 0:
                await self._sleep(self.page_delay)
