"""
Batch fetcher pagination tests.
"""

from datetime import date

import pytest

from attendance_sync.errors import UpstreamError
from attendance_sync.ingestion import BatchFetcher
from attendance_sync.models import DateRange
from attendance_sync.resilience import RetryOutcome

from conftest import InMemoryUpstream, daily_payloads

CHUNK = DateRange(date(2024, 1, 1), date(2024, 1, 30))


async def collect(fetcher, chunk=CHUNK, scope=None):
    return [batch async for batch in fetcher.iter_batches(chunk, scope)]


class TestPagination:
    @pytest.mark.asyncio
    async def test_pages_until_short_page(self):
        """Test 1,200 records at batch size 500 arrive as 500, 500, 200."""
        upstream = InMemoryUpstream(daily_payloads(date(2024, 1, 1), 30, students=40))

        batches = await collect(BatchFetcher(upstream, batch_size=500))

        assert [len(b) for b in batches] == [500, 500, 200]
        assert [b.sequence for b in batches] == [1, 2, 3]
        assert [c["offset"] for c in upstream.calls] == [0, 500, 1000]
        assert all(c["limit"] == 500 for c in upstream.calls)

    @pytest.mark.asyncio
    async def test_exact_multiple_stops_on_has_more(self):
        upstream = InMemoryUpstream(daily_payloads(date(2024, 1, 1), 10, students=10))

        batches = await collect(BatchFetcher(upstream, batch_size=50))

        assert [len(b) for b in batches] == [50, 50]
        assert len(upstream.calls) == 2

    @pytest.mark.asyncio
    async def test_empty_source_yields_nothing(self):
        upstream = InMemoryUpstream()

        assert await collect(BatchFetcher(upstream, batch_size=100)) == []
        assert len(upstream.calls) == 1

    @pytest.mark.asyncio
    async def test_scope_and_range_passed_through(self):
        upstream = InMemoryUpstream(
            daily_payloads(date(2024, 1, 1), 5, school_code="001")
            + daily_payloads(date(2024, 1, 1), 5, school_code="002")
        )

        batches = await collect(BatchFetcher(upstream, batch_size=100), scope="002")

        assert len(batches) == 1
        assert {r.payload["schoolCode"] for r in batches[0].records} == {"002"}
        assert upstream.calls[0]["start"] == CHUNK.start
        assert upstream.calls[0]["end"] == CHUNK.end
        assert upstream.calls[0]["scope"] == "002"

    @pytest.mark.asyncio
    async def test_records_tagged_with_batch_metadata(self):
        upstream = InMemoryUpstream(daily_payloads(date(2024, 1, 1), 3))

        batches = await collect(BatchFetcher(upstream, batch_size=2), scope="001")

        second = batches[1].records[0].batch
        assert second.sequence == 2
        assert second.offset == 2
        assert second.as_dict()["chunk_start"] == "2024-01-01"
        assert second.as_dict()["scope"] == "001"

    @pytest.mark.asyncio
    async def test_page_delay_between_pages(self, sleep):
        upstream = InMemoryUpstream(daily_payloads(date(2024, 1, 1), 5))

        await collect(BatchFetcher(upstream, batch_size=2, page_delay=0.5, sleep=sleep))

        assert sleep.delays == [0.5, 0.5]


class TestFailures:
    @pytest.mark.asyncio
    async def test_unsuccessful_response_raises_with_status(self):
        upstream = InMemoryUpstream(daily_payloads(date(2024, 1, 1), 3))
        upstream.fail_next({"success": False, "error": "maintenance", "status": 503})

        with pytest.raises(UpstreamError) as exc_info:
            await collect(BatchFetcher(upstream, batch_size=10))

        assert exc_info.value.status == 503

    @pytest.mark.asyncio
    async def test_guard_wraps_every_page(self):
        """Test the guard sees each page call and its retry count lands on the batch."""
        upstream = InMemoryUpstream(daily_payloads(date(2024, 1, 1), 4))
        guarded = []

        async def guard(fetch):
            guarded.append(1)
            return RetryOutcome(value=await fetch(), retries=1)

        batches = await collect(BatchFetcher(upstream, batch_size=2, guard=guard))

        assert len(guarded) == len(upstream.calls) == 2
        assert [b.retries for b in batches] == [1, 1]

    def test_rejects_non_positive_batch_size(self):
        with pytest.raises(ValueError):
            BatchFetcher(InMemoryUpstream(), batch_size=0)
