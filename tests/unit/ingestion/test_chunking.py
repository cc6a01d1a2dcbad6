"""
Date-range chunking tests.
"""

import math
from datetime import date, timedelta

import pytest

from attendance_sync.ingestion import DateRangeChunker, chunk_date_range
from attendance_sync.models import DateRange


def assert_exact_cover(chunks, start, end):
    assert chunks[0].start == start
    assert chunks[-1].end == end
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start == previous.end + timedelta(days=1)
    assert sum(c.days for c in chunks) == (end - start).days + 1


class TestChunkDateRange:
    def test_last_chunk_truncated(self):
        chunks = chunk_date_range("2024-01-01", "2024-01-31", 7)

        assert len(chunks) == 5
        assert chunks[0] == DateRange(date(2024, 1, 1), date(2024, 1, 7))
        assert chunks[-1] == DateRange(date(2024, 1, 29), date(2024, 1, 31))

    def test_single_day(self):
        chunks = chunk_date_range(date(2024, 3, 5), date(2024, 3, 5), 30)

        assert chunks == [DateRange(date(2024, 3, 5), date(2024, 3, 5))]

    @pytest.mark.parametrize(
        "start,days,chunk_days",
        [
            (date(2024, 1, 1), 1, 1),
            (date(2024, 1, 1), 30, 30),
            (date(2024, 1, 1), 31, 30),
            (date(2023, 8, 15), 366, 7),
            (date(2019, 2, 27), 2024, 30),
            (date(2024, 2, 28), 3, 90),
        ],
    )
    def test_contiguous_cover_and_count(self, start, days, chunk_days):
        """Test chunks tile the range with ceil(days / chunk_days) pieces."""
        end = start + timedelta(days=days - 1)

        chunks = chunk_date_range(start, end, chunk_days)

        assert len(chunks) == math.ceil(days / chunk_days)
        assert_exact_cover(chunks, start, end)
        assert all(c.days <= chunk_days for c in chunks)

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            chunk_date_range("2024-01-01", "2024-01-31", 0)
        with pytest.raises(ValueError):
            chunk_date_range("2024-02-01", "2024-01-31", 7)


class TestDateRangeChunker:
    def test_count_matches_chunks(self):
        chunker = DateRangeChunker(30)
        date_range = DateRange(date(2019, 1, 1), date(2019, 1, 1) + timedelta(days=2023))

        assert chunker.count(date_range) == 68
        assert len(chunker.chunk(date_range)) == 68

    def test_rejects_zero_chunk_size(self):
        with pytest.raises(ValueError):
            DateRangeChunker(0)
