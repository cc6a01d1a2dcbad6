"""Date-range chunking."""

from datetime import date, timedelta

from ..models import DateRange, as_date


def chunk_date_range(start: str | date, end: str | date, chunk_days: int) -> list[DateRange]:
    """Split the inclusive range ``start..end`` into contiguous chunks.

    Every chunk spans ``chunk_days`` days except the last, which is truncated
    to ``end``. Chunks never overlap and together cover the whole range.

    Raises:
        ValueError: if ``chunk_days`` is below 1 or ``start`` is after ``end``
    """
    if chunk_days < 1:
        raise ValueError(f"chunk_days must be >= 1, got {chunk_days}")

    start_date = as_date(start)
    end_date = as_date(end)
    if start_date > end_date:
        raise ValueError(f"Range start {start_date} is after end {end_date}")

    chunks: list[DateRange] = []
    current = start_date
    step = timedelta(days=chunk_days)
    while current <= end_date:
        chunk_end = min(current + step - timedelta(days=1), end_date)
        chunks.append(DateRange(current, chunk_end))
        current = chunk_end + timedelta(days=1)

    return chunks


class DateRangeChunker:
    """Chunker bound to a fixed chunk size."""

    def __init__(self, chunk_days: int = 30):
        if chunk_days < 1:
            raise ValueError(f"chunk_days must be >= 1, got {chunk_days}")
        self.chunk_days = chunk_days

    def chunk(self, date_range: DateRange) -> list[DateRange]:
        return chunk_date_range(date_range.start, date_range.end, self.chunk_days)

    def count(self, date_range: DateRange) -> int:
        return -(-date_range.days // self.chunk_days)
