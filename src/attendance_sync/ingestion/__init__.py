"""Ingestion pipeline: chunking, fetching, validation and conflict resolution."""

from .chunking import DateRangeChunker, chunk_date_range
from .conflicts import (
    BatchResolution,
    ConflictData,
    ConflictResolver,
    ConflictResult,
    ConflictStrategy,
    ConflictType,
)
from .fetcher import Batch, BatchFetcher, BatchMetadata, FetchedRecord
from .http_source import HttpUpstreamSource
from .validation import (
    AttendanceRecord,
    AttendanceRecordTransformer,
    AttendanceStatus,
    GenericRecordTransformer,
    RecordTransformer,
    UpstreamAttendanceRecord,
    ValidationOutcome,
)

__all__ = [
    "AttendanceRecord",
    "AttendanceRecordTransformer",
    "AttendanceStatus",
    "Batch",
    "BatchFetcher",
    "BatchMetadata",
    "BatchResolution",
    "ConflictData",
    "ConflictResolver",
    "ConflictResult",
    "ConflictStrategy",
    "ConflictType",
    "DateRangeChunker",
    "FetchedRecord",
    "GenericRecordTransformer",
    "HttpUpstreamSource",
    "RecordTransformer",
    "UpstreamAttendanceRecord",
    "ValidationOutcome",
    "chunk_date_range",
]
