"""
Shared pytest fixtures and fakes for the attendance sync test-suite.

Faults are injected exclusively through these collaborators: the upstream can
be told to fail its next calls, and the store can be told to reject writes.
"""

import asyncio
from collections import deque
from collections.abc import Callable
from datetime import date, timedelta
from typing import Any

import pytest
from prometheus_client import CollectorRegistry

from attendance_sync.config import SyncSettings
from attendance_sync.errors import UpstreamError
from attendance_sync.interfaces import FetchResponse
from attendance_sync.observability.events import EventPublisher
from attendance_sync.observability.metrics import SyncMetrics


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records delays and advances a fake clock."""

    def __init__(self, clock: FakeClock | None = None):
        self.clock = clock
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)
        # Yield so other tasks can run, as a real sleep would.
        await asyncio.sleep(0)


def make_payload(
    student_id: str | int,
    day: date | str,
    school_code: str = "001",
    **extra: Any,
) -> dict[str, Any]:
    """Build a camelCase upstream attendance payload."""
    payload = {
        "studentId": str(student_id),
        "attendanceDate": day if isinstance(day, str) else day.isoformat(),
        "schoolCode": school_code,
        "dailyStatus": "PRESENT",
    }
    payload.update(extra)
    return payload


class InMemoryUpstream:
    """Paginated upstream over a fixed list of payloads.

    Records are filtered by ``attendanceDate`` (inclusive range) and by
    ``schoolCode`` when a scope is given.
    """

    def __init__(self, records: list[dict[str, Any]] | None = None, date_field: str = "attendanceDate"):
        self.records = list(records or [])
        self.date_field = date_field
        self.calls: list[dict[str, Any]] = []
        self._faults: deque[BaseException | FetchResponse | dict[str, Any]] = deque()
        self.fault_predicate: Callable[[dict[str, Any]], BaseException | None] | None = None

    def fail_next(self, *faults: BaseException | FetchResponse | dict[str, Any]) -> None:
        """Queue faults returned or raised by the next calls, one per call."""
        self._faults.extend(faults)

    def fail_with_status(self, status: int, times: int = 1) -> None:
        for _ in range(times):
            self._faults.append(UpstreamError(f"HTTP {status}", status=status))

    async def fetch_records(self, start, end, scope, *, limit, offset):
        call = {"start": start, "end": end, "scope": scope, "limit": limit, "offset": offset}
        self.calls.append(call)
        await asyncio.sleep(0)

        if self.fault_predicate is not None:
            fault = self.fault_predicate(call)
            if fault is not None:
                raise fault

        if self._faults:
            fault = self._faults.popleft()
            if isinstance(fault, BaseException):
                raise fault
            return fault

        matching = [
            r
            for r in self.records
            if start.isoformat() <= str(r.get(self.date_field)) <= end.isoformat()
            and (scope is None or r.get("schoolCode") == scope)
        ]
        page = matching[offset : offset + limit]
        return {"success": True, "data": page, "pagination": {"hasMore": offset + limit < len(matching)}}


class InMemoryStore:
    """Store keyed by conflict key, supporting delete for compensation."""

    def __init__(self):
        self.rows: dict[tuple, dict[str, Any]] = {}
        self.upserts: list[tuple] = []
        self.deletes: list[tuple] = []
        self.reject: Callable[[dict[str, Any]], str | None] | None = None

    async def upsert(self, record, conflict_key):
        self.upserts.append(conflict_key)
        if self.reject is not None:
            reason = self.reject(record)
            if reason:
                return {"success": False, "error": reason}
        self.rows[conflict_key] = dict(record)
        return {"success": True}

    async def delete(self, conflict_key):
        self.deletes.append(conflict_key)
        self.rows.pop(conflict_key, None)


class UpsertOnlyStore:
    """Store without delete support."""

    def __init__(self):
        self.rows: dict[tuple, dict[str, Any]] = {}

    async def upsert(self, record, conflict_key):
        self.rows[conflict_key] = dict(record)
        return None


def daily_payloads(start: date, days: int, students: int = 1, school_code: str = "001") -> list[dict[str, Any]]:
    return [
        make_payload(f"S{s:04d}", start + timedelta(days=d), school_code)
        for d in range(days)
        for s in range(students)
    ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep(clock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def events() -> EventPublisher:
    return EventPublisher()


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metrics(registry, events) -> SyncMetrics:
    return SyncMetrics(registry=registry, publisher=events)


@pytest.fixture
def upstream() -> InMemoryUpstream:
    return InMemoryUpstream()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def settings() -> SyncSettings:
    return SyncSettings()
