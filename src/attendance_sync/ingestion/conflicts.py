"""
Conflict detection and resolution.

Records sharing a natural key within one chunk are duplicates; they are either
collapsed to a single winner or escalated to manual review, in which case the
write for that key is blocked.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

_EPOCH_MIN = datetime.min.replace(tzinfo=timezone.utc)

# Consulted after the configured timestamp field.
FALLBACK_TIMESTAMP_FIELDS = ("last_modified", "lastModified", "updated_at", "updatedAt")


class ConflictType(Enum):
    DUPLICATE_RECORD = "duplicate_record"
    VERSION_CONFLICT = "version_conflict"


class ConflictStrategy(Enum):
    LAST_MODIFIED_WINS = "last_modified_wins"
    FIRST_WINS = "first_wins"
    MANUAL_REVIEW = "manual_review"


@dataclass
class ConflictData:
    conflict_type: ConflictType
    key: tuple[Any, ...]
    records: list[Any]
    strategy: ConflictStrategy


@dataclass
class ConflictResult:
    conflict: ConflictData
    resolution: str
    resolved_record: Any = None
    manual_review_required: bool = False

    @property
    def success(self) -> bool:
        return self.resolved_record is not None


@dataclass
class BatchResolution:
    """Records cleared for writing plus the groups held for review."""

    records: list[Any] = field(default_factory=list)
    conflicts: list[ConflictResult] = field(default_factory=list)

    @property
    def review_required(self) -> list[ConflictResult]:
        return [c for c in self.conflicts if c.manual_review_required]

    @property
    def blocked_count(self) -> int:
        return sum(len(c.conflict.records) for c in self.review_required)


def get_field(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def parse_timestamp(value: Any) -> datetime:
    """Best-effort conversion of a record timestamp; unknown values sort first."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed = datetime.combine(date.min, time.fromisoformat(value))
            except ValueError:
                return _EPOCH_MIN
    else:
        return _EPOCH_MIN

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ConflictResolver:
    """Groups records by natural key and resolves duplicates."""

    def __init__(
        self,
        strategy: ConflictStrategy = ConflictStrategy.LAST_MODIFIED_WINS,
        key_fields: Sequence[str] = ("student_id", "attendance_date"),
        timestamp_field: str = "last_modified",
    ):
        self.strategy = strategy
        self.key_fields = tuple(key_fields)
        self.timestamp_fields = (timestamp_field,) + tuple(
            f for f in FALLBACK_TIMESTAMP_FIELDS if f != timestamp_field
        )

    def key_of(self, record: Any) -> tuple[Any, ...]:
        return tuple(get_field(record, name) for name in self.key_fields)

    def _timestamp_of(self, record: Any, fields: Sequence[str]) -> datetime:
        for name in fields:
            value = get_field(record, name)
            if value is not None:
                return parse_timestamp(value)
        return _EPOCH_MIN

    def _group(self, records: Sequence[Any]) -> dict[tuple[Any, ...], list[Any]]:
        groups: dict[tuple[Any, ...], list[Any]] = {}
        for record in records:
            groups.setdefault(self.key_of(record), []).append(record)
        return groups

    def detect_conflicts(self, records: Sequence[Any]) -> list[ConflictData]:
        """Return one conflict per natural key that occurs more than once."""
        return [
            ConflictData(ConflictType.DUPLICATE_RECORD, key, group, self.strategy)
            for key, group in self._group(records).items()
            if len(group) > 1
        ]

    def resolve(self, conflict: ConflictData) -> ConflictResult:
        return self._resolve(conflict, self.timestamp_fields)

    def _resolve(self, conflict: ConflictData, timestamp_fields: Sequence[str]) -> ConflictResult:
        records = conflict.records

        if conflict.strategy == ConflictStrategy.LAST_MODIFIED_WINS:
            winner = records[0]
            winner_ts = self._timestamp_of(winner, timestamp_fields)
            for candidate in records[1:]:
                ts = self._timestamp_of(candidate, timestamp_fields)
                # ">=" so that ties go to the later arrival.
                if ts >= winner_ts:
                    winner, winner_ts = candidate, ts
            return ConflictResult(conflict, "last_modified_wins", resolved_record=winner)

        if conflict.strategy == ConflictStrategy.FIRST_WINS:
            return ConflictResult(conflict, "first_wins", resolved_record=records[0])

        logger.info(
            "Conflict on key %s escalated to manual review (%d records)", conflict.key, len(records)
        )
        return ConflictResult(conflict, "manual_review_scheduled", manual_review_required=True)

    def resolve_batch(self, records: Sequence[Any]) -> BatchResolution:
        """Collapse duplicates, keeping first-seen key order."""
        result = BatchResolution()
        for key, group in self._group(records).items():
            if len(group) == 1:
                result.records.append(group[0])
                continue

            resolution = self.resolve(
                ConflictData(ConflictType.DUPLICATE_RECORD, key, group, self.strategy)
            )
            result.conflicts.append(resolution)
            if resolution.resolved_record is not None:
                result.records.append(resolution.resolved_record)

        if result.conflicts:
            logger.debug(
                "Resolved %d conflicts (%d held for review)",
                len(result.conflicts),
                len(result.review_required),
            )
        return result

    def handle_concurrent_updates(self, updates: Sequence[Mapping[str, Any]]) -> list[ConflictResult]:
        """Flag updates sharing ``id`` and ``version`` as version conflicts.

        Each update is a mapping with ``id``, ``version``, ``data`` and
        ``timestamp``. Conflicting groups are resolved with the configured
        strategy using the ``timestamp`` field.
        """
        groups: dict[tuple[Any, Any], list[Mapping[str, Any]]] = {}
        for update in updates:
            groups.setdefault((update.get("id"), update.get("version")), []).append(update)

        return [
            self._resolve(
                ConflictData(ConflictType.VERSION_CONFLICT, key, group, self.strategy),
                ("timestamp",),
            )
            for key, group in groups.items()
            if len(group) > 1
        ]
