"""
Record validation and transformation.

Upstream payloads are validated against a pydantic boundary schema, checked by
the compliance collaborator, and normalized into the internal attendance
schema. Validation failures are per record: they produce a
:class:`ValidationOutcome` carrying the reasons and never raise.
"""

import logging
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..interfaces import AllowAllCompliance, ComplianceValidator, ComplianceVerdict
from ..models import utcnow
from .fetcher import FetchedRecord

logger = logging.getLogger(__name__)

PERIOD_COUNT = 7
SCHOOL_YEAR_START_MONTH = 8

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class AttendanceStatus(str, Enum):
    PRESENT = "PRESENT"
    ABSENT = "ABSENT"
    TARDY = "TARDY"
    EXCUSED_ABSENT = "EXCUSED_ABSENT"
    UNEXCUSED_ABSENT = "UNEXCUSED_ABSENT"


PRESENT_STATUSES = frozenset({AttendanceStatus.PRESENT, AttendanceStatus.TARDY})
ABSENT_STATUSES = frozenset(
    {
        AttendanceStatus.ABSENT,
        AttendanceStatus.EXCUSED_ABSENT,
        AttendanceStatus.UNEXCUSED_ABSENT,
    }
)


def _parse_iso_date(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not _ISO_DATE.match(value):
        raise ValueError("must be a YYYY-MM-DD date")
    return date.fromisoformat(value)


class PeriodAttendance(BaseModel):
    model_config = ConfigDict(extra="ignore")

    period: int = Field(ge=1, le=PERIOD_COUNT)
    status: AttendanceStatus


class UpstreamAttendanceRecord(BaseModel):
    """Boundary schema for one upstream attendance payload.

    Accepts the upstream camelCase field names as well as snake_case names.
    Unknown fields are kept and surface in ``model_extra``.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    student_id: str = Field(alias="studentId", min_length=1)
    attendance_date: date = Field(alias="attendanceDate")
    school_code: str = Field(alias="schoolCode", min_length=1)
    daily_status: AttendanceStatus | None = Field(default=None, alias="dailyStatus")
    periods: list[PeriodAttendance] = Field(default_factory=list)
    tardy_count: int | None = Field(default=None, alias="tardyCount", ge=0)
    school_year: str | None = Field(default=None, alias="schoolYear")
    last_modified: datetime | None = Field(default=None, alias="lastModified")

    @field_validator("student_id", "school_code", mode="before")
    @classmethod
    def _numeric_ids_as_text(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("attendance_date", mode="before")
    @classmethod
    def _strict_iso_date(cls, value: Any) -> Any:
        return _parse_iso_date(value)


@dataclass
class AttendanceRecord:
    """Normalized attendance record ready to be written."""

    student_id: str
    attendance_date: date
    school_code: str
    school_year: str
    daily_status: str | None
    is_present: bool
    is_full_day_absent: bool
    period_statuses: dict[str, str]
    tardy_count: int
    absence_count: int
    correctable_until: date
    can_be_corrected: bool
    last_modified: datetime | None = None
    synced_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_row(self) -> dict[str, Any]:
        row = {
            "student_id": self.student_id,
            "attendance_date": self.attendance_date.isoformat(),
            "school_code": self.school_code,
            "school_year": self.school_year,
            "daily_status": self.daily_status,
            "is_present": self.is_present,
            "is_full_day_absent": self.is_full_day_absent,
            "tardy_count": self.tardy_count,
            "absence_count": self.absence_count,
            "days_enrolled": 1.0,
            "correctable_until": self.correctable_until.isoformat(),
            "can_be_corrected": self.can_be_corrected,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
            "last_synced_at": self.synced_at.isoformat(),
            "metadata": self.metadata,
        }
        for period_key, status in self.period_statuses.items():
            row[f"{period_key}_status"] = status
        return row


@dataclass
class ValidationOutcome:
    valid: bool
    record: Any = None
    reasons: list[str] = field(default_factory=list)

    @classmethod
    def invalid(cls, reasons: list[str]) -> "ValidationOutcome":
        return cls(valid=False, reasons=reasons)


class RecordTransformer(Protocol):
    """Turns fetched payloads into writable records for one operation kind."""

    key_fields: tuple[str, ...]

    def transform(
        self,
        fetched: FetchedRecord,
        *,
        correction_window: bool = True,
        correction_window_days: int | None = None,
    ) -> ValidationOutcome: ...

    def to_row(self, record: Any) -> dict[str, Any]: ...


def derive_school_year(day: date) -> str:
    """School years start in August: 2024-08-01 belongs to 2024-2025."""
    if day.month >= SCHOOL_YEAR_START_MONTH:
        return f"{day.year}-{day.year + 1}"
    return f"{day.year - 1}-{day.year}"


def map_period_statuses(periods: Sequence[PeriodAttendance]) -> dict[str, str]:
    """Build the ``period_1``..``period_7`` matrix; unreported periods count as present."""
    if not periods:
        return {}

    by_number: dict[int, AttendanceStatus] = {}
    for entry in periods:
        by_number.setdefault(entry.period, entry.status)

    return {
        f"period_{number}": by_number.get(number, AttendanceStatus.PRESENT).value
        for number in range(1, PERIOD_COUNT + 1)
    }


def _format_errors(error: ValidationError) -> list[str]:
    reasons = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "record"
        reasons.append(f"{location}: {item['msg']}")
    return reasons


class AttendanceRecordTransformer:
    """Validates and normalizes upstream attendance payloads."""

    key_fields = ("student_id", "attendance_date")

    def __init__(
        self,
        compliance: ComplianceValidator | None = None,
        correction_window_days: int = 7,
        today: Callable[[], date] = date.today,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.compliance = compliance or AllowAllCompliance()
        self.correction_window_days = correction_window_days
        self._today = today
        self._clock = clock

    def validate(self, payload: Mapping[str, Any]) -> tuple[UpstreamAttendanceRecord | None, list[str]]:
        reasons: list[str] = []
        parsed: UpstreamAttendanceRecord | None = None
        try:
            parsed = UpstreamAttendanceRecord.model_validate(payload)
        except ValidationError as e:
            reasons.extend(_format_errors(e))

        verdict = ComplianceVerdict.coerce(self.compliance.validate(payload))
        if not verdict.compliant:
            reasons.extend(verdict.violations or ["compliance check failed"])

        return parsed, reasons

    def transform(
        self,
        fetched: FetchedRecord,
        *,
        correction_window: bool = True,
        correction_window_days: int | None = None,
    ) -> ValidationOutcome:
        parsed, reasons = self.validate(fetched.payload)
        if reasons or parsed is None:
            return ValidationOutcome.invalid(reasons)
        record = self.normalize(
            parsed,
            fetched,
            correction_window=correction_window,
            correction_window_days=correction_window_days,
        )
        return ValidationOutcome(valid=True, record=record)

    def normalize(
        self,
        parsed: UpstreamAttendanceRecord,
        fetched: FetchedRecord,
        *,
        correction_window: bool = True,
        correction_window_days: int | None = None,
    ) -> AttendanceRecord:
        period_statuses = {p.status for p in parsed.periods}
        daily = parsed.daily_status

        is_present = daily in PRESENT_STATUSES or bool(period_statuses & PRESENT_STATUSES)
        if daily is not None:
            is_full_day_absent = daily in ABSENT_STATUSES
        else:
            is_full_day_absent = bool(parsed.periods) and all(
                p.status in ABSENT_STATUSES for p in parsed.periods
            )

        if parsed.tardy_count is not None:
            tardy_count = parsed.tardy_count
        else:
            tardy_count = sum(1 for p in parsed.periods if p.status == AttendanceStatus.TARDY)

        if correction_window_days is None:
            correction_window_days = self.correction_window_days
        correctable_until = parsed.attendance_date + timedelta(days=correction_window_days)
        metadata = dict(parsed.model_extra or {})
        metadata.update(fetched.batch.as_dict())

        return AttendanceRecord(
            student_id=parsed.student_id,
            attendance_date=parsed.attendance_date,
            school_code=parsed.school_code,
            school_year=parsed.school_year or derive_school_year(parsed.attendance_date),
            daily_status=daily.value if daily else None,
            is_present=is_present,
            is_full_day_absent=is_full_day_absent,
            period_statuses=map_period_statuses(parsed.periods),
            tardy_count=tardy_count,
            absence_count=sum(1 for p in parsed.periods if p.status in ABSENT_STATUSES),
            correctable_until=correctable_until,
            can_be_corrected=correction_window and self._today() <= correctable_until,
            last_modified=parsed.last_modified,
            synced_at=self._clock(),
            metadata=metadata,
        )

    def to_row(self, record: AttendanceRecord) -> dict[str, Any]:
        return record.to_row()


class GenericRecordTransformer:
    """Transformer for diagnostic and intervention datasets.

    Checks that the required fields are present and that the date field is a
    well-formed ISO date; the payload is otherwise passed through.
    """

    def __init__(
        self,
        required_fields: Sequence[str],
        date_field: str = "date",
        key_fields: Sequence[str] | None = None,
        compliance: ComplianceValidator | None = None,
    ):
        self.required_fields = tuple(required_fields)
        self.date_field = date_field
        self.key_fields = tuple(key_fields or required_fields)
        self.compliance = compliance or AllowAllCompliance()

    def transform(
        self,
        fetched: FetchedRecord,
        *,
        correction_window: bool = True,
        correction_window_days: int | None = None,
    ) -> ValidationOutcome:
        payload = fetched.payload
        reasons = [
            f"{name}: field required"
            for name in self.required_fields
            if payload.get(name) in (None, "")
        ]

        if payload.get(self.date_field) is not None:
            try:
                _parse_iso_date(payload[self.date_field])
            except ValueError as e:
                reasons.append(f"{self.date_field}: {e}")

        verdict = ComplianceVerdict.coerce(self.compliance.validate(payload))
        if not verdict.compliant:
            reasons.extend(verdict.violations or ["compliance check failed"])

        if reasons:
            return ValidationOutcome.invalid(reasons)

        record = dict(payload)
        record["metadata"] = {**payload.get("metadata", {}), **fetched.batch.as_dict()}
        return ValidationOutcome(valid=True, record=record)

    def to_row(self, record: dict[str, Any]) -> dict[str, Any]:
        return dict(record)
