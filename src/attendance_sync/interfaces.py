"""
Collaborator interfaces consumed by the sync engine.

The upstream API, the persistent store and the compliance checker are all
external; the engine only relies on the narrow protocols defined here.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Protocol, runtime_checkable


@dataclass
class FetchResponse:
    """One page returned by the upstream source."""

    success: bool
    data: list[dict[str, Any]] = field(default_factory=list)
    pagination: dict[str, Any] | None = None
    error: str | None = None
    status: int | None = None

    @classmethod
    def coerce(cls, response: "FetchResponse | Mapping[str, Any]") -> "FetchResponse":
        if isinstance(response, FetchResponse):
            return response
        return cls(
            success=bool(response.get("success", False)),
            data=list(response.get("data") or []),
            pagination=response.get("pagination"),
            error=response.get("error"),
            status=response.get("status"),
        )


@dataclass
class UpsertResult:
    success: bool
    error: str | None = None

    @classmethod
    def coerce(cls, result: "UpsertResult | Mapping[str, Any] | None") -> "UpsertResult":
        if isinstance(result, UpsertResult):
            return result
        if result is None:
            return cls(success=True)
        return cls(success=bool(result.get("success", False)), error=result.get("error"))


@dataclass
class ComplianceVerdict:
    compliant: bool
    violations: list[str] = field(default_factory=list)

    @classmethod
    def coerce(cls, verdict: "ComplianceVerdict | Mapping[str, Any]") -> "ComplianceVerdict":
        if isinstance(verdict, ComplianceVerdict):
            return verdict
        return cls(
            compliant=bool(verdict.get("compliant", False)),
            violations=[str(v) for v in verdict.get("violations") or []],
        )


@runtime_checkable
class UpstreamSource(Protocol):
    """Pull-only, paginated upstream data source."""

    async def fetch_records(
        self,
        start: date,
        end: date,
        scope: str | None,
        *,
        limit: int,
        offset: int,
    ) -> FetchResponse | Mapping[str, Any]: ...


@runtime_checkable
class PersistenceTarget(Protocol):
    """Idempotent writer keyed by a natural conflict key."""

    async def upsert(
        self, record: Mapping[str, Any], conflict_key: tuple[Any, ...]
    ) -> UpsertResult | Mapping[str, Any] | None: ...


@runtime_checkable
class DeletablePersistenceTarget(PersistenceTarget, Protocol):
    """Store that can also undo a write, used for compensation."""

    async def delete(self, conflict_key: tuple[Any, ...]) -> None: ...


@runtime_checkable
class ComplianceValidator(Protocol):
    def validate(self, record: Mapping[str, Any]) -> ComplianceVerdict | Mapping[str, Any]: ...


class AllowAllCompliance:
    """Compliance checker that accepts every record."""

    def validate(self, record: Mapping[str, Any]) -> ComplianceVerdict:
        return ComplianceVerdict(compliant=True)
