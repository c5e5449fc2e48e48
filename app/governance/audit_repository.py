"""Audit repository protocol and query types. Governance layer depends on this; infrastructure implements it."""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Iterable, List, Literal, Optional, Protocol, Sequence, Set

from pydantic import BaseModel, Field, field_validator, model_validator

from app.governance.audit_models import SECURITY_ACTION_PREFIX, AuditLogEntry

GroupField = Literal["action", "resource", "user_id", "severity"]


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes from query strings are taken as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class AuditQuery:
    """
    Store-level predicate. All set fields are ANDed; time bounds are inclusive.
    `actions` / `resources` match any listed value; `security_only` selects `security.*` actions.
    """

    user_id: Optional[str] = None
    action_contains: Optional[str] = None
    actions: Optional[Sequence[str]] = None
    resource: Optional[str] = None
    resources: Optional[Sequence[str]] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    severity: Optional[str] = None
    success: Optional[bool] = None
    security_only: bool = False

    def narrowed(self, **changes) -> "AuditQuery":
        return replace(self, **changes)

    def matches(self, entry: AuditLogEntry) -> bool:
        """In-process evaluation of the predicate, shared by non-SQL stores."""
        if self.user_id is not None and entry.user_id != self.user_id:
            return False
        if self.action_contains and self.action_contains.lower() not in entry.action.lower():
            return False
        if self.actions is not None and entry.action not in self.actions:
            return False
        if self.resource is not None and entry.resource != self.resource:
            return False
        if self.resources is not None and entry.resource not in self.resources:
            return False
        if self.start is not None and entry.created_at < self.start:
            return False
        if self.end is not None and entry.created_at > self.end:
            return False
        if self.severity is not None and entry.details.get("severity") != self.severity:
            return False
        if self.success is not None and entry.details.get("success") is not self.success:
            return False
        if self.security_only and not entry.action.startswith(SECURITY_ACTION_PREFIX):
            return False
        return True


class AuditLogFilters(BaseModel):
    """Caller-facing list/export filters. Page is 1-based."""

    user_id: Optional[str] = None
    action: Optional[str] = None
    resource: Optional[str] = None
    severity: Optional[Literal["low", "medium", "high", "critical"]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)

    @field_validator("start_date", "end_date")
    @classmethod
    def utc_dates(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @model_validator(mode="after")
    def check_date_range(self) -> "AuditLogFilters":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self

    def to_query(self) -> AuditQuery:
        return AuditQuery(
            user_id=self.user_id,
            action_contains=self.action,
            resource=self.resource,
            severity=self.severity,
            start=self.start_date,
            end=self.end_date,
        )


class AuditRepository(Protocol):
    """
    Append-only audit store. Entries are created and deleted, never updated.
    Results of find_many are ordered by created_at (newest first unless ascending).
    """

    async def create(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Persist an immutable entry and return it."""
        ...

    async def find_many(
        self,
        query: AuditQuery,
        *,
        skip: int = 0,
        take: Optional[int] = None,
        ascending: bool = False,
    ) -> List[AuditLogEntry]:
        ...

    async def count(self, query: AuditQuery) -> int:
        ...

    async def count_by(self, field: GroupField, query: AuditQuery) -> dict:
        """Mapping of field value -> count over entries matching query."""
        ...

    async def distinct_ip_addresses(self, user_id: str, since: datetime) -> List[str]:
        """Distinct non-null IPs recorded for user_id at or after since."""
        ...

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Delete entries with created_at strictly before cutoff; returns count removed."""
        ...

    async def existing_user_ids(self, user_ids: Iterable[str]) -> Set[str]:
        """Subset of user_ids that resolve to a known user."""
        ...
