"""DB-backed audit repository. Persists audit entries to PostgreSQL (audit_logs table)."""

from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set

from sqlalchemy import delete, distinct, func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.governance.audit_models import SECURITY_ACTION_PREFIX, AuditLogEntry, Severity
from app.governance.audit_repository import AuditQuery, GroupField
from app.infrastructure.database.models import AuditLog, User


def _where(query: AuditQuery) -> list:
    clauses = []
    if query.user_id is not None:
        clauses.append(AuditLog.user_id == query.user_id)
    if query.action_contains:
        clauses.append(AuditLog.action.ilike(f"%{query.action_contains}%"))
    if query.actions is not None:
        clauses.append(AuditLog.action.in_(list(query.actions)))
    if query.resource is not None:
        clauses.append(AuditLog.resource == query.resource)
    if query.resources is not None:
        clauses.append(AuditLog.resource.in_(list(query.resources)))
    if query.start is not None:
        clauses.append(AuditLog.created_at >= query.start)
    if query.end is not None:
        clauses.append(AuditLog.created_at <= query.end)
    if query.severity is not None:
        clauses.append(AuditLog.details["severity"].astext == query.severity)
    if query.success is not None:
        clauses.append(AuditLog.details["success"].as_boolean() == query.success)
    if query.security_only:
        clauses.append(AuditLog.action.startswith(SECURITY_ACTION_PREFIX))
    return clauses


def _to_entry(orm: AuditLog) -> AuditLogEntry:
    created_at = orm.created_at
    if created_at is not None and created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return AuditLogEntry(
        id=orm.id,
        user_id=orm.user_id,
        action=orm.action,
        resource=orm.resource,
        resource_id=orm.resource_id,
        details=dict(orm.details or {}),
        ip_address=orm.ip_address,
        user_agent=orm.user_agent,
        created_at=created_at,
    )


class DbAuditRepository:
    """Implements AuditRepository protocol. One session per operation so the repository is app-scoped."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def create(self, entry: AuditLogEntry) -> AuditLogEntry:
        orm = AuditLog(
            id=entry.id,
            user_id=entry.user_id,
            action=entry.action,
            resource=entry.resource,
            resource_id=entry.resource_id,
            details=entry.details,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            created_at=entry.created_at,
        )
        async with self._session_factory() as session:
            session.add(orm)
            await session.commit()
        return entry

    async def find_many(
        self,
        query: AuditQuery,
        *,
        skip: int = 0,
        take: Optional[int] = None,
        ascending: bool = False,
    ) -> List[AuditLogEntry]:
        order = AuditLog.created_at.asc() if ascending else AuditLog.created_at.desc()
        stmt = select(AuditLog).where(*_where(query)).order_by(order).offset(skip)
        if take is not None:
            stmt = stmt.limit(take)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_entry(orm) for orm in result.scalars().all()]

    async def count(self, query: AuditQuery) -> int:
        stmt = select(func.count()).select_from(AuditLog).where(*_where(query))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def count_by(self, field: GroupField, query: AuditQuery) -> dict:
        if field == "severity":
            column = func.coalesce(AuditLog.details["severity"].astext, Severity.LOW.value)
        else:
            column = getattr(AuditLog, field)
        stmt = select(column, func.count()).where(*_where(query)).group_by(column)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return {key: int(count) for key, count in result.all()}

    async def distinct_ip_addresses(self, user_id: str, since: datetime) -> List[str]:
        stmt = select(distinct(AuditLog.ip_address)).where(
            AuditLog.user_id == user_id,
            AuditLog.created_at >= since,
            AuditLog.ip_address.isnot(None),
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [ip for ip in result.scalars().all()]

    async def delete_older_than(self, cutoff: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(delete(AuditLog).where(AuditLog.created_at < cutoff))
            await session.commit()
            return result.rowcount or 0

    async def existing_user_ids(self, user_ids: Iterable[str]) -> Set[str]:
        ids = list(user_ids)
        if not ids:
            return set()
        async with self._session_factory() as session:
            result = await session.execute(select(User.id).where(User.id.in_(ids)))
            return set(result.scalars().all())
