"""In-memory audit and ownership stores. For tests or single-node development."""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from app.governance.audit_models import AuditLogEntry
from app.governance.audit_repository import AuditQuery, GroupField


class InMemoryAuditRepository:
    """Implements AuditRepository protocol over a list. Single-thread async is safe."""

    def __init__(self, known_user_ids: Optional[Iterable[str]] = None) -> None:
        self._entries: List[AuditLogEntry] = []
        self._known_user_ids: Optional[Set[str]] = set(known_user_ids) if known_user_ids is not None else None

    @property
    def entries(self) -> List[AuditLogEntry]:
        return list(self._entries)

    def add(self, entry: AuditLogEntry) -> None:
        """Seed an entry directly, bypassing the service (fixtures, imports)."""
        self._entries.append(entry)

    async def create(self, entry: AuditLogEntry) -> AuditLogEntry:
        self._entries.append(entry)
        return entry

    async def find_many(
        self,
        query: AuditQuery,
        *,
        skip: int = 0,
        take: Optional[int] = None,
        ascending: bool = False,
    ) -> List[AuditLogEntry]:
        matched = sorted(
            (e for e in self._entries if query.matches(e)),
            key=lambda e: e.created_at,
            reverse=not ascending,
        )
        end = skip + take if take is not None else None
        return matched[skip:end]

    async def count(self, query: AuditQuery) -> int:
        return sum(1 for e in self._entries if query.matches(e))

    async def count_by(self, field: GroupField, query: AuditQuery) -> dict:
        counts: Dict[str, int] = {}
        for entry in self._entries:
            if not query.matches(entry):
                continue
            key = entry.severity if field == "severity" else getattr(entry, field)
            counts[key] = counts.get(key, 0) + 1
        return counts

    async def distinct_ip_addresses(self, user_id: str, since: datetime) -> List[str]:
        seen: List[str] = []
        for entry in self._entries:
            if entry.user_id == user_id and entry.created_at >= since and entry.ip_address:
                if entry.ip_address not in seen:
                    seen.append(entry.ip_address)
        return seen

    async def delete_older_than(self, cutoff: datetime) -> int:
        kept = [e for e in self._entries if e.created_at >= cutoff]
        deleted = len(self._entries) - len(kept)
        self._entries = kept
        return deleted

    async def existing_user_ids(self, user_ids: Iterable[str]) -> Set[str]:
        ids = set(user_ids)
        if self._known_user_ids is None:
            return ids
        return ids & self._known_user_ids


class InMemoryOwnershipRepository:
    """Implements OwnershipRepository protocol: (resource_type, resource_id) -> {field: owner}."""

    def __init__(self) -> None:
        self._rows: Dict[Tuple[Optional[str], str], Dict[str, str]] = {}

    def set_owner(
        self,
        resource_id: str,
        owner_id: str,
        *,
        resource_type: Optional[str] = None,
        owner_field: str = "created_by",
    ) -> None:
        self._rows.setdefault((resource_type, resource_id), {})[owner_field] = owner_id

    async def get_owner_id(
        self,
        resource_id: str,
        owner_field: str,
        resource_type: Optional[str] = None,
    ) -> Optional[str]:
        row = self._rows.get((resource_type, resource_id)) or self._rows.get((None, resource_id))
        if row is None:
            return None
        return row.get(owner_field)
