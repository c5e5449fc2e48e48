"""Policy-based audit retention: gzip archival to local disk, then age-based deletion. No FastAPI."""

import asyncio
import gzip
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from app.governance.audit_models import SYSTEM_USER_ID, AuditLogEntry, SystemAction
from app.governance.audit_repository import AuditQuery
from app.governance.audit_service import AuditService
from app.governance.exceptions import RetentionPolicyError

logger = logging.getLogger(__name__)

# Rough per-row footprint used to estimate freed space.
AVG_ENTRY_BYTES = 500


@dataclass(frozen=True)
class RetentionPolicy:
    name: str
    description: str
    retention_days: int
    archive_after_days: int
    compression_enabled: bool = True

    def __post_init__(self) -> None:
        if not 1 <= self.retention_days <= 3650:
            raise RetentionPolicyError(f"{self.name}: retention_days must be between 1 and 3650")
        if not 0 < self.archive_after_days <= self.retention_days:
            raise RetentionPolicyError(f"{self.name}: archive_after_days must be within the retention window")


DEFAULT_RETENTION_POLICIES: Dict[str, RetentionPolicy] = {
    "security": RetentionPolicy(
        name="Security Logs",
        description="High-priority security events and authentication logs",
        retention_days=2555,
        archive_after_days=365,
    ),
    "audit": RetentionPolicy(
        name="General Audit Logs",
        description="Standard user activity and system operation logs",
        retention_days=1095,
        archive_after_days=180,
    ),
    "system": RetentionPolicy(
        name="System Logs",
        description="System health and maintenance records",
        retention_days=365,
        archive_after_days=90,
    ),
    "debug": RetentionPolicy(
        name="Debug Logs",
        description="Short-lived diagnostic records",
        retention_days=30,
        archive_after_days=7,
    ),
}

AGE_BUCKETS: Tuple[Tuple[str, Optional[int]], ...] = (
    ("0-7 days", 7),
    ("8-30 days", 30),
    ("31-90 days", 90),
    ("91-365 days", 365),
    ("1+ years", None),
)


@dataclass(frozen=True)
class ArchivalResult:
    archived_count: int
    archive_size: int
    archive_location: Optional[str]
    compression_ratio: Optional[float] = None


@dataclass(frozen=True)
class CleanupResult:
    deleted_count: int
    freed_space: int
    oldest_deleted: Optional[datetime] = None
    newest_deleted: Optional[datetime] = None


class AuditRetentionManager:
    """
    Archives entries past a policy's archive age, then deletes entries past its retention age.
    Deletion keeps the strict `created_at < now - retention_days` contract of AuditService.cleanup.
    """

    def __init__(
        self,
        audit_service: AuditService,
        archive_dir: str,
        policies: Optional[Dict[str, RetentionPolicy]] = None,
    ) -> None:
        self._audit = audit_service
        self._repository = audit_service.repository
        self._archive_dir = Path(archive_dir)
        self._policies = dict(policies or DEFAULT_RETENTION_POLICIES)

    @property
    def policies(self) -> Dict[str, RetentionPolicy]:
        return dict(self._policies)

    def get_policy(self, policy_name: str) -> RetentionPolicy:
        policy = self._policies.get(policy_name)
        if policy is None:
            raise RetentionPolicyError(f"Retention policy '{policy_name}' not found")
        return policy

    async def archive_logs(self, policy_name: str = "audit") -> ArchivalResult:
        """Write entries older than archive_after_days (but still retained) to a JSON archive."""
        policy = self.get_policy(policy_name)
        now = self._audit.now()
        archive_before = now - timedelta(days=policy.archive_after_days)
        retained_from = now - timedelta(days=policy.retention_days)
        entries = [
            e
            for e in await self._repository.find_many(
                AuditQuery(start=retained_from, end=archive_before), ascending=True
            )
            if e.created_at < archive_before
        ]
        if not entries:
            return ArchivalResult(archived_count=0, archive_size=0, archive_location=None)

        document = {
            "metadata": {
                "policy": policy_name,
                "archived_at": now.isoformat(),
                "total_records": len(entries),
                "date_range": {
                    "from": entries[0].created_at.isoformat(),
                    "to": entries[-1].created_at.isoformat(),
                },
                "retention_policy": asdict(policy),
            },
            "logs": [e.to_dict() for e in entries],
        }
        stamp = now.strftime("%Y%m%dT%H%M%S%fZ")
        target = self._archive_dir / policy_name / f"audit-logs-{policy_name}-{stamp}.json"
        if policy.compression_enabled:
            target = target.with_suffix(".json.gz")
        raw_size, written = await asyncio.to_thread(
            _write_archive, target, document, policy.compression_enabled
        )
        logger.info(
            "audit_logs_archived",
            extra={"archived_count": len(entries), "policy": policy_name, "path": str(target)},
        )
        return ArchivalResult(
            archived_count=len(entries),
            archive_size=written,
            archive_location=str(target),
            compression_ratio=(raw_size / written) if policy.compression_enabled and written else None,
        )

    async def cleanup_logs(self, policy_name: str = "audit") -> CleanupResult:
        policy = self.get_policy(policy_name)
        cutoff = self._audit.retention_cutoff(policy.retention_days)
        doomed = [
            e.created_at
            for e in await self._repository.find_many(AuditQuery(end=cutoff), ascending=True)
            if e.created_at < cutoff
        ]
        deleted = await self._repository.delete_older_than(cutoff)
        logger.info("audit_logs_cleaned", extra={"deleted_count": deleted, "policy": policy_name})
        return CleanupResult(
            deleted_count=deleted,
            freed_space=deleted * AVG_ENTRY_BYTES,
            oldest_deleted=doomed[0] if doomed else None,
            newest_deleted=doomed[-1] if doomed else None,
        )

    async def archive_then_cleanup(self, policy_name: str = "audit") -> Dict[str, Any]:
        """Full retention cycle. Records one system entry describing the outcome."""
        archival = await self.archive_logs(policy_name)
        cleanup = await self.cleanup_logs(policy_name)
        await self._audit.log_system(
            SYSTEM_USER_ID,
            SystemAction.DATA_CLEANUP_PERFORMED,
            {
                "policy": policy_name,
                "archivedCount": archival.archived_count,
                "archiveLocation": archival.archive_location,
                "deletedCount": cleanup.deleted_count,
            },
        )
        return {"archival": asdict(archival), "cleanup": asdict(cleanup)}

    async def get_retention_stats(self) -> Dict[str, Any]:
        now = self._audit.now()
        by_age: Dict[str, int] = {}
        newer_bound = now
        for label, days in AGE_BUCKETS:
            older_bound = now - timedelta(days=days) if days is not None else None
            by_age[label] = await self._repository.count(AuditQuery(start=older_bound, end=newer_bound))
            if older_bound is not None:
                # Adjacent buckets must not share the boundary instant.
                newer_bound = older_bound - timedelta(microseconds=1)
        return {
            "total_logs": await self._repository.count(AuditQuery()),
            "logs_by_age": by_age,
            "archives": self._list_archives(),
        }

    def _list_archives(self) -> List[Dict[str, Any]]:
        if not self._archive_dir.exists():
            return []
        out = []
        for policy_dir in sorted(p for p in self._archive_dir.iterdir() if p.is_dir()):
            files = sorted(policy_dir.glob("audit-logs-*"))
            out.append(
                {
                    "policy": policy_dir.name,
                    "archive_count": len(files),
                    "total_size": sum(f.stat().st_size for f in files),
                }
            )
        return out


def _write_archive(target: Path, document: Dict[str, Any], compress: bool) -> Tuple[int, int]:
    payload = json.dumps(document, indent=2, default=str).encode("utf-8")
    target.parent.mkdir(parents=True, exist_ok=True)
    if compress:
        with gzip.open(target, "wb") as fh:
            fh.write(payload)
    else:
        target.write_bytes(payload)
    return len(payload), target.stat().st_size


def read_archive(path: str) -> List[AuditLogEntry]:
    """Load the entries of an archive written by archive_logs."""
    source = Path(path)
    opener = gzip.open if source.suffix == ".gz" else open
    with opener(source, "rt", encoding="utf-8") as fh:
        document = json.load(fh)
    return [
        AuditLogEntry(
            id=row["id"],
            user_id=row["user_id"],
            action=row["action"],
            resource=row["resource"],
            resource_id=row.get("resource_id"),
            details=row.get("details") or {},
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
        for row in document["logs"]
    ]
