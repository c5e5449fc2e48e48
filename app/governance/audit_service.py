"""Append-only audit trail with suspicious-activity detection and compliance queries. No FastAPI."""

import csv
import io
import json
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from app.governance.audit_models import (
    ANONYMOUS_USER_ID,
    RESOURCE_ACTION_PREFIX,
    SYSTEM_USER_ID,
    AuditEntryInput,
    AuditLogEntry,
    AuditResource,
    AuthAction,
    DetailPayload,
    PermissionCheckDetails,
    RoleChangeDetails,
    SecurityAction,
    Severity,
    SuspiciousActivityDetails,
    SystemAction,
    UserAction,
    details_to_dict,
)
from app.governance.audit_repository import AuditLogFilters, AuditQuery, AuditRepository
from app.governance.exceptions import AuditPersistenceError, AuditValidationError
from app.security.permissions import Permission, Role, role_rank

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
SENSITIVE_KEY_MARKERS = ("password", "token", "secret", "hash")
MAX_DETAIL_STRING_LENGTH = 1000
MAX_FIELD_LENGTH = 100
DEFAULT_RETENTION_DAYS = 365

CSV_HEADERS = [
    "ID",
    "User ID",
    "Action",
    "Resource",
    "Resource ID",
    "Severity",
    "Details",
    "IP Address",
    "User Agent",
    "Created At",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sanitize_details(details: Mapping[str, Any]) -> Dict[str, Any]:
    """Redact sensitive keys and truncate long strings, recursing into nested mappings and sequences."""
    sanitized: Dict[str, Any] = {}
    for key, value in details.items():
        if any(marker in str(key).lower() for marker in SENSITIVE_KEY_MARKERS):
            sanitized[key] = REDACTED
        else:
            sanitized[key] = _sanitize_value(value)
    return sanitized


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        if len(value) > MAX_DETAIL_STRING_LENGTH:
            return value[:MAX_DETAIL_STRING_LENGTH] + "..."
        return value
    if isinstance(value, Mapping):
        return sanitize_details(value)
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(item) for item in value]
    return value


@dataclass(frozen=True)
class SuspiciousActivityThresholds:
    failed_logins: int = 5
    failed_login_window: timedelta = timedelta(hours=1)
    failed_login_critical: int = 10
    distinct_ips: int = 3
    ip_window: timedelta = timedelta(hours=1)
    burst: int = 20
    burst_window: timedelta = timedelta(minutes=5)

    @classmethod
    def from_settings(cls, settings) -> "SuspiciousActivityThresholds":
        return cls(
            failed_logins=settings.failed_login_threshold,
            failed_login_window=timedelta(minutes=settings.failed_login_window_minutes),
            distinct_ips=settings.ip_fanout_threshold,
            ip_window=timedelta(minutes=settings.ip_fanout_window_minutes),
            burst=settings.burst_threshold,
            burst_window=timedelta(minutes=settings.burst_window_minutes),
        )


def _window_label(window: timedelta) -> str:
    minutes = int(window.total_seconds() // 60)
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minutes"


def alert_subject(entry: AuditLogEntry) -> str:
    """Who an entry is about: the user, or the source IP for anonymous actors."""
    if entry.user_id != ANONYMOUS_USER_ID:
        return entry.user_id
    return entry.ip_address or "global"


def _by_subject(entries: Sequence[AuditLogEntry]) -> Dict[str, List[AuditLogEntry]]:
    grouped: Dict[str, List[AuditLogEntry]] = {}
    for entry in entries:
        grouped.setdefault(alert_subject(entry), []).append(entry)
    return grouped


def _subject_summary(grouped: Mapping[str, List[AuditLogEntry]]) -> Dict[str, Dict[str, Any]]:
    return {
        subject: {"count": len(logs), "last_occurrence": max(log.created_at for log in logs)}
        for subject, logs in sorted(grouped.items())
    }


class AuditService:
    """
    Writes immutable audit entries via repository and answers compliance queries.
    Every write runs the three suspicious-activity heuristics for the acting user.
    """

    def __init__(
        self,
        repository: AuditRepository,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        *,
        thresholds: Optional[SuspiciousActivityThresholds] = None,
        export_limit: int = 10000,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not 1 <= retention_days <= 3650:
            raise AuditValidationError("retention_days must be between 1 and 3650")
        self._repository = repository
        self._retention_days = retention_days
        self._thresholds = thresholds or SuspiciousActivityThresholds()
        self._export_limit = export_limit
        self._clock = clock

    @property
    def retention_days(self) -> int:
        return self._retention_days

    @property
    def repository(self) -> AuditRepository:
        return self._repository

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def log(self, entry: AuditEntryInput, *, check_suspicious: bool = True) -> AuditLogEntry:
        """Validate, sanitise and persist entry, then run suspicious-activity checks."""
        self._validate(entry)
        details = sanitize_details(details_to_dict(entry.details))
        if entry.resource_id:
            details["resourceId"] = entry.resource_id
        if entry.severity:
            details["severity"] = Severity(entry.severity).value

        record = AuditLogEntry(
            id=str(uuid.uuid4()),
            user_id=entry.user_id,
            action=entry.action,
            resource=entry.resource,
            resource_id=entry.resource_id,
            details=details,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            created_at=self._clock(),
        )
        try:
            stored = await self._repository.create(record)
        except Exception as e:
            raise AuditPersistenceError(f"Failed to create audit log: {e}") from e

        if check_suspicious:
            try:
                await self.check_suspicious_activity(entry.user_id, entry.action, entry.ip_address)
            except Exception as e:
                logger.error(
                    "suspicious_activity_check_failed",
                    extra={"user_id": entry.user_id, "action": entry.action, "error": str(e)},
                )
        return stored

    @staticmethod
    def _validate(entry: AuditEntryInput) -> None:
        if not entry.user_id:
            raise AuditValidationError("user_id is required")
        for name in ("action", "resource"):
            value = getattr(entry, name)
            if not value or len(value) > MAX_FIELD_LENGTH:
                raise AuditValidationError(f"{name} must be 1-{MAX_FIELD_LENGTH} characters")

    async def log_auth(
        self,
        user_id: str,
        action: Union[AuthAction, str],
        details: Optional[DetailPayload] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLogEntry:
        action = AuthAction(action)
        return await self.log(
            AuditEntryInput(
                user_id=user_id,
                action=action.value,
                resource=AuditResource.USER,
                resource_id=user_id,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
                severity=Severity.MEDIUM if action is AuthAction.LOGIN_FAILED else Severity.LOW,
            )
        )

    async def log_user(
        self,
        user_id: str,
        target_user_id: str,
        action: Union[UserAction, str],
        details: Optional[DetailPayload] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLogEntry:
        action = UserAction(action)
        high = action in (UserAction.DELETED, UserAction.ROLE_CHANGED)
        return await self.log(
            AuditEntryInput(
                user_id=user_id,
                action=action.value,
                resource=AuditResource.USER,
                resource_id=target_user_id,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
                severity=Severity.HIGH if high else Severity.MEDIUM,
            )
        )

    async def log_security(
        self,
        user_id: str,
        action: Union[SecurityAction, str],
        details: Optional[DetailPayload] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        *,
        severity: Optional[Severity] = None,
        check_suspicious: bool = True,
    ) -> AuditLogEntry:
        action = SecurityAction(action)
        if severity is None:
            critical = action in (SecurityAction.SUSPICIOUS_ACTIVITY, SecurityAction.ACCOUNT_LOCKED)
            severity = Severity.CRITICAL if critical else Severity.HIGH
        return await self.log(
            AuditEntryInput(
                user_id=user_id,
                action=action.value,
                resource=AuditResource.SYSTEM,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
                severity=severity,
            ),
            check_suspicious=check_suspicious,
        )

    async def log_system(
        self,
        user_id: str,
        action: Union[SystemAction, str],
        details: Optional[DetailPayload] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        *,
        resource: str = AuditResource.SYSTEM,
    ) -> AuditLogEntry:
        return await self.log(
            AuditEntryInput(
                user_id=user_id,
                action=SystemAction(action).value,
                resource=resource,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
                severity=Severity.MEDIUM,
            ),
            check_suspicious=user_id != SYSTEM_USER_ID,
        )

    async def log_api_access(
        self,
        user_id: str,
        action: str,
        details: Optional[DetailPayload] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        *,
        severity: Severity = Severity.LOW,
        resource: str = AuditResource.API,
    ) -> AuditLogEntry:
        """Verdict record written once per authorization decision."""
        return await self.log(
            AuditEntryInput(
                user_id=user_id,
                action=action,
                resource=resource,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
                severity=severity,
            )
        )

    async def log_permission_check(
        self,
        user_id: str,
        permission: Permission,
        result: bool,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        details = PermissionCheckDetails(
            permission=permission.to_dict(), result=result, reason=reason, context=context
        )
        action = SecurityAction.PERMISSION_CHECK_GRANTED if result else SecurityAction.PERMISSION_CHECK_DENIED
        entry = await self.log(
            AuditEntryInput(
                user_id=user_id,
                action=action.value,
                resource=permission.resource,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
                severity=Severity.LOW if result else Severity.MEDIUM,
            )
        )
        if not result:
            await self.log_security(
                user_id,
                SecurityAction.PERMISSION_DENIED,
                {"permission": permission.to_dict(), "reason": reason, "context": context},
                ip_address,
                user_agent,
            )
        return entry

    async def log_role_change(
        self,
        changed_by: str,
        target_user_id: str,
        old_role: Union[Role, str],
        new_role: Union[Role, str],
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLogEntry:
        old_value = getattr(old_role, "value", old_role)
        new_value = getattr(new_role, "value", new_role)
        entry = await self.log_user(
            changed_by,
            target_user_id,
            UserAction.ROLE_CHANGED,
            RoleChangeDetails(old_role=old_value, new_role=new_value, reason=reason),
            ip_address,
            user_agent,
        )
        if self.is_role_escalation(old_role, new_role):
            await self.log_security(
                changed_by,
                SecurityAction.SUSPICIOUS_ACTIVITY,
                SuspiciousActivityDetails(
                    reason="Role escalation",
                    type="role_escalation",
                    context={
                        "targetUserId": target_user_id,
                        "oldRole": old_value,
                        "newRole": new_value,
                        "reason": reason,
                    },
                ),
                ip_address,
                user_agent,
            )
        return entry

    async def log_resource_access(
        self,
        user_id: str,
        action: str,
        resource: str,
        resource_id: Optional[str] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        payload: Dict[str, Any] = {"success": success}
        if error_message:
            payload["errorMessage"] = error_message
        payload.update(details or {})
        entry = await self.log(
            AuditEntryInput(
                user_id=user_id,
                action=f"{RESOURCE_ACTION_PREFIX}{action}",
                resource=resource,
                resource_id=resource_id,
                details=payload,
                ip_address=ip_address,
                user_agent=user_agent,
                severity=Severity.LOW if success else Severity.HIGH,
            )
        )
        if not success:
            await self.log_security(
                user_id,
                SecurityAction.SUSPICIOUS_ACTIVITY,
                SuspiciousActivityDetails(
                    reason="Unauthorized resource access",
                    type="unauthorized_access",
                    context={
                        "resource": resource,
                        "action": action,
                        "resourceId": resource_id,
                        "errorMessage": error_message,
                    },
                ),
                ip_address,
                user_agent,
            )
        return entry

    @staticmethod
    def is_role_escalation(old_role: Union[Role, str], new_role: Union[Role, str]) -> bool:
        return role_rank(new_role) > role_rank(old_role)

    # ------------------------------------------------------------------
    # Suspicious activity
    # ------------------------------------------------------------------

    async def check_suspicious_activity(
        self,
        user_id: str,
        action: str,
        ip_address: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        """
        Three independent heuristics; each emits at most one SUSPICIOUS_ACTIVITY entry per call.
        Every call past a threshold re-alerts.
        """
        if user_id in (ANONYMOUS_USER_ID, SYSTEM_USER_ID):
            return []
        now = self._clock()
        t = self._thresholds
        emitted: List[AuditLogEntry] = []

        if action == AuthAction.LOGIN_FAILED.value:
            failed = await self._repository.count(
                AuditQuery(user_id=user_id, actions=[action], start=now - t.failed_login_window)
            )
            if failed >= t.failed_logins:
                severity = Severity.CRITICAL if failed >= t.failed_login_critical else Severity.HIGH
                emitted.append(
                    await self._flag(
                        user_id,
                        SuspiciousActivityDetails(
                            reason="Multiple failed login attempts",
                            type="failed_logins",
                            count=failed,
                            time_window=_window_label(t.failed_login_window),
                        ),
                        ip_address,
                        severity,
                    )
                )

        if ip_address:
            ips = await self._repository.distinct_ip_addresses(user_id, now - t.ip_window)
            if len(ips) >= t.distinct_ips:
                emitted.append(
                    await self._flag(
                        user_id,
                        SuspiciousActivityDetails(
                            reason="Multiple IP addresses in short time",
                            type="ip_fanout",
                            count=len(ips),
                            ip_addresses=sorted(ips),
                            time_window=_window_label(t.ip_window),
                        ),
                        ip_address,
                        Severity.HIGH,
                    )
                )

        recent = await self._repository.count(AuditQuery(user_id=user_id, start=now - t.burst_window))
        if recent >= t.burst:
            emitted.append(
                await self._flag(
                    user_id,
                    SuspiciousActivityDetails(
                        reason="Rapid successive actions",
                        type="rapid_actions",
                        count=recent,
                        time_window=_window_label(t.burst_window),
                    ),
                    ip_address,
                    Severity.HIGH,
                )
            )
        return emitted

    async def _flag(
        self,
        user_id: str,
        details: SuspiciousActivityDetails,
        ip_address: Optional[str],
        severity: Severity,
    ) -> AuditLogEntry:
        logger.warning(
            "suspicious_activity_detected",
            extra={"user_id": user_id, "severity": severity.value, "action": details.type},
        )
        return await self.log_security(
            user_id,
            SecurityAction.SUSPICIOUS_ACTIVITY,
            details,
            ip_address,
            severity=severity,
            check_suspicious=False,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_logs(self, filters: Optional[AuditLogFilters] = None) -> Dict[str, Any]:
        filters = filters or AuditLogFilters()
        query = filters.to_query()
        skip = (filters.page - 1) * filters.limit
        logs = await self._repository.find_many(query, skip=skip, take=filters.limit)
        total = await self._repository.count(query)
        return {
            "logs": logs,
            "total": total,
            "page": filters.page,
            "limit": filters.limit,
            "total_pages": math.ceil(total / filters.limit) if total else 0,
        }

    async def get_stats(self, days: int = 30) -> Dict[str, Any]:
        now = self._clock()
        query = AuditQuery(start=now - timedelta(days=days))
        return {
            "total_logs": await self._repository.count(query),
            "action_breakdown": await self._repository.count_by("action", query),
            "resource_breakdown": await self._repository.count_by("resource", query),
            "severity_breakdown": await self._repository.count_by("severity", query),
            "recent_activity": await self._repository.find_many(
                AuditQuery(start=now - timedelta(days=1)), take=10
            ),
        }

    async def get_user_activity(self, user_id: str, days: int = 30, limit: int = 50) -> List[AuditLogEntry]:
        start = self._clock() - timedelta(days=days)
        return await self._repository.find_many(AuditQuery(user_id=user_id, start=start), take=limit)

    async def get_security_incidents(self, days: int = 7) -> Dict[str, Any]:
        query = AuditQuery(start=self._clock() - timedelta(days=days), security_only=True)
        by_action = await self._repository.count_by("action", query)
        by_user = await self._repository.count_by("user_id", query)
        top_threats = sorted(by_action.items(), key=lambda kv: kv[1], reverse=True)[:5]
        affected = sorted(by_user.items(), key=lambda kv: kv[1], reverse=True)[:10]
        return {
            "total_incidents": sum(by_action.values()),
            "critical_incidents": await self._repository.count(
                query.narrowed(severity=Severity.CRITICAL.value)
            ),
            "top_threats": [
                {"type": action.replace("security.", "", 1), "count": count} for action, count in top_threats
            ],
            "affected_users": [{"user_id": user_id, "count": count} for user_id, count in affected],
            "recent_incidents": await self._repository.find_many(query, take=20),
        }

    async def get_compliance_report(
        self,
        start_date: datetime,
        end_date: datetime,
        *,
        user_id: Optional[str] = None,
        actions: Optional[Sequence[str]] = None,
        resources: Optional[Sequence[str]] = None,
        include_failures: bool = True,
    ) -> Dict[str, Any]:
        if start_date > end_date:
            raise AuditValidationError("start_date must not be after end_date")
        query = AuditQuery(
            user_id=user_id,
            actions=list(actions) if actions else None,
            resources=list(resources) if resources else None,
            start=start_date,
            end=end_date,
        )
        logs = await self._repository.find_many(query)
        if not include_failures:
            logs = [log for log in logs if log.succeeded is not False]
        return {
            "logs": logs,
            "summary": {
                "total_actions": len(logs),
                "unique_users": len({log.user_id for log in logs}),
                "failed_actions": sum(1 for log in logs if log.succeeded is False),
                "critical_events": sum(1 for log in logs if log.severity == Severity.CRITICAL.value),
            },
        }

    async def validate_integrity(self, start_date: datetime, end_date: datetime) -> Dict[str, Any]:
        """Report structurally invalid entries in range. Read-only."""
        logs = await self._repository.find_many(AuditQuery(start=start_date, end=end_date), ascending=True)
        pseudo_users = {ANONYMOUS_USER_ID, SYSTEM_USER_ID}
        known = await self._repository.existing_user_ids(
            {log.user_id for log in logs if log.user_id and log.user_id not in pseudo_users}
        )
        issues: List[str] = []
        valid = 0
        for log in logs:
            if not log.action:
                issues.append(f"Log {log.id}: Missing action")
                continue
            if log.user_id and log.user_id not in pseudo_users and log.user_id not in known:
                issues.append(f"Log {log.id}: User ID references non-existent user")
            if log.succeeded is False and not log.details.get("errorMessage"):
                issues.append(f"Log {log.id}: Failed action without error message")
            valid += 1
        return {"is_valid": not issues, "issues": issues, "total_logs": len(logs), "valid_logs": valid}

    async def get_security_alerts(self, days: int = 7) -> List[Dict[str, Any]]:
        """
        Summarise failed-login clusters and suspicious-activity events into alert candidates.
        Each summary carries per-subject (user, else IP) counts and latest occurrence.
        """
        start = self._clock() - timedelta(days=days)
        alerts: List[Dict[str, Any]] = []

        failed = await self._repository.find_many(
            AuditQuery(actions=[AuthAction.LOGIN_FAILED.value], start=start)
        )
        per_subject = _by_subject(failed)
        flagged = {s: logs for s, logs in per_subject.items() if len(logs) >= self._thresholds.failed_logins}
        if flagged:
            alerts.append(
                {
                    "type": "failed_logins",
                    "severity": Severity.HIGH.value,
                    "message": f"{len(flagged)} users with multiple failed login attempts",
                    "count": sum(len(logs) for logs in flagged.values()),
                    "users": sorted(flagged),
                    "subjects": _subject_summary(flagged),
                    "last_occurrence": max(log.created_at for logs in flagged.values() for log in logs),
                }
            )

        suspicious = await self._repository.find_many(
            AuditQuery(actions=[SecurityAction.SUSPICIOUS_ACTIVITY.value], start=start)
        )
        if suspicious:
            by_subject = _by_subject(suspicious)
            alerts.append(
                {
                    "type": "suspicious_activity",
                    "severity": Severity.CRITICAL.value,
                    "message": f"{len(suspicious)} suspicious activity events detected",
                    "count": len(suspicious),
                    "users": sorted(by_subject),
                    "subjects": _subject_summary(by_subject),
                    "last_occurrence": max(log.created_at for log in suspicious),
                }
            )
        return sorted(alerts, key=lambda a: a["last_occurrence"], reverse=True)

    # ------------------------------------------------------------------
    # Retention and export
    # ------------------------------------------------------------------

    def retention_cutoff(self, retention_days: Optional[int] = None) -> datetime:
        return self._clock() - timedelta(days=retention_days or self._retention_days)

    async def cleanup(self) -> int:
        """Delete entries strictly older than the retention window. Idempotent."""
        cutoff = self.retention_cutoff()
        try:
            deleted = await self._repository.delete_older_than(cutoff)
        except Exception as e:
            raise AuditPersistenceError(f"Failed to cleanup audit logs: {e}") from e
        logger.info(
            "audit_cleanup_completed",
            extra={"deleted_count": deleted},
        )
        return deleted

    async def export_logs(self, filters: Optional[AuditLogFilters] = None, fmt: str = "json") -> str:
        """Serialise up to export_limit matching entries as JSON or CSV."""
        if fmt not in ("json", "csv"):
            raise AuditValidationError(f"Unsupported export format: {fmt}")
        query = (filters or AuditLogFilters()).to_query()
        logs = await self._repository.find_many(query, take=self._export_limit)
        if fmt == "json":
            return json.dumps([log.to_dict() for log in logs], indent=2, default=str)

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for log in logs:
            writer.writerow(
                [
                    log.id,
                    log.user_id,
                    log.action,
                    log.resource,
                    log.resource_id or "",
                    log.severity,
                    json.dumps(log.details, default=str),
                    log.ip_address or "",
                    log.user_agent or "",
                    log.created_at.isoformat(),
                ]
            )
        return buffer.getvalue()
