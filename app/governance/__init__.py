"""Governance: immutable audit trail, suspicious-activity alerting, retention. No FastAPI."""

from app.governance.alerting import Alert, AlertNotificationConfig, AlertRule, AlertService
from app.governance.audit_models import AuditEntryInput, AuditLogEntry, Severity
from app.governance.audit_repository import AuditLogFilters, AuditQuery, AuditRepository
from app.governance.audit_service import AuditService
from app.governance.retention import AuditRetentionManager, RetentionPolicy

__all__ = [
    "Alert",
    "AlertNotificationConfig",
    "AlertRule",
    "AlertService",
    "AuditEntryInput",
    "AuditLogEntry",
    "AuditLogFilters",
    "AuditQuery",
    "AuditRepository",
    "AuditRetentionManager",
    "AuditService",
    "RetentionPolicy",
    "Severity",
]
