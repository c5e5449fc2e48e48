"""Immutable audit entry model, action catalogue and typed detail payloads."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

ANONYMOUS_USER_ID = "anonymous"
SYSTEM_USER_ID = "system"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def meets(self, threshold: "Severity") -> bool:
        return self.rank >= Severity(threshold).rank


_SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3, Severity.CRITICAL: 4}


class AuthAction(str, Enum):
    LOGIN = "auth.login"
    LOGOUT = "auth.logout"
    LOGIN_FAILED = "auth.login_failed"
    PASSWORD_CHANGED = "auth.password_changed"
    TWO_FACTOR_ENABLED = "auth.two_factor_enabled"
    TWO_FACTOR_DISABLED = "auth.two_factor_disabled"
    SESSION_TERMINATED = "auth.session_terminated"


class UserAction(str, Enum):
    CREATED = "user.created"
    UPDATED = "user.updated"
    DELETED = "user.deleted"
    ACTIVATED = "user.activated"
    DEACTIVATED = "user.deactivated"
    ROLE_CHANGED = "user.role_changed"
    PROFILE_UPDATED = "user.profile_updated"
    PREFERENCES_UPDATED = "user.preferences_updated"


class SecurityAction(str, Enum):
    SUSPICIOUS_ACTIVITY = "security.suspicious_activity"
    ACCOUNT_LOCKED = "security.account_locked"
    ACCOUNT_UNLOCKED = "security.account_unlocked"
    PERMISSION_DENIED = "security.permission_denied"
    PERMISSION_CHECK_GRANTED = "security.permission_check_granted"
    PERMISSION_CHECK_DENIED = "security.permission_check_denied"
    UNAUTHORIZED_ACCESS = "security.unauthorized_access"
    BLOCKED_REQUEST = "security.blocked_request"
    VALIDATION_ERROR = "security.validation_error"
    ROLE_ESCALATION = "security.role_escalation"
    DATA_EXPORT = "security.data_export"
    BULK_OPERATION = "security.bulk_operation"


class SystemAction(str, Enum):
    ALERT = "system.alert"
    BACKUP_CREATED = "system.backup_created"
    BACKUP_RESTORED = "system.backup_restored"
    SETTINGS_CHANGED = "system.settings_changed"
    MAINTENANCE_MODE = "system.maintenance_mode"
    DATA_CLEANUP_PERFORMED = "system.data_cleanup_performed"
    LOGS_ARCHIVED = "system.logs_archived"


API_ACCESS = "api.access"
RESOURCE_ACTION_PREFIX = "resource."
SECURITY_ACTION_PREFIX = "security."


class AuditResource:
    USER = "user"
    SESSION = "session"
    PREFERENCES = "preferences"
    PRODUCT = "product"
    CATEGORY = "category"
    MEDIA = "media"
    PAGE = "page"
    API = "api"
    SYSTEM = "system"
    SYSTEM_HEALTH = "system_health"


# ---------------------------------------------------------------------------
# Typed detail payloads. Each renders to the JSON mapping stored in `details`.
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PermissionCheckDetails:
    permission: Dict[str, str]
    result: bool
    reason: Optional[str] = None
    context: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class AccessDetails:
    pathname: str
    method: str
    result: str
    code: Optional[str] = None
    required_permissions: List[Dict[str, str]] = field(default_factory=list)
    user_role: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class SuspiciousActivityDetails:
    reason: str
    type: str
    time_window: Optional[str] = None
    count: Optional[int] = None
    ip_addresses: Optional[List[str]] = None
    context: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class RoleChangeDetails:
    old_role: str
    new_role: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class AlertDetails:
    alert_id: str
    type: str
    severity: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


DetailPayload = Union[
    PermissionCheckDetails,
    AccessDetails,
    SuspiciousActivityDetails,
    RoleChangeDetails,
    AlertDetails,
    Mapping[str, Any],
]

_CAMEL_KEYS = {
    "time_window": "timeWindow",
    "ip_addresses": "ipAddresses",
    "old_role": "oldRole",
    "new_role": "newRole",
    "error_message": "errorMessage",
    "required_permissions": "requiredPermissions",
    "user_role": "userRole",
    "alert_id": "alertId",
}


def details_to_dict(details: Optional[DetailPayload]) -> Dict[str, Any]:
    """Render a typed payload (or plain mapping) as the stored JSON mapping, dropping None fields."""
    if details is None:
        return {}
    if isinstance(details, Mapping):
        return dict(details)
    raw = asdict(details)
    return {_CAMEL_KEYS.get(k, k): v for k, v in raw.items() if v is not None}


@dataclass(frozen=True)
class AuditEntryInput:
    """Caller-supplied entry before validation, sanitisation and persistence."""

    user_id: str
    action: str
    resource: str
    resource_id: Optional[str] = None
    details: Optional[DetailPayload] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    severity: Optional[Severity] = None


@dataclass(frozen=True)
class AuditLogEntry:
    """
    Immutable persisted audit record: who, what, on which resource, when (UTC).
    Severity is carried in details["severity"].
    """

    id: str
    user_id: str
    action: str
    resource: str
    details: Dict[str, Any]
    created_at: datetime
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def severity(self) -> str:
        value = self.details.get("severity") if isinstance(self.details, dict) else None
        return value if isinstance(value, str) else Severity.LOW.value

    @property
    def succeeded(self) -> Optional[bool]:
        value = self.details.get("success")
        return value if isinstance(value, bool) else None

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation for JSON export."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "resource": self.resource,
            "resource_id": self.resource_id,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat(),
        }
