"""Governance-layer exceptions. Typed, no HTTP."""


class GovernanceError(Exception):
    """Base for all governance-layer errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class AuditValidationError(GovernanceError):
    """Raised when an audit entry or query filter is malformed."""


class AuditPersistenceError(GovernanceError):
    """Raised when the audit store rejects a write or a query fails."""


class RetentionPolicyError(GovernanceError):
    """Raised when a retention policy is unknown or out of bounds."""


class AlertRuleError(GovernanceError):
    """Raised when an alert rule definition or update is invalid."""
