"""Security-layer exceptions. Typed, no HTTP."""


class SecurityError(Exception):
    """Base for all security-layer errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class AuthorizationError(SecurityError):
    """Raised when a user does not hold the permission required for an operation."""


class TokenError(SecurityError):
    """Raised when an identity token is present but cannot be parsed or verified."""
