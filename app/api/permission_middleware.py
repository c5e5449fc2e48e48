"""Per-request authorization: public bypass, authentication, method gate, permission and ownership checks, verdict audit."""

import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from fastapi import Request
from fastapi.responses import JSONResponse

from app.api.responses import ERROR_STATUS, ErrorCode, error_response
from app.core.context import user_id_ctx
from app.governance.audit_models import (
    ANONYMOUS_USER_ID,
    API_ACCESS,
    AccessDetails,
    SecurityAction,
    Severity,
)
from app.governance.audit_service import AuditService
from app.observability.metrics import AUDIT_WRITE_FAILURES, AUTHZ_DECISIONS, AUTHZ_LATENCY, MetricsCollector
from app.security.identity import IdentityExtractor, User
from app.security.permission_service import DEFAULT_OWNER_FIELD, PermissionService
from app.security.permissions import Permission, Role, Scope, role_rank
from app.security.route_permissions import RoutePermissionResolver

logger = logging.getLogger(__name__)

CustomValidator = Callable[[Optional[User], Request], Union[bool, Awaitable[bool]]]
Handler = Callable[..., Any]


@dataclass(frozen=True)
class PermissionValidationOptions:
    require_auth: bool = True
    permissions: Optional[Sequence[Permission]] = None
    allowed_methods: Optional[Sequence[str]] = None
    allow_owner_access: bool = False
    resource_id_param: str = "id"
    resource_owner_field: str = DEFAULT_OWNER_FIELD
    custom_validator: Optional[CustomValidator] = None
    skip_permission_check: bool = False


@dataclass(frozen=True)
class ApiError:
    code: ErrorCode
    message: str
    status_code: int
    details: Optional[Dict[str, Any]] = None

    def to_response(self) -> JSONResponse:
        return error_response(self.code, self.message, self.details, status_code=self.status_code)


@dataclass(frozen=True)
class PermissionValidationResult:
    is_authorized: bool
    user: Optional[User] = None
    error: Optional[ApiError] = None
    params: Dict[str, str] = field(default_factory=dict)
    required_permissions: List[Permission] = field(default_factory=list)
    audit_action: str = API_ACCESS
    public: bool = False


@dataclass(frozen=True)
class AuthContext:
    """Passed to wrapped handlers alongside the request."""

    user: Optional[User]
    params: Dict[str, str] = field(default_factory=dict)


# Verdict action and severity per denial code.
_DENIAL_AUDIT = {
    ErrorCode.UNAUTHORIZED: (SecurityAction.UNAUTHORIZED_ACCESS.value, Severity.MEDIUM),
    ErrorCode.TOKEN_ERROR: (SecurityAction.UNAUTHORIZED_ACCESS.value, Severity.MEDIUM),
    ErrorCode.METHOD_NOT_ALLOWED: (SecurityAction.BLOCKED_REQUEST.value, Severity.MEDIUM),
    ErrorCode.FORBIDDEN: (SecurityAction.PERMISSION_CHECK_DENIED.value, Severity.MEDIUM),
    ErrorCode.VALIDATION_ERROR: (SecurityAction.VALIDATION_ERROR.value, Severity.HIGH),
}


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def _role_name(user: Optional[User]) -> Optional[str]:
    if user is None:
        return None
    return user.role.value if isinstance(user.role, Role) else str(user.role)


def _deny(
    code: ErrorCode,
    message: str,
    *,
    user: Optional[User] = None,
    details: Optional[Dict[str, Any]] = None,
    status_code: Optional[int] = None,
    params: Optional[Dict[str, str]] = None,
    required: Optional[List[Permission]] = None,
) -> PermissionValidationResult:
    return PermissionValidationResult(
        is_authorized=False,
        user=user,
        error=ApiError(code, message, status_code or ERROR_STATUS[code], details),
        params=params or {},
        required_permissions=required or [],
        audit_action=_DENIAL_AUDIT[code][0],
    )


class ApiPermissionMiddleware:
    """
    Single authorization entrypoint for route handlers. Denials are values, never exceptions.
    Every call writes exactly one verdict audit entry; audit failures are logged and do not
    change the verdict.
    """

    def __init__(
        self,
        permission_service: PermissionService,
        audit_service: AuditService,
        identity_extractor: IdentityExtractor,
        resolver: Optional[RoutePermissionResolver] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._permissions = permission_service
        self._audit = audit_service
        self._identity = identity_extractor
        self._resolver = resolver or RoutePermissionResolver()
        self._metrics = metrics

    async def validate_permissions(
        self,
        request: Request,
        options: Optional[PermissionValidationOptions] = None,
    ) -> PermissionValidationResult:
        options = options or PermissionValidationOptions()
        path = request.url.path
        method = request.method.upper()
        started = time.perf_counter()

        result = await self._evaluate(request, path, method, options)
        await self._record(request, path, method, result)

        if self._metrics is not None:
            code = result.error.code.value if result.error else "AUTHORIZED"
            self._metrics.increment(AUTHZ_DECISIONS, category=code)
            self._metrics.observe_latency(AUTHZ_LATENCY, (time.perf_counter() - started) * 1000)
        return result

    async def _evaluate(
        self,
        request: Request,
        path: str,
        method: str,
        options: PermissionValidationOptions,
    ) -> PermissionValidationResult:
        if self._resolver.is_public_route(path):
            return PermissionValidationResult(is_authorized=True, user=None, public=True)

        try:
            user = await self._identity.extract(request)
        except Exception as e:
            logger.info("token_rejected", extra={"path": path, "method": method, "error": str(e)})
            return _deny(ErrorCode.TOKEN_ERROR, "Invalid or expired authentication token")

        if user is None:
            if options.require_auth:
                return _deny(ErrorCode.UNAUTHORIZED, "Authentication required")
            return PermissionValidationResult(is_authorized=True, user=None)
        user_id_ctx.set(user.id)

        if options.allowed_methods:
            allowed = [m.upper() for m in options.allowed_methods]
            if method not in allowed:
                return _deny(
                    ErrorCode.METHOD_NOT_ALLOWED,
                    f"Method {method} not allowed",
                    user=user,
                    details={"allowed_methods": allowed},
                )

        match = self._resolver.find_route_match(path, method)
        params: Dict[str, str] = dict(match.params) if match else {}
        params.update({k: str(v) for k, v in request.path_params.items()})
        if options.permissions is not None:
            required = list(options.permissions)
        else:
            required = match.permissions if match else []

        if options.custom_validator is not None:
            try:
                ok = options.custom_validator(user, request)
                if inspect.isawaitable(ok):
                    ok = await ok
            except Exception as e:
                logger.error("custom_validator_failed", extra={"path": path, "method": method, "error": str(e)})
                return _deny(
                    ErrorCode.VALIDATION_ERROR,
                    "Permission validation failed",
                    user=user,
                    status_code=500,
                    params=params,
                    required=required,
                )
            if not ok:
                return _deny(
                    ErrorCode.FORBIDDEN,
                    "Access denied by custom validation",
                    user=user,
                    params=params,
                    required=required,
                )

        if options.skip_permission_check:
            return PermissionValidationResult(is_authorized=True, user=user, params=params, required_permissions=required)

        for permission in required:
            if not await self._satisfies(user, permission, params, path, options):
                return _deny(
                    ErrorCode.FORBIDDEN,
                    "Insufficient permissions",
                    user=user,
                    details={"required": permission.to_dict()},
                    params=params,
                    required=required,
                )

        return PermissionValidationResult(is_authorized=True, user=user, params=params, required_permissions=required)

    async def _satisfies(
        self,
        user: User,
        permission: Permission,
        params: Dict[str, str],
        path: str,
        options: PermissionValidationOptions,
    ) -> bool:
        if self._permissions.has_unrestricted_permission(user, permission):
            return True
        if permission.scope is not Scope.OWN:
            return False
        # An own grant only covers resources the caller owns. Without one,
        # ownership counts only when the route enables the owner fallback.
        if not (self._permissions.has_permission(user, permission) or options.allow_owner_access):
            return False
        resource_id = _resource_id(params, path, options.resource_id_param)
        if resource_id is None:
            return False
        return await self._permissions.check_owner_access(
            user,
            resource_id,
            options.resource_owner_field,
            resource_type=permission.resource,
        )

    async def _record(
        self,
        request: Request,
        path: str,
        method: str,
        result: PermissionValidationResult,
    ) -> None:
        actor = result.user.id if result.user else ANONYMOUS_USER_ID
        ip = client_ip(request)
        user_agent = request.headers.get("user-agent")
        code = result.error.code if result.error else None
        severity = _DENIAL_AUDIT[code][1] if code else Severity.LOW
        details = AccessDetails(
            pathname=path,
            method=method,
            result="PUBLIC" if result.public else ("SUCCESS" if result.is_authorized else "DENIED"),
            code=code.value if code else None,
            required_permissions=[p.to_dict() for p in result.required_permissions],
            user_role=_role_name(result.user),
            error_message=result.error.message if result.error else None,
        )
        await self._write_audit(
            self._audit.log_api_access(actor, result.audit_action, details, ip, user_agent, severity=severity),
            actor,
            path,
            method,
            result.audit_action,
        )
        if code is ErrorCode.FORBIDDEN:
            await self._write_audit(
                self._audit.log_security(
                    actor,
                    SecurityAction.PERMISSION_DENIED,
                    {
                        "pathname": path,
                        "method": method,
                        "requiredPermissions": details.required_permissions,
                        "userRole": details.user_role,
                    },
                    ip,
                    user_agent,
                    severity=Severity.MEDIUM,
                ),
                actor,
                path,
                method,
                SecurityAction.PERMISSION_DENIED.value,
            )

    async def _write_audit(self, write: Awaitable[Any], actor: str, path: str, method: str, action: str) -> None:
        """Await one audit write; failures are logged and counted, never raised."""
        try:
            await write
        except Exception as e:
            logger.warning(
                "audit_write_failed",
                extra={"user_id": actor, "path": path, "method": method, "action": action, "error": str(e)},
            )
            if self._metrics is not None:
                self._metrics.increment(AUDIT_WRITE_FAILURES)


def _resource_id(params: Dict[str, str], path: str, param: str) -> Optional[str]:
    if params.get(param):
        return params[param]
    segments = [s for s in path.split("/") if s]
    if param in segments:
        index = segments.index(param)
        if index + 1 < len(segments):
            return segments[index + 1]
    return None


# ---------------------------------------------------------------------------
# Handler wrapper and decorator helpers
# ---------------------------------------------------------------------------

def with_api_permissions(
    handler: Handler,
    options: Optional[PermissionValidationOptions] = None,
    middleware: Optional[ApiPermissionMiddleware] = None,
) -> Callable[[Request], Awaitable[Any]]:
    """
    Wrap handler(request, ctx) so it runs only when authorized.
    Denials become the standard error JSON; handler exceptions become INTERNAL_ERROR.
    The middleware defaults to request.app.state.permission_middleware.
    """

    async def wrapped(request: Request):
        guard = middleware or request.app.state.permission_middleware
        try:
            result = await guard.validate_permissions(request, options)
        except Exception as e:
            logger.error("permission_validation_crashed", extra={"path": request.url.path, "error": str(e)})
            return error_response(ErrorCode.INTERNAL_ERROR, "Internal server error")
        if not result.is_authorized:
            return result.error.to_response()

        try:
            response = handler(request, AuthContext(user=result.user, params=result.params))
            if inspect.isawaitable(response):
                response = await response
        except Exception as e:
            logger.error(
                "api_handler_failed",
                extra={"path": request.url.path, "method": request.method, "error": str(e)},
            )
            return error_response(ErrorCode.INTERNAL_ERROR, "Internal server error")
        return response

    # FastAPI inspects the signature, so only the name is copied.
    wrapped.__name__ = getattr(handler, "__name__", "wrapped")
    wrapped.__doc__ = getattr(handler, "__doc__", None)
    return wrapped


def _decorator(options: PermissionValidationOptions) -> Callable[[Handler], Callable[[Request], Awaitable[Any]]]:
    def decorate(handler: Handler) -> Callable[[Request], Awaitable[Any]]:
        return with_api_permissions(handler, options)

    return decorate


def require_permissions(*permissions: Permission, **options: Any):
    return _decorator(PermissionValidationOptions(permissions=list(permissions), **options))


def require_auth(**options: Any):
    """Authenticated caller, no specific permission."""
    return _decorator(PermissionValidationOptions(permissions=[], **options))


def allow_methods(*methods: str, **options: Any):
    return _decorator(PermissionValidationOptions(allowed_methods=list(methods), **options))


def _min_role(role: Role) -> CustomValidator:
    def check(user: Optional[User], request: Request) -> bool:
        return user is not None and role_rank(user.role) >= role_rank(role)

    return check


def require_admin(**options: Any):
    return _decorator(
        PermissionValidationOptions(custom_validator=_min_role(Role.ADMIN), skip_permission_check=True, **options)
    )


def require_editor(**options: Any):
    """EDITOR or ADMIN."""
    return _decorator(
        PermissionValidationOptions(custom_validator=_min_role(Role.EDITOR), skip_permission_check=True, **options)
    )


def allow_owner_or_admin(
    resource_id_param: str = "id",
    owner_field: str = DEFAULT_OWNER_FIELD,
    **options: Any,
):
    return _decorator(
        PermissionValidationOptions(
            allow_owner_access=True,
            resource_id_param=resource_id_param,
            resource_owner_field=owner_field,
            **options,
        )
    )
