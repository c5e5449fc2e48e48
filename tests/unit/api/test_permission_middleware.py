"""ApiPermissionMiddleware: verdicts, ownership fallback, public bypass, and one verdict audit per call."""

import os
from unittest.mock import AsyncMock

import pytest
from starlette.requests import Request

from app.api.permission_middleware import ApiPermissionMiddleware, PermissionValidationOptions
from app.api.responses import ErrorCode
from app.observability.metrics import AUDIT_WRITE_FAILURES, AUTHZ_DECISIONS, MetricsCollector
from app.security.identity import JwtIdentityExtractor
from app.security.permission_service import PermissionService
from app.security.permissions import Action, Permission, Resource, Role, Scope

VERDICT_ACTIONS = {
    "api.access",
    "security.permission_check_denied",
    "security.unauthorized_access",
    "security.blocked_request",
    "security.validation_error",
}


def make_request(method="GET", path="/", token=None, ip="10.0.0.1", path_params=None, headers=None):
    raw = [(b"user-agent", b"pytest")]
    if token:
        raw.append((b"authorization", f"Bearer {token}".encode()))
    for key, value in (headers or {}).items():
        raw.append((key.lower().encode(), value.encode()))
    return Request(
        {
            "type": "http",
            "method": method,
            "path": path,
            "query_string": b"",
            "headers": raw,
            "client": (ip, 51000),
            "path_params": path_params or {},
        }
    )


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def build_middleware(audit_service, metrics):
    def _build(permission_service):
        return ApiPermissionMiddleware(
            permission_service,
            audit_service,
            JwtIdentityExtractor(os.environ["JWT_SECRET"]),
            metrics=metrics,
        )

    return _build


@pytest.fixture
def middleware(build_middleware, permission_service):
    return build_middleware(permission_service)


def verdicts(repo):
    return [e for e in repo.entries if e.action in VERDICT_ACTIONS]


async def test_viewer_cannot_create_product(middleware, audit_repository, make_token):
    request = make_request("POST", "/api/products", make_token("viewer-1", "VIEWER"))
    options = PermissionValidationOptions(permissions=[Permission(Resource.PRODUCTS, Action.CREATE)])

    result = await middleware.validate_permissions(request, options)

    assert result.is_authorized is False
    assert result.error.code is ErrorCode.FORBIDDEN
    assert result.error.status_code == 403
    assert result.error.details == {"required": {"resource": "products", "action": "create", "scope": "all"}}
    [verdict] = verdicts(audit_repository)
    assert verdict.action == "security.permission_check_denied"
    assert verdict.user_id == "viewer-1"
    assert verdict.details["userRole"] == "VIEWER"
    assert verdict.details["code"] == "FORBIDDEN"
    assert any(e.action == "security.permission_denied" for e in audit_repository.entries)


async def test_own_scope_denied_when_resource_owned_by_other(
    build_middleware, ownership_repository, audit_repository, make_token
):
    table = {Role.EDITOR: frozenset({Permission(Resource.PRODUCTS, Action.UPDATE, Scope.OWN)})}
    middleware = build_middleware(PermissionService(ownership_repository, table))
    ownership_repository.set_owner("p1", "other-user-id", resource_type="products")
    request = make_request("PUT", "/api/products/p1", make_token("editor-1", "EDITOR"))

    result = await middleware.validate_permissions(request, PermissionValidationOptions(allow_owner_access=True))

    assert result.is_authorized is False
    assert result.error.code is ErrorCode.FORBIDDEN
    assert verdicts(audit_repository)[0].action == "security.permission_check_denied"


async def test_own_scope_granted_to_owner(build_middleware, ownership_repository, make_token):
    table = {Role.EDITOR: frozenset({Permission(Resource.PRODUCTS, Action.UPDATE, Scope.OWN)})}
    middleware = build_middleware(PermissionService(ownership_repository, table))
    ownership_repository.set_owner("p1", "editor-1", resource_type="products")
    request = make_request("PUT", "/api/products/p1", make_token("editor-1", "EDITOR"))

    result = await middleware.validate_permissions(request, PermissionValidationOptions(allow_owner_access=True))

    assert result.is_authorized is True
    assert result.params == {"id": "p1"}


async def test_all_scope_grant_skips_ownership_lookup(build_middleware, make_token):
    ownership = AsyncMock()
    middleware = build_middleware(PermissionService(ownership))
    request = make_request("PUT", "/api/products/p1", make_token("editor-1", "EDITOR"))

    result = await middleware.validate_permissions(request, PermissionValidationOptions(allow_owner_access=True))

    assert result.is_authorized is True
    ownership.get_owner_id.assert_not_awaited()


async def test_own_grant_checks_ownership_with_default_options(build_middleware, ownership_repository, make_token):
    table = {Role.EDITOR: frozenset({Permission(Resource.PRODUCTS, Action.UPDATE, Scope.OWN)})}
    middleware = build_middleware(PermissionService(ownership_repository, table))
    ownership_repository.set_owner("p1", "other-user-id", resource_type="products")
    ownership_repository.set_owner("p2", "editor-1", resource_type="products")
    token = make_token("editor-1", "EDITOR")

    foreign = await middleware.validate_permissions(make_request("PUT", "/api/products/p1", token))
    owned = await middleware.validate_permissions(make_request("PUT", "/api/products/p2", token))

    assert foreign.is_authorized is False
    assert foreign.error.code is ErrorCode.FORBIDDEN
    assert owned.is_authorized is True


async def test_own_grant_without_resource_id_is_denied(build_middleware, make_token):
    ownership = AsyncMock()
    table = {Role.EDITOR: frozenset({Permission(Resource.PRODUCTS, Action.UPDATE, Scope.OWN)})}
    middleware = build_middleware(PermissionService(ownership, table))
    request = make_request("PUT", "/api/products", make_token("editor-1", "EDITOR"))
    options = PermissionValidationOptions(permissions=[Permission(Resource.PRODUCTS, Action.UPDATE, Scope.OWN)])

    result = await middleware.validate_permissions(request, options)

    assert result.is_authorized is False
    ownership.get_owner_id.assert_not_awaited()


async def test_ownership_ignored_without_grant_or_owner_fallback(build_middleware, make_token):
    ownership = AsyncMock()
    ownership.get_owner_id = AsyncMock(return_value="viewer-1")
    middleware = build_middleware(PermissionService(ownership))
    request = make_request("PUT", "/api/products/p1", make_token("viewer-1", "VIEWER"))

    result = await middleware.validate_permissions(request)

    assert result.is_authorized is False
    assert result.error.code is ErrorCode.FORBIDDEN
    ownership.get_owner_id.assert_not_awaited()


async def test_owner_fallback_admits_owner_without_grant(build_middleware, make_token):
    ownership = AsyncMock()
    ownership.get_owner_id = AsyncMock(return_value="viewer-1")
    middleware = build_middleware(PermissionService(ownership))
    options = PermissionValidationOptions(allow_owner_access=True)

    owner = await middleware.validate_permissions(
        make_request("PUT", "/api/products/p1", make_token("viewer-1", "VIEWER")), options
    )
    stranger = await middleware.validate_permissions(
        make_request("PUT", "/api/products/p1", make_token("viewer-2", "VIEWER")), options
    )

    assert owner.is_authorized is True
    assert stranger.is_authorized is False
    ownership.get_owner_id.assert_awaited_with("p1", "created_by", "products")


async def test_resource_id_from_named_path_segment(build_middleware, ownership_repository, make_token):
    table = {Role.EDITOR: frozenset({Permission(Resource.PAGES, Action.UPDATE, Scope.OWN)})}
    middleware = build_middleware(PermissionService(ownership_repository, table))
    ownership_repository.set_owner("pg-9", "editor-1", owner_field="author_id")
    request = make_request("POST", "/api/cms/page/pg-9/publish", make_token("editor-1", "EDITOR"))
    options = PermissionValidationOptions(
        permissions=[Permission(Resource.PAGES, Action.UPDATE, Scope.OWN)],
        allow_owner_access=True,
        resource_id_param="page",
        resource_owner_field="author_id",
    )

    result = await middleware.validate_permissions(request, options)

    assert result.is_authorized is True


@pytest.mark.parametrize("method", ["GET", "POST", "DELETE"])
async def test_public_route_bypasses_auth(middleware, audit_repository, method):
    result = await middleware.validate_permissions(make_request(method, "/api/health"))
    assert result.is_authorized is True
    assert result.user is None
    assert result.public is True
    [verdict] = verdicts(audit_repository)
    assert verdict.action == "api.access"
    assert verdict.details["result"] == "PUBLIC"


async def test_public_route_ignores_bad_token(middleware):
    result = await middleware.validate_permissions(make_request("GET", "/api/health", "not-a-jwt"))
    assert result.is_authorized is True


async def test_missing_token_is_unauthorized(middleware, audit_repository):
    result = await middleware.validate_permissions(make_request("GET", "/api/products"))
    assert result.error.code is ErrorCode.UNAUTHORIZED
    assert result.error.status_code == 401
    [verdict] = verdicts(audit_repository)
    assert verdict.action == "security.unauthorized_access"
    assert verdict.user_id == "anonymous"
    assert verdict.ip_address == "10.0.0.1"


async def test_optional_auth_allows_anonymous(middleware):
    result = await middleware.validate_permissions(
        make_request("GET", "/api/products"), PermissionValidationOptions(require_auth=False)
    )
    assert result.is_authorized is True
    assert result.user is None


async def test_invalid_token_is_token_error(middleware, audit_repository):
    result = await middleware.validate_permissions(make_request("GET", "/api/products", "not-a-jwt"))
    assert result.error.code is ErrorCode.TOKEN_ERROR
    assert result.error.status_code == 401
    assert verdicts(audit_repository)[0].action == "security.unauthorized_access"


async def test_method_gate(middleware, audit_repository, make_token):
    request = make_request("DELETE", "/api/products", make_token("admin-1", "ADMIN"))
    result = await middleware.validate_permissions(request, PermissionValidationOptions(allowed_methods=["get", "post"]))
    assert result.error.code is ErrorCode.METHOD_NOT_ALLOWED
    assert result.error.status_code == 405
    assert result.error.details == {"allowed_methods": ["GET", "POST"]}
    assert verdicts(audit_repository)[0].action == "security.blocked_request"


async def test_route_table_supplies_permissions(middleware, make_token):
    admin = await middleware.validate_permissions(
        make_request("GET", "/api/admin/audit-logs", make_token("admin-1", "ADMIN"))
    )
    editor = await middleware.validate_permissions(
        make_request("GET", "/api/admin/audit-logs", make_token("editor-1", "EDITOR"))
    )
    assert admin.is_authorized is True
    assert admin.required_permissions == [Permission(Resource.AUDIT, Action.READ)]
    assert editor.error.code is ErrorCode.FORBIDDEN


async def test_unmapped_route_needs_only_authentication(middleware, make_token):
    result = await middleware.validate_permissions(
        make_request("GET", "/api/unmapped", make_token("viewer-1", "VIEWER"))
    )
    assert result.is_authorized is True
    assert result.required_permissions == []


async def test_explicit_empty_permissions_override_route_table(middleware, make_token):
    result = await middleware.validate_permissions(
        make_request("GET", "/api/admin/audit-logs", make_token("viewer-1", "VIEWER")),
        PermissionValidationOptions(permissions=[]),
    )
    assert result.is_authorized is True


async def test_custom_validator_rejection(middleware, make_token):
    options = PermissionValidationOptions(custom_validator=lambda user, request: False)
    result = await middleware.validate_permissions(make_request("GET", "/api/x", make_token()), options)
    assert result.error.code is ErrorCode.FORBIDDEN
    assert result.error.message == "Access denied by custom validation"


async def test_async_custom_validator(middleware, make_token):
    async def only_editors(user, request):
        return user.role is Role.EDITOR

    options = PermissionValidationOptions(custom_validator=only_editors)
    result = await middleware.validate_permissions(make_request("GET", "/api/x", make_token()), options)
    assert result.is_authorized is True


async def test_custom_validator_crash_is_server_error(middleware, audit_repository, make_token):
    def boom(user, request):
        raise RuntimeError("validator bug")

    options = PermissionValidationOptions(custom_validator=boom)
    result = await middleware.validate_permissions(make_request("GET", "/api/x", make_token()), options)
    assert result.error.code is ErrorCode.VALIDATION_ERROR
    assert result.error.status_code == 500
    [verdict] = verdicts(audit_repository)
    assert verdict.action == "security.validation_error"
    assert verdict.severity == "high"


async def test_skip_permission_check(middleware, make_token):
    options = PermissionValidationOptions(
        custom_validator=lambda user, request: True, skip_permission_check=True
    )
    request = make_request("GET", "/api/admin/audit-logs", make_token("viewer-1", "VIEWER"))
    result = await middleware.validate_permissions(request, options)
    assert result.is_authorized is True


async def test_every_call_writes_exactly_one_verdict(middleware, audit_repository, make_token):
    requests = [
        (make_request("GET", "/api/health"), None),
        (make_request("GET", "/api/products"), None),
        (make_request("GET", "/api/products", "bad"), None),
        (make_request("GET", "/api/products", make_token("v", "VIEWER")), None),
        (make_request("POST", "/api/products", make_token("v", "VIEWER")), None),
        (make_request("PUT", "/api/products", make_token("v", "VIEWER")), PermissionValidationOptions(allowed_methods=["GET"])),
    ]
    for index, (request, options) in enumerate(requests, start=1):
        await middleware.validate_permissions(request, options)
        assert len(verdicts(audit_repository)) == index


async def test_audit_failure_does_not_change_verdict(middleware, audit_repository, metrics, make_token):
    audit_repository.create = AsyncMock(side_effect=RuntimeError("audit store down"))
    result = await middleware.validate_permissions(
        make_request("GET", "/api/products", make_token("viewer-1", "VIEWER"))
    )
    assert result.is_authorized is True
    assert metrics.get_counter(AUDIT_WRITE_FAILURES) == 1


async def test_failed_verdict_write_still_records_permission_denied(
    middleware, audit_repository, metrics, make_token
):
    real_create = audit_repository.create
    attempts = []

    async def flaky_create(entry):
        attempts.append(entry.action)
        if len(attempts) == 1:
            raise RuntimeError("audit store down")
        return await real_create(entry)

    audit_repository.create = flaky_create
    result = await middleware.validate_permissions(
        make_request("POST", "/api/products", make_token("viewer-1", "VIEWER"))
    )

    assert result.error.code is ErrorCode.FORBIDDEN
    assert attempts[:2] == ["security.permission_check_denied", "security.permission_denied"]
    assert [e.action for e in audit_repository.entries] == ["security.permission_denied"]
    assert metrics.get_counter(AUDIT_WRITE_FAILURES) == 1


async def test_decisions_are_counted(middleware, metrics, make_token):
    await middleware.validate_permissions(make_request("GET", "/api/products", make_token("v", "VIEWER")))
    await middleware.validate_permissions(make_request("POST", "/api/products", make_token("v", "VIEWER")))
    assert metrics.get_counter(AUTHZ_DECISIONS, category="AUTHORIZED") == 1
    assert metrics.get_counter(AUTHZ_DECISIONS, category="FORBIDDEN") == 1
    assert metrics.export_metrics()["histograms"]["authz_decision_latency_ms"]["count"] == 2


async def test_forwarded_for_header_is_client_ip(middleware, audit_repository):
    request = make_request("GET", "/api/products", headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})
    await middleware.validate_permissions(request)
    assert verdicts(audit_repository)[0].ip_address == "203.0.113.7"
