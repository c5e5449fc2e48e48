"""Route-to-permission mapping. Static table, most specific pattern wins. No FastAPI."""

import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from app.security.permissions import Action, Permission, Resource, Scope

VALID_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"})

_PARAM_SEGMENT = re.compile(r"^\[([A-Za-z_][A-Za-z0-9_]*)\]$")
_CATCH_ALL_SEGMENT = re.compile(r"^\[\.\.\.([A-Za-z_][A-Za-z0-9_]*)\]$")


@dataclass(frozen=True)
class RouteRule:
    """
    One row of the route table.
    Pattern segments: literal, `[param]`, `[...rest]` (catch-all) or a trailing `*` (prefix rule).
    """

    pattern: str
    permissions: Tuple[Permission, ...] = ()
    description: str = ""
    is_public: bool = False
    requires_auth: bool = True
    methods: Optional[FrozenSet[str]] = None

    def allows_method(self, method: Optional[str]) -> bool:
        if not method or self.methods is None:
            return True
        return method.upper() in self.methods


@dataclass(frozen=True)
class RouteMatch:
    rule: RouteRule
    params: Dict[str, str] = field(default_factory=dict)

    @property
    def permissions(self) -> List[Permission]:
        return list(self.rule.permissions)


def _p(resource: str, action: str, scope: str = "all") -> Permission:
    return Permission(resource, action, Scope(scope))


def _rule(
    pattern: str,
    permissions: Sequence[Permission] = (),
    description: str = "",
    *,
    public: bool = False,
    methods: Optional[Sequence[str]] = None,
) -> RouteRule:
    return RouteRule(
        pattern=pattern,
        permissions=tuple(permissions),
        description=description,
        is_public=public,
        requires_auth=not public,
        methods=frozenset(m.upper() for m in methods) if methods else None,
    )


ROUTE_PERMISSION_MAPPINGS: Tuple[RouteRule, ...] = (
    # Public
    _rule("/", description="Home page", public=True),
    _rule("/api/health", description="Health check", public=True),
    _rule("/api/csrf-token", description="CSRF token issuance", public=True),
    _rule("/api/auth/login", description="Login", public=True, methods=["POST"]),
    _rule("/api/auth/register", description="Registration", public=True, methods=["POST"]),
    _rule("/api/auth/password-reset", description="Password reset", public=True, methods=["POST"]),
    _rule("/api/auth/[...nextauth]", description="Auth provider callbacks", public=True),
    _rule("/api/public/*", description="Public catalogue API", public=True),
    # Caller-scoped: authenticated only, handlers filter to the caller
    _rule("/api/auth/me", description="Current user", methods=["GET"]),
    _rule("/api/user/preferences", description="User preferences"),
    _rule("/api/notifications", description="Own notifications"),
    # Notifications
    _rule("/api/notifications/[id]", [_p(Resource.NOTIFICATIONS, Action.UPDATE, "own")], "Update notification"),
    # Products
    _rule("/api/products", [_p(Resource.PRODUCTS, Action.READ)], "List products", methods=["GET"]),
    _rule("/api/products", [_p(Resource.PRODUCTS, Action.CREATE)], "Create product", methods=["POST"]),
    _rule("/api/products/[id]", [_p(Resource.PRODUCTS, Action.READ)], "View product", methods=["GET"]),
    _rule("/api/products/[id]", [_p(Resource.PRODUCTS, Action.UPDATE, "own")], "Update product", methods=["PUT", "PATCH"]),
    _rule("/api/products/[id]", [_p(Resource.PRODUCTS, Action.DELETE, "own")], "Delete product", methods=["DELETE"]),
    _rule("/api/products/[id]/media", [_p(Resource.PRODUCTS, Action.UPDATE)], "Attach product media"),
    # Categories
    _rule("/api/categories", [_p(Resource.CATEGORIES, Action.READ)], "List categories", methods=["GET"]),
    _rule("/api/categories", [_p(Resource.CATEGORIES, Action.CREATE)], "Create category", methods=["POST"]),
    _rule("/api/categories/reorder", [_p(Resource.CATEGORIES, Action.UPDATE)], "Reorder categories"),
    _rule("/api/categories/[id]", [_p(Resource.CATEGORIES, Action.READ)], "View category", methods=["GET"]),
    _rule("/api/categories/[id]", [_p(Resource.CATEGORIES, Action.UPDATE)], "Update category", methods=["PUT", "PATCH"]),
    _rule("/api/categories/[id]", [_p(Resource.CATEGORIES, Action.DELETE)], "Delete category", methods=["DELETE"]),
    # Pages
    _rule("/api/pages", [_p(Resource.PAGES, Action.READ)], "List pages", methods=["GET"]),
    _rule("/api/pages", [_p(Resource.PAGES, Action.CREATE)], "Create page", methods=["POST"]),
    _rule("/api/pages/templates", [_p(Resource.PAGES, Action.READ)], "Page templates"),
    _rule("/api/pages/[id]", [_p(Resource.PAGES, Action.READ)], "View page", methods=["GET"]),
    _rule("/api/pages/[id]", [_p(Resource.PAGES, Action.UPDATE, "own")], "Update page", methods=["PUT", "PATCH"]),
    _rule("/api/pages/[id]", [_p(Resource.PAGES, Action.DELETE, "own")], "Delete page", methods=["DELETE"]),
    _rule("/api/pages/[id]/preview", [_p(Resource.PAGES, Action.READ)], "Preview page"),
    # Media
    _rule("/api/media", [_p(Resource.MEDIA, Action.READ)], "List media", methods=["GET"]),
    _rule("/api/media", [_p(Resource.MEDIA, Action.CREATE)], "Upload media", methods=["POST"]),
    _rule("/api/media/[id]", [_p(Resource.MEDIA, Action.READ)], "View media", methods=["GET"]),
    _rule("/api/media/[id]", [_p(Resource.MEDIA, Action.UPDATE, "own")], "Update media", methods=["PUT", "PATCH"]),
    _rule("/api/media/[id]", [_p(Resource.MEDIA, Action.DELETE, "own")], "Delete media", methods=["DELETE"]),
    # Analytics, search, workflow
    _rule("/api/analytics", [_p(Resource.ANALYTICS, Action.READ)], "Analytics"),
    _rule("/api/analytics/*", [_p(Resource.ANALYTICS, Action.READ)], "Analytics sub-reports"),
    _rule("/api/search", [_p(Resource.SEARCH, Action.READ)], "Search"),
    _rule("/api/search/analytics", [_p(Resource.ANALYTICS, Action.READ)], "Search analytics"),
    _rule("/api/workflow", [_p(Resource.WORKFLOW, Action.READ)], "Workflow"),
    # Users
    _rule("/api/users", [_p(Resource.USERS, Action.READ)], "List users", methods=["GET"]),
    _rule("/api/users", [_p(Resource.USERS, Action.CREATE)], "Create user", methods=["POST"]),
    _rule("/api/users/[id]", [_p(Resource.USERS, Action.READ)], "View user", methods=["GET"]),
    _rule("/api/users/[id]", [_p(Resource.USERS, Action.UPDATE)], "Update user", methods=["PUT", "PATCH"]),
    _rule("/api/users/[id]", [_p(Resource.USERS, Action.DELETE)], "Delete user", methods=["DELETE"]),
    _rule("/api/users/[id]/deactivate", [_p(Resource.USERS, Action.MANAGE)], "Deactivate user"),
    _rule("/api/users/[id]/avatar", [_p(Resource.PROFILE, Action.UPDATE, "own")], "Update avatar"),
    _rule("/api/users/[id]/preferences", [_p(Resource.PROFILE, Action.UPDATE, "own")], "User preferences"),
    _rule("/api/users/[id]/sessions", [_p(Resource.PROFILE, Action.READ, "own")], "User sessions"),
    _rule("/api/users/[id]/security", [_p(Resource.PROFILE, Action.UPDATE, "own")], "Security settings"),
    _rule("/api/users/[id]/security/monitoring", [_p(Resource.SECURITY, Action.READ)], "Security monitoring"),
    # Admin
    _rule("/api/admin/*", [_p(Resource.SYSTEM, Action.MANAGE)], "Admin API (fallback)"),
    _rule("/api/admin/users", [_p(Resource.USERS, Action.READ)], "Admin user listing"),
    _rule("/api/admin/users/bulk", [_p(Resource.USERS, Action.MANAGE)], "Bulk user operations"),
    _rule("/api/admin/users/[id]", [_p(Resource.USERS, Action.READ)], "Admin user detail"),
    _rule("/api/admin/audit-logs", [_p(Resource.AUDIT, Action.READ)], "Audit log listing", methods=["GET"]),
    _rule("/api/admin/audit-logs/stats", [_p(Resource.AUDIT, Action.READ)], "Audit statistics", methods=["GET"]),
    _rule("/api/admin/audit-logs/export", [_p(Resource.AUDIT, Action.READ)], "Audit export", methods=["GET"]),
    _rule("/api/admin/audit-logs/compliance", [_p(Resource.AUDIT, Action.READ)], "Compliance report", methods=["GET"]),
    _rule("/api/admin/audit-logs/integrity", [_p(Resource.AUDIT, Action.READ)], "Integrity scan", methods=["GET"]),
    _rule("/api/admin/audit-logs/users/[id]", [_p(Resource.AUDIT, Action.READ)], "User activity", methods=["GET"]),
    _rule("/api/admin/audit-logs/retention", [_p(Resource.AUDIT, Action.MANAGE)], "Retention cleanup", methods=["POST", "DELETE"]),
    _rule("/api/admin/security/alerts", [_p(Resource.SECURITY, Action.READ)], "Security alerts", methods=["GET"]),
    _rule("/api/admin/security/stats", [_p(Resource.SECURITY, Action.READ)], "Security incidents", methods=["GET"]),
    _rule("/api/admin/security/alert-rules", [_p(Resource.SECURITY, Action.READ)], "List alert rules", methods=["GET"]),
    _rule("/api/admin/security/alert-rules", [_p(Resource.SECURITY, Action.MANAGE)], "Create alert rule", methods=["POST"]),
    _rule("/api/admin/security/alert-rules/[id]", [_p(Resource.SECURITY, Action.MANAGE)], "Edit alert rule", methods=["PUT", "DELETE"]),
    _rule("/api/admin/monitoring", [_p(Resource.MONITORING, Action.READ)], "Monitoring", methods=["GET"]),
)


def normalize_path(path: str) -> str:
    if not path:
        return "/"
    if path != "/" and path.endswith("/"):
        return path.rstrip("/") or "/"
    return path


def _segments(path: str) -> List[str]:
    return [s for s in path.split("/") if s]


def match_pattern(pattern: str, path: str) -> Optional[Dict[str, str]]:
    """Return extracted params if path matches pattern, else None."""
    pattern_parts = _segments(pattern)
    path_parts = _segments(normalize_path(path))
    params: Dict[str, str] = {}

    for index, part in enumerate(pattern_parts):
        is_last = index == len(pattern_parts) - 1
        if part == "*" and is_last:
            # Prefix rule: requires at least one further segment.
            return params if len(path_parts) > index else None
        catch_all = _CATCH_ALL_SEGMENT.match(part)
        if catch_all and is_last:
            if len(path_parts) <= index:
                return None
            params[catch_all.group(1)] = "/".join(path_parts[index:])
            return params
        if index >= len(path_parts):
            return None
        param = _PARAM_SEGMENT.match(part)
        if param:
            params[param.group(1)] = path_parts[index]
        elif part != path_parts[index]:
            return None

    return params if len(path_parts) == len(pattern_parts) else None


def specificity(pattern: str) -> Tuple[int, int, int]:
    """Sort key: more literal segments, then more segments, then non-wildcard patterns win."""
    parts = _segments(pattern)
    literal = sum(
        1 for p in parts if p != "*" and not _PARAM_SEGMENT.match(p) and not _CATCH_ALL_SEGMENT.match(p)
    )
    open_ended = any(p == "*" or _CATCH_ALL_SEGMENT.match(p) for p in parts)
    return (literal, len(parts), 0 if open_ended else 1)


class RoutePermissionResolver:
    """Resolves (path, method) to required permissions. Longest / most specific match wins."""

    def __init__(self, rules: Sequence[RouteRule] = ROUTE_PERMISSION_MAPPINGS) -> None:
        self._rules: Tuple[RouteRule, ...] = tuple(rules)

    @property
    def rules(self) -> Tuple[RouteRule, ...]:
        return self._rules

    def find_route_match(self, path: str, method: Optional[str] = None) -> Optional[RouteMatch]:
        best: Optional[RouteMatch] = None
        best_key: Optional[Tuple[int, int, int]] = None
        for rule in self._rules:
            if not rule.allows_method(method):
                continue
            params = match_pattern(rule.pattern, path)
            if params is None:
                continue
            key = specificity(rule.pattern)
            if best_key is None or key > best_key:
                best, best_key = RouteMatch(rule=rule, params=params), key
        return best

    def get_route_permissions(self, path: str, method: Optional[str] = None) -> List[Permission]:
        """Required permissions; [] means authenticated with no specific permission."""
        match = self.find_route_match(path, method)
        return match.permissions if match else []

    def is_public_route(self, path: str) -> bool:
        match = self.find_route_match(path)
        return bool(match and match.rule.is_public)

    def requires_auth_only(self, path: str) -> bool:
        match = self.find_route_match(path)
        return match is None or (match.rule.requires_auth and not match.rule.permissions)

    def public_routes(self) -> List[RouteRule]:
        return [r for r in self._rules if r.is_public]

    def protected_routes(self) -> List[RouteRule]:
        return [r for r in self._rules if not r.is_public and r.permissions]

    def routes_by_resource(self, resource: str) -> List[RouteRule]:
        return [r for r in self._rules if any(p.resource == resource for p in r.permissions)]


def validate_route_rule(rule: RouteRule) -> List[str]:
    """Return a list of problems with rule; empty when valid."""
    errors: List[str] = []
    if not rule.pattern or not rule.pattern.startswith("/"):
        errors.append("Route pattern must start with '/'")
    if not rule.description:
        errors.append("Route description is required")
    for index, permission in enumerate(rule.permissions):
        if not permission.resource:
            errors.append(f"Permission {index}: resource is required")
        if not permission.action:
            errors.append(f"Permission {index}: action is required")
    for method in sorted(rule.methods or ()):
        if method.upper() not in VALID_METHODS:
            errors.append(f"Invalid HTTP method: {method}")
    if rule.is_public and rule.permissions:
        errors.append("Public routes cannot require permissions")
    return errors
