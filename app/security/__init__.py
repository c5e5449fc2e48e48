"""Security: permission model, route mapping, authorization decisions, identity. No FastAPI."""

from app.security.identity import IdentityExtractor, JwtIdentityExtractor, User
from app.security.permission_service import OwnershipRepository, PermissionService
from app.security.permissions import ROLE_PERMISSIONS, Permission, Role, Scope
from app.security.route_permissions import RoutePermissionResolver, RouteRule

__all__ = [
    "IdentityExtractor",
    "JwtIdentityExtractor",
    "OwnershipRepository",
    "Permission",
    "PermissionService",
    "ROLE_PERMISSIONS",
    "Role",
    "RoutePermissionResolver",
    "RouteRule",
    "Scope",
    "User",
]
