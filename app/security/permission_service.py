"""Authorization decision primitive and ownership checks. No FastAPI."""

import logging
from typing import Iterable, Optional, Protocol

from app.security.exceptions import AuthorizationError
from app.security.identity import User
from app.security.permissions import (
    ROLE_PERMISSIONS,
    Permission,
    Role,
    RoleTable,
    Scope,
    role_satisfies,
)

logger = logging.getLogger(__name__)

DEFAULT_OWNER_FIELD = "created_by"


class OwnershipRepository(Protocol):
    """Looks up the owner of a stored resource. Infrastructure implements it."""

    async def get_owner_id(
        self,
        resource_id: str,
        owner_field: str,
        resource_type: Optional[str] = None,
    ) -> Optional[str]:
        """Owner id of the resource, or None if the resource does not exist."""
        ...


class PermissionService:
    """
    Decides whether a user holds a permission. Side-effect free; callers audit the outcome.
    The role table is injected so alternative grant sets can coexist.
    """

    def __init__(
        self,
        ownership_repository: Optional[OwnershipRepository] = None,
        role_permissions: Optional[RoleTable] = None,
    ) -> None:
        self._ownership = ownership_repository
        self._table = role_permissions if role_permissions is not None else ROLE_PERMISSIONS

    def has_permission(self, user: Optional[User], permission: Permission) -> bool:
        if user is None or not user.is_active:
            return False
        if Role.parse(user.role) is Role.ADMIN:
            return True
        return role_satisfies(user.role, permission, self._table)

    def has_any_permission(self, user: Optional[User], permissions: Iterable[Permission]) -> bool:
        return any(self.has_permission(user, p) for p in permissions)

    def has_all_permissions(self, user: Optional[User], permissions: Iterable[Permission]) -> bool:
        return all(self.has_permission(user, p) for p in permissions)

    def has_unrestricted_permission(self, user: Optional[User], permission: Permission) -> bool:
        """True if the user holds permission at ALL scope (no ownership needed)."""
        return self.has_permission(user, permission.with_scope(Scope.ALL))

    def require_permission(self, user: Optional[User], permission: Permission) -> None:
        """Raises AuthorizationError if user does not hold permission."""
        if not self.has_permission(user, permission):
            role = getattr(user, "role", None)
            raise AuthorizationError(f"Role {role} does not have permission '{permission}'")

    async def check_owner_access(
        self,
        user: Optional[User],
        resource_id: Optional[str],
        owner_field: str = DEFAULT_OWNER_FIELD,
        *,
        resource_type: Optional[str] = None,
    ) -> bool:
        """True only if the resource exists and its owner field equals user.id."""
        if user is None or not resource_id or self._ownership is None:
            return False
        try:
            owner_id = await self._ownership.get_owner_id(resource_id, owner_field, resource_type)
        except Exception as e:
            logger.error(
                "owner_lookup_failed",
                extra={"user_id": user.id, "resource": resource_type, "resource_id": resource_id, "error": str(e)},
            )
            return False
        return owner_id is not None and str(owner_id) == str(user.id)
