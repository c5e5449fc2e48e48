"""Static permission model: roles, resources, actions, scopes and the role grant table. No FastAPI."""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Union


class Role(str, Enum):
    ADMIN = "ADMIN"
    EDITOR = "EDITOR"
    VIEWER = "VIEWER"

    @classmethod
    def parse(cls, value: Union["Role", str, None]) -> Optional["Role"]:
        """Return the Role for value, or None for anything outside the enumeration."""
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.upper())
        except ValueError:
            return None


class Scope(str, Enum):
    OWN = "own"
    ALL = "all"


class Action:
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE = "manage"


class Resource:
    ALL = "*"
    PRODUCTS = "products"
    CATEGORIES = "categories"
    MEDIA = "media"
    PAGES = "pages"
    ORDERS = "orders"
    USERS = "users"
    PROFILE = "profile"
    SETTINGS = "settings"
    ANALYTICS = "analytics"
    AUDIT = "audit"
    SECURITY = "security"
    SYSTEM = "system"
    MONITORING = "monitoring"
    NOTIFICATIONS = "notifications"
    SEARCH = "search"
    WORKFLOW = "workflow"
    API_KEYS = "api-keys"


@dataclass(frozen=True)
class Permission:
    """Immutable (resource, action, scope) triple. Scope defaults to ALL."""

    resource: str
    action: str
    scope: Optional[Scope] = Scope.ALL

    def __post_init__(self) -> None:
        # Accept None and plain strings ("own"/"all") and normalise to the enum.
        if self.scope is None:
            object.__setattr__(self, "scope", Scope.ALL)
        elif not isinstance(self.scope, Scope):
            object.__setattr__(self, "scope", Scope(str(self.scope).lower()))

    def with_scope(self, scope: Scope) -> "Permission":
        return Permission(self.resource, self.action, scope)

    def to_dict(self) -> Dict[str, str]:
        return {"resource": self.resource, "action": self.action, "scope": self.scope.value}

    def __str__(self) -> str:
        return f"{self.resource}:{self.action}:{self.scope.value}"


def _grants(*triples: tuple) -> FrozenSet[Permission]:
    return frozenset(Permission(r, a, Scope(s)) for r, a, s in triples)


def _crud(resource: str) -> list:
    return [
        (resource, Action.CREATE, "all"),
        (resource, Action.READ, "all"),
        (resource, Action.UPDATE, "all"),
        (resource, Action.DELETE, "all"),
        (resource, Action.MANAGE, "all"),
    ]


# Role      content CRUD   orders  users/audit/security/system  own profile
# ADMIN     * (wildcard)   *       *                            *
# EDITOR    ✓              read    ✗                            manage
# VIEWER    read           read    ✗                            manage
ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.ADMIN: _grants((Resource.ALL, Action.MANAGE, "all")),
    Role.EDITOR: _grants(
        *_crud(Resource.PRODUCTS),
        *_crud(Resource.CATEGORIES),
        *_crud(Resource.PAGES),
        *_crud(Resource.MEDIA),
        (Resource.ORDERS, Action.READ, "all"),
        (Resource.SEARCH, Action.READ, "all"),
        (Resource.WORKFLOW, Action.READ, "all"),
        (Resource.PROFILE, Action.MANAGE, "own"),
        (Resource.NOTIFICATIONS, Action.MANAGE, "own"),
    ),
    Role.VIEWER: _grants(
        (Resource.PRODUCTS, Action.READ, "all"),
        (Resource.CATEGORIES, Action.READ, "all"),
        (Resource.PAGES, Action.READ, "all"),
        (Resource.MEDIA, Action.READ, "all"),
        (Resource.ORDERS, Action.READ, "all"),
        (Resource.SEARCH, Action.READ, "all"),
        (Resource.PROFILE, Action.MANAGE, "own"),
        (Resource.NOTIFICATIONS, Action.MANAGE, "own"),
    ),
}

# Used for escalation detection; unknown roles rank 0.
ROLE_RANK: Dict[Role, int] = {
    Role.VIEWER: 1,
    Role.EDITOR: 2,
    Role.ADMIN: 3,
}

RoleTable = Dict[Role, FrozenSet[Permission]]


def grants_for(
    role: Union[Role, str, None],
    table: Optional[RoleTable] = None,
) -> FrozenSet[Permission]:
    """Granted permissions for role; unknown roles get the empty set."""
    parsed = Role.parse(role)
    if parsed is None:
        return frozenset()
    return (table if table is not None else ROLE_PERMISSIONS).get(parsed, frozenset())


def grant_matches(grant: Permission, permission: Permission) -> bool:
    if grant.resource not in (permission.resource, Resource.ALL):
        return False
    if grant.action not in (permission.action, Action.MANAGE):
        return False
    return grant.scope is Scope.ALL or grant.scope is permission.scope


def role_satisfies(
    role: Union[Role, str, None],
    permission: Permission,
    table: Optional[RoleTable] = None,
) -> bool:
    """True if role is ADMIN or any of its grants covers permission."""
    if Role.parse(role) is Role.ADMIN:
        return True
    return any(grant_matches(grant, permission) for grant in grants_for(role, table))


def role_rank(role: Union[Role, str, None]) -> int:
    parsed = Role.parse(role)
    if parsed is None:
        return 0
    return ROLE_RANK.get(parsed, 0)
