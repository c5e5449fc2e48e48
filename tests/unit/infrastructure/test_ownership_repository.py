"""DB ownership lookups: owner column per resource type, missing rows, unmapped types."""

import pytest
from sqlalchemy.dialects import postgresql

from app.infrastructure.database.ownership_repository_db import DbOwnershipRepository
from app.security.identity import User
from app.security.permission_service import PermissionService
from app.security.permissions import Role


class _Result:
    def __init__(self, value):
        self._value = value

    def scalar_one_or_none(self):
        return self._value


class _Session:
    def __init__(self, value, statements):
        self._value = value
        self._statements = statements

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, stmt):
        self._statements.append(str(stmt.compile(dialect=postgresql.dialect())))
        return _Result(self._value)


@pytest.fixture
def statements():
    return []


@pytest.fixture
def make_repository(statements):
    def _make(owner):
        return DbOwnershipRepository(lambda: _Session(owner, statements))

    return _make


@pytest.mark.parametrize(
    "resource_type, selected",
    [
        ("products", "SELECT products.created_by"),
        ("media", "SELECT media.created_by"),
        ("profile", "SELECT users.id"),
        ("notifications", "SELECT notifications.user_id"),
    ],
)
async def test_owner_column_per_resource_type(make_repository, statements, resource_type, selected):
    repo = make_repository("u1")
    assert await repo.get_owner_id("r1", "created_by", resource_type) == "u1"
    assert statements[0].startswith(selected)
    assert "is_deleted" in statements[0]


async def test_missing_row_has_no_owner(make_repository):
    assert await make_repository(None).get_owner_id("nope", "created_by", "notifications") is None


async def test_default_resource_is_products(make_repository, statements):
    await make_repository("u1").get_owner_id("p1", "created_by")
    assert statements[0].startswith("SELECT products.created_by")


async def test_unmapped_resource_type_raises(make_repository):
    with pytest.raises(ValueError):
        await make_repository("u1").get_owner_id("x1", "created_by", "orders")


async def test_profile_owner_is_the_user_row(make_repository):
    service = PermissionService(make_repository("u1"))
    owner = User(id="u1", role=Role.VIEWER)
    other = User(id="u2", role=Role.VIEWER)
    assert await service.check_owner_access(owner, "u1", resource_type="profile")
    assert not await service.check_owner_access(other, "u1", resource_type="profile")
