"""Shared fixtures: controllable clock, in-memory stores, wired services, token factory."""

import os
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from app.governance.audit_service import AuditService
from app.infrastructure.memory.audit_repository_memory import (
    InMemoryAuditRepository,
    InMemoryOwnershipRepository,
)
from app.security.permission_service import PermissionService

JWT_SECRET = os.environ["JWT_SECRET"]


class FakeClock:
    """Callable clock for services; starts at a fixed UTC instant and only moves when told."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def audit_repository():
    return InMemoryAuditRepository()


@pytest.fixture
def audit_service(audit_repository, clock):
    return AuditService(audit_repository, retention_days=30, clock=clock)


@pytest.fixture
def ownership_repository():
    return InMemoryOwnershipRepository()


@pytest.fixture
def permission_service(ownership_repository):
    return PermissionService(ownership_repository)


@pytest.fixture
def make_token():
    """Build a signed bearer token for the given id / role."""

    def _make(user_id: str = "user-1", role: str = "EDITOR", **claims) -> str:
        payload = {"id": user_id, "role": role, **claims}
        return jwt.encode(payload, JWT_SECRET, algorithm="HS256")

    return _make
