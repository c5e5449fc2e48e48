"""Fixtures for API unit tests: in-memory services installed on the app, AsyncClient, auth headers."""

import pytest
from httpx import ASGITransport, AsyncClient

from app.api.dependencies import build_services, install_services
from app.config.settings import get_settings
from app.governance.retention import AuditRetentionManager
from app.infrastructure.memory.audit_repository_memory import (
    InMemoryAuditRepository,
    InMemoryOwnershipRepository,
)
from app.main import app


@pytest.fixture
def memory_audit_repository():
    return InMemoryAuditRepository()


@pytest.fixture
def services(memory_audit_repository, tmp_path):
    """Services over in-memory stores. ASGITransport does not run lifespan, so install directly."""
    services = build_services(get_settings(), memory_audit_repository, InMemoryOwnershipRepository())
    services.retention_manager = AuditRetentionManager(services.audit_service, str(tmp_path))
    install_services(app, services)
    yield services
    del app.state.services
    del app.state.permission_middleware


@pytest.fixture
async def async_client(services):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers(make_token):
    def _headers(role: str = "ADMIN", user_id: str = "admin-1") -> dict:
        return {"Authorization": f"Bearer {make_token(user_id, role)}"}

    return _headers
