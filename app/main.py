# app/main.py

from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.dependencies import build_services, install_services
from app.api.middleware import CorrelationIdMiddleware, RequestLogMiddleware
from app.api.responses import ErrorCode, error_response
from app.api.routers import audit_logs, health, security
from app.config.logging import configure_logging
from app.config.settings import get_settings
from app.governance.exceptions import (
    AlertRuleError,
    AuditPersistenceError,
    AuditValidationError,
    GovernanceError,
    RetentionPolicyError,
)
from app.infrastructure.database.audit_repository_db import DbAuditRepository
from app.infrastructure.database.ownership_repository_db import DbOwnershipRepository
from app.infrastructure.database.session import create_engine, create_session_factory
from app.security.exceptions import AuthorizationError, SecurityError, TokenError

settings = get_settings()
configure_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Services installed ahead of startup (tests, embedding apps) are kept as-is.
    engine = None
    if not hasattr(app.state, "services"):
        engine = create_engine(settings.database_url, echo=settings.debug)
        session_factory = create_session_factory(engine)
        install_services(
            app,
            build_services(
                settings,
                DbAuditRepository(session_factory),
                DbOwnershipRepository(session_factory),
            ),
        )
    yield
    if engine is not None:
        await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    debug=settings.debug,
    lifespan=lifespan,
)

# Middleware order: last added runs first (outermost). Request flow: CorrelationId -> RequestLog.
app.add_middleware(RequestLogMiddleware)
app.add_middleware(CorrelationIdMiddleware)


@app.exception_handler(TokenError)
async def token_error_handler(request, exc: TokenError):
    return error_response(ErrorCode.TOKEN_ERROR, exc.message)


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request, exc: AuthorizationError):
    return error_response(ErrorCode.FORBIDDEN, "Insufficient permissions")


@app.exception_handler(SecurityError)
async def security_error_handler(request, exc: SecurityError):
    return error_response(ErrorCode.FORBIDDEN, "Access denied")


@app.exception_handler(AuditValidationError)
async def audit_validation_error_handler(request, exc: AuditValidationError):
    return error_response(ErrorCode.VALIDATION_ERROR, exc.message)


@app.exception_handler(RetentionPolicyError)
async def retention_policy_error_handler(request, exc: RetentionPolicyError):
    return error_response(ErrorCode.VALIDATION_ERROR, exc.message)


@app.exception_handler(AlertRuleError)
async def alert_rule_error_handler(request, exc: AlertRuleError):
    return error_response(ErrorCode.VALIDATION_ERROR, exc.message)


@app.exception_handler(AuditPersistenceError)
async def audit_persistence_error_handler(request, exc: AuditPersistenceError):
    return error_response(ErrorCode.INTERNAL_ERROR, "Audit store unavailable")


@app.exception_handler(GovernanceError)
async def governance_error_handler(request, exc: GovernanceError):
    return error_response(ErrorCode.INTERNAL_ERROR, "Internal server error")


@app.exception_handler(Exception)
async def unexpected_error_handler(request, exc: Exception):
    return error_response(ErrorCode.INTERNAL_ERROR, "Internal server error")


# Routers: /api/health, /api/admin/audit-logs, /api/admin/security
app.include_router(health.router)
app.include_router(audit_logs.router, prefix="/api/admin/audit-logs")
app.include_router(security.router, prefix="/api/admin/security")
