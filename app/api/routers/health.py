# app/api/routers/health.py

from fastapi import APIRouter, Request

from app.api.permission_middleware import AuthContext, with_api_permissions
from app.api.responses import success_response
from app.config.settings import get_settings

router = APIRouter()


@router.get("/api/health")
@with_api_permissions
async def health(request: Request, ctx: AuthContext):
    """Public health check with correlation ID from request state."""
    settings = get_settings()
    return success_response(
        {
            "status": "ok",
            "correlation_id": getattr(request.state, "correlation_id", None),
            "environment": settings.environment,
            "version": settings.version,
        }
    )
