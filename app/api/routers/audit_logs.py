"""Admin audit-log API: listing, statistics, export, compliance, integrity, user activity, retention."""

from datetime import datetime, timezone

from fastapi import APIRouter, Request, Response
from pydantic import ValidationError

from app.api.dependencies import get_audit_service, get_retention_manager
from app.api.permission_middleware import AuthContext, with_api_permissions
from app.api.responses import ErrorCode, error_response, success_response
from app.api.schemas import (
    ComplianceQuery,
    DateRangeQuery,
    DaysQuery,
    ExportQuery,
    RetentionRequest,
    UserActivityQuery,
    json_body,
    query_dict,
    validation_error,
)
from app.governance.audit_models import SecurityAction
from app.governance.audit_repository import AuditLogFilters
from app.governance.exceptions import RetentionPolicyError

router = APIRouter()


@router.get("")
@with_api_permissions
async def list_audit_logs(request: Request, ctx: AuthContext):
    try:
        filters = AuditLogFilters.model_validate(query_dict(request))
    except ValidationError as e:
        return validation_error(e)
    return success_response(await get_audit_service(request).get_logs(filters))


@router.get("/stats")
@with_api_permissions
async def audit_stats(request: Request, ctx: AuthContext):
    try:
        query = DaysQuery.model_validate(query_dict(request))
    except ValidationError as e:
        return validation_error(e)
    return success_response(await get_audit_service(request).get_stats(query.days))


@router.get("/export")
@with_api_permissions
async def export_audit_logs(request: Request, ctx: AuthContext):
    params = query_dict(request)
    try:
        export = ExportQuery.model_validate({"format": params.pop("format", "json")})
        filters = AuditLogFilters.model_validate(params)
    except ValidationError as e:
        return validation_error(e)

    audit = get_audit_service(request)
    content = await audit.export_logs(filters, export.format)
    await audit.log_security(
        ctx.user.id,
        SecurityAction.DATA_EXPORT,
        {"format": export.format, "filters": filters.model_dump(mode="json", exclude_none=True)},
    )
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    media_type = "text/csv" if export.format == "csv" else "application/json"
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="audit-logs-{stamp}.{export.format}"'},
    )


@router.get("/compliance")
@with_api_permissions
async def compliance_report(request: Request, ctx: AuthContext):
    try:
        query = ComplianceQuery.model_validate(query_dict(request))
    except ValidationError as e:
        return validation_error(e)
    report = await get_audit_service(request).get_compliance_report(
        query.start_date,
        query.end_date,
        user_id=query.user_id,
        actions=query.actions,
        resources=query.resources,
        include_failures=query.include_failures,
    )
    return success_response(report)


@router.get("/integrity")
@with_api_permissions
async def integrity_report(request: Request, ctx: AuthContext):
    try:
        query = DateRangeQuery.model_validate(query_dict(request))
    except ValidationError as e:
        return validation_error(e)
    return success_response(await get_audit_service(request).validate_integrity(query.start_date, query.end_date))


@router.get("/users/{id}")
@with_api_permissions
async def user_activity(request: Request, ctx: AuthContext):
    try:
        query = UserActivityQuery.model_validate(query_dict(request))
    except ValidationError as e:
        return validation_error(e)
    logs = await get_audit_service(request).get_user_activity(ctx.params["id"], query.days, query.limit)
    return success_response({"user_id": ctx.params["id"], "logs": logs})


@router.api_route("/retention", methods=["POST", "DELETE"])
@with_api_permissions
async def run_retention(request: Request, ctx: AuthContext):
    """Without a policy: plain age-based cleanup. With a policy: archive, then cleanup."""
    try:
        body = RetentionRequest.model_validate(await json_body(request))
    except ValidationError as e:
        return validation_error(e)
    except ValueError as e:
        return error_response(ErrorCode.VALIDATION_ERROR, str(e))

    if body.policy is None:
        deleted = await get_audit_service(request).cleanup()
        return success_response({"deleted_count": deleted})
    try:
        outcome = await get_retention_manager(request).archive_then_cleanup(body.policy)
    except RetentionPolicyError as e:
        return error_response(ErrorCode.VALIDATION_ERROR, e.message)
    return success_response(outcome)
