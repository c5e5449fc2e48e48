"""Admin security API: incident summary, alerts, alert-rule CRUD, test notifications."""

from fastapi import APIRouter, Request
from pydantic import ValidationError

from app.api.dependencies import get_alert_service, get_audit_service
from app.api.permission_middleware import AuthContext, with_api_permissions
from app.api.responses import ErrorCode, error_response, success_response
from app.api.schemas import (
    AlertRuleCreate,
    AlertRuleUpdate,
    DaysQuery,
    TestNotificationRequest,
    json_body,
    query_dict,
    validation_error,
)
from app.governance.audit_models import Severity
from app.governance.exceptions import AlertRuleError

router = APIRouter()


def _days(request: Request, default: int = 7) -> DaysQuery:
    params = query_dict(request)
    params.setdefault("days", default)
    return DaysQuery.model_validate(params)


@router.get("/stats")
@with_api_permissions
async def security_incidents(request: Request, ctx: AuthContext):
    try:
        query = _days(request)
    except ValidationError as e:
        return validation_error(e)
    return success_response(await get_audit_service(request).get_security_incidents(query.days))


@router.get("/alerts")
@with_api_permissions
async def security_alerts(request: Request, ctx: AuthContext):
    try:
        query = _days(request)
    except ValidationError as e:
        return validation_error(e)
    alerts = await get_audit_service(request).get_security_alerts(query.days)
    notifier = get_alert_service(request).in_app
    recent = [a.to_payload() for a in notifier.recent()] if hasattr(notifier, "recent") else []
    return success_response({"alerts": alerts, "notifications": recent})


@router.get("/alert-rules")
@with_api_permissions
async def list_alert_rules(request: Request, ctx: AuthContext):
    rules = get_alert_service(request).get_alert_rules()
    return success_response([rule.to_dict() for rule in rules])


@router.post("/alert-rules")
@with_api_permissions
async def create_alert_rule(request: Request, ctx: AuthContext):
    try:
        body = AlertRuleCreate.model_validate(await json_body(request))
    except ValidationError as e:
        return validation_error(e)
    except ValueError as e:
        return error_response(ErrorCode.VALIDATION_ERROR, str(e))

    alerts = get_alert_service(request)
    try:
        rule_id = alerts.add_alert_rule(
            body.name,
            body.condition,
            Severity(body.severity),
            description=body.description,
            enabled=body.enabled,
            cooldown_minutes=body.cooldown_minutes,
        )
    except AlertRuleError as e:
        return error_response(ErrorCode.VALIDATION_ERROR, e.message)
    return success_response(alerts.get_alert_rule(rule_id).to_dict(), status_code=201)


@router.put("/alert-rules/{id}")
@with_api_permissions
async def update_alert_rule(request: Request, ctx: AuthContext):
    try:
        body = AlertRuleUpdate.model_validate(await json_body(request))
    except ValidationError as e:
        return validation_error(e)
    except ValueError as e:
        return error_response(ErrorCode.VALIDATION_ERROR, str(e))

    alerts = get_alert_service(request)
    rule_id = ctx.params["id"]
    try:
        updated = alerts.update_alert_rule(rule_id, **body.model_dump(exclude_none=True))
    except AlertRuleError as e:
        return error_response(ErrorCode.VALIDATION_ERROR, e.message)
    if not updated:
        return error_response(ErrorCode.NOT_FOUND, f"Alert rule '{rule_id}' not found")
    return success_response(alerts.get_alert_rule(rule_id).to_dict())


@router.delete("/alert-rules/{id}")
@with_api_permissions
async def delete_alert_rule(request: Request, ctx: AuthContext):
    rule_id = ctx.params["id"]
    if not get_alert_service(request).remove_alert_rule(rule_id):
        return error_response(ErrorCode.NOT_FOUND, f"Alert rule '{rule_id}' not found")
    return success_response({"id": rule_id, "deleted": True})


@router.post("/alerts/test")
@with_api_permissions
async def test_notifications(request: Request, ctx: AuthContext):
    try:
        body = TestNotificationRequest.model_validate(await json_body(request))
    except ValidationError as e:
        return validation_error(e)
    except ValueError as e:
        return error_response(ErrorCode.VALIDATION_ERROR, str(e))
    delivered = await get_alert_service(request).test_notifications(Severity(body.severity))
    return success_response({"delivered": delivered})
