"""Service wiring: build the authorization and audit services once and expose them via app.state."""

from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, Request

from app.api.permission_middleware import ApiPermissionMiddleware
from app.config.settings import AppSettings
from app.governance.alerting import AlertNotificationConfig, AlertService, HttpxWebhookSender
from app.governance.audit_repository import AuditRepository
from app.governance.audit_service import AuditService, SuspiciousActivityThresholds
from app.governance.retention import AuditRetentionManager
from app.observability.metrics import MetricsCollector
from app.security.identity import IdentityExtractor, JwtIdentityExtractor
from app.security.permission_service import OwnershipRepository, PermissionService
from app.security.route_permissions import RoutePermissionResolver


@dataclass
class Services:
    audit_service: AuditService
    permission_service: PermissionService
    permission_middleware: ApiPermissionMiddleware
    alert_service: AlertService
    retention_manager: AuditRetentionManager
    metrics: MetricsCollector


def build_services(
    settings: AppSettings,
    audit_repository: AuditRepository,
    ownership_repository: Optional[OwnershipRepository] = None,
    *,
    identity_extractor: Optional[IdentityExtractor] = None,
    resolver: Optional[RoutePermissionResolver] = None,
    metrics: Optional[MetricsCollector] = None,
) -> Services:
    """Construct every service from settings and the injected stores."""
    metrics = metrics or MetricsCollector()
    audit_service = AuditService(
        audit_repository,
        settings.audit_retention_days,
        thresholds=SuspiciousActivityThresholds.from_settings(settings),
        export_limit=settings.audit_export_limit,
    )
    permission_service = PermissionService(ownership_repository)
    middleware = ApiPermissionMiddleware(
        permission_service,
        audit_service,
        identity_extractor or JwtIdentityExtractor(settings.jwt_secret, settings.jwt_algorithm),
        resolver=resolver,
        metrics=metrics,
    )
    alert_service = AlertService(
        audit_service,
        AlertNotificationConfig.from_settings(settings),
        webhook_sender=HttpxWebhookSender(user_agent=f"{settings.app_name}/{settings.version}"),
        system_name=settings.app_name,
    )
    retention_manager = AuditRetentionManager(audit_service, settings.audit_archive_dir)
    return Services(
        audit_service=audit_service,
        permission_service=permission_service,
        permission_middleware=middleware,
        alert_service=alert_service,
        retention_manager=retention_manager,
        metrics=metrics,
    )


def install_services(app: FastAPI, services: Services) -> None:
    app.state.services = services
    app.state.permission_middleware = services.permission_middleware


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_audit_service(request: Request) -> AuditService:
    return get_services(request).audit_service


def get_alert_service(request: Request) -> AlertService:
    return get_services(request).alert_service


def get_retention_manager(request: Request) -> AuditRetentionManager:
    return get_services(request).retention_manager


def get_correlation_id(request: Request) -> str:
    """Extract correlation_id from request.state (set by middleware)."""
    return getattr(request.state, "correlation_id", "") or ""
