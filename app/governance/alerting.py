"""Security alert delivery: channel thresholds, rule table with cooldowns, audit-trail scanning. No FastAPI."""

import asyncio
import json
import logging
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import httpx

from app.governance.audit_models import (
    SYSTEM_USER_ID,
    AlertDetails,
    AuditEntryInput,
    AuditResource,
    Severity,
    SystemAction,
)
from app.governance.audit_service import AuditService
from app.governance.exceptions import AlertRuleError

logger = logging.getLogger(__name__)

ALERT_SOURCE_IP = "127.0.0.1"
ALERT_SOURCE_AGENT = "Security Alert Service"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def meets_threshold(severity: str, threshold: str) -> bool:
    return Severity(severity).meets(Severity(threshold))


# ---------------------------------------------------------------------------
# Configuration and payloads
# ---------------------------------------------------------------------------

@dataclass
class InAppChannelConfig:
    enabled: bool = True
    threshold: Severity = Severity.LOW


@dataclass
class EmailChannelConfig:
    enabled: bool = False
    threshold: Severity = Severity.HIGH
    recipients: List[str] = field(default_factory=list)


@dataclass
class WebhookChannelConfig:
    enabled: bool = False
    threshold: Severity = Severity.CRITICAL
    url: str = ""
    timeout_seconds: float = 5.0


@dataclass
class AlertNotificationConfig:
    in_app: InAppChannelConfig = field(default_factory=InAppChannelConfig)
    email: EmailChannelConfig = field(default_factory=EmailChannelConfig)
    webhook: WebhookChannelConfig = field(default_factory=WebhookChannelConfig)

    @classmethod
    def from_settings(cls, settings) -> "AlertNotificationConfig":
        return cls(
            in_app=InAppChannelConfig(
                enabled=settings.alert_in_app_enabled,
                threshold=Severity(settings.alert_in_app_threshold),
            ),
            email=EmailChannelConfig(
                enabled=settings.alert_email_enabled,
                threshold=Severity(settings.alert_email_threshold),
                recipients=list(settings.alert_email_recipients),
            ),
            webhook=WebhookChannelConfig(
                enabled=settings.alert_webhook_enabled,
                threshold=Severity(settings.alert_webhook_threshold),
                url=settings.alert_webhook_url,
                timeout_seconds=settings.alert_webhook_timeout_seconds,
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return json.loads(json.dumps(asdict(self), default=str))


@dataclass(frozen=True)
class Alert:
    """Structured alert handed to every sink."""

    type: str
    severity: Severity
    message: str
    id: str = field(default_factory=lambda: f"alert-{uuid.uuid4().hex}")
    timestamp: datetime = field(default_factory=_utcnow)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": Severity(self.severity).value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }


@dataclass
class AlertRule:
    """Named rule. `condition` is the alert type it reacts to (e.g. `failed_logins`)."""

    id: str
    name: str
    condition: str
    severity: Severity
    description: str = ""
    enabled: bool = True
    cooldown_minutes: int = 0
    last_triggered: Optional[datetime] = None

    def in_cooldown(self, now: datetime, since: Optional[datetime] = None) -> bool:
        """True while now is within cooldown_minutes of since (default: last_triggered)."""
        since = since or self.last_triggered
        if since is None or self.cooldown_minutes <= 0:
            return False
        return now < since + timedelta(minutes=self.cooldown_minutes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "condition": self.condition,
            "severity": Severity(self.severity).value,
            "enabled": self.enabled,
            "cooldown_minutes": self.cooldown_minutes,
            "last_triggered": self.last_triggered.isoformat() if self.last_triggered else None,
        }


def default_alert_rules() -> List[AlertRule]:
    return [
        AlertRule(
            id="failed-logins",
            name="Repeated failed logins",
            description="Users crossing the failed-login threshold",
            condition="failed_logins",
            severity=Severity.HIGH,
            cooldown_minutes=30,
        ),
        AlertRule(
            id="suspicious-activity",
            name="Suspicious activity",
            description="Any suspicious-activity audit event",
            condition="suspicious_activity",
            severity=Severity.CRITICAL,
            cooldown_minutes=0,
        ),
    ]


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class EmailSender(Protocol):
    async def send(self, recipients: List[str], subject: str, body: str) -> None:
        ...


class WebhookSender(Protocol):
    async def post(self, url: str, payload: Dict[str, Any], timeout: float) -> None:
        ...


class InAppNotifier(Protocol):
    async def notify(self, alert: Alert) -> None:
        ...


class LoggingEmailSender:
    """Placeholder mail transport: records the message in the structured log."""

    async def send(self, recipients: List[str], subject: str, body: str) -> None:
        logger.info("alert_email_queued", extra={"channel": "email", "subject": subject})


class HttpxWebhookSender:
    def __init__(self, user_agent: str = "cms-access-core/1.0") -> None:
        self._headers = {"Content-Type": "application/json", "User-Agent": user_agent}

    async def post(self, url: str, payload: Dict[str, Any], timeout: float) -> None:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(url, json=payload, headers=self._headers)
            response.raise_for_status()


class InMemoryInAppNotifier:
    """Keeps the most recent alerts for the admin UI."""

    def __init__(self, max_items: int = 200) -> None:
        self._alerts: List[Alert] = []
        self._max_items = max_items

    async def notify(self, alert: Alert) -> None:
        self._alerts.append(alert)
        del self._alerts[: -self._max_items]

    def recent(self, limit: int = 50) -> List[Alert]:
        return list(reversed(self._alerts[-limit:]))


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

_MUTABLE_RULE_FIELDS = {f.name for f in fields(AlertRule)} - {"id", "last_triggered"}


class AlertService:
    """
    Persists alerts to the audit trail and fans them out to every enabled channel
    whose threshold the alert meets. Delivery failures are logged and never raised.
    """

    def __init__(
        self,
        audit_service: AuditService,
        config: Optional[AlertNotificationConfig] = None,
        *,
        email_sender: Optional[EmailSender] = None,
        webhook_sender: Optional[WebhookSender] = None,
        in_app_notifier: Optional[InAppNotifier] = None,
        rules: Optional[List[AlertRule]] = None,
        system_name: str = "cms-access-core",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._audit = audit_service
        self._config = config or AlertNotificationConfig()
        self._email = email_sender or LoggingEmailSender()
        self._webhook = webhook_sender or HttpxWebhookSender()
        self._in_app = in_app_notifier or InMemoryInAppNotifier()
        self._rules: Dict[str, AlertRule] = {r.id: r for r in (rules if rules is not None else default_alert_rules())}
        # (rule id, subject) -> (last alerted at, newest event covered)
        self._fired: Dict[Tuple[str, str], Tuple[datetime, datetime]] = {}
        self._system_name = system_name
        self._clock = clock

    @property
    def in_app(self) -> InAppNotifier:
        return self._in_app

    # --- config ---

    def get_config(self) -> AlertNotificationConfig:
        return replace(self._config)

    def update_config(self, **channels: Any) -> AlertNotificationConfig:
        """Replace whole channel configs, e.g. update_config(webhook=WebhookChannelConfig(...))."""
        unknown = set(channels) - {"in_app", "email", "webhook"}
        if unknown:
            raise AlertRuleError(f"Unknown alert channels: {sorted(unknown)}")
        self._config = replace(self._config, **channels)
        return self.get_config()

    # --- rules ---

    def get_alert_rules(self) -> List[AlertRule]:
        return [replace(rule) for rule in self._rules.values()]

    def get_alert_rule(self, rule_id: str) -> Optional[AlertRule]:
        rule = self._rules.get(rule_id)
        return replace(rule) if rule else None

    def add_alert_rule(
        self,
        name: str,
        condition: str,
        severity: Severity,
        *,
        description: str = "",
        enabled: bool = True,
        cooldown_minutes: int = 0,
    ) -> str:
        if not name or not condition:
            raise AlertRuleError("Alert rule requires a name and a condition")
        if cooldown_minutes < 0:
            raise AlertRuleError("cooldown_minutes must not be negative")
        rule_id = f"custom-{uuid.uuid4().hex}"
        self._rules[rule_id] = AlertRule(
            id=rule_id,
            name=name,
            condition=condition,
            severity=Severity(severity),
            description=description,
            enabled=enabled,
            cooldown_minutes=cooldown_minutes,
        )
        logger.info("alert_rule_added", extra={"rule_id": rule_id})
        return rule_id

    def update_alert_rule(self, rule_id: str, **updates: Any) -> bool:
        rule = self._rules.get(rule_id)
        if rule is None:
            return False
        unknown = set(updates) - _MUTABLE_RULE_FIELDS
        if unknown:
            raise AlertRuleError(f"Cannot update alert rule fields: {sorted(unknown)}")
        if "severity" in updates:
            updates["severity"] = Severity(updates["severity"])
        if updates.get("cooldown_minutes", 0) < 0:
            raise AlertRuleError("cooldown_minutes must not be negative")
        self._rules[rule_id] = replace(rule, **updates)
        logger.info("alert_rule_updated", extra={"rule_id": rule_id})
        return True

    def remove_alert_rule(self, rule_id: str) -> bool:
        removed = self._rules.pop(rule_id, None) is not None
        if removed:
            self._fired = {key: value for key, value in self._fired.items() if key[0] != rule_id}
            logger.info("alert_rule_removed", extra={"rule_id": rule_id})
        return removed

    # --- delivery ---

    async def process_alert(self, alert: Alert) -> List[str]:
        """Store alert, deliver to qualifying channels. Returns the channels that succeeded."""
        await self._store(alert)

        deliveries = []
        config = self._config
        if config.in_app.enabled and meets_threshold(alert.severity, config.in_app.threshold):
            deliveries.append(("in_app", self._in_app.notify(alert)))
        if config.email.enabled and meets_threshold(alert.severity, config.email.threshold):
            deliveries.append(("email", self._send_email(alert)))
        if config.webhook.enabled and config.webhook.url and meets_threshold(alert.severity, config.webhook.threshold):
            deliveries.append(("webhook", self._send_webhook(alert)))

        results = await asyncio.gather(*(coro for _, coro in deliveries), return_exceptions=True)
        delivered: List[str] = []
        for (channel, _), result in zip(deliveries, results):
            if isinstance(result, BaseException):
                logger.error(
                    "alert_delivery_failed",
                    extra={"channel": channel, "alert_id": alert.id, "error": str(result)},
                )
            else:
                delivered.append(channel)

        logger.info(
            "alert_processed",
            extra={"alert_id": alert.id, "severity": Severity(alert.severity).value, "alert_type": alert.type},
        )
        return delivered

    async def _store(self, alert: Alert) -> None:
        try:
            await self._audit.log(
                AuditEntryInput(
                    user_id=SYSTEM_USER_ID,
                    action=SystemAction.ALERT.value,
                    resource=AuditResource.SYSTEM_HEALTH,
                    details=AlertDetails(
                        alert_id=alert.id,
                        type=alert.type,
                        severity=Severity(alert.severity).value,
                        message=alert.message,
                        details=alert.details,
                    ),
                    ip_address=ALERT_SOURCE_IP,
                    user_agent=ALERT_SOURCE_AGENT,
                    severity=Severity(alert.severity),
                ),
                check_suspicious=False,
            )
        except Exception as e:
            logger.error("alert_store_failed", extra={"alert_id": alert.id, "error": str(e)})

    async def _send_email(self, alert: Alert) -> None:
        severity = Severity(alert.severity).value
        subject = f"Security Alert: {alert.type} - {severity.upper()}"
        body = "\n".join(
            [
                "Alert Details:",
                f"- Type: {alert.type}",
                f"- Severity: {severity}",
                f"- Message: {alert.message}",
                f"- Timestamp: {alert.timestamp.isoformat()}",
                f"- Details: {json.dumps(alert.details, indent=2, default=str)}",
            ]
        )
        await self._email.send(list(self._config.email.recipients), subject, body)

    async def _send_webhook(self, alert: Alert) -> None:
        payload = {"alert": alert.to_payload(), "system": self._system_name}
        await self._webhook.post(self._config.webhook.url, payload, self._config.webhook.timeout_seconds)

    async def test_notifications(self, severity: Severity = Severity.MEDIUM) -> List[str]:
        alert = Alert(
            id=f"test-{uuid.uuid4().hex}",
            type="test",
            severity=Severity(severity),
            message="This is a test alert to verify the notification system is working correctly.",
            details={"test": True},
        )
        return await self.process_alert(alert)

    # --- periodic scan ---

    async def scan_audit_trail(self, days: int = 1) -> List[Alert]:
        """
        Turn audit-trail summaries into alerts via matching enabled rules. Cooldown is kept
        per rule and subject, and a subject alerts again only once it has newer events.
        """
        summaries = await self._audit.get_security_alerts(days)
        raised: List[Alert] = []
        for summary in summaries:
            for rule_id in list(self._rules):
                # Deliveries await, so the rule table is read live for each rule.
                rule = self._rules.get(rule_id)
                if rule is None or not rule.enabled or rule.condition != summary["type"]:
                    continue
                now = self._clock()
                fresh = {
                    subject: info
                    for subject, info in summary["subjects"].items()
                    if self._is_fresh(rule, subject, info["last_occurrence"], now)
                }
                if not fresh:
                    continue
                for subject, info in fresh.items():
                    self._fired[(rule.id, subject)] = (now, info["last_occurrence"])
                rule.last_triggered = now
                alert = Alert(
                    type=summary["type"],
                    severity=rule.severity,
                    message=summary["message"],
                    details={
                        "rule_id": rule.id,
                        "count": sum(info["count"] for info in fresh.values()),
                        "users": sorted(fresh),
                        "last_occurrence": max(info["last_occurrence"] for info in fresh.values()).isoformat(),
                    },
                )
                await self.process_alert(alert)
                raised.append(alert)
        return raised

    def _is_fresh(self, rule: AlertRule, subject: str, last_occurrence: datetime, now: datetime) -> bool:
        fired = self._fired.get((rule.id, subject))
        if fired is None:
            return True
        fired_at, seen_until = fired
        return last_occurrence > seen_until and not rule.in_cooldown(now, fired_at)
