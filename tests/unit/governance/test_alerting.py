"""Alert delivery: channel thresholds, failure isolation, rule management, audit-trail scanning."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from app.governance.alerting import (
    Alert,
    AlertNotificationConfig,
    AlertRule,
    AlertService,
    EmailChannelConfig,
    HttpxWebhookSender,
    InAppChannelConfig,
    InMemoryInAppNotifier,
    WebhookChannelConfig,
)
from app.governance.audit_models import AuthAction, Severity
from app.governance.exceptions import AlertRuleError


@pytest.fixture
def email_sender():
    sender = AsyncMock()
    sender.send = AsyncMock(return_value=None)
    return sender


@pytest.fixture
def webhook_sender():
    sender = AsyncMock()
    sender.post = AsyncMock(return_value=None)
    return sender


@pytest.fixture
def notifier():
    return InMemoryInAppNotifier()


@pytest.fixture
def all_channels():
    return AlertNotificationConfig(
        in_app=InAppChannelConfig(enabled=True, threshold=Severity.LOW),
        email=EmailChannelConfig(enabled=True, threshold=Severity.HIGH, recipients=["sec@example.com"]),
        webhook=WebhookChannelConfig(
            enabled=True, threshold=Severity.CRITICAL, url="https://hooks.example.com/alerts", timeout_seconds=2.0
        ),
    )


@pytest.fixture
def alert_service(audit_service, all_channels, email_sender, webhook_sender, notifier, clock):
    return AlertService(
        audit_service,
        all_channels,
        email_sender=email_sender,
        webhook_sender=webhook_sender,
        in_app_notifier=notifier,
        system_name="cms-test",
        clock=clock,
    )


def _alert(severity):
    return Alert(type="failed_logins", severity=severity, message="5 failed logins", details={"count": 5})


@pytest.mark.parametrize(
    "severity, expected",
    [
        (Severity.LOW, ["in_app"]),
        (Severity.MEDIUM, ["in_app"]),
        (Severity.HIGH, ["in_app", "email"]),
        (Severity.CRITICAL, ["in_app", "email", "webhook"]),
    ],
)
async def test_channels_receive_alerts_meeting_their_threshold(alert_service, severity, expected):
    assert await alert_service.process_alert(_alert(severity)) == expected


async def test_alert_is_recorded_in_audit_trail(alert_service, audit_repository):
    alert = _alert(Severity.HIGH)
    await alert_service.process_alert(alert)
    stored = audit_repository.entries[0]
    assert stored.user_id == "system"
    assert stored.action == "system.alert"
    assert stored.resource == "system_health"
    assert stored.ip_address == "127.0.0.1"
    assert stored.user_agent == "Security Alert Service"
    assert stored.severity == "high"
    assert stored.details["alertId"] == alert.id
    assert stored.details["details"] == {"count": 5}


async def test_webhook_failure_does_not_block_other_channels(alert_service, webhook_sender, notifier):
    webhook_sender.post.side_effect = httpx.ConnectError("unreachable")
    delivered = await alert_service.process_alert(_alert(Severity.CRITICAL))
    assert delivered == ["in_app", "email"]
    assert len(notifier.recent()) == 1


async def test_store_failure_does_not_block_delivery(alert_service, audit_repository, notifier):
    audit_repository.create = AsyncMock(side_effect=RuntimeError("db down"))
    assert await alert_service.process_alert(_alert(Severity.LOW)) == ["in_app"]
    assert notifier.recent()[0].type == "failed_logins"


async def test_webhook_payload(alert_service, webhook_sender):
    alert = _alert(Severity.CRITICAL)
    await alert_service.process_alert(alert)
    url, payload, timeout = webhook_sender.post.call_args[0]
    assert url == "https://hooks.example.com/alerts"
    assert payload["system"] == "cms-test"
    assert payload["alert"]["id"] == alert.id
    assert payload["alert"]["severity"] == "critical"
    assert timeout == 2.0


async def test_email_subject_and_recipients(alert_service, email_sender):
    await alert_service.process_alert(_alert(Severity.HIGH))
    recipients, subject, body = email_sender.send.call_args[0]
    assert recipients == ["sec@example.com"]
    assert subject == "Security Alert: failed_logins - HIGH"
    assert "- Message: 5 failed logins" in body


async def test_disabled_channels_are_skipped(audit_service, email_sender, webhook_sender):
    service = AlertService(audit_service, email_sender=email_sender, webhook_sender=webhook_sender)
    assert await service.process_alert(_alert(Severity.CRITICAL)) == ["in_app"]
    email_sender.send.assert_not_awaited()
    webhook_sender.post.assert_not_awaited()


async def test_test_notifications(alert_service, notifier):
    delivered = await alert_service.test_notifications(Severity.MEDIUM)
    assert delivered == ["in_app"]
    sent = notifier.recent()[0]
    assert sent.id.startswith("test-")
    assert sent.details == {"test": True}


async def test_update_config(alert_service):
    config = alert_service.update_config(email=EmailChannelConfig(enabled=False))
    assert config.email.enabled is False
    assert await alert_service.process_alert(_alert(Severity.HIGH)) == ["in_app"]
    with pytest.raises(AlertRuleError):
        alert_service.update_config(sms=None)


def test_config_to_dict(all_channels):
    data = all_channels.to_dict()
    assert data["webhook"]["threshold"] == "critical"
    assert data["email"]["recipients"] == ["sec@example.com"]


async def test_notifier_keeps_most_recent():
    notifier = InMemoryInAppNotifier(max_items=2)
    for i in range(3):
        await notifier.notify(Alert(type=f"t{i}", severity=Severity.LOW, message="m"))
    assert [a.type for a in notifier.recent()] == ["t2", "t1"]


# --- rules ---


def test_default_rules(alert_service):
    ids = {rule.id for rule in alert_service.get_alert_rules()}
    assert ids == {"failed-logins", "suspicious-activity"}


def test_rule_crud(alert_service):
    rule_id = alert_service.add_alert_rule("Bursts", "rapid_actions", Severity.MEDIUM, cooldown_minutes=15)
    assert rule_id.startswith("custom-")
    assert alert_service.get_alert_rule(rule_id).condition == "rapid_actions"

    assert alert_service.update_alert_rule(rule_id, severity="high", enabled=False)
    updated = alert_service.get_alert_rule(rule_id)
    assert updated.severity is Severity.HIGH
    assert updated.enabled is False

    assert alert_service.remove_alert_rule(rule_id) is True
    assert alert_service.remove_alert_rule(rule_id) is False
    assert alert_service.get_alert_rule(rule_id) is None
    assert alert_service.update_alert_rule(rule_id, enabled=True) is False


def test_rule_copies_are_detached(alert_service):
    rule = alert_service.get_alert_rule("failed-logins")
    rule.enabled = False
    assert alert_service.get_alert_rule("failed-logins").enabled is True


def test_invalid_rule_updates(alert_service):
    with pytest.raises(AlertRuleError):
        alert_service.update_alert_rule("failed-logins", id="hijack")
    with pytest.raises(AlertRuleError):
        alert_service.update_alert_rule("failed-logins", cooldown_minutes=-1)
    with pytest.raises(AlertRuleError):
        alert_service.add_alert_rule("", "failed_logins", Severity.LOW)


# --- scanning ---


async def _fail_logins(audit_service, user_id="u1", times=5):
    for _ in range(times):
        await audit_service.log_auth(user_id, AuthAction.LOGIN_FAILED)


async def test_scan_raises_alert_per_matching_rule(alert_service, audit_service):
    await _fail_logins(audit_service)
    alerts = await alert_service.scan_audit_trail(days=1)
    assert sorted(a.type for a in alerts) == ["failed_logins", "suspicious_activity"]
    failed = next(a for a in alerts if a.type == "failed_logins")
    assert failed.severity is Severity.HIGH
    assert failed.details["rule_id"] == "failed-logins"
    assert failed.details["users"] == ["u1"]


async def test_scan_respects_cooldown(alert_service, audit_service, clock):
    await _fail_logins(audit_service)
    await alert_service.scan_audit_trail()

    clock.advance(minutes=10)
    await _fail_logins(audit_service, times=1)
    again = await alert_service.scan_audit_trail()
    assert [a.type for a in again] == ["suspicious_activity"]

    clock.advance(minutes=25)
    await _fail_logins(audit_service, times=1)
    later = await alert_service.scan_audit_trail()
    assert sorted(a.type for a in later) == ["failed_logins", "suspicious_activity"]
    assert alert_service.get_alert_rule("failed-logins").last_triggered == clock.current


async def test_scan_does_not_repeat_alerts_for_old_events(alert_service, audit_service, clock):
    await _fail_logins(audit_service)
    assert len(await alert_service.scan_audit_trail()) == 2

    clock.advance(minutes=45)
    assert await alert_service.scan_audit_trail() == []


async def test_cooldown_is_kept_per_subject(alert_service, audit_service, clock):
    await _fail_logins(audit_service, "u1")
    await alert_service.scan_audit_trail()

    clock.advance(minutes=5)
    await _fail_logins(audit_service, "u1", times=1)
    await _fail_logins(audit_service, "u2")
    alerts = await alert_service.scan_audit_trail()

    failed = next(a for a in alerts if a.type == "failed_logins")
    assert failed.details["users"] == ["u2"]
    assert failed.details["count"] == 5
    suspicious = next(a for a in alerts if a.type == "suspicious_activity")
    assert suspicious.details["users"] == ["u1", "u2"]


class GatedNotifier(InMemoryInAppNotifier):
    """Holds each delivery open until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def notify(self, alert):
        await super().notify(alert)
        self.entered.set()
        await self.release.wait()


async def test_rule_edits_during_delivery_are_kept(audit_service, clock):
    notifier = GatedNotifier()
    rules = [
        AlertRule(id=f"r{i}", name=f"Rule {i}", condition="failed_logins", severity=Severity.LOW) for i in (1, 2, 3)
    ]
    service = AlertService(audit_service, in_app_notifier=notifier, rules=rules, clock=clock)
    await _fail_logins(audit_service)

    scan = asyncio.create_task(service.scan_audit_trail())
    await notifier.entered.wait()
    service.update_alert_rule("r1", name="Renamed")
    service.update_alert_rule("r2", enabled=False)
    service.remove_alert_rule("r3")
    notifier.release.set()
    alerts = await scan

    assert [a.details["rule_id"] for a in alerts] == ["r1"]
    first = service.get_alert_rule("r1")
    assert first.name == "Renamed"
    assert first.last_triggered == clock.current
    assert service.get_alert_rule("r2").enabled is False
    assert service.get_alert_rule("r2").last_triggered is None
    assert service.get_alert_rule("r3") is None


async def test_scan_skips_disabled_rules(alert_service, audit_service):
    await _fail_logins(audit_service)
    alert_service.update_alert_rule("suspicious-activity", enabled=False)
    alerts = await alert_service.scan_audit_trail()
    assert [a.type for a in alerts] == ["failed_logins"]


async def test_scan_with_quiet_trail(alert_service):
    assert await alert_service.scan_audit_trail() == []


# --- httpx sender ---


async def test_httpx_webhook_sender_posts_json(monkeypatch):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.content
        seen["agent"] = request.headers["user-agent"]
        return httpx.Response(200)

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        httpx, "AsyncClient", lambda **kw: real_client(transport=httpx.MockTransport(handler), **kw)
    )
    await HttpxWebhookSender(user_agent="cms-test/1.0").post("https://hooks.example.com/a", {"k": "v"}, 1.0)
    assert seen["url"] == "https://hooks.example.com/a"
    assert b'"k"' in seen["body"]
    assert seen["agent"] == "cms-test/1.0"


async def test_httpx_webhook_sender_raises_on_error_status(monkeypatch):
    real_client = httpx.AsyncClient
    transport = httpx.MockTransport(lambda request: httpx.Response(502))
    monkeypatch.setattr(httpx, "AsyncClient", lambda **kw: real_client(transport=transport, **kw))
    with pytest.raises(httpx.HTTPStatusError):
        await HttpxWebhookSender().post("https://hooks.example.com/a", {}, 1.0)
