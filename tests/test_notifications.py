from __future__ import annotations

import pytest
import requests

from app.core.extensions import db
from app.core.models import DeliveryStatus, DossierStatus, NotificationIntent, RecipientType
from app.dossiers import notifications
from app.dossiers.lifecycle import activate
from app.dossiers.notifications import USER_AGENT, dispatch_pending_notifications

WEBHOOK_URL = "https://hooks.example.test/dossiers"


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "ok"):
        self.status_code = status_code
        self.text = text

    @property
    def ok(self) -> bool:
        return self.status_code < 400


@pytest.fixture
def webhook(app):
    app.config["NOTIFICATION_WEBHOOK_URL"] = WEBHOOK_URL
    app.config["NOTIFICATION_WEBHOOK_SECRET"] = "s3cret"
    return app


@pytest.fixture
def queued_intent(app, actor, make_dossier):
    dossier_id = make_dossier(DossierStatus.INTAKE)
    with app.app_context():
        activate(dossier_id, "intake complete", actor("beheer@alnoor.local"))
        intent = NotificationIntent.query.filter_by(dossier_id=dossier_id).one()
        assert intent.recipient_type == RecipientType.FAMILY
        assert intent.status == DeliveryStatus.PENDING
        return intent.id


def test_dispatch_without_webhook_is_noop(app, queued_intent):
    with app.app_context():
        result = dispatch_pending_notifications()
        assert (result.sent, result.failed) == (0, 0)
        assert db.session.get(NotificationIntent, queued_intent).status == DeliveryStatus.PENDING


def test_dispatch_posts_payload_and_marks_sent(webhook, queued_intent, monkeypatch):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        return FakeResponse(200)

    monkeypatch.setattr(notifications.requests, "post", fake_post)
    with webhook.app_context():
        result = dispatch_pending_notifications()
        assert result.sent == 1
        intent = db.session.get(NotificationIntent, queued_intent)
        assert intent.status == DeliveryStatus.SENT
        assert intent.attempts == 1
        assert intent.sent_at is not None

    assert len(calls) == 1
    call = calls[0]
    assert call["url"] == WEBHOOK_URL
    assert call["headers"]["X-Webhook-Secret"] == "s3cret"
    assert call["headers"]["User-Agent"] == USER_AGENT
    assert call["json"]["event_type"] == "DOSSIER_ACTIVATED"
    assert call["json"]["recipient_type"] == "FAMILY"
    assert call["json"]["metadata"]["status"] == "OPERATIONAL"


def test_rejected_delivery_is_marked_failed_and_retried_on_request(webhook, queued_intent, monkeypatch):
    monkeypatch.setattr(notifications.requests, "post", lambda *args, **kwargs: FakeResponse(503, "down"))
    with webhook.app_context():
        result = dispatch_pending_notifications()
        assert result.failed == 1
        intent = db.session.get(NotificationIntent, queued_intent)
        assert intent.status == DeliveryStatus.FAILED
        assert intent.last_error.startswith("HTTP 503")

        assert dispatch_pending_notifications().failed == 0

        monkeypatch.setattr(notifications.requests, "post", lambda *args, **kwargs: FakeResponse(204))
        assert dispatch_pending_notifications(include_failed=True).sent == 1
        intent = db.session.get(NotificationIntent, queued_intent)
        assert intent.status == DeliveryStatus.SENT
        assert intent.attempts == 2
        assert intent.last_error is None


def test_network_error_does_not_raise(webhook, queued_intent, monkeypatch):
    def broken_post(*args, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(notifications.requests, "post", broken_post)
    with webhook.app_context():
        result = dispatch_pending_notifications()
        assert result.failed == 1
        intent = db.session.get(NotificationIntent, queued_intent)
        assert intent.status == DeliveryStatus.FAILED
        assert "connection refused" in intent.last_error


def test_dispatch_cli_command(webhook, queued_intent, monkeypatch):
    monkeypatch.setattr(notifications.requests, "post", lambda *args, **kwargs: FakeResponse(200))
    runner = webhook.test_cli_runner()
    result = runner.invoke(args=["notifications-dispatch", "--limit", "10"])
    assert result.exit_code == 0
    assert "sent=1 failed=0" in result.output
