from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import requests
from flask import current_app

from app.core.extensions import db
from app.core.models import DeliveryStatus, Dossier, DossierEvent, NotificationIntent, RecipientType

logger = logging.getLogger(__name__)

USER_AGENT = "DossierWorkflow-Webhook/1.0"
MAX_ERROR_LENGTH = 500


@dataclass
class DispatchResult:
    sent: int = 0
    failed: int = 0


def queue_notification(
    dossier: Dossier,
    entry: DossierEvent,
    recipient_type: RecipientType,
    recipient_org_id: int | None,
    **payload: object,
) -> NotificationIntent | None:
    """Queue a "notify X about Y" intent next to the state change.

    Delivery happens later in :func:`dispatch_pending_notifications`, outside
    the dossier transaction. Nothing is queued for a recipient organization
    that does not exist.
    """
    if recipient_org_id is None and recipient_type != RecipientType.ADMIN:
        return None
    intent = NotificationIntent(
        dossier_id=dossier.id,
        event_id=entry.id,
        trigger_event=entry.event_type.value,
        recipient_type=recipient_type,
        recipient_org_id=recipient_org_id,
        payload={
            "dossier_reference": dossier.reference,
            "description": entry.description,
            **payload,
        },
    )
    db.session.add(intent)
    return intent


def _webhook_payload(intent: NotificationIntent) -> dict[str, object]:
    return {
        "event_type": intent.trigger_event,
        "dossier_id": intent.dossier_id,
        "organization_id": intent.recipient_org_id,
        "recipient_type": intent.recipient_type.value,
        "metadata": intent.payload or {},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def deliver_notification(intent: NotificationIntent) -> bool:
    url = current_app.config.get("NOTIFICATION_WEBHOOK_URL") or ""
    intent.attempts += 1
    try:
        response = requests.post(
            url,
            json=_webhook_payload(intent),
            headers={
                "X-Webhook-Secret": current_app.config.get("NOTIFICATION_WEBHOOK_SECRET") or "",
                "User-Agent": USER_AGENT,
            },
            timeout=current_app.config.get("NOTIFICATION_TIMEOUT_SECONDS", 10),
        )
    except requests.RequestException as exc:
        intent.status = DeliveryStatus.FAILED
        intent.last_error = str(exc)[:MAX_ERROR_LENGTH]
        logger.warning("Notification %s delivery failed: %s", intent.id, exc)
        return False

    if not response.ok:
        intent.status = DeliveryStatus.FAILED
        intent.last_error = f"HTTP {response.status_code}: {response.text[:200]}"
        logger.warning("Notification %s rejected by webhook with HTTP %s", intent.id, response.status_code)
        return False

    intent.status = DeliveryStatus.SENT
    intent.sent_at = datetime.now(timezone.utc)
    intent.last_error = None
    return True


def dispatch_pending_notifications(limit: int = 100, include_failed: bool = False) -> DispatchResult:
    """Deliver queued intents to the configured webhook, oldest first.

    Each intent is committed on its own so one slow or failing endpoint does
    not hold the others back. Without a webhook URL the run is a no-op.
    """
    result = DispatchResult()
    if not current_app.config.get("NOTIFICATION_WEBHOOK_URL"):
        logger.info("No notification webhook configured, dispatch skipped")
        return result

    statuses = [DeliveryStatus.PENDING]
    if include_failed:
        statuses.append(DeliveryStatus.FAILED)
    intents = (
        NotificationIntent.query.filter(NotificationIntent.status.in_(statuses))
        .order_by(NotificationIntent.created_at.asc(), NotificationIntent.id.asc())
        .limit(limit)
        .all()
    )
    for intent in intents:
        if deliver_notification(intent):
            result.sent += 1
        else:
            result.failed += 1
        db.session.commit()
    logger.info("Notification dispatch: sent=%s failed=%s", result.sent, result.failed)
    return result
