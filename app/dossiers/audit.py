from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from app.core.extensions import db
from app.core.models import Dossier, DossierEvent, DossierEventType
from app.core.tenancy import Actor
from app.dossiers.errors import AuditWriteFailed

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200


@dataclass
class EventPage:
    items: list[DossierEvent]
    page: int
    page_size: int
    total: int

    @property
    def has_next(self) -> bool:
        return self.page * self.page_size < self.total


def record_event(
    dossier: Dossier,
    event_type: DossierEventType,
    description: str,
    actor: Actor,
    details: dict[str, object] | None = None,
) -> DossierEvent:
    """Append one audit event for ``dossier`` inside the current transaction.

    The row is flushed right away so a failing audit write aborts the
    operation that triggered it instead of being lost at commit time.
    """
    text = (description or "").strip()
    if not text:
        raise ValueError("Audit event description is required")

    entry = DossierEvent(
        dossier_id=dossier.id,
        event_type=event_type,
        description=text,
        details=dict(details or {}),
        actor_user_id=actor.user_id,
        actor_role=actor.role,
        org_id=actor.org_id,
    )
    try:
        db.session.add(entry)
        db.session.flush()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Audit write failed for dossier %s (%s): %s", dossier.id, event_type.value, exc)
        raise AuditWriteFailed(
            "Audit log could not be written, operation aborted",
            dossier_id=dossier.id,
            event_type=event_type.value,
        ) from exc
    return entry


def list_events(dossier_id: int, page: int = 1, page_size: int = 50) -> EventPage:
    page = max(page, 1)
    page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
    query = DossierEvent.query.filter_by(dossier_id=dossier_id)
    total = query.count()
    items = (
        query.order_by(DossierEvent.created_at.desc(), DossierEvent.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return EventPage(items=items, page=page, page_size=page_size, total=total)


def event_to_dict(entry: DossierEvent) -> dict[str, object]:
    return {
        "id": entry.id,
        "dossier_id": entry.dossier_id,
        "event_type": entry.event_type.value,
        "description": entry.description,
        "details": entry.details or {},
        "actor_user_id": entry.actor_user_id,
        "actor_role": entry.actor_role,
        "org_id": entry.org_id,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
