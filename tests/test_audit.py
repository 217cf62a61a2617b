from __future__ import annotations

import pytest
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError

from app.core.extensions import db
from app.core.models import (
    Dossier,
    DossierEvent,
    DossierEventType,
    DossierHold,
    DossierPhase,
    DossierStatus,
    DossierTask,
    HoldType,
    NotificationIntent,
)
from app.core.tenancy import SYSTEM_ACTOR
from app.dossiers.audit import MAX_PAGE_SIZE, event_to_dict, list_events, record_event
from app.dossiers.errors import AuditWriteFailed
from app.dossiers.holds import set_hold
from app.dossiers.lifecycle import check_and_progress


def _write_events(dossier_id: int, count: int) -> None:
    dossier = db.session.get(Dossier, dossier_id)
    for index in range(count):
        record_event(dossier, DossierEventType.TASK_STATUS_CHANGED, f"Note {index}", SYSTEM_ACTOR, {"index": index})
    db.session.commit()


def test_list_events_newest_first_with_pages(app, make_dossier):
    dossier_id = make_dossier()
    with app.app_context():
        _write_events(dossier_id, 5)

        first = list_events(dossier_id, page=1, page_size=2)
        assert first.total == 5
        assert first.has_next is True
        assert [entry.description for entry in first.items] == ["Note 4", "Note 3"]

        last = list_events(dossier_id, page=3, page_size=2)
        assert [entry.description for entry in last.items] == ["Note 0"]
        assert last.has_next is False


def test_page_size_is_capped(app, make_dossier):
    dossier_id = make_dossier()
    with app.app_context():
        page = list_events(dossier_id, page=0, page_size=10_000)
        assert page.page == 1
        assert page.page_size == MAX_PAGE_SIZE


def test_event_fields_are_serialized(app, actor, make_dossier):
    dossier_id = make_dossier(DossierStatus.CREATED)
    fd = actor("beheer@alnoor.local")
    with app.app_context():
        dossier = db.session.get(Dossier, dossier_id)
        entry = record_event(dossier, DossierEventType.TASK_STATUS_CHANGED, "  Familie gebeld  ", fd, {"channel": "phone"})
        db.session.commit()

        data = event_to_dict(entry)
        assert data["description"] == "Familie gebeld"
        assert data["event_type"] == "TASK_STATUS_CHANGED"
        assert data["details"] == {"channel": "phone"}
        assert data["actor_user_id"] == fd.user_id
        assert data["actor_role"] == fd.role
        assert data["org_id"] == fd.org_id
        assert data["created_at"]


def test_blank_description_is_rejected(app, make_dossier):
    dossier_id = make_dossier()
    with app.app_context():
        dossier = db.session.get(Dossier, dossier_id)
        with pytest.raises(ValueError):
            record_event(dossier, DossierEventType.TASK_STATUS_CHANGED, "   ", SYSTEM_ACTOR)
        assert DossierEvent.query.filter_by(dossier_id=dossier_id).count() == 0


def test_events_are_append_only(app, make_dossier):
    dossier_id = make_dossier()
    with app.app_context():
        _write_events(dossier_id, 1)
        entry = DossierEvent.query.filter_by(dossier_id=dossier_id).one()

        entry.description = "Rewritten"
        with pytest.raises(ValueError):
            db.session.flush()
        db.session.rollback()

        entry = DossierEvent.query.filter_by(dossier_id=dossier_id).one()
        db.session.delete(entry)
        with pytest.raises(ValueError):
            db.session.flush()
        db.session.rollback()

        assert DossierEvent.query.filter_by(dossier_id=dossier_id).one().description == "Note 0"


@pytest.fixture
def failing_audit_writes():
    def _refuse(_mapper, _connection, _target):
        raise SQLAlchemyError("audit table unavailable")

    event.listen(DossierEvent, "before_insert", _refuse)
    try:
        yield
    finally:
        event.remove(DossierEvent, "before_insert", _refuse)


def test_failed_audit_write_aborts_hold(app, actor, make_dossier, failing_audit_writes):
    dossier_id = make_dossier(DossierStatus.OPERATIONAL)
    with app.app_context():
        with pytest.raises(AuditWriteFailed) as excinfo:
            set_hold(dossier_id, HoldType.LEGAL, "Parket onderzoek", "Parket", "PV-1", actor("admin@platform.local"))
        assert excinfo.value.details["event_type"] == "HOLD_SET"

        assert DossierHold.query.filter_by(dossier_id=dossier_id).count() == 0
        dossier = db.session.get(Dossier, dossier_id)
        assert dossier.legal_hold is False
        assert dossier.phase == DossierPhase.WASHING
        assert NotificationIntent.query.filter_by(dossier_id=dossier_id).count() == 0


def test_failed_audit_write_aborts_progression(app, make_dossier, failing_audit_writes):
    dossier_id = make_dossier(DossierStatus.OPERATIONAL, done_tasks=1)
    with app.app_context():
        with pytest.raises(AuditWriteFailed):
            check_and_progress(dossier_id)

        dossier = db.session.get(Dossier, dossier_id)
        assert dossier.phase == DossierPhase.WASHING
        assert dossier.status == DossierStatus.OPERATIONAL
        assert dossier.legal_hold is False
        assert DossierTask.query.filter_by(dossier_id=dossier_id).count() == 1
        assert DossierEvent.query.filter_by(dossier_id=dossier_id).count() == 0
