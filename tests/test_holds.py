from __future__ import annotations

import pytest

from app.core.extensions import db
from app.core.models import Dossier, DossierEvent, DossierEventType, DossierHold, HoldType
from app.dossiers.errors import MAX_REASON_LENGTH, AlreadyHeld, Forbidden, InvalidInput, NotHeld, ReasonRequired
from app.dossiers.holds import hold_history, is_blocked, lift_hold, set_hold

ADMIN = "admin@platform.local"
INSURER = "claims@amana.local"
FD = "beheer@alnoor.local"


def test_legal_hold_blocks_until_lifted(app, actor, make_dossier):
    dossier_id = make_dossier()
    admin = actor(ADMIN)
    with app.app_context():
        assert is_blocked(dossier_id).blocked is False

        set_hold(dossier_id, HoldType.LEGAL, "Parket onderzoek", "Parket Brussel", "PV-2026-114", admin)
        status = is_blocked(dossier_id)
        assert status.blocked is True
        assert status.hold_type == HoldType.LEGAL
        assert "Parket onderzoek" in status.message
        assert "PV-2026-114" in status.message
        assert db.session.get(Dossier, dossier_id).legal_hold is True

        lift_hold(dossier_id, "legal", "Vrijgave parket", admin)
        assert is_blocked(dossier_id).blocked is False
        assert db.session.get(Dossier, dossier_id).legal_hold is False


def test_second_hold_of_same_type_fails_already_held(app, actor, make_dossier):
    dossier_id = make_dossier()
    admin = actor(ADMIN)
    with app.app_context():
        set_hold(dossier_id, HoldType.LEGAL, "Autopsie", "", "", admin)
        with pytest.raises(AlreadyHeld):
            set_hold(dossier_id, HoldType.LEGAL, "Autopsie bis", "", "", admin)
        assert DossierHold.query.filter_by(dossier_id=dossier_id, active=True).count() == 1


def test_lift_without_active_hold_fails_not_held(app, actor, make_dossier):
    dossier_id = make_dossier()
    insurer = actor(INSURER)
    with app.app_context():
        with pytest.raises(NotHeld):
            lift_hold(dossier_id, "INSURER", "dispute resolved", insurer)


def test_relifting_a_lifted_hold_fails_not_held(app, actor, make_dossier):
    dossier_id = make_dossier()
    insurer = actor(INSURER)
    with app.app_context():
        set_hold(dossier_id, HoldType.INSURER, "Polis wordt gecontroleerd", "Amana", "CL-77", insurer)
        lift_hold(dossier_id, HoldType.INSURER, "Dekking bevestigd", insurer)
        with pytest.raises(NotHeld):
            lift_hold(dossier_id, HoldType.INSURER, "Dekking bevestigd", insurer)
        assert DossierEvent.query.filter_by(
            dossier_id=dossier_id, event_type=DossierEventType.HOLD_LIFTED
        ).count() == 1


def test_hold_privileges(app, actor, make_dossier):
    dossier_id = make_dossier()
    with app.app_context():
        with pytest.raises(Forbidden):
            set_hold(dossier_id, HoldType.LEGAL, "Onderzoek", "", "", actor(INSURER))
        with pytest.raises(Forbidden):
            set_hold(dossier_id, HoldType.INSURER, "Polis", "", "", actor(FD))
        set_hold(dossier_id, HoldType.INSURER, "Polis", "", "", actor(ADMIN))
        with pytest.raises(Forbidden):
            lift_hold(dossier_id, HoldType.INSURER, "Klaar", actor(FD))


def test_hold_requires_reason(app, actor, make_dossier):
    dossier_id = make_dossier()
    with app.app_context():
        with pytest.raises(ReasonRequired):
            set_hold(dossier_id, HoldType.LEGAL, "   ", "", "", actor(ADMIN))
        with pytest.raises(ReasonRequired):
            lift_hold(dossier_id, HoldType.LEGAL, "", actor(ADMIN))


def test_insurer_hold_keeps_dossier_blocked_after_legal_lift(app, actor, make_dossier):
    dossier_id = make_dossier()
    admin = actor(ADMIN)
    with app.app_context():
        set_hold(dossier_id, HoldType.LEGAL, "Onderzoek", "", "", admin)
        set_hold(dossier_id, HoldType.INSURER, "Polis geschorst", "", "", actor(INSURER))
        assert is_blocked(dossier_id).hold_type == HoldType.LEGAL

        lift_hold(dossier_id, HoldType.LEGAL, "Afgerond", admin)
        dossier = db.session.get(Dossier, dossier_id)
        assert dossier.legal_hold is False
        assert dossier.insurer_hold is True
        status = is_blocked(dossier_id)
        assert status.blocked is True
        assert status.hold_type == HoldType.INSURER


def test_lifted_holds_stay_in_history_and_cannot_be_deleted(app, actor, make_dossier):
    dossier_id = make_dossier()
    admin = actor(ADMIN)
    with app.app_context():
        set_hold(dossier_id, HoldType.LEGAL, "Onderzoek", "", "", admin)
        lift_hold(dossier_id, HoldType.LEGAL, "Afgerond", admin)
        history = hold_history(dossier_id)
        assert len(history) == 1
        assert history[0].active is False
        assert history[0].lift_reason == "Afgerond"

        db.session.delete(history[0])
        with pytest.raises(ValueError):
            db.session.flush()
        db.session.rollback()


def test_overlong_hold_texts_are_rejected(app, actor, make_dossier):
    dossier_id = make_dossier()
    admin = actor(ADMIN)
    with app.app_context():
        with pytest.raises(InvalidInput) as excinfo:
            set_hold(dossier_id, HoldType.LEGAL, "x" * (MAX_REASON_LENGTH + 1), "", "", admin)
        assert excinfo.value.details["max_length"] == MAX_REASON_LENGTH
        with pytest.raises(InvalidInput):
            set_hold(dossier_id, HoldType.LEGAL, "Onderzoek", "", "PV-" + "9" * 80, admin)
        assert DossierHold.query.filter_by(dossier_id=dossier_id).count() == 0

        reason = "x" * MAX_REASON_LENGTH
        set_hold(dossier_id, HoldType.LEGAL, reason, "", "", admin)
        entry = DossierEvent.query.filter_by(dossier_id=dossier_id, event_type=DossierEventType.HOLD_SET).one()
        assert entry.description.endswith(reason)
