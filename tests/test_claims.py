from __future__ import annotations

import threading

import pytest
from sqlalchemy.exc import IntegrityError

from app import create_app

from app.core.extensions import db
from app.core.models import (
    AssignmentStatus,
    ClaimStatus,
    Dossier,
    DossierClaim,
    DossierEvent,
    DossierEventType,
    HoldType,
    Membership,
    NotificationIntent,
    Organization,
    RecipientType,
    User,
    seed_demo_data,
)
from app.core.tenancy import actor_from_membership
from app.dossiers.claims import ReleaseAction, decide_claim, pending_claims, release, request_claim
from app.dossiers.errors import (
    Blocked,
    Conflict,
    Forbidden,
    InvalidInput,
    InvalidState,
    NotFound,
    ReasonRequired,
)
from app.dossiers.holds import set_hold

from conftest import TestConfig

ALNOOR_ADMIN = "beheer@alnoor.local"
RAHMA_ADMIN = "beheer@rahma.local"
FAMILY = "familie@elamrani.local"


def test_claim_on_unassigned_dossier_auto_approves(app, actor, org_id, make_dossier):
    dossier_id = make_dossier(owner=None)
    with app.app_context():
        result = request_claim(dossier_id, org_id("RAHMA"), "Familie belde ons", False, actor(RAHMA_ADMIN))
        assert result.status == ClaimStatus.APPROVED
        dossier = db.session.get(Dossier, dossier_id)
        assert dossier.assigned_org_id == org_id("RAHMA")
        assert dossier.assignment_status == AssignmentStatus.ASSIGNED
        assert DossierEvent.query.filter_by(
            dossier_id=dossier_id, event_type=DossierEventType.CLAIM_APPROVED
        ).count() == 1


def test_two_claims_on_same_unassigned_dossier_yield_one_winner(app, actor, org_id, make_dossier):
    dossier_id = make_dossier(owner=None)
    with app.app_context():
        first = request_claim(dossier_id, org_id("RAHMA"), "", False, actor(RAHMA_ADMIN))
        assert first.status == ClaimStatus.APPROVED
        with pytest.raises(Conflict):
            request_claim(dossier_id, org_id("ALNOOR"), "", False, actor(ALNOOR_ADMIN))
        assert db.session.get(Dossier, dossier_id).assigned_org_id == org_id("RAHMA")


def test_only_one_pending_claim_per_dossier(app, actor, org_id, make_dossier):
    dossier_id = make_dossier(owner=None)
    with app.app_context():
        first = request_claim(dossier_id, org_id("RAHMA"), "Op verzoek familie", True, actor(RAHMA_ADMIN))
        assert first.status == ClaimStatus.PENDING
        assert db.session.get(Dossier, dossier_id).assignment_status == AssignmentStatus.PENDING_CLAIM

        with pytest.raises(Conflict):
            request_claim(dossier_id, org_id("ALNOOR"), "", True, actor(ALNOOR_ADMIN))
        assert len(pending_claims(dossier_id)) == 1


def test_pending_claim_unique_index(app, org_id, make_dossier):
    dossier_id = make_dossier(owner=None)
    with app.app_context():
        db.session.add_all(
            [
                DossierClaim(dossier_id=dossier_id, requesting_org_id=org_id("RAHMA")),
                DossierClaim(dossier_id=dossier_id, requesting_org_id=org_id("ALNOOR")),
            ]
        )
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()


def test_owner_approves_takeover(app, actor, org_id, make_dossier):
    dossier_id = make_dossier(owner="ALNOOR")
    with app.app_context():
        with pytest.raises(Conflict):
            request_claim(dossier_id, org_id("RAHMA"), "", False, actor(RAHMA_ADMIN))

        claim = request_claim(dossier_id, org_id("RAHMA"), "Familie wisselt", True, actor(RAHMA_ADMIN))
        with pytest.raises(Forbidden):
            decide_claim(claim.claim_id, True, actor(RAHMA_ADMIN))

        decision = decide_claim(claim.claim_id, True, actor(ALNOOR_ADMIN))
        assert decision.success is True
        assert decision.status == ClaimStatus.APPROVED
        dossier = db.session.get(Dossier, dossier_id)
        assert dossier.assigned_org_id == org_id("RAHMA")
        assert dossier.assignment_status == AssignmentStatus.ASSIGNED
        assert NotificationIntent.query.filter_by(
            dossier_id=dossier_id, recipient_type=RecipientType.REQUESTER
        ).count() == 1

        with pytest.raises(NotFound):
            decide_claim(claim.claim_id, True, actor(ALNOOR_ADMIN))


def test_family_rejects_claim_and_ownership_is_unchanged(app, actor, org_id, make_dossier):
    dossier_id = make_dossier(owner="ALNOOR")
    with app.app_context():
        claim = request_claim(dossier_id, org_id("RAHMA"), "", True, actor(RAHMA_ADMIN))
        decision = decide_claim(claim.claim_id, False, actor(FAMILY))
        assert decision.status == ClaimStatus.REJECTED
        dossier = db.session.get(Dossier, dossier_id)
        assert dossier.assigned_org_id == org_id("ALNOOR")
        assert dossier.assignment_status == AssignmentStatus.ASSIGNED
        assert pending_claims(dossier_id) == []


def test_claim_refused_while_held(app, actor, org_id, make_dossier):
    dossier_id = make_dossier(owner=None)
    with app.app_context():
        set_hold(dossier_id, HoldType.INSURER, "Polis geschorst", "", "", actor("claims@amana.local"))
        with pytest.raises(Blocked) as excinfo:
            request_claim(dossier_id, org_id("RAHMA"), "", False, actor(RAHMA_ADMIN))
        assert excinfo.value.details["hold_type"] == "INSURER"


def test_claim_for_other_organization_is_forbidden(app, actor, org_id, make_dossier):
    dossier_id = make_dossier(owner=None)
    with app.app_context():
        with pytest.raises(Forbidden):
            request_claim(dossier_id, org_id("ALNOOR"), "", False, actor(RAHMA_ADMIN))
        with pytest.raises(Forbidden):
            request_claim(dossier_id, org_id("FAM-ELAMRANI"), "", False, actor(FAMILY))


def test_release_by_funeral_director(app, actor, make_dossier):
    dossier_id = make_dossier(owner="ALNOOR")
    with app.app_context():
        with pytest.raises(ReasonRequired):
            release(dossier_id, ReleaseAction.FD_RELEASE, " ", actor(ALNOOR_ADMIN))
        with pytest.raises(Forbidden):
            release(dossier_id, ReleaseAction.FD_RELEASE, "Capaciteit", actor(RAHMA_ADMIN))
        with pytest.raises(Forbidden):
            release(dossier_id, ReleaseAction.FD_RELEASE, "Capaciteit", actor(FAMILY))

        result = release(dossier_id, "FD_RELEASE", "Geen capaciteit", actor(ALNOOR_ADMIN))
        assert result.success is True
        dossier = db.session.get(Dossier, dossier_id)
        assert dossier.assigned_org_id is None
        assert dossier.assignment_status == AssignmentStatus.UNASSIGNED
        entry = DossierEvent.query.filter_by(
            dossier_id=dossier_id, event_type=DossierEventType.DOSSIER_RELEASED
        ).one()
        assert "Geen capaciteit" in entry.description

        with pytest.raises(InvalidState):
            release(dossier_id, ReleaseAction.FD_RELEASE, "Nogmaals", actor(ALNOOR_ADMIN))


def test_family_release(app, actor, make_dossier):
    dossier_id = make_dossier(owner="ALNOOR")
    with app.app_context():
        with pytest.raises(Forbidden):
            release(dossier_id, ReleaseAction.FAMILY_RELEASE, "Andere keuze", actor(ALNOOR_ADMIN))
        release(dossier_id, ReleaseAction.FAMILY_RELEASE, "Andere keuze", actor(FAMILY))
        assert db.session.get(Dossier, dossier_id).assigned_org_id is None


def test_overlong_claim_reason_is_rejected(app, actor, org_id, make_dossier):
    dossier_id = make_dossier(owner=None)
    with app.app_context():
        with pytest.raises(InvalidInput):
            request_claim(dossier_id, org_id("RAHMA"), "x" * 501, True, actor(RAHMA_ADMIN))
        assert DossierClaim.query.filter_by(dossier_id=dossier_id).count() == 0


@pytest.fixture
def file_app(tmp_path):
    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'claims.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 15}}

    app = create_app(FileConfig)
    with app.app_context():
        db.create_all()
        seed_demo_data(db.session)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _file_actor(email: str):
    user = User.query.filter_by(email=email).one()
    return actor_from_membership(Membership.query.filter_by(user_id=user.id).one())


@pytest.mark.parametrize("require_family_approval", [True, False])
def test_concurrent_claims_from_threads_yield_one_winner(file_app, require_family_approval):
    with file_app.app_context():
        orgs = {org.code: org.id for org in Organization.query.all()}
        dossier = Dossier(
            reference="T-0900",
            deceased_name="Test Overledene Race",
            assignment_status=AssignmentStatus.UNASSIGNED,
            family_org_id=orgs["FAM-ELAMRANI"],
        )
        db.session.add(dossier)
        db.session.commit()
        dossier_id = dossier.id
        claimants = [
            (orgs["RAHMA"], _file_actor(RAHMA_ADMIN)),
            (orgs["ALNOOR"], _file_actor(ALNOOR_ADMIN)),
        ]

    barrier = threading.Barrier(len(claimants))
    outcomes = []

    def _claim(requesting_org_id, claimant):
        with file_app.app_context():
            barrier.wait()
            try:
                result = request_claim(dossier_id, requesting_org_id, "", require_family_approval, claimant)
                outcomes.append(("ok", result.status))
            except Exception as exc:  # collected for the assertions below
                outcomes.append((type(exc).__name__, None))
            finally:
                db.session.remove()

    threads = [threading.Thread(target=_claim, args=claimant) for claimant in claimants]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    expected = ClaimStatus.PENDING if require_family_approval else ClaimStatus.APPROVED
    assert sorted(outcomes, key=lambda outcome: outcome[0]) == [("Conflict", None), ("ok", expected)]
    with file_app.app_context():
        assert DossierClaim.query.filter_by(dossier_id=dossier_id).count() == 1
