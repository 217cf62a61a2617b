from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app import create_app
from app.core.config import Config
from app.core.extensions import db
from app.core.models import (
    AssignmentStatus,
    Dossier,
    DossierFlow,
    DossierPhase,
    DossierStatus,
    DossierTask,
    Membership,
    Organization,
    TaskStatus,
    User,
    seed_demo_data,
)
from app.core.tenancy import actor_from_membership

PASSWORDS = {
    "admin@platform.local": "admin123",
    "beheer@alnoor.local": "alnoor123",
    "uitvaart@alnoor.local": "alnoor123",
    "beheer@rahma.local": "rahma123",
    "claims@amana.local": "amana123",
    "familie@elamrani.local": "familie123",
}


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SECRET_KEY = "test-secret"
    NOTIFICATION_WEBHOOK_URL = ""


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        seed_demo_data(db.session)
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    def _login(email: str):
        return client.post("/auth/login", json={"email": email, "password": PASSWORDS[email]})

    return _login


@pytest.fixture
def actor(app):
    def _actor(email: str):
        with app.app_context():
            user = User.query.filter_by(email=email).first()
            membership = Membership.query.filter_by(user_id=user.id).first()
            return actor_from_membership(membership)

    return _actor


@pytest.fixture
def org_id(app):
    def _org_id(code: str) -> int:
        with app.app_context():
            return Organization.query.filter_by(code=code).first().id

    return _org_id


@pytest.fixture
def make_dossier(app):
    """Insert a dossier directly in a given state; returns its id."""

    counter = {"value": 100}

    def _make(
        status: DossierStatus = DossierStatus.INTAKE,
        phase: DossierPhase | None = None,
        flow: DossierFlow = DossierFlow.LOC,
        owner: str | None = "ALNOOR",
        open_tasks: int = 0,
        done_tasks: int = 0,
    ) -> int:
        counter["value"] += 1
        with app.app_context():
            orgs = {org.code: org.id for org in Organization.query.all()}
            if phase is None:
                phase = {
                    DossierStatus.CREATED: DossierPhase.CREATED,
                    DossierStatus.INTAKE: DossierPhase.INTAKE,
                    DossierStatus.OPERATIONAL: DossierPhase.WASHING,
                    DossierStatus.COMPLETED: DossierPhase.COMPLETED,
                    DossierStatus.CLOSED: DossierPhase.COMPLETED,
                }[status]
            dossier = Dossier(
                reference=f"T-{counter['value']:04d}",
                deceased_name=f"Test Overledene {counter['value']}",
                flow=flow,
                status=status,
                phase=phase,
                assigned_org_id=orgs[owner] if owner else None,
                assignment_status=AssignmentStatus.ASSIGNED if owner else AssignmentStatus.UNASSIGNED,
                family_org_id=orgs["FAM-ELAMRANI"],
                insurer_org_id=orgs["AMANA"],
            )
            db.session.add(dossier)
            db.session.flush()
            for index in range(open_tasks + done_tasks):
                db.session.add(
                    DossierTask(
                        dossier_id=dossier.id,
                        phase=phase,
                        task_type=f"TEST_{index}",
                        title=f"Test task {index}",
                        status=TaskStatus.OPEN if index < open_tasks else TaskStatus.DONE,
                        priority=index,
                    )
                )
            db.session.commit()
            return dossier.id

    return _make
