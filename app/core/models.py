from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum

from flask_login import UserMixin
from sqlalchemy import CheckConstraint, Enum as SAEnum, ForeignKey, Index, UniqueConstraint, event, text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates
from werkzeug.security import generate_password_hash

from app.core.extensions import db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrganizationType(str, Enum):
    FUNERAL_DIRECTOR = "FUNERAL_DIRECTOR"
    MOSQUE = "MOSQUE"
    INSURER = "INSURER"
    FAMILY = "FAMILY"
    ADMIN = "ADMIN"
    MORTUARIUM = "MORTUARIUM"
    OTHER = "OTHER"


class DossierFlow(str, Enum):
    # LOC = local burial, REP = repatriation
    LOC = "LOC"
    REP = "REP"
    UNSET = "UNSET"


class DossierStatus(str, Enum):
    CREATED = "CREATED"
    INTAKE = "INTAKE"
    OPERATIONAL = "OPERATIONAL"
    COMPLETED = "COMPLETED"
    CLOSED = "CLOSED"


class DossierPhase(str, Enum):
    CREATED = "CREATED"
    INTAKE = "INTAKE"
    WASHING = "WASHING"
    PRAYER = "PRAYER"
    BURIAL = "BURIAL"
    REPATRIATION = "REPATRIATION"
    COMPLETED = "COMPLETED"


class AssignmentStatus(str, Enum):
    UNASSIGNED = "UNASSIGNED"
    PENDING_CLAIM = "PENDING_CLAIM"
    ASSIGNED = "ASSIGNED"


class HoldType(str, Enum):
    LEGAL = "LEGAL"
    INSURER = "INSURER"


class TaskStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


class ClaimStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class DossierEventType(str, Enum):
    DOSSIER_CREATED = "DOSSIER_CREATED"
    FLOW_CHANGED = "FLOW_CHANGED"
    DOSSIER_ACTIVATED = "DOSSIER_ACTIVATED"
    STATUS_AUTO_CHANGED = "STATUS_AUTO_CHANGED"
    STATUS_FORCED = "STATUS_FORCED"
    DOSSIER_CANCELLED = "DOSSIER_CANCELLED"
    DOSSIER_DELETED = "DOSSIER_DELETED"
    HOLD_SET = "HOLD_SET"
    HOLD_LIFTED = "HOLD_LIFTED"
    CLAIM_REQUESTED = "CLAIM_REQUESTED"
    CLAIM_APPROVED = "CLAIM_APPROVED"
    CLAIM_REJECTED = "CLAIM_REJECTED"
    DOSSIER_RELEASED = "DOSSIER_RELEASED"
    TASK_STATUS_CHANGED = "TASK_STATUS_CHANGED"


class RecipientType(str, Enum):
    FAMILY = "FAMILY"
    FUNERAL_DIRECTOR = "FUNERAL_DIRECTOR"
    INSURER = "INSURER"
    REQUESTER = "REQUESTER"
    ADMIN = "ADMIN"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class Organization(db.Model):
    __tablename__ = "organization"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(120), unique=True, nullable=False)
    code: Mapped[str] = mapped_column(db.String(30), unique=True, nullable=False)
    type: Mapped[OrganizationType] = mapped_column(
        SAEnum(OrganizationType, name="organization_type"),
        nullable=False,
        default=OrganizationType.OTHER,
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    memberships = relationship("Membership", back_populates="organization")


class User(UserMixin, db.Model):
    __tablename__ = "user_account"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(db.String(255), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(db.String(120), nullable=False)
    password_hash: Mapped[str] = mapped_column(db.String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    memberships = relationship("Membership", back_populates="user")


class Membership(db.Model):
    __tablename__ = "membership"
    __table_args__ = (UniqueConstraint("user_id", "org_id", name="uq_membership_user_org"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user_account.id"), nullable=False)
    org_id: Mapped[int] = mapped_column(ForeignKey("organization.id"), nullable=False)
    role: Mapped[str] = mapped_column(db.String(30), nullable=False, default="funeral_director")

    user = relationship("User", back_populates="memberships")
    organization = relationship("Organization", back_populates="memberships")


class Dossier(db.Model):
    __tablename__ = "dossier"
    __table_args__ = (
        Index("ix_dossier_status_phase", "status", "phase"),
        Index("ix_dossier_assigned_status", "assigned_org_id", "assignment_status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    reference: Mapped[str] = mapped_column(db.String(20), unique=True, nullable=False)
    deceased_name: Mapped[str] = mapped_column(db.String(160), nullable=False)
    date_of_death: Mapped[date | None] = mapped_column(nullable=True)
    flow: Mapped[DossierFlow] = mapped_column(
        SAEnum(DossierFlow, name="dossier_flow"),
        nullable=False,
        default=DossierFlow.UNSET,
    )
    status: Mapped[DossierStatus] = mapped_column(
        SAEnum(DossierStatus, name="dossier_status"),
        nullable=False,
        default=DossierStatus.CREATED,
    )
    phase: Mapped[DossierPhase] = mapped_column(
        SAEnum(DossierPhase, name="dossier_phase"),
        nullable=False,
        default=DossierPhase.CREATED,
    )
    legal_hold: Mapped[bool] = mapped_column(nullable=False, default=False)
    insurer_hold: Mapped[bool] = mapped_column(nullable=False, default=False)
    assigned_org_id: Mapped[int | None] = mapped_column(ForeignKey("organization.id"), nullable=True)
    assignment_status: Mapped[AssignmentStatus] = mapped_column(
        SAEnum(AssignmentStatus, name="assignment_status"),
        nullable=False,
        default=AssignmentStatus.UNASSIGNED,
    )
    family_org_id: Mapped[int | None] = mapped_column(ForeignKey("organization.id"), nullable=True)
    insurer_org_id: Mapped[int | None] = mapped_column(ForeignKey("organization.id"), nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    deleted_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    delete_reason: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": version}

    assigned_org = relationship("Organization", foreign_keys=[assigned_org_id])
    family_org = relationship("Organization", foreign_keys=[family_org_id])
    insurer_org = relationship("Organization", foreign_keys=[insurer_org_id])
    created_by = relationship("User", foreign_keys=[created_by_user_id])
    holds = relationship("DossierHold", back_populates="dossier", order_by="DossierHold.id")
    tasks = relationship("DossierTask", back_populates="dossier", order_by="DossierTask.priority")
    claims = relationship("DossierClaim", back_populates="dossier", order_by="DossierClaim.id")

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_terminal(self) -> bool:
        return self.status == DossierStatus.CLOSED

    @validates("deceased_name")
    def validate_deceased_name(self, _key, value):
        cleaned = (value or "").strip()
        if not cleaned:
            raise ValueError("Deceased name is required")
        return cleaned


class DossierHold(db.Model):
    __tablename__ = "dossier_hold"
    __table_args__ = (
        Index(
            "ix_dossier_hold_active_type",
            "dossier_id",
            "hold_type",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    dossier_id: Mapped[int] = mapped_column(ForeignKey("dossier.id"), nullable=False, index=True)
    hold_type: Mapped[HoldType] = mapped_column(SAEnum(HoldType, name="hold_type"), nullable=False)
    reason: Mapped[str] = mapped_column(db.String(500), nullable=False)
    authority: Mapped[str] = mapped_column(db.String(160), nullable=False, default="")
    reference: Mapped[str] = mapped_column(db.String(80), nullable=False, default="")
    active: Mapped[bool] = mapped_column(nullable=False, default=True)
    placed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    placed_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    lifted_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    lifted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    lift_reason: Mapped[str | None] = mapped_column(db.String(500), nullable=True)

    dossier = relationship("Dossier", back_populates="holds")
    placed_by = relationship("User", foreign_keys=[placed_by_user_id])
    lifted_by = relationship("User", foreign_keys=[lifted_by_user_id])


class DossierTask(db.Model):
    __tablename__ = "dossier_task"
    __table_args__ = (
        UniqueConstraint("dossier_id", "phase", "task_type", name="uq_dossier_task_phase_type"),
        Index("ix_dossier_task_dossier_phase_status", "dossier_id", "phase", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    dossier_id: Mapped[int] = mapped_column(ForeignKey("dossier.id"), nullable=False)
    phase: Mapped[DossierPhase] = mapped_column(SAEnum(DossierPhase, name="dossier_phase"), nullable=False)
    task_type: Mapped[str] = mapped_column(db.String(60), nullable=False)
    title: Mapped[str] = mapped_column(db.String(160), nullable=False)
    description: Mapped[str] = mapped_column(db.String(500), nullable=False, default="")
    status: Mapped[TaskStatus] = mapped_column(
        SAEnum(TaskStatus, name="task_status"),
        nullable=False,
        default=TaskStatus.OPEN,
    )
    priority: Mapped[int] = mapped_column(nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(nullable=True)

    dossier = relationship("Dossier", back_populates="tasks")


class DossierClaim(db.Model):
    __tablename__ = "dossier_claim"
    __table_args__ = (
        Index(
            "ix_dossier_claim_pending",
            "dossier_id",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    dossier_id: Mapped[int] = mapped_column(ForeignKey("dossier.id"), nullable=False, index=True)
    requesting_org_id: Mapped[int] = mapped_column(ForeignKey("organization.id"), nullable=False)
    requested_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    reason: Mapped[str] = mapped_column(db.String(500), nullable=False, default="")
    status: Mapped[ClaimStatus] = mapped_column(
        SAEnum(ClaimStatus, name="claim_status"),
        nullable=False,
        default=ClaimStatus.PENDING,
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    decided_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)

    dossier = relationship("Dossier", back_populates="claims")
    requesting_org = relationship("Organization")


class DossierEvent(db.Model):
    __tablename__ = "dossier_event"
    __table_args__ = (
        CheckConstraint("description <> ''", name="ck_dossier_event_description"),
        Index("ix_dossier_event_dossier_created", "dossier_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    dossier_id: Mapped[int] = mapped_column(ForeignKey("dossier.id"), nullable=False)
    event_type: Mapped[DossierEventType] = mapped_column(
        SAEnum(DossierEventType, name="dossier_event_type"),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(db.Text, nullable=False)
    details: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    actor_role: Mapped[str] = mapped_column(db.String(30), nullable=False, default="")
    org_id: Mapped[int | None] = mapped_column(ForeignKey("organization.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    actor = relationship("User")


class NotificationIntent(db.Model):
    __tablename__ = "notification_intent"
    __table_args__ = (Index("ix_notification_intent_status_created", "status", "created_at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    dossier_id: Mapped[int] = mapped_column(ForeignKey("dossier.id"), nullable=False, index=True)
    event_id: Mapped[int | None] = mapped_column(ForeignKey("dossier_event.id"), nullable=True)
    trigger_event: Mapped[str] = mapped_column(db.String(60), nullable=False)
    recipient_type: Mapped[RecipientType] = mapped_column(
        SAEnum(RecipientType, name="recipient_type"),
        nullable=False,
    )
    recipient_org_id: Mapped[int | None] = mapped_column(ForeignKey("organization.id"), nullable=True)
    payload: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    status: Mapped[DeliveryStatus] = mapped_column(
        SAEnum(DeliveryStatus, name="delivery_status"),
        nullable=False,
        default=DeliveryStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)


@event.listens_for(DossierEvent, "before_update")
def dossier_event_before_update(_mapper, _connection, target: DossierEvent) -> None:
    raise ValueError(f"Dossier event {target.id} is immutable")


@event.listens_for(DossierEvent, "before_delete")
def dossier_event_before_delete(_mapper, _connection, target: DossierEvent) -> None:
    raise ValueError(f"Dossier event {target.id} cannot be deleted")


@event.listens_for(DossierHold, "before_delete")
def dossier_hold_before_delete(_mapper, _connection, target: DossierHold) -> None:
    # lifted holds stay in history
    raise ValueError(f"Hold {target.id} cannot be deleted, lift it instead")


def seed_demo_data(session) -> None:
    platform = Organization(name="Platform Beheer", code="PLATFORM", type=OrganizationType.ADMIN)
    fd_one = Organization(name="Al-Noor Uitvaartzorg", code="ALNOOR", type=OrganizationType.FUNERAL_DIRECTOR)
    fd_two = Organization(name="Rahma Uitvaarten", code="RAHMA", type=OrganizationType.FUNERAL_DIRECTOR)
    insurer = Organization(name="Amana Verzekeringen", code="AMANA", type=OrganizationType.INSURER)
    family = Organization(name="Familie El Amrani", code="FAM-ELAMRANI", type=OrganizationType.FAMILY)
    session.add_all([platform, fd_one, fd_two, insurer, family])
    session.flush()

    users = [
        (platform, "admin@platform.local", "Platform Admin", "admin123", "platform_admin"),
        (fd_one, "beheer@alnoor.local", "Beheerder Al-Noor", "alnoor123", "org_admin"),
        (fd_one, "uitvaart@alnoor.local", "Uitvaartleider Al-Noor", "alnoor123", "funeral_director"),
        (fd_two, "beheer@rahma.local", "Beheerder Rahma", "rahma123", "org_admin"),
        (insurer, "claims@amana.local", "Claims Amana", "amana123", "insurer"),
        (family, "familie@elamrani.local", "Youssef El Amrani", "familie123", "family"),
    ]
    for organization, email, full_name, password, role in users:
        user = User(email=email, full_name=full_name, password_hash=generate_password_hash(password))
        session.add(user)
        session.flush()
        session.add(Membership(user_id=user.id, org_id=organization.id, role=role))

    session.add(
        Dossier(
            reference=f"D-{date.today().year}-0001",
            deceased_name="Mohamed El Amrani",
            flow=DossierFlow.LOC,
            status=DossierStatus.INTAKE,
            phase=DossierPhase.INTAKE,
            assigned_org_id=fd_one.id,
            assignment_status=AssignmentStatus.ASSIGNED,
            family_org_id=family.id,
            insurer_org_id=insurer.id,
        )
    )
    session.commit()
