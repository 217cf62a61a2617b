from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import func, or_

from app.core.extensions import db
from app.core.models import (
    AssignmentStatus,
    Dossier,
    DossierEventType,
    DossierFlow,
    DossierPhase,
    DossierStatus,
    Organization,
    OrganizationType,
    RecipientType,
    utcnow,
)
from app.core.permissions import can_operate, is_funeral_director, is_platform_admin
from app.core.tenancy import SYSTEM_ACTOR, Actor
from app.dossiers.audit import record_event
from app.dossiers.errors import (
    FlowRequired,
    Forbidden,
    InvalidInput,
    InvalidState,
    InvalidTransition,
    NotFound,
    WorkflowError,
    require_reason,
)
from app.dossiers.holds import block_status, ensure_not_blocked
from app.dossiers.locking import commit_changes, flush_changes, lock_dossier, touch, transactional
from app.dossiers.notifications import queue_notification
from app.dossiers.tasks import count_open, seed_phase_tasks

logger = logging.getLogger(__name__)

INTAKE_SEQUENCE = (DossierPhase.CREATED, DossierPhase.INTAKE)

FLOW_SEQUENCES: dict[DossierFlow, tuple[DossierPhase, ...]] = {
    DossierFlow.LOC: INTAKE_SEQUENCE
    + (DossierPhase.WASHING, DossierPhase.PRAYER, DossierPhase.BURIAL, DossierPhase.COMPLETED),
    DossierFlow.REP: INTAKE_SEQUENCE
    + (DossierPhase.WASHING, DossierPhase.PRAYER, DossierPhase.REPATRIATION, DossierPhase.COMPLETED),
    DossierFlow.UNSET: INTAKE_SEQUENCE,
}

PHASE_STATUS: dict[DossierPhase, DossierStatus] = {
    DossierPhase.CREATED: DossierStatus.CREATED,
    DossierPhase.INTAKE: DossierStatus.INTAKE,
    DossierPhase.WASHING: DossierStatus.OPERATIONAL,
    DossierPhase.PRAYER: DossierStatus.OPERATIONAL,
    DossierPhase.BURIAL: DossierStatus.OPERATIONAL,
    DossierPhase.REPATRIATION: DossierStatus.OPERATIONAL,
    DossierPhase.COMPLETED: DossierStatus.COMPLETED,
}

DELETABLE_STATUSES = {DossierStatus.CREATED, DossierStatus.INTAKE}
FLOW_EDITABLE_STATUSES = {DossierStatus.CREATED, DossierStatus.INTAKE}
AUTO_PROGRESS_STATUSES = (DossierStatus.CREATED, DossierStatus.OPERATIONAL, DossierStatus.COMPLETED)


@dataclass(frozen=True)
class ProgressResult:
    progressed: bool
    reason: str | None = None
    from_phase: DossierPhase | None = None
    to_phase: DossierPhase | None = None
    status: DossierStatus | None = None
    open_tasks: int | None = None
    hold_type: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "progressed": self.progressed,
            "reason": self.reason,
            "from_phase": self.from_phase.value if self.from_phase else None,
            "to_phase": self.to_phase.value if self.to_phase else None,
            "status": self.status.value if self.status else None,
            "open_tasks": self.open_tasks,
            "hold_type": self.hold_type,
        }


@dataclass
class BatchProgressResult:
    checked: int = 0
    progressed: int = 0
    failed: int = 0


def next_phase(flow: DossierFlow, phase: DossierPhase) -> DossierPhase | None:
    sequence = FLOW_SEQUENCES[flow]
    if phase not in sequence:
        return None
    index = sequence.index(phase)
    if index + 1 >= len(sequence):
        return None
    return sequence[index + 1]


def parse_flow(value: DossierFlow | str | None) -> DossierFlow:
    if isinstance(value, DossierFlow):
        return value
    raw = (value or "").strip().upper()
    if not raw:
        return DossierFlow.UNSET
    try:
        return DossierFlow(raw)
    except ValueError as exc:
        raise InvalidInput(f"Invalid flow: {value}") from exc


def parse_phase(value: DossierPhase | str) -> DossierPhase:
    if isinstance(value, DossierPhase):
        return value
    try:
        return DossierPhase((value or "").strip().upper())
    except ValueError as exc:
        raise InvalidInput(f"Invalid phase: {value}") from exc


def _parse_optional_org(value: object, expected: OrganizationType, label: str) -> int | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    if not raw.isdigit():
        raise InvalidInput(f"Invalid {label}")
    organization = db.session.get(Organization, int(raw))
    if organization is None or organization.type != expected:
        raise InvalidInput(f"Invalid {label}")
    return organization.id


def _next_reference(year: int) -> str:
    prefix = f"D-{year}-"
    count = (
        db.session.query(func.count(Dossier.id))
        .filter(Dossier.reference.like(f"{prefix}%"))
        .scalar()
    )
    return f"{prefix}{(count or 0) + 1:04d}"


def _ensure_operator(dossier: Dossier, actor: Actor) -> None:
    if not can_operate(actor, dossier.assigned_org_id):
        raise Forbidden("Only the assigned funeral director or a platform admin can do this")


def _move_to_phase(dossier: Dossier, phase: DossierPhase) -> None:
    dossier.phase = phase
    dossier.status = PHASE_STATUS[phase]
    touch(dossier)


@transactional
def create_dossier(payload: dict[str, object], actor: Actor) -> Dossier:
    if not (is_platform_admin(actor) or is_funeral_director(actor) or actor.org_type == OrganizationType.FAMILY):
        raise Forbidden("Not allowed to create dossiers")
    flow = parse_flow(payload.get("flow"))
    date_raw = str(payload.get("date_of_death") or "").strip()
    try:
        date_of_death = date.fromisoformat(date_raw) if date_raw else None
    except ValueError as exc:
        raise InvalidInput("Invalid date of death") from exc

    family_org_id = _parse_optional_org(payload.get("family_org_id"), OrganizationType.FAMILY, "family organization")
    insurer_org_id = _parse_optional_org(payload.get("insurer_org_id"), OrganizationType.INSURER, "insurer")
    if actor.org_type == OrganizationType.FAMILY:
        family_org_id = actor.org_id

    assigned_org_id = None
    if is_funeral_director(actor) and str(payload.get("assign_to_self", "1")).lower() not in {"0", "false", "no"}:
        assigned_org_id = actor.org_id

    try:
        dossier = Dossier(
            reference=_next_reference(date.today().year),
            deceased_name=str(payload.get("deceased_name") or ""),
            date_of_death=date_of_death,
            flow=flow,
            status=DossierStatus.CREATED,
            phase=DossierPhase.CREATED,
            assigned_org_id=assigned_org_id,
            assignment_status=AssignmentStatus.ASSIGNED if assigned_org_id else AssignmentStatus.UNASSIGNED,
            family_org_id=family_org_id,
            insurer_org_id=insurer_org_id,
            created_by_user_id=actor.user_id,
        )
    except ValueError as exc:
        raise InvalidInput(str(exc)) from exc
    db.session.add(dossier)
    flush_changes()
    seeded = seed_phase_tasks(dossier, DossierPhase.CREATED)
    entry = record_event(
        dossier,
        DossierEventType.DOSSIER_CREATED,
        f"Dossier {dossier.reference} created for {dossier.deceased_name}",
        actor,
        {"flow": flow.value, "assigned_org_id": assigned_org_id, "seeded_tasks": seeded},
    )
    queue_notification(dossier, entry, RecipientType.ADMIN, None)
    commit_changes()
    logger.info("Dossier %s created by user %s", dossier.reference, actor.user_id)
    return dossier


@transactional
def set_flow(dossier_id: int, flow: DossierFlow | str, actor: Actor) -> Dossier:
    flow = parse_flow(flow)
    if flow == DossierFlow.UNSET:
        raise InvalidInput("Choose LOC or REP")
    dossier = lock_dossier(dossier_id)
    _ensure_operator(dossier, actor)
    if dossier.status not in FLOW_EDITABLE_STATUSES:
        raise InvalidTransition(
            f"Flow can only change before activation (status {dossier.status.value})",
            status=dossier.status.value,
        )
    if dossier.flow == flow:
        raise InvalidState(f"Flow is already {flow.value}", flow=flow.value)

    previous = dossier.flow
    dossier.flow = flow
    touch(dossier)
    flush_changes()
    record_event(
        dossier,
        DossierEventType.FLOW_CHANGED,
        f"Flow changed: {previous.value} -> {flow.value}",
        actor,
        {"from": previous.value, "to": flow.value},
    )
    commit_changes()
    return dossier


@transactional
def activate(dossier_id: int, reason: str, actor: Actor) -> Dossier:
    """Move an INTAKE dossier to OPERATIONAL and seed the first phase."""
    reason = require_reason(reason, "activation reason")
    dossier = lock_dossier(dossier_id)
    _ensure_operator(dossier, actor)
    if dossier.status != DossierStatus.INTAKE:
        raise InvalidTransition(
            f"Only dossiers in INTAKE can be activated (status {dossier.status.value})",
            status=dossier.status.value,
        )
    if dossier.flow == DossierFlow.UNSET:
        raise FlowRequired("Set the flow (LOC or REP) before activating the dossier")
    ensure_not_blocked(dossier, "activate")

    target = next_phase(dossier.flow, DossierPhase.INTAKE)
    _move_to_phase(dossier, target)
    flush_changes()
    seeded = seed_phase_tasks(dossier, target)
    entry = record_event(
        dossier,
        DossierEventType.DOSSIER_ACTIVATED,
        f"Dossier activated: {reason}",
        actor,
        {"reason": reason, "phase": target.value, "seeded_tasks": seeded},
    )
    queue_notification(dossier, entry, RecipientType.FAMILY, dossier.family_org_id, status=dossier.status.value)
    commit_changes()
    logger.info("Dossier %s activated by user %s", dossier.reference, actor.user_id)
    return dossier


@transactional
def check_and_progress(dossier_id: int, actor: Actor = SYSTEM_ACTOR) -> ProgressResult:
    """Advance the dossier one phase when nothing holds it back.

    Holds are checked before tasks: a held dossier never moves even with no
    open work. INTAKE is left only through :func:`activate`.
    """
    dossier = lock_dossier(dossier_id)
    _ensure_operator(dossier, actor)
    phase = dossier.phase
    status = dossier.status

    if dossier.is_terminal:
        db.session.rollback()
        return ProgressResult(False, f"Dossier is {status.value}", from_phase=phase, status=status)

    block = block_status(dossier.id)
    if block.blocked:
        db.session.rollback()
        return ProgressResult(
            False,
            block.message,
            from_phase=phase,
            status=status,
            hold_type=block.hold_type.value,
        )

    open_tasks = count_open(dossier.id, phase)
    if open_tasks:
        db.session.rollback()
        noun = "task" if open_tasks == 1 else "tasks"
        return ProgressResult(
            False,
            f"{open_tasks} open {noun} in phase {phase.value}",
            from_phase=phase,
            status=status,
            open_tasks=open_tasks,
        )

    if status == DossierStatus.INTAKE:
        db.session.rollback()
        return ProgressResult(False, "Intake complete, activation required", from_phase=phase, status=status, open_tasks=0)

    previous_status = dossier.status
    if dossier.status == DossierStatus.COMPLETED:
        target = phase
        dossier.status = DossierStatus.CLOSED
        dossier.closed_at = utcnow()
        touch(dossier)
    else:
        target = next_phase(dossier.flow, phase)
        if target is None:
            db.session.rollback()
            return ProgressResult(False, f"No next phase after {phase.value}", from_phase=phase, status=status)
        _move_to_phase(dossier, target)
    flush_changes()
    seeded = seed_phase_tasks(dossier, target) if dossier.status != DossierStatus.CLOSED else 0

    if dossier.status == DossierStatus.CLOSED:
        description = f"Status changed automatically: {previous_status.value} -> CLOSED"
    else:
        description = f"Phase changed automatically: {phase.value} -> {target.value}"
    entry = record_event(
        dossier,
        DossierEventType.STATUS_AUTO_CHANGED,
        description,
        actor,
        {
            "from_phase": phase.value,
            "to_phase": target.value,
            "from_status": previous_status.value,
            "to_status": dossier.status.value,
            "seeded_tasks": seeded,
        },
    )
    if dossier.status != previous_status:
        queue_notification(dossier, entry, RecipientType.FAMILY, dossier.family_org_id, status=dossier.status.value)
    commit_changes()
    logger.info("Dossier %s progressed %s -> %s", dossier.reference, phase.value, target.value)
    return ProgressResult(True, description, from_phase=phase, to_phase=target, status=dossier.status, open_tasks=0)


def progress_all(actor: Actor = SYSTEM_ACTOR, limit: int = 500) -> BatchProgressResult:
    """Run :func:`check_and_progress` over every active dossier that can move on its own."""
    result = BatchProgressResult()
    dossier_ids = [
        dossier_id
        for (dossier_id,) in db.session.query(Dossier.id)
        .filter(Dossier.deleted_at.is_(None), Dossier.status.in_(AUTO_PROGRESS_STATUSES))
        .order_by(Dossier.id.asc())
        .limit(limit)
    ]
    for dossier_id in dossier_ids:
        result.checked += 1
        try:
            outcome = check_and_progress(dossier_id, actor)
        except WorkflowError as exc:
            result.failed += 1
            logger.warning("Auto-progression of dossier %s failed: %s", dossier_id, exc.message)
            continue
        if outcome.progressed:
            result.progressed += 1
    return result


@transactional
def force_phase(dossier_id: int, phase: DossierPhase | str, reason: str, actor: Actor) -> Dossier:
    """Administrative move to any phase of the flow, forward or back."""
    phase = parse_phase(phase)
    reason = require_reason(reason)
    if not is_platform_admin(actor):
        raise Forbidden("Only a platform admin can force a phase change")
    dossier = lock_dossier(dossier_id)
    if dossier.is_terminal:
        raise InvalidTransition(f"Dossier {dossier.reference} is closed", status=dossier.status.value)
    ensure_not_blocked(dossier, "force a phase change")
    sequence = FLOW_SEQUENCES[dossier.flow]
    if phase not in sequence:
        if dossier.flow == DossierFlow.UNSET:
            raise FlowRequired(f"Set the flow before moving to {phase.value}")
        raise InvalidTransition(f"Phase {phase.value} is not part of the {dossier.flow.value} flow")
    if phase == dossier.phase:
        raise InvalidTransition(f"Dossier is already in phase {phase.value}")

    previous_phase = dossier.phase
    previous_status = dossier.status
    direction = "forward" if sequence.index(phase) > sequence.index(previous_phase) else "backward"
    _move_to_phase(dossier, phase)
    flush_changes()
    seeded = seed_phase_tasks(dossier, phase)
    record_event(
        dossier,
        DossierEventType.STATUS_FORCED,
        f"Phase forced {direction}: {previous_phase.value} -> {phase.value} ({reason})",
        actor,
        {
            "from_phase": previous_phase.value,
            "to_phase": phase.value,
            "from_status": previous_status.value,
            "to_status": dossier.status.value,
            "direction": direction,
            "reason": reason,
            "seeded_tasks": seeded,
        },
    )
    commit_changes()
    logger.info("Dossier %s forced %s -> %s by user %s", dossier.reference, previous_phase.value, phase.value, actor.user_id)
    return dossier


@transactional
def cancel_dossier(dossier_id: int, reason: str, actor: Actor) -> Dossier:
    reason = require_reason(reason, "cancellation reason")
    if not is_platform_admin(actor):
        raise Forbidden("Only a platform admin can cancel a dossier")
    dossier = lock_dossier(dossier_id)
    if dossier.is_terminal:
        raise InvalidTransition(f"Dossier {dossier.reference} is already closed", status=dossier.status.value)
    ensure_not_blocked(dossier, "cancel")

    previous_status = dossier.status
    dossier.status = DossierStatus.CLOSED
    dossier.closed_at = utcnow()
    touch(dossier)
    flush_changes()
    entry = record_event(
        dossier,
        DossierEventType.DOSSIER_CANCELLED,
        f"Dossier cancelled: {reason}",
        actor,
        {"from_status": previous_status.value, "reason": reason},
    )
    queue_notification(dossier, entry, RecipientType.FUNERAL_DIRECTOR, dossier.assigned_org_id, reason=reason)
    commit_changes()
    logger.info("Dossier %s cancelled by user %s", dossier.reference, actor.user_id)
    return dossier


@transactional
def request_delete(dossier_id: int, reason: str, actor: Actor) -> Dossier:
    """Soft delete: the dossier keeps its status and history but leaves active lists."""
    reason = require_reason(reason, "deletion reason")
    dossier = lock_dossier(dossier_id, allow_deleted=True)
    if dossier.is_deleted:
        raise InvalidState(f"Dossier {dossier.reference} is already deleted")
    if dossier.status not in DELETABLE_STATUSES:
        raise InvalidState(
            f"Only dossiers in CREATED or INTAKE can be deleted (status {dossier.status.value})",
            status=dossier.status.value,
        )
    if not (is_platform_admin(actor) or actor.member_of(dossier.assigned_org_id)):
        raise Forbidden("Only the assigned funeral director or a platform admin can delete this dossier")

    dossier.deleted_at = utcnow()
    dossier.deleted_by_user_id = actor.user_id
    dossier.delete_reason = reason
    touch(dossier)
    flush_changes()
    record_event(
        dossier,
        DossierEventType.DOSSIER_DELETED,
        f"Dossier deleted: {reason}",
        actor,
        {"reason": reason, "status": dossier.status.value},
    )
    commit_changes()
    logger.info("Dossier %s soft-deleted by user %s", dossier.reference, actor.user_id)
    return dossier


def _visible_query(actor: Actor):
    query = Dossier.query.filter(Dossier.deleted_at.is_(None))
    if is_platform_admin(actor) or actor.is_system:
        return query
    return query.filter(
        or_(
            Dossier.assigned_org_id == actor.org_id,
            Dossier.family_org_id == actor.org_id,
            Dossier.insurer_org_id == actor.org_id,
        )
    )


def dossier_for_actor(dossier_id: int, actor: Actor) -> Dossier:
    dossier = _visible_query(actor).filter(Dossier.id == dossier_id).first()
    if dossier is None:
        raise NotFound(f"Dossier {dossier_id} not found", dossier_id=dossier_id)
    return dossier


def list_dossiers(filters: dict[str, str], actor: Actor) -> list[Dossier]:
    query = _visible_query(actor)
    status = (filters.get("status") or "").strip().upper()
    if status:
        try:
            query = query.filter(Dossier.status == DossierStatus(status))
        except ValueError as exc:
            raise InvalidInput(f"Invalid status: {status}") from exc
    flow = (filters.get("flow") or "").strip()
    if flow:
        query = query.filter(Dossier.flow == parse_flow(flow))
    search = (filters.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        query = query.filter(or_(Dossier.reference.ilike(like), Dossier.deceased_name.ilike(like)))
    if (filters.get("held") or "").strip() in {"1", "true"}:
        query = query.filter(or_(Dossier.legal_hold.is_(True), Dossier.insurer_hold.is_(True)))
    return query.order_by(Dossier.created_at.desc(), Dossier.id.desc()).all()


def claimable_dossiers(actor: Actor) -> list[Dossier]:
    if not (is_funeral_director(actor) or is_platform_admin(actor)):
        return []
    return (
        Dossier.query.filter(
            Dossier.deleted_at.is_(None),
            Dossier.assigned_org_id.is_(None),
            Dossier.assignment_status == AssignmentStatus.UNASSIGNED,
            Dossier.status != DossierStatus.CLOSED,
            Dossier.legal_hold.is_(False),
            Dossier.insurer_hold.is_(False),
        )
        .order_by(Dossier.created_at.asc(), Dossier.id.asc())
        .all()
    )


def dossier_to_dict(dossier: Dossier) -> dict[str, object]:
    return {
        "id": dossier.id,
        "reference": dossier.reference,
        "deceased_name": dossier.deceased_name,
        "date_of_death": dossier.date_of_death.isoformat() if dossier.date_of_death else None,
        "flow": dossier.flow.value,
        "status": dossier.status.value,
        "phase": dossier.phase.value,
        "legal_hold": dossier.legal_hold,
        "insurer_hold": dossier.insurer_hold,
        "assigned_org_id": dossier.assigned_org_id,
        "assignment_status": dossier.assignment_status.value,
        "family_org_id": dossier.family_org_id,
        "insurer_org_id": dossier.insurer_org_id,
        "created_at": dossier.created_at.isoformat() if dossier.created_at else None,
        "updated_at": dossier.updated_at.isoformat() if dossier.updated_at else None,
        "closed_at": dossier.closed_at.isoformat() if dossier.closed_at else None,
        "deleted_at": dossier.deleted_at.isoformat() if dossier.deleted_at else None,
    }
