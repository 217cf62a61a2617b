from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func

from app.core.extensions import db
from app.core.models import (
    Dossier,
    DossierEventType,
    DossierFlow,
    DossierPhase,
    DossierTask,
    TaskStatus,
    utcnow,
)
from app.core.permissions import can_operate
from app.core.tenancy import Actor
from app.dossiers.audit import record_event
from app.dossiers.errors import Forbidden, InvalidInput, InvalidState, NotFound
from app.dossiers.locking import commit_changes, flush_changes, lock_dossier, touch, transactional

logger = logging.getLogger(__name__)

OPEN_STATUSES = (TaskStatus.OPEN, TaskStatus.IN_PROGRESS)


@dataclass(frozen=True)
class TaskTemplate:
    task_type: str
    title: str
    description: str
    priority: int


INTAKE_TEMPLATES: dict[DossierPhase, list[TaskTemplate]] = {
    DossierPhase.CREATED: [
        TaskTemplate("INTAKE_WELCOME", "Welcome the family and open the case chat", "Make first contact with the family", 1),
        TaskTemplate("INTAKE_FAMILY_CONTACT", "Confirm primary family contact", "Check and confirm the family's contact details", 2),
        TaskTemplate("INTAKE_GDPR", "Record GDPR consent", "Obtain GDPR consent from the family", 3),
    ],
    DossierPhase.INTAKE: [
        TaskTemplate("INTAKE_DEATH_CERTIFICATE", "Collect and check the death certificate", "Upload and verify the death certificate", 4),
        TaskTemplate("INTAKE_ID_DOCUMENT", "Record identity document", "Upload ID or passport of the deceased", 5),
        TaskTemplate("INTAKE_FLOW_CONFIRM", "Confirm the flow", "Confirm local burial or repatriation with the family", 6),
        TaskTemplate("INTAKE_INSURANCE_INFO", "Add insurance details", "Collect and register insurance details if applicable", 7),
    ],
}

OPERATIONAL_TEMPLATES: dict[DossierPhase, list[TaskTemplate]] = {
    DossierPhase.WASHING: [
        TaskTemplate("WASHING_MORTUARY", "Plan mortuary (cold cell + washing)", "Book the mortuary service and reserve a cold cell", 10),
        TaskTemplate("WASHING_TRANSPORT", "Arrange transfer to the mortuary", "Pick up the deceased and transfer to the mortuary", 11),
        TaskTemplate("WASHING_EXECUTE", "Carry out the ritual washing", "Perform the washing and place in the cold cell", 12),
    ],
    DossierPhase.PRAYER: [
        TaskTemplate("PRAYER_MOSQUE", "Schedule the janazah prayer", "Plan the janazah prayer with the mosque", 20),
        TaskTemplate("PRAYER_EXECUTE", "Janazah prayer held", "Confirm the prayer took place", 21),
    ],
    DossierPhase.COMPLETED: [
        TaskTemplate("SETTLE_INVOICE", "Send the final invoice", "Invoice the family or the insurer", 40),
        TaskTemplate("SETTLE_FEEDBACK", "Request family feedback", "Send the feedback link to the family", 41),
        TaskTemplate("SETTLE_ARCHIVE", "Archive the dossier documents", "Check all documents are stored before closing", 42),
    ],
}

FLOW_TEMPLATES: dict[DossierFlow, dict[DossierPhase, list[TaskTemplate]]] = {
    DossierFlow.LOC: {
        DossierPhase.BURIAL: [
            TaskTemplate("BURIAL_CONCESSION", "Confirm grave and concession", "Reserve the grave plot and confirm the burial", 30),
            TaskTemplate("BURIAL_TRANSPORT", "Arrange hearse to the cemetery", "Organise transport to the cemetery", 31),
            TaskTemplate("BURIAL_EXECUTE", "Burial completed", "Confirm the burial took place", 32),
        ],
    },
    DossierFlow.REP: {
        DossierPhase.REPATRIATION: [
            TaskTemplate("REP_CONSULATE", "Obtain consular documents", "Collect the laissez-passer and consular approval", 30),
            TaskTemplate("REP_FLIGHT", "Book the repatriation flight", "Book cargo and the accompanying passengers", 31),
            TaskTemplate("REP_HANDOVER", "Hand over at the destination", "Confirm arrival and handover to the receiving party", 32),
        ],
    },
}


def templates_for(flow: DossierFlow, phase: DossierPhase) -> list[TaskTemplate]:
    if phase in INTAKE_TEMPLATES:
        return INTAKE_TEMPLATES[phase]
    if phase in OPERATIONAL_TEMPLATES:
        return OPERATIONAL_TEMPLATES[phase]
    return FLOW_TEMPLATES.get(flow, {}).get(phase, [])


def _open_query(dossier_id: int, phase: DossierPhase | None = None):
    query = DossierTask.query.filter(
        DossierTask.dossier_id == dossier_id,
        DossierTask.status.in_(OPEN_STATUSES),
        DossierTask.archived_at.is_(None),
    )
    if phase is not None:
        query = query.filter(DossierTask.phase == phase)
    return query


def count_open(dossier_id: int, phase: DossierPhase | None = None) -> int:
    return _open_query(dossier_id, phase).count()


def all_done_for_phase(dossier_id: int, phase: DossierPhase) -> bool:
    return count_open(dossier_id, phase) == 0


def list_tasks(dossier_id: int, phase: DossierPhase | None = None) -> list[DossierTask]:
    query = DossierTask.query.filter(DossierTask.dossier_id == dossier_id, DossierTask.archived_at.is_(None))
    if phase is not None:
        query = query.filter(DossierTask.phase == phase)
    return query.order_by(DossierTask.priority.asc(), DossierTask.id.asc()).all()


def seed_phase_tasks(dossier: Dossier, phase: DossierPhase) -> int:
    """Create the template tasks for ``phase``; task types already present are skipped.

    Runs inside the caller's transaction and does not commit.
    """
    existing = {
        task_type
        for (task_type,) in db.session.query(DossierTask.task_type).filter(
            DossierTask.dossier_id == dossier.id,
            DossierTask.phase == phase,
        )
    }
    created = 0
    for template in templates_for(dossier.flow, phase):
        if template.task_type in existing:
            continue
        db.session.add(
            DossierTask(
                dossier_id=dossier.id,
                phase=phase,
                task_type=template.task_type,
                title=template.title,
                description=template.description,
                priority=template.priority,
            )
        )
        created += 1
    if created:
        logger.debug("Seeded %s %s tasks for dossier %s", created, phase.value, dossier.reference)
    return created


def parse_task_status(value: TaskStatus | str) -> TaskStatus:
    if isinstance(value, TaskStatus):
        return value
    try:
        return TaskStatus((value or "").strip().upper())
    except ValueError as exc:
        raise InvalidInput(f"Invalid task status: {value}") from exc


@transactional
def update_task_status(task_id: int, status: TaskStatus | str, actor: Actor) -> DossierTask:
    status = parse_task_status(status)
    task = db.session.get(DossierTask, task_id)
    if task is None or task.archived_at is not None:
        raise NotFound(f"Task {task_id} not found", task_id=task_id)
    # same lock as check_and_progress, so a completion never races a phase change
    dossier = lock_dossier(task.dossier_id)
    if not can_operate(actor, dossier.assigned_org_id):
        raise Forbidden("Only the assigned funeral director can update tasks")
    if task.status == status:
        raise InvalidState(f"Task is already {status.value}", task_id=task.id)

    previous = task.status
    task.status = status
    task.completed_at = utcnow() if status == TaskStatus.DONE else None
    touch(dossier)
    flush_changes()
    record_event(
        dossier,
        DossierEventType.TASK_STATUS_CHANGED,
        f"Task '{task.title}': {previous.value} -> {status.value}",
        actor,
        {"task_id": task.id, "phase": task.phase.value, "from": previous.value, "to": status.value},
    )
    commit_changes()
    return task


def archive_completed_tasks(older_than: timedelta | datetime) -> int:
    """Mark DONE tasks completed before the cutoff as archived; returns the count."""
    cutoff = utcnow() - older_than if isinstance(older_than, timedelta) else older_than
    tasks = (
        DossierTask.query.filter(
            DossierTask.status == TaskStatus.DONE,
            DossierTask.archived_at.is_(None),
            DossierTask.completed_at.is_not(None),
            DossierTask.completed_at < cutoff,
        )
        .all()
    )
    now = utcnow()
    for task in tasks:
        task.archived_at = now
    db.session.commit()
    logger.info("Archived %s completed tasks older than %s", len(tasks), cutoff.isoformat())
    return len(tasks)


def phase_progress(dossier_id: int) -> dict[str, dict[str, int]]:
    rows = (
        db.session.query(DossierTask.phase, DossierTask.status, func.count(DossierTask.id))
        .filter(DossierTask.dossier_id == dossier_id)
        .group_by(DossierTask.phase, DossierTask.status)
        .all()
    )
    summary: dict[str, dict[str, int]] = {}
    for phase, status, total in rows:
        bucket = summary.setdefault(phase.value, {"total": 0, "open": 0})
        bucket["total"] += total
        if status in OPEN_STATUSES:
            bucket["open"] += total
    return summary


def task_to_dict(task: DossierTask) -> dict[str, object]:
    return {
        "id": task.id,
        "dossier_id": task.dossier_id,
        "phase": task.phase.value,
        "task_type": task.task_type,
        "title": task.title,
        "description": task.description,
        "status": task.status.value,
        "priority": task.priority,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }
