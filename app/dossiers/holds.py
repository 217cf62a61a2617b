from __future__ import annotations

import logging
from dataclasses import dataclass

from app.core.extensions import db
from app.core.models import (
    Dossier,
    DossierEventType,
    DossierHold,
    HoldType,
    RecipientType,
    utcnow,
)
from app.core.permissions import can_manage_hold
from app.core.tenancy import Actor
from app.dossiers.audit import record_event
from app.dossiers.errors import (
    AlreadyHeld,
    Blocked,
    Forbidden,
    InvalidInput,
    NotHeld,
    optional_text,
    require_reason,
)
from app.dossiers.locking import (
    commit_changes,
    flush_changes,
    get_dossier,
    lock_dossier,
    touch,
    transactional,
)
from app.dossiers.notifications import queue_notification

logger = logging.getLogger(__name__)

# when both are active the legal hold is the one reported
HOLD_PRECEDENCE = (HoldType.LEGAL, HoldType.INSURER)


@dataclass(frozen=True)
class BlockStatus:
    blocked: bool
    hold_type: HoldType | None = None
    reason: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "blocked": self.blocked,
            "type": self.hold_type.value if self.hold_type else None,
            "reason": self.reason,
            "message": self.message,
        }


def parse_hold_type(value: HoldType | str) -> HoldType:
    if isinstance(value, HoldType):
        return value
    try:
        return HoldType((value or "").strip().upper())
    except ValueError as exc:
        raise InvalidInput(f"Invalid hold type: {value}") from exc


def active_holds(dossier_id: int) -> list[DossierHold]:
    return (
        DossierHold.query.filter_by(dossier_id=dossier_id, active=True)
        .order_by(DossierHold.placed_at.asc(), DossierHold.id.asc())
        .all()
    )


def hold_history(dossier_id: int) -> list[DossierHold]:
    return (
        DossierHold.query.filter_by(dossier_id=dossier_id)
        .order_by(DossierHold.placed_at.desc(), DossierHold.id.desc())
        .all()
    )


def _active_hold(dossier_id: int, hold_type: HoldType) -> DossierHold | None:
    return DossierHold.query.filter_by(dossier_id=dossier_id, hold_type=hold_type, active=True).first()


def _sync_hold_flags(dossier: Dossier) -> None:
    active_types = {hold.hold_type for hold in active_holds(dossier.id)}
    # denormalized flags for list filters; block_status reads the hold rows
    dossier.legal_hold = HoldType.LEGAL in active_types
    dossier.insurer_hold = HoldType.INSURER in active_types


def block_status(dossier_id: int) -> BlockStatus:
    holds = {hold.hold_type: hold for hold in active_holds(dossier_id)}
    for hold_type in HOLD_PRECEDENCE:
        hold = holds.get(hold_type)
        if hold is None:
            continue
        message = f"Dossier is blocked by a {hold_type.value} hold: {hold.reason}"
        if hold.reference:
            message = f"{message} (ref. {hold.reference})"
        return BlockStatus(blocked=True, hold_type=hold_type, reason=hold.reason, message=message)
    return BlockStatus(blocked=False)


def is_blocked(dossier_id: int) -> BlockStatus:
    get_dossier(dossier_id)
    return block_status(dossier_id)


def ensure_not_blocked(dossier: Dossier, action: str) -> None:
    status = block_status(dossier.id)
    if status.blocked:
        raise Blocked(
            f"Cannot {action}: {status.message}",
            hold_type=status.hold_type.value,
            hold_reason=status.reason,
        )


@transactional
def set_hold(
    dossier_id: int,
    hold_type: HoldType | str,
    reason: str,
    authority: str,
    reference: str,
    actor: Actor,
) -> DossierHold:
    hold_type = parse_hold_type(hold_type)
    reason = require_reason(reason, "hold reason")
    authority = optional_text(authority, "hold authority", 160)
    reference = optional_text(reference, "hold reference", 80)
    dossier = lock_dossier(dossier_id)
    if not can_manage_hold(actor, hold_type, dossier.insurer_org_id):
        raise Forbidden(f"Not allowed to place a {hold_type.value} hold", hold_type=hold_type.value)
    if _active_hold(dossier.id, hold_type) is not None:
        raise AlreadyHeld(
            f"Dossier {dossier.reference} already has an active {hold_type.value} hold",
            hold_type=hold_type.value,
        )

    hold = DossierHold(
        dossier_id=dossier.id,
        hold_type=hold_type,
        reason=reason,
        authority=authority,
        reference=reference,
        placed_by_user_id=actor.user_id,
    )
    db.session.add(hold)
    flush_changes(f"Dossier {dossier.reference} already has an active {hold_type.value} hold", AlreadyHeld)
    _sync_hold_flags(dossier)
    touch(dossier)
    flush_changes()

    entry = record_event(
        dossier,
        DossierEventType.HOLD_SET,
        f"{hold_type.value} hold placed: {reason}",
        actor,
        {
            "hold_id": hold.id,
            "hold_type": hold_type.value,
            "authority": hold.authority,
            "reference": hold.reference,
        },
    )
    queue_notification(dossier, entry, RecipientType.FUNERAL_DIRECTOR, dossier.assigned_org_id)
    commit_changes(f"Dossier {dossier.reference} already has an active {hold_type.value} hold", AlreadyHeld)
    logger.info("Hold %s set on dossier %s by user %s", hold_type.value, dossier.reference, actor.user_id)
    return hold


@transactional
def lift_hold(dossier_id: int, hold_type: HoldType | str, lift_reason: str, actor: Actor) -> None:
    hold_type = parse_hold_type(hold_type)
    lift_reason = require_reason(lift_reason, "lift reason")
    dossier = lock_dossier(dossier_id)
    if not can_manage_hold(actor, hold_type, dossier.insurer_org_id):
        raise Forbidden(f"Not allowed to lift a {hold_type.value} hold", hold_type=hold_type.value)
    hold = _active_hold(dossier.id, hold_type)
    if hold is None:
        raise NotHeld(
            f"Dossier {dossier.reference} has no active {hold_type.value} hold",
            hold_type=hold_type.value,
        )

    hold.active = False
    hold.lift_reason = lift_reason
    hold.lifted_at = utcnow()
    hold.lifted_by_user_id = actor.user_id
    flush_changes()
    _sync_hold_flags(dossier)
    touch(dossier)
    flush_changes()

    entry = record_event(
        dossier,
        DossierEventType.HOLD_LIFTED,
        f"{hold_type.value} hold lifted: {lift_reason}",
        actor,
        {"hold_id": hold.id, "hold_type": hold_type.value, "legal_hold": dossier.legal_hold},
    )
    queue_notification(dossier, entry, RecipientType.FUNERAL_DIRECTOR, dossier.assigned_org_id)
    commit_changes()
    logger.info("Hold %s lifted on dossier %s by user %s", hold_type.value, dossier.reference, actor.user_id)


def hold_to_dict(hold: DossierHold) -> dict[str, object]:
    return {
        "id": hold.id,
        "dossier_id": hold.dossier_id,
        "type": hold.hold_type.value,
        "reason": hold.reason,
        "authority": hold.authority,
        "reference": hold.reference,
        "active": hold.active,
        "placed_by_user_id": hold.placed_by_user_id,
        "placed_at": hold.placed_at.isoformat() if hold.placed_at else None,
        "lifted_by_user_id": hold.lifted_by_user_id,
        "lifted_at": hold.lifted_at.isoformat() if hold.lifted_at else None,
        "lift_reason": hold.lift_reason,
    }
