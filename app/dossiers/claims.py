from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from app.core.extensions import db
from app.core.models import (
    AssignmentStatus,
    ClaimStatus,
    Dossier,
    DossierClaim,
    DossierEventType,
    Organization,
    OrganizationType,
    RecipientType,
    utcnow,
)
from app.core.permissions import can_decide_claim, is_funeral_director, is_platform_admin
from app.core.tenancy import Actor
from app.dossiers.audit import record_event
from app.dossiers.errors import (
    Conflict,
    Forbidden,
    InvalidInput,
    InvalidState,
    NotFound,
    optional_text,
    require_reason,
)
from app.dossiers.holds import ensure_not_blocked
from app.dossiers.locking import commit_changes, flush_changes, lock_dossier, touch, transactional
from app.dossiers.notifications import queue_notification

logger = logging.getLogger(__name__)


class ReleaseAction(str, Enum):
    FAMILY_RELEASE = "FAMILY_RELEASE"
    FD_RELEASE = "FD_RELEASE"


@dataclass(frozen=True)
class ClaimResult:
    status: ClaimStatus
    claim_id: int
    dossier_id: int

    def to_dict(self) -> dict[str, object]:
        return {"status": self.status.value, "claim_id": self.claim_id, "dossier_id": self.dossier_id}


@dataclass(frozen=True)
class ClaimDecision:
    success: bool
    dossier_id: int
    status: ClaimStatus

    def to_dict(self) -> dict[str, object]:
        return {"success": self.success, "dossier_id": self.dossier_id, "status": self.status.value}


@dataclass(frozen=True)
class ReleaseResult:
    success: bool
    dossier_id: int

    def to_dict(self) -> dict[str, object]:
        return {"success": self.success, "dossier_id": self.dossier_id}


def _pending_claim(dossier_id: int) -> DossierClaim | None:
    return DossierClaim.query.filter_by(dossier_id=dossier_id, status=ClaimStatus.PENDING).first()


def pending_claims(dossier_id: int) -> list[DossierClaim]:
    return (
        DossierClaim.query.filter_by(dossier_id=dossier_id, status=ClaimStatus.PENDING)
        .order_by(DossierClaim.created_at.asc())
        .all()
    )


def _assignment_status_after_claim(dossier: Dossier) -> AssignmentStatus:
    if _pending_claim(dossier.id) is not None:
        return AssignmentStatus.PENDING_CLAIM
    if dossier.assigned_org_id is not None:
        return AssignmentStatus.ASSIGNED
    return AssignmentStatus.UNASSIGNED


@transactional
def request_claim(
    dossier_id: int,
    requesting_org_id: int,
    reason: str,
    require_family_approval: bool,
    actor: Actor,
) -> ClaimResult:
    """Ask to become the funeral director of a dossier.

    Without family approval an unassigned dossier is assigned at once and an
    assigned one is refused; otherwise the claim waits as PENDING for the
    owner, the family or a platform admin. The dossier row lock plus the
    pending-claim unique index keep two concurrent requests from both
    ending up PENDING.
    """
    reason = optional_text(reason, "claim reason")
    if not is_platform_admin(actor) and not (is_funeral_director(actor) and actor.member_of(requesting_org_id)):
        raise Forbidden("Only a funeral director can claim on behalf of its own organization")
    requester = db.session.get(Organization, requesting_org_id)
    if requester is None:
        raise NotFound(f"Organization {requesting_org_id} not found", org_id=requesting_org_id)
    if requester.type != OrganizationType.FUNERAL_DIRECTOR:
        raise InvalidInput("Only funeral director organizations can claim dossiers", org_id=requesting_org_id)

    dossier = lock_dossier(dossier_id)
    if dossier.is_terminal:
        raise InvalidState(f"Dossier {dossier.reference} is closed", status=dossier.status.value)
    ensure_not_blocked(dossier, "claim this dossier")
    if dossier.assigned_org_id == requesting_org_id:
        raise Conflict(f"Organization already owns dossier {dossier.reference}")
    existing = _pending_claim(dossier.id)
    if existing is not None:
        raise Conflict(
            f"Dossier {dossier.reference} already has a pending claim",
            claim_id=existing.id,
        )

    auto_approve = not require_family_approval
    if auto_approve and dossier.assigned_org_id is not None:
        raise Conflict(
            f"Dossier {dossier.reference} is already assigned, a takeover needs approval",
            assigned_org_id=dossier.assigned_org_id,
        )
    claim = DossierClaim(
        dossier_id=dossier.id,
        requesting_org_id=requester.id,
        requested_by_user_id=actor.user_id,
        reason=reason,
        status=ClaimStatus.APPROVED if auto_approve else ClaimStatus.PENDING,
    )
    db.session.add(claim)
    if auto_approve:
        claim.decided_at = utcnow()
        claim.decided_by_user_id = actor.user_id
        dossier.assigned_org_id = requester.id
        dossier.assignment_status = AssignmentStatus.ASSIGNED
    else:
        dossier.assignment_status = AssignmentStatus.PENDING_CLAIM
    touch(dossier)
    flush_changes(f"Dossier {dossier.reference} already has a pending claim", Conflict)

    if auto_approve:
        entry = record_event(
            dossier,
            DossierEventType.CLAIM_APPROVED,
            f"Dossier assigned to {requester.name} (claim approved automatically)",
            actor,
            {"claim_id": claim.id, "org_id": requester.id, "auto_approved": True},
        )
        queue_notification(dossier, entry, RecipientType.FAMILY, dossier.family_org_id, org_name=requester.name)
    else:
        entry = record_event(
            dossier,
            DossierEventType.CLAIM_REQUESTED,
            f"{requester.name} requested to take over the dossier",
            actor,
            {"claim_id": claim.id, "org_id": requester.id, "reason": claim.reason},
        )
        recipient_type, recipient_org_id = (
            (RecipientType.FUNERAL_DIRECTOR, dossier.assigned_org_id)
            if dossier.assigned_org_id is not None
            else (RecipientType.FAMILY, dossier.family_org_id)
        )
        queue_notification(dossier, entry, recipient_type, recipient_org_id, org_name=requester.name)
    commit_changes(f"Dossier {dossier.reference} already has a pending claim", Conflict)
    logger.info("Claim %s on dossier %s: %s", claim.id, dossier.reference, claim.status.value)
    return ClaimResult(status=claim.status, claim_id=claim.id, dossier_id=dossier.id)


@transactional
def decide_claim(claim_id: int, approve: bool, actor: Actor) -> ClaimDecision:
    claim = db.session.get(DossierClaim, claim_id)
    if claim is None:
        raise NotFound(f"Claim {claim_id} not found", claim_id=claim_id)
    dossier = lock_dossier(claim.dossier_id)
    db.session.refresh(claim)
    if claim.status != ClaimStatus.PENDING:
        raise NotFound(f"Claim {claim_id} is not pending", claim_id=claim_id, status=claim.status.value)
    if not can_decide_claim(actor, dossier.assigned_org_id, dossier.family_org_id):
        raise Forbidden("Only the current owner, the family or a platform admin can decide this claim")

    claim.decided_at = utcnow()
    claim.decided_by_user_id = actor.user_id
    requester = claim.requesting_org
    if approve:
        ensure_not_blocked(dossier, "approve this claim")
        previous_org_id = dossier.assigned_org_id
        claim.status = ClaimStatus.APPROVED
        dossier.assigned_org_id = claim.requesting_org_id
        flush_changes()
        dossier.assignment_status = _assignment_status_after_claim(dossier)
        touch(dossier)
        flush_changes()
        entry = record_event(
            dossier,
            DossierEventType.CLAIM_APPROVED,
            f"Claim by {requester.name} approved, dossier reassigned",
            actor,
            {"claim_id": claim.id, "org_id": claim.requesting_org_id, "previous_org_id": previous_org_id},
        )
    else:
        claim.status = ClaimStatus.REJECTED
        flush_changes()
        dossier.assignment_status = _assignment_status_after_claim(dossier)
        touch(dossier)
        flush_changes()
        entry = record_event(
            dossier,
            DossierEventType.CLAIM_REJECTED,
            f"Claim by {requester.name} rejected",
            actor,
            {"claim_id": claim.id, "org_id": claim.requesting_org_id},
        )
    queue_notification(dossier, entry, RecipientType.REQUESTER, claim.requesting_org_id)
    commit_changes()
    logger.info("Claim %s on dossier %s %s", claim.id, dossier.reference, claim.status.value.lower())
    return ClaimDecision(success=True, dossier_id=dossier.id, status=claim.status)


def parse_release_action(value: ReleaseAction | str) -> ReleaseAction:
    if isinstance(value, ReleaseAction):
        return value
    try:
        return ReleaseAction((value or "").strip().upper())
    except ValueError as exc:
        raise InvalidInput(f"Invalid release action: {value}") from exc


@transactional
def release(dossier_id: int, action: ReleaseAction | str, reason: str, actor: Actor) -> ReleaseResult:
    action = parse_release_action(action)
    reason = require_reason(reason, "release reason")
    dossier = lock_dossier(dossier_id)
    if dossier.assigned_org_id is None:
        raise InvalidState(f"Dossier {dossier.reference} has no assigned funeral director")
    if action == ReleaseAction.FD_RELEASE:
        allowed = actor.member_of(dossier.assigned_org_id) or is_platform_admin(actor)
    else:
        allowed = actor.member_of(dossier.family_org_id) or is_platform_admin(actor)
    if not allowed:
        raise Forbidden(f"Not allowed to perform {action.value}")

    previous_org_id = dossier.assigned_org_id
    dossier.assigned_org_id = None
    dossier.assignment_status = _assignment_status_after_claim(dossier)
    touch(dossier)
    flush_changes()
    entry = record_event(
        dossier,
        DossierEventType.DOSSIER_RELEASED,
        f"Dossier released ({action.value}): {reason}",
        actor,
        {"action": action.value, "reason": reason, "previous_org_id": previous_org_id},
    )
    if action == ReleaseAction.FD_RELEASE:
        queue_notification(dossier, entry, RecipientType.FAMILY, dossier.family_org_id, reason=reason)
    else:
        queue_notification(dossier, entry, RecipientType.FUNERAL_DIRECTOR, previous_org_id, reason=reason)
    commit_changes()
    logger.info("Dossier %s released by user %s (%s)", dossier.reference, actor.user_id, action.value)
    return ReleaseResult(success=True, dossier_id=dossier.id)


def claim_to_dict(claim: DossierClaim) -> dict[str, object]:
    return {
        "id": claim.id,
        "dossier_id": claim.dossier_id,
        "requesting_org_id": claim.requesting_org_id,
        "requested_by_user_id": claim.requested_by_user_id,
        "reason": claim.reason,
        "status": claim.status.value,
        "created_at": claim.created_at.isoformat() if claim.created_at else None,
        "decided_at": claim.decided_at.isoformat() if claim.decided_at else None,
        "decided_by_user_id": claim.decided_by_user_id,
    }
