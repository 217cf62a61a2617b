from __future__ import annotations

import logging

from flask import jsonify, request
from flask_login import login_required

from app.core.permissions import PLATFORM_ADMIN, require_membership, require_role
from app.core.tenancy import current_actor
from app.dossiers import dossiers_bp
from app.dossiers.audit import event_to_dict, list_events
from app.dossiers.claims import claim_to_dict, decide_claim, pending_claims, release, request_claim
from app.dossiers.errors import InvalidInput, WorkflowError
from app.dossiers.holds import active_holds, hold_history, hold_to_dict, is_blocked, lift_hold, set_hold
from app.dossiers.lifecycle import (
    activate,
    cancel_dossier,
    check_and_progress,
    claimable_dossiers,
    create_dossier,
    dossier_for_actor,
    dossier_to_dict,
    force_phase,
    list_dossiers,
    parse_phase,
    request_delete,
    set_flow,
)
from app.dossiers.tasks import list_tasks, phase_progress, task_to_dict, update_task_status

logger = logging.getLogger(__name__)

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


def _payload() -> dict[str, object]:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _flag(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in TRUE_VALUES


def _required_flag(payload: dict[str, object], key: str) -> bool:
    value = payload.get(key)
    if isinstance(value, bool):
        return value
    raw = str(value if value is not None else "").strip().lower()
    if raw in TRUE_VALUES:
        return True
    if raw in FALSE_VALUES:
        return False
    raise InvalidInput(f"Field '{key}' must be true or false")


def _text(payload: dict[str, object], key: str) -> str:
    return str(payload.get(key) or "")


@dossiers_bp.errorhandler(WorkflowError)
def workflow_error(exc: WorkflowError):
    logger.info("Rejected %s %s: %s %s", request.method, request.path, exc.code, exc.message)
    return jsonify(exc.to_dict()), exc.http_status


@dossiers_bp.get("")
@login_required
@require_membership
def dossier_list():
    filters = {key: request.args.get(key, "") for key in ("status", "flow", "q", "held")}
    rows = list_dossiers(filters, current_actor())
    return jsonify([dossier_to_dict(dossier) for dossier in rows])


@dossiers_bp.post("")
@login_required
@require_membership
def dossier_create():
    dossier = create_dossier(_payload(), current_actor())
    return jsonify(dossier_to_dict(dossier)), 201


@dossiers_bp.get("/claimable")
@login_required
@require_membership
def dossier_claimable():
    return jsonify([dossier_to_dict(dossier) for dossier in claimable_dossiers(current_actor())])


@dossiers_bp.get("/<int:dossier_id>")
@login_required
@require_membership
def dossier_detail(dossier_id: int):
    dossier = dossier_for_actor(dossier_id, current_actor())
    data = dossier_to_dict(dossier)
    data["block"] = is_blocked(dossier.id).to_dict()
    data["holds"] = [hold_to_dict(hold) for hold in active_holds(dossier.id)]
    data["pending_claims"] = [claim_to_dict(claim) for claim in pending_claims(dossier.id)]
    data["task_progress"] = phase_progress(dossier.id)
    return jsonify(data)


@dossiers_bp.get("/<int:dossier_id>/events")
@login_required
@require_membership
def dossier_events(dossier_id: int):
    dossier = dossier_for_actor(dossier_id, current_actor())
    page = list_events(
        dossier.id,
        page=request.args.get("page", 1, type=int),
        page_size=request.args.get("page_size", 50, type=int),
    )
    return jsonify(
        {
            "items": [event_to_dict(entry) for entry in page.items],
            "page": page.page,
            "page_size": page.page_size,
            "total": page.total,
            "has_next": page.has_next,
        }
    )


@dossiers_bp.post("/<int:dossier_id>/flow")
@login_required
@require_membership
def dossier_set_flow(dossier_id: int):
    dossier = set_flow(dossier_id, _text(_payload(), "flow"), current_actor())
    return jsonify(dossier_to_dict(dossier))


@dossiers_bp.post("/<int:dossier_id>/activate")
@login_required
@require_membership
def dossier_activate(dossier_id: int):
    dossier = activate(dossier_id, _text(_payload(), "reason"), current_actor())
    return jsonify(dossier_to_dict(dossier))


@dossiers_bp.post("/<int:dossier_id>/progress")
@login_required
@require_membership
def dossier_progress(dossier_id: int):
    result = check_and_progress(dossier_id, current_actor())
    return jsonify(result.to_dict())


@dossiers_bp.post("/<int:dossier_id>/force")
@login_required
@require_membership
@require_role(PLATFORM_ADMIN)
def dossier_force(dossier_id: int):
    payload = _payload()
    dossier = force_phase(dossier_id, parse_phase(_text(payload, "phase")), _text(payload, "reason"), current_actor())
    return jsonify(dossier_to_dict(dossier))


@dossiers_bp.post("/<int:dossier_id>/cancel")
@login_required
@require_membership
@require_role(PLATFORM_ADMIN)
def dossier_cancel(dossier_id: int):
    dossier = cancel_dossier(dossier_id, _text(_payload(), "reason"), current_actor())
    return jsonify(dossier_to_dict(dossier))


@dossiers_bp.post("/<int:dossier_id>/delete")
@login_required
@require_membership
def dossier_delete(dossier_id: int):
    request_delete(dossier_id, _text(_payload(), "reason"), current_actor())
    return jsonify({"success": True, "dossier_id": dossier_id})


@dossiers_bp.get("/<int:dossier_id>/blocked")
@login_required
@require_membership
def dossier_blocked(dossier_id: int):
    dossier = dossier_for_actor(dossier_id, current_actor())
    return jsonify(is_blocked(dossier.id).to_dict())


@dossiers_bp.get("/<int:dossier_id>/holds")
@login_required
@require_membership
def dossier_holds(dossier_id: int):
    dossier = dossier_for_actor(dossier_id, current_actor())
    return jsonify([hold_to_dict(hold) for hold in hold_history(dossier.id)])


@dossiers_bp.post("/<int:dossier_id>/holds")
@login_required
@require_membership
def dossier_set_hold(dossier_id: int):
    payload = _payload()
    hold = set_hold(
        dossier_id,
        _text(payload, "type"),
        _text(payload, "reason"),
        _text(payload, "authority"),
        _text(payload, "reference"),
        current_actor(),
    )
    return jsonify(hold_to_dict(hold)), 201


@dossiers_bp.post("/<int:dossier_id>/holds/<hold_type>/lift")
@login_required
@require_membership
def dossier_lift_hold(dossier_id: int, hold_type: str):
    lift_hold(dossier_id, hold_type, _text(_payload(), "reason"), current_actor())
    return jsonify(is_blocked(dossier_id).to_dict())


@dossiers_bp.post("/<int:dossier_id>/claims")
@login_required
@require_membership
def dossier_request_claim(dossier_id: int):
    payload = _payload()
    actor = current_actor()
    raw_org = str(payload.get("org_id") or actor.org_id or "")
    if not raw_org.isdigit():
        raise InvalidInput("Invalid organization")
    result = request_claim(
        dossier_id,
        int(raw_org),
        _text(payload, "reason"),
        _flag(payload.get("require_family_approval")),
        actor,
    )
    return jsonify(result.to_dict()), 201


@dossiers_bp.post("/claims/<int:claim_id>/decision")
@login_required
@require_membership
def claim_decision(claim_id: int):
    result = decide_claim(claim_id, _required_flag(_payload(), "approve"), current_actor())
    return jsonify(result.to_dict())


@dossiers_bp.post("/<int:dossier_id>/release")
@login_required
@require_membership
def dossier_release(dossier_id: int):
    payload = _payload()
    result = release(dossier_id, _text(payload, "action"), _text(payload, "reason"), current_actor())
    return jsonify(result.to_dict())


@dossiers_bp.get("/<int:dossier_id>/tasks")
@login_required
@require_membership
def dossier_tasks(dossier_id: int):
    dossier = dossier_for_actor(dossier_id, current_actor())
    phase_raw = request.args.get("phase", "").strip()
    phase = parse_phase(phase_raw) if phase_raw else None
    return jsonify([task_to_dict(task) for task in list_tasks(dossier.id, phase)])


@dossiers_bp.post("/tasks/<int:task_id>/status")
@login_required
@require_membership
def task_status(task_id: int):
    task = update_task_status(task_id, _text(_payload(), "status"), current_actor())
    return jsonify(task_to_dict(task))
