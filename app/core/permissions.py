from __future__ import annotations

from functools import wraps

from flask import abort, g
from flask_login import current_user

from app.core.models import HoldType, OrganizationType
from app.core.tenancy import Actor

PLATFORM_ADMIN = "platform_admin"
FUNERAL_DIRECTOR_ROLES = {"org_admin", "funeral_director"}


def require_membership(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if not current_user.is_authenticated:
            abort(401)
        if getattr(g, "org", None) is None:
            abort(403)
        return fn(*args, **kwargs)

    return wrapper


def require_role(*roles: str):
    allowed = {role.lower() for role in roles}

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                abort(401)
            membership = getattr(g, "membership", None)
            if membership is None:
                abort(403)
            if (membership.role or "").lower() not in allowed:
                abort(403)
            return fn(*args, **kwargs)

        return wrapper

    return decorator


def is_platform_admin(actor: Actor) -> bool:
    return actor.role == PLATFORM_ADMIN


def is_funeral_director(actor: Actor) -> bool:
    return actor.role in FUNERAL_DIRECTOR_ROLES and actor.org_type == OrganizationType.FUNERAL_DIRECTOR


def can_manage_hold(actor: Actor, hold_type: HoldType, insurer_org_id: int | None) -> bool:
    # LEGAL: platform admin only. INSURER: platform admin or the dossier's insurer.
    if is_platform_admin(actor):
        return True
    if hold_type == HoldType.LEGAL:
        return False
    if actor.role != "insurer":
        return False
    return insurer_org_id is None or actor.member_of(insurer_org_id)


def can_operate(actor: Actor, assigned_org_id: int | None) -> bool:
    # owner-side operations: the assigned funeral director, platform admin or batch jobs
    return actor.is_system or is_platform_admin(actor) or actor.member_of(assigned_org_id)


def can_decide_claim(actor: Actor, assigned_org_id: int | None, family_org_id: int | None) -> bool:
    if is_platform_admin(actor):
        return True
    return actor.member_of(assigned_org_id) or actor.member_of(family_org_id)
