from __future__ import annotations

from dataclasses import dataclass

from flask import abort, g
from flask_login import current_user

from app.core.models import Membership, OrganizationType


@dataclass(frozen=True)
class Actor:
    """Who is acting on a dossier: user, organization and role.

    Built once per request from the user's membership and passed explicitly
    into every workflow operation. ``user_id`` is ``None`` for the system
    actor used by batch jobs.
    """

    user_id: int | None
    org_id: int | None
    role: str
    org_type: OrganizationType | None = None

    @property
    def is_system(self) -> bool:
        return self.user_id is None and self.role == "system"

    def member_of(self, org_id: int | None) -> bool:
        return org_id is not None and self.org_id == org_id


SYSTEM_ACTOR = Actor(user_id=None, org_id=None, role="system")


def actor_from_membership(membership: Membership) -> Actor:
    organization = membership.organization
    return Actor(
        user_id=membership.user_id,
        org_id=membership.org_id,
        role=(membership.role or "").lower(),
        org_type=organization.type if organization else None,
    )


def load_tenant_context() -> None:
    g.org = None
    g.membership = None
    g.actor = None
    if not current_user.is_authenticated:
        return
    membership = (
        Membership.query.filter_by(user_id=current_user.id)
        .order_by(Membership.id.asc())
        .first()
    )
    if membership is None:
        abort(403)
    g.org = membership.organization
    g.membership = membership
    g.actor = actor_from_membership(membership)


def current_actor() -> Actor:
    actor = getattr(g, "actor", None)
    if actor is None:
        abort(401)
    return actor
