from __future__ import annotations

import logging
import time

from flask import Blueprint, current_app, g, jsonify, request, session
from flask_login import current_user, login_required, login_user, logout_user
from werkzeug.security import check_password_hash

from app.core.models import User

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

LAST_ACTIVITY_KEY = "last_activity"


@auth_bp.post("/login")
def login_post():
    data = request.get_json(silent=True) or request.form
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    user = User.query.filter_by(email=email).first()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        logger.info("Failed login for %s", email)
        return jsonify({"error": "INVALID_CREDENTIALS", "message": "Invalid credentials"}), 401
    login_user(user)
    session[LAST_ACTIVITY_KEY] = time.time()
    return jsonify({"id": user.id, "email": user.email, "full_name": user.full_name})


@auth_bp.post("/logout")
@login_required
def logout():
    logout_user()
    session.pop(LAST_ACTIVITY_KEY, None)
    return jsonify({"success": True})


@auth_bp.get("/me")
@login_required
def me():
    membership = getattr(g, "membership", None)
    return jsonify(
        {
            "id": current_user.id,
            "email": current_user.email,
            "full_name": current_user.full_name,
            "org_id": membership.org_id if membership else None,
            "role": membership.role if membership else None,
        }
    )


def enforce_idle_timeout():
    """Log the user out after ``SESSION_IDLE_TIMEOUT_MINUTES`` without requests.

    The last activity lives in the session cookie of the request, not in a
    process-wide timer.
    """
    if not current_user.is_authenticated:
        return None
    limit = current_app.config.get("SESSION_IDLE_TIMEOUT_MINUTES", 30) * 60
    now = time.time()
    last_activity = session.get(LAST_ACTIVITY_KEY)
    if limit > 0 and last_activity is not None and now - last_activity > limit:
        logger.info("Session of user %s expired after inactivity", current_user.id)
        logout_user()
        session.pop(LAST_ACTIVITY_KEY, None)
        return jsonify({"error": "SESSION_EXPIRED", "message": "Session expired after inactivity"}), 401
    session[LAST_ACTIVITY_KEY] = now
    return None
