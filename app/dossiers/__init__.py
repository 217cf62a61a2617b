from flask import Blueprint

dossiers_bp = Blueprint("dossiers", __name__, url_prefix="/api/dossiers")

from app.dossiers import routes  # noqa: E402,F401
