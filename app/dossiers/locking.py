from __future__ import annotations

import logging
from functools import wraps

from sqlalchemy import select
from sqlalchemy.exc import DataError, IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from app.core.extensions import db
from app.core.models import Dossier, utcnow
from app.dossiers.errors import Conflict, InvalidInput, NotFound, WorkflowError

logger = logging.getLogger(__name__)


def lock_dossier(dossier_id: int, *, allow_deleted: bool = False) -> Dossier:
    """Load a dossier for a state change, holding its row lock until commit.

    On backends without ``FOR UPDATE`` the mapper's version counter still
    rejects a commit made on a stale read.
    """
    stmt = (
        select(Dossier)
        .where(Dossier.id == dossier_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    dossier = db.session.execute(stmt).scalar_one_or_none()
    if dossier is None or (dossier.is_deleted and not allow_deleted):
        raise NotFound(f"Dossier {dossier_id} not found", dossier_id=dossier_id)
    return dossier


def get_dossier(dossier_id: int, *, allow_deleted: bool = False) -> Dossier:
    dossier = db.session.get(Dossier, dossier_id)
    if dossier is None or (dossier.is_deleted and not allow_deleted):
        raise NotFound(f"Dossier {dossier_id} not found", dossier_id=dossier_id)
    return dossier


DEFAULT_CONFLICT_MESSAGE = "Dossier was modified concurrently, reload and retry"


def _write(step, conflict_message: str, integrity_error: type[WorkflowError]) -> None:
    try:
        step()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Stale dossier write rejected: %s", exc)
        raise Conflict(conflict_message) from exc
    except IntegrityError as exc:
        db.session.rollback()
        logger.info("Constraint rejected dossier write: %s", exc.orig)
        raise integrity_error(conflict_message) from exc
    except DataError as exc:
        db.session.rollback()
        logger.info("Value rejected by the database: %s", exc.orig)
        raise InvalidInput("A value does not fit its column") from exc


def commit_changes(
    conflict_message: str = DEFAULT_CONFLICT_MESSAGE,
    integrity_error: type[WorkflowError] = Conflict,
) -> None:
    _write(db.session.commit, conflict_message, integrity_error)


def flush_changes(
    conflict_message: str = DEFAULT_CONFLICT_MESSAGE,
    integrity_error: type[WorkflowError] = Conflict,
) -> None:
    _write(db.session.flush, conflict_message, integrity_error)


def transactional(fn):
    """Roll the session back when a workflow operation raises."""

    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception:
            db.session.rollback()
            raise

    return wrapper


def touch(dossier: Dossier) -> None:
    # any row update bumps the version counter
    dossier.updated_at = utcnow()
