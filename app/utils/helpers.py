"""Shared utility functions for services and blueprints.

get_or_404:          service-layer lookup that raises NotFoundError
db_commit_or_error:  commit in a route handler, error response on failure
utcnow:              timezone-aware "now" used for every stamped column
clean_text:          strip + collapse blank strings to None
"""
import logging
from datetime import datetime, timezone

from app.core.exceptions import NotFoundError
from app.models import db
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or raise NotFoundError.

        story = get_or_404(Story, story_id)
    """
    label = label or model.__name__
    obj = db.session.get(model, pk) if pk is not None else None
    if obj is None:
        raise NotFoundError(resource=label, resource_id=pk)
    return obj


# ── Database commit helper ───────────────────────────────────────────────────

def db_commit_or_error():
    """Commit the current SQLAlchemy session, returning an error response on failure.

    Returns:
        None on success.
        (response, status_code) tuple on failure, ready for ``return``.

    Usage::

        err = db_commit_or_error()
        if err:
            return err

    IntegrityError → 409 (duplicate / constraint violation)
    OperationalError → 500 (connection / lock issues)
    """
    from sqlalchemy.exc import IntegrityError, OperationalError

    try:
        db.session.commit()
        return None
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        return api_error(E.CONFLICT_DUPLICATE, "Duplicate or constraint violation")
    except OperationalError:
        db.session.rollback()
        logger.exception("Operational error on commit")
        return api_error(E.DATABASE, "Database error")


def utcnow():
    return datetime.now(timezone.utc)


def clean_text(value):
    """Return ``value`` stripped, or None when it is missing or blank."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None
