"""
Conditional status writer.

All status/version writes go through ``compare_and_set_status``: one
``UPDATE ... WHERE id = :id AND status = :expected AND version = :version``
that bumps ``version`` in the same statement. Zero affected rows means
another writer got there first and raises ``StaleStateError``. Nothing is
retried; the caller reloads and asks the user to try again.

Transaction policy: executes inside the current session and never commits.
"""

import logging

from sqlalchemy import update

from app.core.exceptions import StaleStateError, ValidationError
from app.models import db

logger = logging.getLogger(__name__)


def _value(status):
    return getattr(status, "value", status)


def check_expected_version(instance, expected_version, label=None):
    """Reject a request made against a version the client no longer sees."""
    if expected_version is None:
        return
    try:
        if isinstance(expected_version, (bool, float)):
            raise TypeError(expected_version)
        expected = int(expected_version)
    except (TypeError, ValueError):
        raise ValidationError(
            "expected_version must be an integer",
            details={"expected_version": expected_version},
        ) from None
    if expected != instance.version:
        label = label or type(instance).__name__
        logger.warning(
            "Stale client version for %s %s: client=%s current=%s",
            label, instance.id, expected_version, instance.version,
            extra={"event_type": "stale_state", "entity_id": instance.id},
        )
        raise StaleStateError(label, instance.id, expected_version=expected_version)


def compare_and_set_status(model, entity_id, expected_status, expected_version, values=None):
    """Write ``values`` (usually including a new ``status``) if the row is unchanged.

    Returns the refreshed instance. ``values`` must not contain ``version``;
    it is always ``expected_version + 1`` after a successful write.
    """
    values = dict(values or {})
    if "status" in values:
        values["status"] = _value(values["status"])
    values.pop("version", None)

    stmt = (
        update(model)
        .where(
            model.id == entity_id,
            model.status == _value(expected_status),
            model.version == expected_version,
        )
        .values(version=model.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)

    if result.rowcount == 0:
        logger.warning(
            "Conditional write lost for %s %s (expected status=%s version=%s)",
            model.__name__, entity_id, _value(expected_status), expected_version,
            extra={"event_type": "stale_state", "entity_id": entity_id},
        )
        raise StaleStateError(
            model.__name__, entity_id,
            expected_status=_value(expected_status),
            expected_version=expected_version,
        )

    instance = db.session.get(model, entity_id)
    db.session.refresh(instance)
    return instance
