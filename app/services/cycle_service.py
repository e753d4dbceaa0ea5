"""
Cycle Service — UAT cycles, their tester pool and tester acknowledgments.

Transaction policy: functions flush, never commit. Caller commits.

A tester must be an active member of a cycle's pool to be assigned into it,
and must have recorded the cycle acknowledgment (identity, HIPAA, test-data
use) before starting work on any of its executions. Acknowledgments are
written once and never changed.

Usage:
    from app.services.cycle_service import record_acknowledgment

    ack = record_acknowledgment(cycle_id=3, actor=actor, data={
        "identity_confirmed": True,
        "hipaa_acknowledged": True,
        "test_data_filter_acknowledged": True,
    })
"""

import logging
from datetime import date

from app.core.cycle_workflow import CycleStatus, DistributionMethod, valid_capacity_weight
from app.core.exceptions import (
    AcknowledgmentRequiredError,
    ConflictError,
    PermissionDeniedError,
    UnknownRoleError,
    ValidationError,
)
from app.core.roles import Role, can_execute_tests, can_lock_cycles, can_manage_cycles, parse_role
from app.models import db
from app.models.audit import write_audit
from app.models.auth import User
from app.models.cycle import CycleTester, TesterAcknowledgment, UatCycle
from app.models.program import Program
from app.services.status_writer import check_expected_version, compare_and_set_status
from app.services.workflow_dispatcher import authorize_transition, available_actions
from app.utils.errors import E
from app.utils.helpers import clean_text, get_or_404, utcnow

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "description", "distribution_method", "start_date", "end_date")

_DISTRIBUTION_METHODS = {m.value for m in DistributionMethod}


# ── Helpers ──────────────────────────────────────────────────────────────────

def _require_manager(actor, action):
    if not can_manage_cycles(actor.role):
        raise PermissionDeniedError(f"Your role cannot {action}")


def _ensure_unlocked(cycle, action):
    if cycle.is_locked:
        raise ValidationError(f"Cannot {action} a locked cycle", code=E.CYCLE_LOCKED)


def _parse_date(value, field):
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)") from None


def _check_date_range(start, end):
    if start and end and end < start:
        raise ValidationError("end_date must not be before start_date",
                              details={"start_date": start.isoformat(), "end_date": end.isoformat()})


def _validate_distribution(method):
    if method not in _DISTRIBUTION_METHODS:
        raise ValidationError(
            f"Invalid distribution_method '{method}'",
            details={"distribution_method": sorted(_DISTRIBUTION_METHODS)},
        )


def _audit(cycle, action, actor, **kwargs):
    write_audit(
        entity_type="cycle",
        entity_id=cycle.id,
        action=action,
        actor_user_id=actor.user_id,
        actor_role=actor.role_name,
        **kwargs,
    )


def _membership(cycle_id, user_id):
    return CycleTester.query.filter_by(cycle_id=cycle_id, user_id=user_id).first()


# ── Queries ──────────────────────────────────────────────────────────────────

def get_cycle(cycle_id):
    return get_or_404(UatCycle, cycle_id, "UAT cycle")


def list_cycles(program_id=None, status=None):
    q = UatCycle.query
    if program_id is not None:
        q = q.filter(UatCycle.program_id == program_id)
    if status:
        q = q.filter(UatCycle.status == status)
    return q.order_by(UatCycle.id.desc())


def get_my_cycles(actor):
    """Active or completed cycles in which the actor is an active tester."""
    return (
        UatCycle.query.join(CycleTester, CycleTester.cycle_id == UatCycle.id)
        .filter(
            CycleTester.user_id == actor.user_id,
            CycleTester.is_active.is_(True),
            UatCycle.status.in_([CycleStatus.ACTIVE.value, CycleStatus.COMPLETED.value]),
        )
        .order_by(UatCycle.id.desc())
    )


def get_available_cycle_actions(cycle, actor):
    if cycle.is_locked:
        return []
    return available_actions("cycle", cycle.status, actor.role)


def list_cycle_testers(cycle_id):
    get_cycle(cycle_id)
    return CycleTester.query.filter_by(cycle_id=cycle_id).order_by(CycleTester.added_at,
                                                                    CycleTester.id).all()


# ── CRUD ─────────────────────────────────────────────────────────────────────

def create_cycle(data, actor):
    _require_manager(actor, "create cycles")
    program = get_or_404(Program, data.get("program_id"))

    name = clean_text(data.get("name"))
    if not name:
        raise ValidationError("name is required")
    method = data.get("distribution_method") or DistributionMethod.EQUAL.value
    _validate_distribution(method)
    start = _parse_date(data.get("start_date"), "start_date")
    end = _parse_date(data.get("end_date"), "end_date")
    _check_date_range(start, end)

    cycle = UatCycle(
        program_id=program.id,
        name=name,
        description=data.get("description") or "",
        status=CycleStatus.DRAFT.value,
        version=1,
        distribution_method=method,
        start_date=start,
        end_date=end,
        created_by=actor.user_id,
    )
    db.session.add(cycle)
    db.session.flush()

    _audit(cycle, "cycle.create", actor, to_status=cycle.status,
           diff={"name": {"old": None, "new": name}})
    logger.info("UAT cycle created: %s", name,
                extra={"entity_type": "cycle", "entity_id": cycle.id, "actor_id": actor.user_id})
    return cycle


def update_cycle(cycle_id, data, actor, expected_version=None):
    _require_manager(actor, "update cycles")
    cycle = get_cycle(cycle_id)
    check_expected_version(cycle, expected_version, "UAT cycle")
    _ensure_unlocked(cycle, "update")

    if "status" in data:
        raise ValidationError("status cannot be edited directly; use a workflow transition")

    values, diff = {}, {}
    for field in EDITABLE_FIELDS:
        if field not in data:
            continue
        new = data[field]
        if field == "name":
            new = clean_text(new)
            if not new:
                raise ValidationError("name cannot be empty")
        elif field == "distribution_method":
            _validate_distribution(new)
        elif field in ("start_date", "end_date"):
            new = _parse_date(new, field)
        old = getattr(cycle, field)
        if new != old:
            values[field] = new
            diff[field] = {"old": old, "new": new}

    _check_date_range(values.get("start_date", cycle.start_date),
                      values.get("end_date", cycle.end_date))
    if not values:
        return cycle

    cycle = compare_and_set_status(UatCycle, cycle.id, cycle.status, cycle.version, values)
    _audit(cycle, "cycle.update", actor, diff=diff)
    return cycle


def delete_cycle(cycle_id, actor):
    """Admin only; a locked cycle or one that already has executions stays."""
    if actor.role != Role.ADMIN:
        raise PermissionDeniedError("Only admins can delete cycles")
    cycle = get_cycle(cycle_id)
    _ensure_unlocked(cycle, "delete")
    if cycle.executions.count() or cycle.acknowledgments.count():
        raise ValidationError("A cycle with executions or acknowledgments cannot be deleted")

    _audit(cycle, "cycle.delete", actor, from_status=cycle.status,
           diff={"name": {"old": cycle.name, "new": None}})
    db.session.delete(cycle)
    db.session.flush()
    logger.info("UAT cycle deleted", extra={"entity_type": "cycle", "entity_id": cycle_id,
                                            "actor_id": actor.user_id})


# ── Status & lock ────────────────────────────────────────────────────────────

def transition_cycle(cycle_id, target, actor, notes=None, expected_version=None):
    cycle = get_cycle(cycle_id)
    check_expected_version(cycle, expected_version, "UAT cycle")
    notes = clean_text(notes)

    transition = authorize_transition("cycle", cycle.status, target, actor.role, notes=notes)
    _ensure_unlocked(cycle, "change the status of")

    from_status = cycle.status
    cycle = compare_and_set_status(UatCycle, cycle.id, from_status, cycle.version,
                                   {"status": transition.to})
    _audit(cycle, "cycle.transition", actor, from_status=from_status, to_status=cycle.status,
           notes=notes, diff={"status": {"old": from_status, "new": cycle.status}})
    logger.info(
        "Cycle status changed: %s -> %s", from_status, cycle.status,
        extra={"entity_type": "cycle", "entity_id": cycle.id, "from_status": from_status,
               "to_status": cycle.status, "actor_id": actor.user_id},
    )
    return cycle


def lock_cycle(cycle_id, actor, notes=None, expected_version=None):
    """Freeze a cycle. Locking cannot be undone."""
    if not can_lock_cycles(actor.role):
        raise PermissionDeniedError("Your role cannot lock cycles")
    cycle = get_cycle(cycle_id)
    check_expected_version(cycle, expected_version, "UAT cycle")
    _ensure_unlocked(cycle, "lock")

    now = utcnow()
    cycle = compare_and_set_status(UatCycle, cycle.id, cycle.status, cycle.version,
                                   {"locked_at": now, "locked_by": actor.user_id})
    _audit(cycle, "cycle.lock", actor, notes=clean_text(notes),
           diff={"locked_at": {"old": None, "new": now}})
    logger.info("UAT cycle locked", extra={"entity_type": "cycle", "entity_id": cycle.id,
                                           "actor_id": actor.user_id})
    return cycle


# ── Tester pool ──────────────────────────────────────────────────────────────

def _resolve_pool_user(user_id):
    user = db.session.get(User, user_id) if user_id is not None else None
    if user is None or not user.is_active:
        raise ValidationError(f"User {user_id} is not an active user")
    try:
        role = parse_role(user.role)
    except UnknownRoleError:
        role = None
    if not can_execute_tests(role):
        raise ValidationError(f"User {user_id} ({user.role}) cannot execute tests")
    return user


def add_testers(cycle_id, user_ids, actor, capacity_weight=100):
    """Add users to the pool; members that were deactivated are reactivated."""
    _require_manager(actor, "manage tester pools")
    cycle = get_cycle(cycle_id)
    _ensure_unlocked(cycle, "modify testers on")
    if not isinstance(user_ids, list) or not user_ids:
        raise ValidationError("user_ids must be a non-empty list")
    if not valid_capacity_weight(capacity_weight):
        raise ValidationError("capacity_weight must be between 1 and 100")

    members = []
    for user_id in dict.fromkeys(user_ids):
        user = _resolve_pool_user(user_id)
        member = _membership(cycle.id, user.id)
        if member is not None and member.is_active:
            raise ConflictError("Cycle tester", "user_id", user.id)
        if member is None:
            member = CycleTester(cycle_id=cycle.id, user_id=user.id,
                                 capacity_weight=capacity_weight, added_by=actor.user_id)
            db.session.add(member)
        else:
            member.is_active = True
            member.capacity_weight = capacity_weight
        members.append(member)
    db.session.flush()

    _audit(cycle, "cycle.tester_add", actor,
           diff={"testers": {"old": None, "new": [m.user_id for m in members]}})
    return members


def update_tester_capacity(cycle_id, user_id, capacity_weight, actor):
    _require_manager(actor, "manage tester pools")
    cycle = get_cycle(cycle_id)
    _ensure_unlocked(cycle, "modify testers on")
    if not valid_capacity_weight(capacity_weight):
        raise ValidationError("capacity_weight must be between 1 and 100")
    member = _membership(cycle.id, user_id)
    if member is None:
        raise ValidationError(f"User {user_id} is not in this cycle's tester pool")

    old = member.capacity_weight
    member.capacity_weight = capacity_weight
    db.session.flush()
    _audit(cycle, "cycle.tester_update", actor,
           diff={f"capacity_weight_{user_id}": {"old": old, "new": capacity_weight}})
    return member


def remove_tester(cycle_id, user_id, actor):
    """Drop a tester from the pool; with executions in the cycle they are only deactivated."""
    _require_manager(actor, "manage tester pools")
    cycle = get_cycle(cycle_id)
    _ensure_unlocked(cycle, "modify testers on")
    member = _membership(cycle.id, user_id)
    if member is None:
        raise ValidationError(f"User {user_id} is not in this cycle's tester pool")

    has_work = cycle.executions.filter_by(assigned_to=user_id).count() > 0
    if has_work:
        member.is_active = False
    else:
        db.session.delete(member)
    db.session.flush()
    _audit(cycle, "cycle.tester_remove", actor,
           diff={"tester": {"old": user_id, "new": None}, "deactivated_only": has_work})
    return has_work


def is_active_tester(cycle_id, user_id) -> bool:
    member = _membership(cycle_id, user_id)
    return member is not None and member.is_active


# ── Acknowledgments ──────────────────────────────────────────────────────────

def get_acknowledgment(cycle_id, user_id):
    return TesterAcknowledgment.query.filter_by(cycle_id=cycle_id, user_id=user_id).first()


def record_acknowledgment(cycle_id, actor, data, *, ip_address=None, user_agent=None):
    """Record the actor's acknowledgment for a cycle. Only once per tester."""
    cycle = get_cycle(cycle_id)
    if not is_active_tester(cycle.id, actor.user_id):
        raise PermissionDeniedError("You are not assigned to this cycle")

    if data.get("identity_confirmed") is not True:
        raise ValidationError("You must confirm your identity",
                              details={"identity_confirmed": "required"})
    if data.get("hipaa_acknowledged") is not True:
        raise ValidationError("You must acknowledge HIPAA test data requirements",
                              details={"hipaa_acknowledged": "required"})
    if data.get("test_data_filter_acknowledged") is not True:
        raise ValidationError("You must acknowledge you will use only approved test data",
                              details={"test_data_filter_acknowledged": "required"})
    if get_acknowledgment(cycle.id, actor.user_id) is not None:
        raise ConflictError("Tester acknowledgment", "user_id", actor.user_id)

    now = utcnow()
    ack = TesterAcknowledgment(
        cycle_id=cycle.id,
        user_id=actor.user_id,
        identity_confirmed_at=now,
        identity_method="checkbox",
        hipaa_acknowledged_at=now,
        test_data_filter_acknowledged=True,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:500] or None,
    )
    db.session.add(ack)
    db.session.flush()

    _audit(cycle, "cycle.acknowledge", actor,
           diff={"acknowledgment": {"old": None, "new": {"user_id": actor.user_id,
                                                         "identity_method": "checkbox"}}})
    logger.info("Tester acknowledgment recorded",
                extra={"entity_type": "cycle", "entity_id": cycle.id, "actor_id": actor.user_id})
    return ack


def check_cycle_access(cycle_id, user_id):
    """Raise unless the user is an active tester of the cycle with an acknowledgment on file."""
    if not is_active_tester(cycle_id, user_id):
        raise PermissionDeniedError("The tester is not an active member of this cycle")
    if get_acknowledgment(cycle_id, user_id) is None:
        raise AcknowledgmentRequiredError(cycle_id, user_id)


def acknowledgment_status(cycle_id, actor):
    """What the tester UI needs: access to the cycle, and whether to show the form."""
    get_cycle(cycle_id)
    has_access = is_active_tester(cycle_id, actor.user_id)
    ack = get_acknowledgment(cycle_id, actor.user_id)
    return {
        "cycle_id": cycle_id,
        "has_access": has_access,
        "needs_acknowledgment": has_access and ack is None,
        "acknowledgment": ack.to_dict() if ack else None,
    }
