"""
Defect Service — reporting, triage and resolution of UAT defects.

Transaction policy: functions flush, never commit. Caller commits.

Status changes follow ``app.core.defect_workflow``. Assignment is a separate
capability, valid in any status: re-assigning to the current assignee leaves
the row untouched but is still written to the audit trail.
"""

import logging

from app.core.defect_workflow import (
    DEFECT_TRANSITIONS,
    RESOLUTION_STATUSES,
    DefectSeverity,
    DefectStatus,
)
from app.core.exceptions import PermissionDeniedError, ValidationError
from app.core.roles import can_assign_defects, can_create_defects
from app.models import db
from app.models.audit import write_audit
from app.models.auth import User
from app.models.program import Program
from app.models.story import Story
from app.models.testing import Defect, TestExecution
from app.services.status_writer import check_expected_version, compare_and_set_status
from app.services.workflow_dispatcher import authorize_transition, available_actions
from app.utils.helpers import clean_text, get_or_404, utcnow

logger = logging.getLogger(__name__)

_SEVERITIES = {s.value for s in DefectSeverity}

EDITABLE_FIELDS = (
    "title", "description", "steps_to_reproduce", "expected_behavior",
    "actual_behavior", "severity", "environment",
)


def _validate_severity(severity):
    if severity not in _SEVERITIES:
        raise ValidationError(
            f"Invalid severity '{severity}'", details={"severity": sorted(_SEVERITIES)},
        )


def _get_defect(defect_id):
    return get_or_404(Defect, defect_id)


# ── Queries ──────────────────────────────────────────────────────────────────

def get_defect(defect_id):
    return _get_defect(defect_id)


def list_defects(program_id=None, story_id=None, severity=None, status=None,
                 assigned_to=None, search=None):
    q = Defect.query
    if program_id is not None:
        q = q.filter(Defect.program_id == program_id)
    if story_id is not None:
        q = q.filter(Defect.story_id == story_id)
    if severity:
        q = q.filter(Defect.severity == severity)
    if status:
        q = q.filter(Defect.status == status)
    if assigned_to is not None:
        q = q.filter(Defect.assigned_to == assigned_to)
    if search:
        q = q.filter(Defect.title.ilike(f"%{search}%"))
    return q.order_by(Defect.id.desc())


def get_available_defect_actions(defect, actor):
    return available_actions("defect", defect.status, actor.role)


# ── Create / update ──────────────────────────────────────────────────────────

def create_defect(data, actor):
    """Report a defect, optionally against the execution and step that failed."""
    if not can_create_defects(actor.role):
        raise PermissionDeniedError("Your role cannot report defects")

    title = clean_text(data.get("title"))
    if not title:
        raise ValidationError("title is required")
    severity = data.get("severity") or DefectSeverity.MEDIUM.value
    _validate_severity(severity)

    execution = None
    if data.get("execution_id") is not None:
        execution = get_or_404(TestExecution, data["execution_id"], "Test execution")
    story_id = execution.story_id if execution else data.get("story_id")
    if story_id is None:
        raise ValidationError("story_id or execution_id is required")
    story = get_or_404(Story, story_id)

    program_id = data.get("program_id") or story.program_id
    get_or_404(Program, program_id)

    failed_step = data.get("failed_step_number")
    if failed_step is not None and execution is not None:
        if int(failed_step) not in execution.test_case.step_numbers:
            raise ValidationError(f"Test case has no step {failed_step}")

    defect = Defect(
        program_id=program_id,
        story_id=story.id,
        test_case_id=execution.test_case_id if execution else data.get("test_case_id"),
        execution_id=execution.id if execution else None,
        title=title,
        description=data.get("description") or "",
        steps_to_reproduce=data.get("steps_to_reproduce") or "",
        expected_behavior=data.get("expected_behavior") or "",
        actual_behavior=data.get("actual_behavior") or "",
        severity=severity,
        environment=data.get("environment") or (execution.environment if execution else None),
        failed_step_number=int(failed_step) if failed_step is not None else None,
        status=DefectStatus.OPEN.value,
        version=1,
        reported_by=actor.user_id,
    )
    db.session.add(defect)
    db.session.flush()

    write_audit(
        entity_type="defect",
        entity_id=defect.id,
        action="defect.create",
        actor_user_id=actor.user_id,
        actor_role=actor.role_name,
        to_status=defect.status,
        diff={"severity": {"old": None, "new": severity}},
    )
    logger.info(
        "Defect reported [%s]", severity,
        extra={"entity_type": "defect", "entity_id": defect.id, "actor_id": actor.user_id},
    )
    return defect


def update_defect(defect_id, data, actor, expected_version=None):
    if not can_create_defects(actor.role):
        raise PermissionDeniedError("Your role cannot edit defects")
    defect = _get_defect(defect_id)
    check_expected_version(defect, expected_version, "Defect")

    if "status" in data:
        raise ValidationError("status cannot be edited directly; use a workflow transition")
    if "assigned_to" in data:
        raise ValidationError("assigned_to is changed through the assign endpoint")

    values, diff = {}, {}
    for field in EDITABLE_FIELDS:
        if field not in data:
            continue
        new = data[field]
        if field == "title":
            new = clean_text(new)
            if not new:
                raise ValidationError("title cannot be empty")
        elif field == "severity":
            _validate_severity(new)
        old = getattr(defect, field)
        if new != old:
            values[field] = new
            diff[field] = {"old": old, "new": new}

    if not values:
        return defect

    defect = compare_and_set_status(Defect, defect.id, defect.status, defect.version, values)
    write_audit(
        entity_type="defect",
        entity_id=defect.id,
        action="defect.update",
        actor_user_id=actor.user_id,
        actor_role=actor.role_name,
        diff=diff,
    )
    return defect


# ── Assignment ───────────────────────────────────────────────────────────────

def assign_defect(defect_id, assignee_id, actor, expected_version=None):
    """Assign a defect to an active user. Valid in any status."""
    if not can_assign_defects(actor.role):
        raise PermissionDeniedError("Your role cannot assign defects")
    defect = _get_defect(defect_id)
    check_expected_version(defect, expected_version, "Defect")

    assignee = db.session.get(User, assignee_id) if assignee_id is not None else None
    if assignee is None or not assignee.is_active:
        raise ValidationError(f"Assignee {assignee_id} is not an active user")

    previous = defect.assigned_to
    if previous != assignee.id:
        defect = compare_and_set_status(
            Defect, defect.id, defect.status, defect.version, {"assigned_to": assignee.id},
        )

    write_audit(
        entity_type="defect",
        entity_id=defect.id,
        action="defect.assign",
        actor_user_id=actor.user_id,
        actor_role=actor.role_name,
        diff={"assigned_to": {"old": previous, "new": assignee.id}},
    )
    logger.info(
        "Defect assigned to user %s", assignee.id,
        extra={"entity_type": "defect", "entity_id": defect.id, "actor_id": actor.user_id},
    )
    return defect


# ── Transitions ──────────────────────────────────────────────────────────────

def transition_defect(defect_id, target, actor, notes=None, expected_version=None):
    """Move a defect along one permitted edge.

    Entering fixed/verified/closed stamps ``resolved_by/at``; reopening to
    open or in_progress clears them.
    """
    defect = _get_defect(defect_id)
    check_expected_version(defect, expected_version, "Defect")
    notes = clean_text(notes)

    transition = authorize_transition("defect", defect.status, target, actor.role, notes=notes)

    from_status = defect.status
    values = {"status": transition.to}
    if transition.to in RESOLUTION_STATUSES:
        values["resolved_by"] = actor.user_id
        values["resolved_at"] = utcnow()
    elif DEFECT_TRANSITIONS.parse_status(from_status) in RESOLUTION_STATUSES:
        values["resolved_by"] = None
        values["resolved_at"] = None

    defect = compare_and_set_status(Defect, defect.id, from_status, defect.version, values)
    write_audit(
        entity_type="defect",
        entity_id=defect.id,
        action="defect.transition",
        actor_user_id=actor.user_id,
        actor_role=actor.role_name,
        from_status=from_status,
        to_status=defect.status,
        notes=notes,
        diff={"status": {"old": from_status, "new": defect.status}},
    )
    logger.info(
        "Defect status changed: %s -> %s", from_status, defect.status,
        extra={"entity_type": "defect", "entity_id": defect.id, "from_status": from_status,
               "to_status": defect.status, "actor_id": actor.user_id},
    )
    return defect
