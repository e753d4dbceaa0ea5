"""
Execution Service — assignment and running of UAT test executions.

Transaction policy: functions flush, never commit. Caller commits.

Lifecycle (``app.core.execution_workflow``):
    assigned → in_progress → passed | failed | blocked
    failed | blocked → in_progress (re-test / resume)
    passed → verified (different person than the tester)

Every status write is authorized by ``authorize_transition`` (role table,
ownership, segregation of duties, notes) and committed with
``compare_and_set_status``.

Executions that belong to a UAT cycle can only be started or re-tested once
the assignee has acknowledged the cycle (``cycle_service.check_cycle_access``).

Usage:
    from app.services.execution_service import complete_execution

    execution = complete_execution(execution_id=5, status="failed",
                                   actor=actor, notes="Login button missing")
"""

import logging

from app.core.exceptions import (
    ConflictError,
    IllegalTransitionError,
    OwnershipError,
    PermissionDeniedError,
    UnknownRoleError,
    ValidationError,
)
from app.core.cycle_workflow import ASSIGNABLE_CYCLE_STATUSES, CYCLE_TRANSITIONS, CycleStatus
from app.core.execution_workflow import (
    COMPLETION_STATUSES,
    EXECUTION_TRANSITIONS,
    ExecutionStatus,
    StepOutcome,
    owns_or_supervises,
)
from app.core.roles import can_assign_testers, can_execute_tests, parse_role
from app.core.test_case_workflow import (
    ASSIGNABLE_STATUSES,
    TEST_CASE_TRANSITIONS,
    TestCaseStatus,
    needs_human_review,
)
from app.models import db
from app.models.audit import write_audit
from app.models.auth import User
from app.models.cycle import UatCycle
from app.models.testing import TestCase, TestExecution
from app.services.cycle_service import check_cycle_access, is_active_tester
from app.services.status_writer import check_expected_version, compare_and_set_status
from app.services.workflow_dispatcher import authorize_transition, available_actions
from app.utils.errors import E
from app.utils.helpers import clean_text, get_or_404, utcnow

logger = logging.getLogger(__name__)

_STEP_OUTCOMES = {o.value for o in StepOutcome}


# ── Helpers ──────────────────────────────────────────────────────────────────

def _get_execution(execution_id):
    return get_or_404(TestExecution, execution_id, "Test execution")


def _audit_transition(execution, actor, from_status, notes=None):
    write_audit(
        entity_type="execution",
        entity_id=execution.id,
        action="execution.transition",
        actor_user_id=actor.user_id,
        actor_role=actor.role_name,
        from_status=from_status,
        to_status=execution.status,
        notes=notes,
        diff={"status": {"old": from_status, "new": execution.status}},
    )
    logger.info(
        "Execution status changed: %s -> %s", from_status, execution.status,
        extra={"entity_type": "execution", "entity_id": execution.id,
               "from_status": from_status, "to_status": execution.status,
               "actor_id": actor.user_id},
    )


def _require_cycle_access(execution):
    """The assignee must have acknowledged the execution's cycle, and the cycle must be running."""
    cycle = execution.cycle
    check_cycle_access(cycle.id, execution.assigned_to)
    if CYCLE_TRANSITIONS.parse_status(cycle.status) != CycleStatus.ACTIVE:
        raise ValidationError(f"Cycle '{cycle.name}' is {cycle.status}; tests run only in active cycles")


def _move(execution, target, actor, *, notes=None, extra_values=None, from_statuses=None,
          check_cycle=False):
    """Authorize and write one execution transition.

    ``from_statuses`` narrows the table's edges to the ones this operation
    stands for (start vs. re-test both lead to in_progress).
    """
    transition = authorize_transition(
        "execution", execution.status, target, actor.role,
        notes=notes,
        actor_id=actor.user_id,
        assigned_to=execution.assigned_to,
        completed_by=execution.completed_by,
    )
    if from_statuses is not None and \
            EXECUTION_TRANSITIONS.parse_status(execution.status) not in from_statuses:
        raise IllegalTransitionError("execution", execution.status, transition.to.value)
    if check_cycle and execution.cycle_id is not None:
        _require_cycle_access(execution)
    from_status = execution.status
    values = {"status": transition.to}
    values.update(extra_values or {})
    execution = compare_and_set_status(
        TestExecution, execution.id, from_status, execution.version, values,
    )
    _audit_transition(execution, actor, from_status, notes)
    return execution


def check_steps_complete(execution, target):
    """Every step of the test case needs a result; ``passed`` needs no failed/blocked step."""
    case = execution.test_case
    recorded = {int(r["step_number"]): r for r in (execution.step_results or [])}
    missing = [n for n in case.step_numbers if n not in recorded]
    if missing:
        raise ValidationError(
            "All test steps must have a result before the execution can be completed",
            details={"missing_steps": missing},
            code=E.STEPS_INCOMPLETE,
        )
    if target == ExecutionStatus.PASSED:
        bad = [n for n, r in sorted(recorded.items())
               if r.get("status") in (StepOutcome.FAILED.value, StepOutcome.BLOCKED.value)]
        if bad:
            raise ValidationError(
                "An execution with failed or blocked steps cannot be marked as passed",
                details={"steps": bad},
                code=E.STEPS_INCOMPLETE,
            )


# ── Queries ──────────────────────────────────────────────────────────────────

def get_execution(execution_id):
    return _get_execution(execution_id)


def list_executions(assigned_to=None, status=None, story_id=None, test_case_id=None,
                    cycle_id=None):
    q = TestExecution.query
    if cycle_id is not None:
        q = q.filter(TestExecution.cycle_id == cycle_id)
    if assigned_to is not None:
        q = q.filter(TestExecution.assigned_to == assigned_to)
    if status:
        q = q.filter(TestExecution.status == status)
    if story_id is not None:
        q = q.filter(TestExecution.story_id == story_id)
    if test_case_id is not None:
        q = q.filter(TestExecution.test_case_id == test_case_id)
    return q.order_by(TestExecution.id)


def get_my_executions(actor, status=None):
    return list_executions(assigned_to=actor.user_id, status=status)


def get_available_execution_actions(execution, actor):
    return available_actions(
        "execution", execution.status, actor.role,
        actor_id=actor.user_id,
        assigned_to=execution.assigned_to,
        completed_by=execution.completed_by,
    )


# ── Assignment ───────────────────────────────────────────────────────────────

def _resolve_tester(user_id):
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        raise ValidationError(f"Assignee {user_id} is not an active user")
    try:
        role = parse_role(user.role)
    except UnknownRoleError:
        role = None
    if not can_execute_tests(role):
        raise ValidationError(f"User {user_id} ({user.role}) cannot execute tests")
    return user


def _resolve_cycle(cycle_id, case):
    cycle = get_or_404(UatCycle, cycle_id, "UAT cycle")
    if cycle.is_locked:
        raise ValidationError("Cannot assign tests to a locked cycle", code=E.CYCLE_LOCKED)
    if CYCLE_TRANSITIONS.parse_status(cycle.status) not in ASSIGNABLE_CYCLE_STATUSES:
        raise ValidationError(f"Cycle is '{cycle.status}'; only draft or active cycles take assignments")
    if cycle.program_id != case.program_id:
        raise ValidationError("The cycle belongs to a different program than the test case",
                              details={"cycle_id": cycle.id, "program_id": case.program_id})
    return cycle


def assign_executions(test_case_id, assignee_ids, actor, *, environment=None,
                      cycle_id=None, notes=None):
    """Create one execution per assignee for a ready or running test case.

    A ready test case moves to in_progress with its first assignment. With a
    ``cycle_id`` every assignee must be an active tester of that cycle.
    """
    if not can_assign_testers(actor.role):
        raise PermissionDeniedError("Your role cannot assign testers")
    if not isinstance(assignee_ids, list) or not assignee_ids:
        raise ValidationError("assigned_to must be a non-empty list of user ids")

    case = get_or_404(TestCase, test_case_id, "Test case")
    case_status = TEST_CASE_TRANSITIONS.parse_status(case.status)
    if case_status not in ASSIGNABLE_STATUSES:
        raise ValidationError(
            f"Test case is '{case.status}'; only ready or in-progress test cases can be assigned",
        )
    if needs_human_review(case.is_ai_generated, case.human_reviewed):
        raise ValidationError(
            "AI-generated test cases must be reviewed before they can be assigned",
            code=E.REVIEW_REQUIRED,
        )
    cycle = _resolve_cycle(cycle_id, case) if cycle_id is not None else None

    testers = [_resolve_tester(uid) for uid in dict.fromkeys(assignee_ids)]
    if cycle is not None:
        outside = [t.id for t in testers if not is_active_tester(cycle.id, t.id)]
        if outside:
            raise ValidationError(
                "Assignees must be active testers of the cycle",
                details={"cycle_id": cycle.id, "user_ids": outside},
            )
    for tester in testers:
        open_run = TestExecution.query.filter(
            TestExecution.test_case_id == case.id,
            TestExecution.assigned_to == tester.id,
            TestExecution.status != ExecutionStatus.VERIFIED.value,
        ).first()
        if open_run is not None:
            raise ConflictError("Test execution", "assigned_to", tester.id)

    now = utcnow()
    created = []
    for tester in testers:
        execution = TestExecution(
            test_case_id=case.id,
            story_id=case.story_id,
            assigned_to=tester.id,
            assigned_by=actor.user_id,
            assigned_at=now,
            status=ExecutionStatus.ASSIGNED.value,
            version=1,
            step_results=[],
            environment=environment,
            cycle_id=cycle.id if cycle is not None else None,
            notes=clean_text(notes),
        )
        db.session.add(execution)
        created.append(execution)
    db.session.flush()

    for execution in created:
        write_audit(
            entity_type="execution",
            entity_id=execution.id,
            action="execution.assign",
            actor_user_id=actor.user_id,
            actor_role=actor.role_name,
            to_status=execution.status,
            diff={"assigned_to": {"old": None, "new": execution.assigned_to}},
        )

    if case_status == TestCaseStatus.READY:
        authorize_transition("test_case", case.status, TestCaseStatus.IN_PROGRESS, actor.role)
        from_status = case.status
        case = compare_and_set_status(
            TestCase, case.id, from_status, case.version,
            {"status": TestCaseStatus.IN_PROGRESS},
        )
        write_audit(
            entity_type="test_case",
            entity_id=case.id,
            action="test_case.transition",
            actor_user_id=actor.user_id,
            actor_role=actor.role_name,
            from_status=from_status,
            to_status=case.status,
            diff={"status": {"old": from_status, "new": case.status}},
        )

    logger.info(
        "Assigned %d executions for test case %s", len(created), case.id,
        extra={"entity_type": "test_case", "entity_id": case.id, "actor_id": actor.user_id},
    )
    return created


# ── Running ──────────────────────────────────────────────────────────────────

def start_execution(execution_id, actor, expected_version=None):
    execution = _get_execution(execution_id)
    check_expected_version(execution, expected_version, "Test execution")
    return _move(execution, ExecutionStatus.IN_PROGRESS, actor,
                 extra_values={"started_at": utcnow()},
                 from_statuses={ExecutionStatus.ASSIGNED}, check_cycle=True)


def record_step_result(execution_id, step_number, data, actor, expected_version=None):
    """Upsert the result of one step; results stay ordered by step number."""
    execution = _get_execution(execution_id)
    check_expected_version(execution, expected_version, "Test execution")

    if not can_execute_tests(actor.role):
        raise PermissionDeniedError("Your role cannot execute tests")
    if not owns_or_supervises(actor.role, actor.user_id, execution.assigned_to):
        raise OwnershipError("You can only update tests assigned to you")
    if execution.status != ExecutionStatus.IN_PROGRESS.value:
        raise ValidationError("Test must be in progress to update steps")

    step_number = int(step_number)
    if step_number not in execution.test_case.step_numbers:
        raise ValidationError(f"Test case has no step {step_number}")
    outcome = data.get("status")
    if outcome not in _STEP_OUTCOMES:
        raise ValidationError(
            f"Invalid step status '{outcome}'", details={"status": sorted(_STEP_OUTCOMES)},
        )

    result = {
        "step_number": step_number,
        "status": outcome,
        "actual_result": clean_text(data.get("actual_result")) or "",
        "notes": clean_text(data.get("notes")),
        "executed_at": utcnow().isoformat(),
    }
    previous = next((r for r in execution.step_results or []
                     if int(r["step_number"]) == step_number), None)
    results = [r for r in execution.step_results or [] if int(r["step_number"]) != step_number]
    results.append(result)
    results.sort(key=lambda r: int(r["step_number"]))

    execution = compare_and_set_status(
        TestExecution, execution.id, execution.status, execution.version,
        {"step_results": results},
    )
    write_audit(
        entity_type="execution",
        entity_id=execution.id,
        action="execution.step_result",
        actor_user_id=actor.user_id,
        actor_role=actor.role_name,
        notes=result["notes"],
        diff={f"step_{step_number}": {"old": previous and previous.get("status"),
                                       "new": outcome}},
    )
    return execution


def complete_execution(execution_id, status, actor, notes=None, expected_version=None):
    """Finish a running execution as passed, failed or blocked."""
    execution = _get_execution(execution_id)
    check_expected_version(execution, expected_version, "Test execution")
    notes = clean_text(notes)

    target = EXECUTION_TRANSITIONS.parse_status(status)
    if target not in COMPLETION_STATUSES:
        raise ValidationError(
            f"Invalid completion status '{status}'",
            details={"status": sorted(s.value for s in COMPLETION_STATUSES)},
        )
    # Role, edge and ownership first so a stranger learns nothing about the steps
    authorize_transition(
        "execution", execution.status, target, actor.role,
        notes=notes, actor_id=actor.user_id, assigned_to=execution.assigned_to,
        completed_by=execution.completed_by,
    )
    check_steps_complete(execution, target)

    return _move(execution, target, actor, notes=notes, extra_values={
        "completed_at": utcnow(),
        "completed_by": actor.user_id,
    })


def retest_execution(execution_id, actor, notes=None, expected_version=None):
    """Send a failed or blocked execution back to in_progress with a clean slate."""
    execution = _get_execution(execution_id)
    check_expected_version(execution, expected_version, "Test execution")
    return _move(execution, ExecutionStatus.IN_PROGRESS, actor, notes=clean_text(notes),
                 extra_values={
                     "step_results": [],
                     "completed_at": None,
                     "completed_by": None,
                     "started_at": utcnow(),
                 },
                 from_statuses={ExecutionStatus.FAILED, ExecutionStatus.BLOCKED},
                 check_cycle=True)


def verify_execution(execution_id, actor, notes=None, expected_version=None):
    """Confirm a passed result. The verifier must not be the tester."""
    execution = _get_execution(execution_id)
    check_expected_version(execution, expected_version, "Test execution")
    return _move(execution, ExecutionStatus.VERIFIED, actor, notes=clean_text(notes),
                 extra_values={"verified_by": actor.user_id, "verified_at": utcnow()})
