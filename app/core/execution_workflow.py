"""
Test execution lifecycle — 6 statuses.

    assigned ──▶ in_progress ──▶ passed ──▶ verified (terminal)
                   ▲   │
                   │   ├──▶ failed  ──(re-test)──┐
                   │   └──▶ blocked ──(resume)───┤
                   └─────────────────────────────┘

On top of the role table two identity-level rules apply:

  * Ownership — a UAT Tester may only move executions assigned to them;
    Admin / UAT Manager may act on anyone's.
  * Segregation of duties — ``passed -> verified`` must be done by someone
    other than the assignee and the person who completed the run.
"""

from enum import Enum

from app.core.roles import Role, is_execution_supervisor
from app.core.transition_table import StatusRule, Transition, TransitionTable


class ExecutionStatus(str, Enum):
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    PASSED = "passed"
    FAILED = "failed"
    BLOCKED = "blocked"
    VERIFIED = "verified"


class StepOutcome(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


COMPLETION_STATUSES = frozenset({
    ExecutionStatus.PASSED, ExecutionStatus.FAILED, ExecutionStatus.BLOCKED,
})

_EXECUTORS = frozenset({Role.ADMIN, Role.UAT_MANAGER, Role.UAT_TESTER})

X = ExecutionStatus

EXECUTION_TRANSITIONS = TransitionTable("execution", ExecutionStatus, {
    X.ASSIGNED: StatusRule(
        label="Assigned",
        allowed_roles=_EXECUTORS,
        transitions=(Transition(X.IN_PROGRESS, "Start Testing"),),
    ),
    X.IN_PROGRESS: StatusRule(
        label="In Progress",
        allowed_roles=_EXECUTORS,
        transitions=(
            Transition(X.PASSED, "Mark as Passed"),
            Transition(X.FAILED, "Mark as Failed", requires_notes=True),
            Transition(X.BLOCKED, "Mark as Blocked", requires_notes=True),
        ),
    ),
    X.PASSED: StatusRule(
        label="Passed",
        allowed_roles=frozenset({Role.ADMIN, Role.PORTFOLIO_MANAGER, Role.UAT_MANAGER}),
        transitions=(Transition(X.VERIFIED, "Verify Result"),),
    ),
    X.FAILED: StatusRule(
        label="Failed",
        allowed_roles=_EXECUTORS,
        transitions=(Transition(X.IN_PROGRESS, "Re-test"),),
    ),
    X.BLOCKED: StatusRule(
        label="Blocked",
        allowed_roles=_EXECUTORS,
        transitions=(Transition(X.IN_PROGRESS, "Resume Testing"),),
    ),
    X.VERIFIED: StatusRule(label="Verified", allowed_roles=frozenset()),
})


def get_allowed_execution_transitions(current_status, role):
    return EXECUTION_TRANSITIONS.allowed_transitions(current_status, role)


def can_transition_execution(current_status, target_status, role) -> bool:
    return EXECUTION_TRANSITIONS.can_transition(current_status, target_status, role)


def is_verification(target_status) -> bool:
    return EXECUTION_TRANSITIONS.parse_status(target_status) == X.VERIFIED


def owns_or_supervises(role: Role | None, actor_id, assigned_to) -> bool:
    """True when the actor is the assignee or holds a supervising role."""
    if role is None:
        return False
    if is_execution_supervisor(role):
        return True
    return actor_id is not None and actor_id == assigned_to


def violates_segregation_of_duties(verifier_id, assigned_to, completed_by=None) -> bool:
    """The verifier must not be the tester who ran the execution."""
    if verifier_id is None:
        return True
    return verifier_id == assigned_to or (completed_by is not None and verifier_id == completed_by)


def get_actionable_execution_transitions(current_status, role, actor_id, assigned_to, completed_by=None):
    """Role table filtered by the identity rules, for rendering the actor's buttons."""
    actionable = []
    for t in get_allowed_execution_transitions(current_status, role):
        if t.to == X.VERIFIED:
            if violates_segregation_of_duties(actor_id, assigned_to, completed_by):
                continue
        elif not owns_or_supervises(role, actor_id, assigned_to):
            continue
        actionable.append(t)
    return actionable
