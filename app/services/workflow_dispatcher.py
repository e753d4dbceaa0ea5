"""
Workflow Action Dispatcher.

Single server-side authorization point for every status-mutating write.
Given the entity kind, its current status, the requested target and the
facts of the request, it returns the matching ``Transition`` or raises a
typed error. Services call it before touching the database; UI filtering
of buttons is a convenience only.

Check order:
  1. role present and allowed on the current status   → UnauthorizedTransitionError
  2. target is a known status of the workflow          → ValidationError
  3. target is a declared edge                         → IllegalTransitionError
  4. ownership (executions)                            → OwnershipError
  5. segregation of duties (execution verification)    → SegregationOfDutiesError
  6. notes present when required                       → NotesRequiredError
  7. approval recorded when required                   → ApprovalRequiredError

Usage:
    from app.services.workflow_dispatcher import authorize_transition

    transition = authorize_transition(
        "story", story.status, "Out of Scope", actor.role, notes=notes,
    )
"""

from __future__ import annotations

import logging

from app.core.cycle_workflow import CYCLE_TRANSITIONS
from app.core.defect_workflow import DEFECT_TRANSITIONS
from app.core.exceptions import (
    ApprovalRequiredError,
    IllegalTransitionError,
    NotesRequiredError,
    OwnershipError,
    SegregationOfDutiesError,
    UnauthorizedTransitionError,
    ValidationError,
)
from app.core.execution_workflow import (
    EXECUTION_TRANSITIONS,
    get_actionable_execution_transitions,
    is_verification,
    owns_or_supervises,
    violates_segregation_of_duties,
)
from app.core.roles import Role
from app.core.story_workflow import STORY_TRANSITIONS
from app.core.test_case_workflow import TEST_CASE_TRANSITIONS
from app.core.transition_table import Transition, TransitionTable

logger = logging.getLogger(__name__)


WORKFLOWS: dict[str, TransitionTable] = {
    "story": STORY_TRANSITIONS,
    "execution": EXECUTION_TRANSITIONS,
    "defect": DEFECT_TRANSITIONS,
    "test_case": TEST_CASE_TRANSITIONS,
    "cycle": CYCLE_TRANSITIONS,
}


def get_table(kind: str) -> TransitionTable:
    table = WORKFLOWS.get(kind)
    if table is None:
        raise ValueError(f"Unknown workflow kind: {kind}")
    return table


def _value(status) -> str:
    return getattr(status, "value", status)


def authorize_transition(
    kind: str,
    current,
    target,
    role: Role | None,
    *,
    notes: str | None = None,
    has_approval: bool | None = None,
    actor_id: int | None = None,
    assigned_to: int | None = None,
    completed_by: int | None = None,
) -> Transition:
    """Validate a requested move and return the edge that permits it.

    ``has_approval`` is only consulted for edges flagged
    ``requires_approval``; the caller looks the approval record up.
    ``actor_id`` / ``assigned_to`` / ``completed_by`` feed the execution
    identity rules and are ignored for other kinds.
    """
    table = get_table(kind)

    if not table.role_may_act(current, role):
        logger.warning(
            "Transition refused: role not allowed",
            extra={"event_type": "transition_refused", "entity_type": kind,
                   "from_status": _value(current), "to_status": _value(target)},
        )
        raise UnauthorizedTransitionError(table.entity, _value(current), _value(role) if role else None)

    if table.parse_status(target) is None:
        raise ValidationError(f"Unknown {table.entity} status '{_value(target)}'")

    transition = next(
        (t for t in table.allowed_transitions(current, role) if t.to == table.parse_status(target)),
        None,
    )
    if transition is None:
        raise IllegalTransitionError(table.entity, _value(current), _value(target))

    if kind == "execution":
        if is_verification(transition.to):
            if violates_segregation_of_duties(actor_id, assigned_to, completed_by):
                raise SegregationOfDutiesError(
                    "Test results must be verified by someone other than the tester who executed them"
                )
        elif not owns_or_supervises(role, actor_id, assigned_to):
            raise OwnershipError("You can only work on test executions assigned to you")

    if transition.requires_notes and not (notes or "").strip():
        raise NotesRequiredError(transition.to.value, transition.label)

    if transition.requires_approval and not has_approval:
        raise ApprovalRequiredError(transition.to.value, transition.approval_kind)

    return transition


def available_actions(
    kind: str,
    current,
    role: Role | None,
    *,
    actor_id: int | None = None,
    assigned_to: int | None = None,
    completed_by: int | None = None,
) -> list[Transition]:
    """Transitions the actor can take right now, for rendering."""
    if kind == "execution":
        return get_actionable_execution_transitions(current, role, actor_id, assigned_to, completed_by)
    return get_table(kind).allowed_transitions(current, role)
