"""Dispatcher check order — no database."""

import pytest

from app.core.exceptions import (
    ApprovalRequiredError,
    IllegalTransitionError,
    NotesRequiredError,
    OwnershipError,
    SegregationOfDutiesError,
    UnauthorizedTransitionError,
    ValidationError,
)
from app.core.roles import Role
from app.services.workflow_dispatcher import authorize_transition, available_actions, get_table


def test_returns_the_edge():
    t = authorize_transition("story", "Draft", "Internal Review", Role.PROGRAM_MANAGER)
    assert t.label == "Submit for Internal Review"


def test_no_role_is_unauthorized():
    with pytest.raises(UnauthorizedTransitionError):
        authorize_transition("defect", "open", "confirmed", None)


def test_role_check_precedes_edge_check():
    # Developer is gated out of Draft, so even an undeclared target is a 403
    with pytest.raises(UnauthorizedTransitionError):
        authorize_transition("story", "Draft", "In UAT", Role.DEVELOPER)


def test_unknown_target_status():
    with pytest.raises(ValidationError):
        authorize_transition("defect", "open", "wontfix", Role.ADMIN)


def test_undeclared_edge_is_illegal():
    with pytest.raises(IllegalTransitionError) as exc:
        authorize_transition("defect", "open", "verified", Role.ADMIN)
    assert exc.value.details == {"from": "open", "to": "verified"}


def test_edge_check_precedes_notes_check():
    with pytest.raises(IllegalTransitionError):
        authorize_transition("story", "Draft", "Approved", Role.ADMIN, notes="")


def test_blank_notes_are_missing_notes():
    with pytest.raises(NotesRequiredError):
        authorize_transition("story", "Draft", "Out of Scope", Role.ADMIN, notes=" \n\t ")


def test_approval_gate_uses_recorded_approval():
    t = authorize_transition("story", "Internal Review", "Pending Client Review", Role.ADMIN,
                             has_approval=True)
    assert t.requires_approval
    with pytest.raises(ApprovalRequiredError) as exc:
        authorize_transition("story", "Internal Review", "Pending Client Review", Role.ADMIN)
    assert exc.value.approval_kind == "internal_review"


def test_execution_ownership():
    with pytest.raises(OwnershipError):
        authorize_transition("execution", "assigned", "in_progress", Role.UAT_TESTER,
                             actor_id=2, assigned_to=1)
    authorize_transition("execution", "assigned", "in_progress", Role.UAT_TESTER,
                         actor_id=1, assigned_to=1)


def test_ownership_precedes_notes():
    with pytest.raises(OwnershipError):
        authorize_transition("execution", "in_progress", "failed", Role.UAT_TESTER,
                             actor_id=2, assigned_to=1)


def test_execution_segregation_of_duties():
    with pytest.raises(SegregationOfDutiesError):
        authorize_transition("execution", "passed", "verified", Role.UAT_MANAGER,
                             actor_id=3, assigned_to=3)
    with pytest.raises(SegregationOfDutiesError):
        authorize_transition("execution", "passed", "verified", Role.UAT_MANAGER,
                             actor_id=3, assigned_to=1, completed_by=3)
    authorize_transition("execution", "passed", "verified", Role.UAT_MANAGER,
                         actor_id=4, assigned_to=1, completed_by=1)


def test_available_actions_for_execution_are_filtered():
    assert available_actions("execution", "assigned", Role.UAT_TESTER,
                             actor_id=9, assigned_to=1) == []
    assert len(available_actions("defect", "fixed", Role.UAT_MANAGER)) == 2


def test_unknown_kind():
    with pytest.raises(ValueError):
        get_table("invoice")
