"""
UAT cycle lifecycle — 4 statuses.

    draft ──▶ active ──▶ completed ──▶ archived (terminal)
      ▲         │  ▲         │
      └─────────┘  └─────────┘
     (return to draft) (reactivate)

Locking is not a status: a locked cycle keeps its status but refuses every
change to its settings, status and tester pool, and takes no new
assignments.
"""

from enum import Enum

from app.core.roles import TEST_DESIGNERS
from app.core.transition_table import StatusRule, Transition, TransitionTable


class CycleStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class DistributionMethod(str, Enum):
    EQUAL = "equal"
    WEIGHTED = "weighted"


MIN_CAPACITY_WEIGHT = 1
MAX_CAPACITY_WEIGHT = 100

# Executions may be assigned into a cycle in these statuses
ASSIGNABLE_CYCLE_STATUSES = frozenset({CycleStatus.DRAFT, CycleStatus.ACTIVE})

C = CycleStatus

CYCLE_TRANSITIONS = TransitionTable("cycle", CycleStatus, {
    C.DRAFT: StatusRule(
        label="Draft",
        allowed_roles=TEST_DESIGNERS,
        transitions=(Transition(C.ACTIVE, "Activate Cycle"),),
    ),
    C.ACTIVE: StatusRule(
        label="Active",
        allowed_roles=TEST_DESIGNERS,
        transitions=(
            Transition(C.COMPLETED, "Mark Complete"),
            Transition(C.DRAFT, "Return to Draft", requires_notes=True),
        ),
    ),
    C.COMPLETED: StatusRule(
        label="Completed",
        allowed_roles=TEST_DESIGNERS,
        transitions=(
            Transition(C.ACTIVE, "Reactivate", requires_notes=True),
            Transition(C.ARCHIVED, "Archive"),
        ),
    ),
    C.ARCHIVED: StatusRule(label="Archived", allowed_roles=frozenset()),
})


def get_allowed_cycle_transitions(current_status, role):
    return CYCLE_TRANSITIONS.allowed_transitions(current_status, role)


def valid_capacity_weight(weight) -> bool:
    return isinstance(weight, int) and not isinstance(weight, bool) \
        and MIN_CAPACITY_WEIGHT <= weight <= MAX_CAPACITY_WEIGHT
