"""
Defect lifecycle — 6 statuses.

    open ──▶ confirmed ──▶ in_progress ──▶ fixed ──▶ verified ──▶ closed
     │                        ▲   ▲          │          │           │
     │                        │   └──────────┘          │           │
     │                        └─────────────────────────┘           │
     └──(not a bug)──────────────────────────────────────▶ closed   │
    open ◀────────────────────────(reopen)──────────────────────────┘

Reject / reopen edges need a justification note. Assignment is not a
status change; see ``defect_service.assign_defect``.
"""

from enum import Enum

from app.core.roles import Role
from app.core.transition_table import StatusRule, Transition, TransitionTable


class DefectStatus(str, Enum):
    OPEN = "open"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    FIXED = "fixed"
    VERIFIED = "verified"
    CLOSED = "closed"


class DefectSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Entering one of these stamps resolved_by / resolved_at
RESOLUTION_STATUSES = frozenset({DefectStatus.FIXED, DefectStatus.VERIFIED, DefectStatus.CLOSED})

_RESOLVERS = frozenset({Role.ADMIN, Role.PORTFOLIO_MANAGER, Role.UAT_MANAGER})

D = DefectStatus

DEFECT_TRANSITIONS = TransitionTable("defect", DefectStatus, {
    D.OPEN: StatusRule(
        label="Open",
        allowed_roles=_RESOLVERS,
        transitions=(
            Transition(D.CONFIRMED, "Confirm Defect"),
            Transition(D.CLOSED, "Close (Not a Bug)", requires_notes=True),
        ),
    ),
    D.CONFIRMED: StatusRule(
        label="Confirmed",
        allowed_roles=_RESOLVERS,
        transitions=(Transition(D.IN_PROGRESS, "Start Fix"),),
    ),
    D.IN_PROGRESS: StatusRule(
        label="In Progress",
        allowed_roles=_RESOLVERS | {Role.PROGRAM_MANAGER},
        transitions=(Transition(D.FIXED, "Mark as Fixed", requires_notes=True),),
    ),
    D.FIXED: StatusRule(
        label="Fixed",
        allowed_roles=_RESOLVERS,
        transitions=(
            Transition(D.VERIFIED, "Verify Fix"),
            Transition(D.IN_PROGRESS, "Reopen (Fix Failed)", requires_notes=True),
        ),
    ),
    D.VERIFIED: StatusRule(
        label="Verified",
        allowed_roles=_RESOLVERS,
        transitions=(
            Transition(D.CLOSED, "Close Defect"),
            Transition(D.IN_PROGRESS, "Reopen (Regression Found)", requires_notes=True),
        ),
    ),
    D.CLOSED: StatusRule(
        label="Closed",
        allowed_roles=frozenset({Role.ADMIN, Role.UAT_MANAGER}),
        transitions=(Transition(D.OPEN, "Reopen", requires_notes=True),),
    ),
})


def get_allowed_defect_transitions(current_status, role):
    return DEFECT_TRANSITIONS.allowed_transitions(current_status, role)


def can_transition_defect(current_status, target_status, role) -> bool:
    return DEFECT_TRANSITIONS.can_transition(current_status, target_status, role)
