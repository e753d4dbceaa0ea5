"""
Story approval workflow — 8 statuses.

    Draft ──▶ Internal Review ──▶ Pending Client Review ──▶ Approved
      │            │  [internal_review]      │  [stakeholder]   │
      │            ▼                         ▼                  ▼
      └──────▶ Needs Discussion ◀──── (any) ────────── In Development ──▶ In UAT
                   │                                                       │
                   ▼                                                       │
              Out of Scope ──(reopen, notes)──▶ Draft        Approved ◀────┘

Edges marked [kind] need a recorded approval of that kind before the
caller may commit them. The table only flags the requirement.
"""

from enum import Enum

from app.core.roles import Role
from app.core.transition_table import StatusRule, Transition, TransitionTable


class StoryStatus(str, Enum):
    DRAFT = "Draft"
    INTERNAL_REVIEW = "Internal Review"
    PENDING_CLIENT_REVIEW = "Pending Client Review"
    APPROVED = "Approved"
    IN_DEVELOPMENT = "In Development"
    IN_UAT = "In UAT"
    NEEDS_DISCUSSION = "Needs Discussion"
    OUT_OF_SCOPE = "Out of Scope"


class ApprovalKind(str, Enum):
    INTERNAL_REVIEW = "internal_review"
    STAKEHOLDER = "stakeholder"
    PORTFOLIO = "portfolio"


APPROVAL_DECISIONS = frozenset({"approved", "rejected", "needs_discussion"})

STORY_PRIORITIES = frozenset({"critical", "high", "medium", "low"})

_MANAGERS = frozenset({Role.ADMIN, Role.PORTFOLIO_MANAGER, Role.PROGRAM_MANAGER})

S = StoryStatus

STORY_TRANSITIONS = TransitionTable("story", StoryStatus, {
    S.DRAFT: StatusRule(
        label="Draft",
        allowed_roles=_MANAGERS,
        transitions=(
            Transition(S.INTERNAL_REVIEW, "Submit for Internal Review"),
            Transition(S.NEEDS_DISCUSSION, "Flag for Discussion", requires_notes=True),
            Transition(S.OUT_OF_SCOPE, "Mark Out of Scope", requires_notes=True),
        ),
    ),
    S.INTERNAL_REVIEW: StatusRule(
        label="Internal Review",
        allowed_roles=_MANAGERS,
        transitions=(
            Transition(
                S.PENDING_CLIENT_REVIEW, "Approve & Send to Client",
                requires_approval=True, approval_kind=ApprovalKind.INTERNAL_REVIEW.value,
            ),
            Transition(S.DRAFT, "Return to Draft", requires_notes=True),
            Transition(S.NEEDS_DISCUSSION, "Flag for Discussion", requires_notes=True),
        ),
    ),
    S.PENDING_CLIENT_REVIEW: StatusRule(
        label="Pending Client Review",
        allowed_roles=_MANAGERS,
        transitions=(
            Transition(
                S.APPROVED, "Client Approved",
                requires_approval=True, approval_kind=ApprovalKind.STAKEHOLDER.value,
            ),
            Transition(S.NEEDS_DISCUSSION, "Client Needs Discussion", requires_notes=True),
            Transition(S.INTERNAL_REVIEW, "Return to Internal Review", requires_notes=True),
        ),
    ),
    S.APPROVED: StatusRule(
        label="Approved",
        allowed_roles=_MANAGERS,
        transitions=(
            Transition(S.IN_DEVELOPMENT, "Start Development"),
            Transition(S.NEEDS_DISCUSSION, "Flag for Discussion", requires_notes=True),
        ),
    ),
    S.IN_DEVELOPMENT: StatusRule(
        label="In Development",
        allowed_roles=_MANAGERS | {Role.DEVELOPER},
        transitions=(
            Transition(S.IN_UAT, "Move to UAT"),
            Transition(S.NEEDS_DISCUSSION, "Flag for Discussion", requires_notes=True),
        ),
    ),
    S.IN_UAT: StatusRule(
        label="In UAT",
        allowed_roles=_MANAGERS | {Role.UAT_MANAGER},
        transitions=(
            Transition(S.APPROVED, "UAT Complete - Accept"),
            Transition(S.IN_DEVELOPMENT, "Return to Development", requires_notes=True),
            Transition(S.NEEDS_DISCUSSION, "Flag for Discussion", requires_notes=True),
        ),
    ),
    S.NEEDS_DISCUSSION: StatusRule(
        label="Needs Discussion",
        allowed_roles=_MANAGERS,
        transitions=(
            Transition(S.DRAFT, "Return to Draft"),
            Transition(S.INTERNAL_REVIEW, "Submit for Internal Review"),
            Transition(S.PENDING_CLIENT_REVIEW, "Send to Client Review"),
            Transition(S.OUT_OF_SCOPE, "Mark Out of Scope", requires_notes=True),
        ),
    ),
    S.OUT_OF_SCOPE: StatusRule(
        label="Out of Scope",
        allowed_roles=frozenset({Role.ADMIN, Role.PORTFOLIO_MANAGER}),
        transitions=(
            Transition(S.DRAFT, "Reopen as Draft", requires_notes=True),
        ),
    ),
})

# Status -> timestamp column stamped when a story enters that status
STATUS_DATE_FIELDS = {
    S.DRAFT: "draft_date",
    S.INTERNAL_REVIEW: "internal_review_date",
    S.PENDING_CLIENT_REVIEW: "client_review_date",
    S.NEEDS_DISCUSSION: "needs_discussion_date",
}

# Stakeholder-approved stories in these statuses may not be deleted
DELETE_PROTECTED_STATUSES = frozenset({S.APPROVED, S.IN_DEVELOPMENT, S.IN_UAT})


def get_allowed_transitions(current_status, role):
    """Transitions ``role`` may take from ``current_status`` (empty when gated out)."""
    return STORY_TRANSITIONS.allowed_transitions(current_status, role)


def can_transition(current_status, target_status, role) -> bool:
    return STORY_TRANSITIONS.can_transition(current_status, target_status, role)


def required_approval_kinds(current_status) -> set[str]:
    """Approval kinds demanded by edges out of ``current_status``."""
    rule = STORY_TRANSITIONS.rule_for(current_status)
    if rule is None:
        return set()
    return {t.approval_kind for t in rule.transitions if t.requires_approval}
