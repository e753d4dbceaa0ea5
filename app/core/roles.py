"""
Role / permission model.

The acting user's role comes from the identity store as a plain string.
``parse_role`` is the single place where that string is turned into a
``Role``; everything past the request boundary works with ``Role | None``.

Usage:
    from app.core.roles import Role, parse_role, can_verify_results

    role = parse_role(user.role)        # raises UnknownRoleError on junk
    if not can_verify_results(role):
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from app.core.exceptions import UnknownRoleError


class Role(str, Enum):
    ADMIN = "Admin"
    PORTFOLIO_MANAGER = "Portfolio Manager"
    PROGRAM_MANAGER = "Program Manager"
    DEVELOPER = "Developer"
    UAT_MANAGER = "UAT Manager"
    UAT_TESTER = "UAT Tester"


ALL_ROLES = frozenset(Role)


@dataclass(frozen=True)
class Actor:
    """The identity a service call is made on behalf of."""

    user_id: int | None
    role: Role | None

    @property
    def role_name(self) -> str | None:
        return self.role.value if self.role else None


def parse_role(value: str | Role | None) -> Role | None:
    """Parse a role value from the identity store.

    ``None`` / blank means "no role" and yields ``None`` (default deny
    downstream). Any other value that is not an exact role name raises
    ``UnknownRoleError`` instead of silently falling through.
    """
    if value is None:
        return None
    if isinstance(value, Role):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return Role(text)
    except ValueError:
        raise UnknownRoleError(text) from None


# ── Capability groups ────────────────────────────────────────────────────

STORY_MANAGERS = frozenset({Role.ADMIN, Role.PORTFOLIO_MANAGER, Role.PROGRAM_MANAGER})

TEST_DESIGNERS = frozenset({
    Role.ADMIN, Role.PORTFOLIO_MANAGER, Role.PROGRAM_MANAGER, Role.UAT_MANAGER,
})

TEST_EXECUTORS = frozenset({Role.ADMIN, Role.UAT_MANAGER, Role.UAT_TESTER})

RESULT_VERIFIERS = frozenset({Role.ADMIN, Role.PORTFOLIO_MANAGER, Role.UAT_MANAGER})

DEFECT_REPORTERS = frozenset({
    Role.ADMIN, Role.PORTFOLIO_MANAGER, Role.PROGRAM_MANAGER,
    Role.UAT_MANAGER, Role.UAT_TESTER,
})

DEFECT_RESOLVERS = frozenset({Role.ADMIN, Role.PORTFOLIO_MANAGER, Role.UAT_MANAGER})

CYCLE_LOCKERS = frozenset({Role.ADMIN, Role.PORTFOLIO_MANAGER, Role.UAT_MANAGER})

# May act on an execution assigned to someone else
EXECUTION_SUPERVISORS = frozenset({Role.ADMIN, Role.UAT_MANAGER})


def can_manage_stories(role: Role | None) -> bool:
    return role in STORY_MANAGERS


def can_create_test_cases(role: Role | None) -> bool:
    return role in TEST_DESIGNERS


def can_generate_test_cases(role: Role | None) -> bool:
    return role in TEST_DESIGNERS


def can_review_test_cases(role: Role | None) -> bool:
    return role in TEST_DESIGNERS


def can_assign_testers(role: Role | None) -> bool:
    return role in TEST_DESIGNERS


def can_execute_tests(role: Role | None) -> bool:
    return role in TEST_EXECUTORS


def can_verify_results(role: Role | None) -> bool:
    return role in RESULT_VERIFIERS


def can_create_defects(role: Role | None) -> bool:
    return role in DEFECT_REPORTERS


def can_assign_defects(role: Role | None) -> bool:
    return role in DEFECT_RESOLVERS


def is_execution_supervisor(role: Role | None) -> bool:
    return role in EXECUTION_SUPERVISORS


def can_manage_cycles(role: Role | None) -> bool:
    return role in TEST_DESIGNERS


def can_lock_cycles(role: Role | None) -> bool:
    return role in CYCLE_LOCKERS
