"""
Generic role-gated transition table.

Every workflow in the platform (story approval, test execution, defect,
test case) has the same shape:

    status ──▶ StatusRule(allowed_roles, transitions)

and the same lookup rules:

  1. No role            → no transitions.
  2. Role not allowed   → no transitions (status-level gate: the role may not
                          act on the item at all while it sits in this status).
  3. Otherwise          → the full edge list of that status.

The lookup never raises for a disallowed move; it simply leaves the edge out.
Turning a missing edge into an error is the dispatcher's job
(``app.services.workflow_dispatcher``).

Tables are built once at import time and are read-only afterwards.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Generic, TypeVar

from app.core.roles import Role

S = TypeVar("S", bound=Enum)


@dataclass(frozen=True)
class Transition(Generic[S]):
    """A permitted edge out of a status."""

    to: S
    label: str
    requires_notes: bool = False
    requires_approval: bool = False
    approval_kind: str | None = None

    def to_dict(self) -> dict:
        return {
            "to": self.to.value,
            "label": self.label,
            "requires_notes": self.requires_notes,
            "requires_approval": self.requires_approval,
            "approval_kind": self.approval_kind,
        }


@dataclass(frozen=True)
class StatusRule(Generic[S]):
    """Display label, acting roles and outgoing edges for one status."""

    label: str
    allowed_roles: frozenset[Role]
    transitions: tuple[Transition[S], ...] = ()


class TransitionTable(Generic[S]):
    """Immutable ``status -> StatusRule`` mapping for one entity kind."""

    def __init__(self, entity: str, status_enum: type[S], rules: Mapping[S, StatusRule[S]]):
        missing = [s.value for s in status_enum if s not in rules]
        if missing:
            raise ValueError(f"{entity} transition table has no rule for: {', '.join(missing)}")
        for status, rule in rules.items():
            for t in rule.transitions:
                if not isinstance(t.to, status_enum):
                    raise ValueError(f"{entity}: edge {status.value} -> {t.to!r} targets an unknown status")
                if t.to == status:
                    raise ValueError(f"{entity}: self-loop on {status.value}")
                if t.requires_approval and not t.approval_kind:
                    raise ValueError(f"{entity}: {status.value} -> {t.to.value} needs an approval_kind")
        self.entity = entity
        self.status_enum = status_enum
        self._rules = MappingProxyType(dict(rules))

    # ── Lookups ──────────────────────────────────────────────────────────

    def parse_status(self, value: str | S | None) -> S | None:
        """Return the enum member for ``value``, or None when it is not a known status."""
        if isinstance(value, self.status_enum):
            return value
        try:
            return self.status_enum(value)
        except ValueError:
            return None

    def rule_for(self, status: str | S | None) -> StatusRule[S] | None:
        parsed = self.parse_status(status)
        if parsed is None:
            return None
        return self._rules.get(parsed)

    def allowed_transitions(self, status: str | S | None, role: Role | None) -> list[Transition[S]]:
        """Edges the role may take from ``status`` (empty when the role is gated out)."""
        if role is None:
            return []
        rule = self.rule_for(status)
        if rule is None:
            return []
        if role not in rule.allowed_roles:
            return []
        return list(rule.transitions)

    def can_transition(self, status: str | S | None, target: str | S | None, role: Role | None) -> bool:
        target_status = self.parse_status(target)
        if target_status is None:
            return False
        return any(t.to == target_status for t in self.allowed_transitions(status, role))

    def find_transition(self, status: str | S | None, target: str | S | None) -> Transition[S] | None:
        """Edge ``status -> target`` regardless of role, or None."""
        rule = self.rule_for(status)
        target_status = self.parse_status(target)
        if rule is None or target_status is None:
            return None
        for t in rule.transitions:
            if t.to == target_status:
                return t
        return None

    def role_may_act(self, status: str | S | None, role: Role | None) -> bool:
        rule = self.rule_for(status)
        return role is not None and rule is not None and role in rule.allowed_roles

    def label(self, status: str | S) -> str:
        rule = self.rule_for(status)
        return rule.label if rule else str(getattr(status, "value", status))

    def is_terminal(self, status: str | S) -> bool:
        rule = self.rule_for(status)
        return rule is not None and not rule.transitions

    @property
    def statuses(self) -> tuple[S, ...]:
        return tuple(self.status_enum)

    def edges(self) -> Iterable[tuple[S, Transition[S]]]:
        for status, rule in self._rules.items():
            for t in rule.transitions:
                yield status, t

    def to_dict(self) -> dict:
        """Serialise the table for clients that render workflow diagrams."""
        return {
            status.value: {
                "label": rule.label,
                "allowed_roles": sorted(r.value for r in rule.allowed_roles),
                "transitions": [t.to_dict() for t in rule.transitions],
            }
            for status, rule in self._rules.items()
        }
