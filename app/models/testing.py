"""
TraceWell
UAT domain models.

Models:
    - TestCase:       test case derived from a story (manual or AI-generated)
    - TestExecution:  one tester's run of a test case, with per-step results
    - Defect:         defect raised from a failed run or reported directly

Architecture ref:
    Story ──1:N──▶ Test Case ──1:N──▶ Test Execution ──1:N──▶ Defect
    Story ──1:N──▶ Defect
    UatCycle ──1:N──▶ Test Execution

Lifecycles: ``app.core.test_case_workflow``, ``app.core.execution_workflow``,
``app.core.defect_workflow``. ``status`` / ``version`` are written only via
``app.services.status_writer``.
"""

from datetime import datetime, timezone

from app.core.defect_workflow import DefectStatus
from app.core.execution_workflow import ExecutionStatus
from app.core.test_case_workflow import TestCaseStatus
from app.models import db


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# TEST CASE
# ═════════════════════════════════════════════════════════════════════════════

class TestCase(db.Model):
    """
    Test case attached to a story.

    ``test_steps`` is an ordered JSON list of
    ``{"step_number": int, "action": str, "expected_result": str}``.
    AI-generated cases (``is_ai_generated``) must be ``human_reviewed``
    before they may leave draft.
    """

    __tablename__ = "test_cases"
    __test__ = False

    id = db.Column(db.Integer, primary_key=True)
    story_id = db.Column(
        db.Integer, db.ForeignKey("stories.id", ondelete="CASCADE"), nullable=False,
        index=True,
    )
    program_id = db.Column(
        db.Integer, db.ForeignKey("programs.id", ondelete="CASCADE"), nullable=False,
        index=True,
    )

    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    preconditions = db.Column(db.Text, default="")
    test_steps = db.Column(db.JSON, nullable=False, default=list)
    test_type = db.Column(db.String(30), default="functional")
    priority = db.Column(db.String(20), default="medium")

    status = db.Column(
        db.String(20), nullable=False, default=TestCaseStatus.DRAFT.value, index=True,
        comment="draft | ready | in_progress | completed | deprecated",
    )
    version = db.Column(db.Integer, nullable=False, default=1)

    is_ai_generated = db.Column(db.Boolean, nullable=False, default=False)
    human_reviewed = db.Column(db.Boolean, nullable=False, default=False)
    reviewed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    executions = db.relationship("TestExecution", backref="test_case", lazy="dynamic")

    @property
    def step_numbers(self) -> list[int]:
        return sorted(int(s["step_number"]) for s in (self.test_steps or []))

    def to_dict(self):
        return {
            "id": self.id,
            "story_id": self.story_id,
            "program_id": self.program_id,
            "title": self.title,
            "description": self.description,
            "preconditions": self.preconditions,
            "test_steps": self.test_steps or [],
            "test_type": self.test_type,
            "priority": self.priority,
            "status": self.status,
            "version": self.version,
            "is_ai_generated": self.is_ai_generated,
            "human_reviewed": self.human_reviewed,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": _iso(self.reviewed_at),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<TestCase {self.id}: {self.title[:30]} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# TEST EXECUTION
# ═════════════════════════════════════════════════════════════════════════════

class TestExecution(db.Model):
    """
    One tester's run of a test case.

    ``step_results`` is an ordered JSON list of
    ``{"step_number", "status", "actual_result", "notes", "executed_at"}``
    with status in passed | failed | blocked | skipped.
    """

    __tablename__ = "test_executions"
    __test__ = False

    id = db.Column(db.Integer, primary_key=True)
    test_case_id = db.Column(
        db.Integer, db.ForeignKey("test_cases.id", ondelete="CASCADE"), nullable=False,
        index=True,
    )
    story_id = db.Column(
        db.Integer, db.ForeignKey("stories.id", ondelete="CASCADE"), nullable=False,
        index=True,
    )

    assigned_to = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    assigned_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    assigned_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )

    status = db.Column(
        db.String(20), nullable=False, default=ExecutionStatus.ASSIGNED.value, index=True,
        comment="assigned | in_progress | passed | failed | blocked | verified",
    )
    version = db.Column(db.Integer, nullable=False, default=1)
    step_results = db.Column(db.JSON, nullable=False, default=list)

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    verified_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    cycle_id = db.Column(
        db.Integer, db.ForeignKey("uat_cycles.id", ondelete="SET NULL"), nullable=True,
        index=True,
    )
    environment = db.Column(db.String(50), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "test_case_id": self.test_case_id,
            "story_id": self.story_id,
            "assigned_to": self.assigned_to,
            "assigned_by": self.assigned_by,
            "assigned_at": _iso(self.assigned_at),
            "status": self.status,
            "version": self.version,
            "step_results": self.step_results or [],
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "completed_by": self.completed_by,
            "verified_by": self.verified_by,
            "verified_at": _iso(self.verified_at),
            "environment": self.environment,
            "cycle_id": self.cycle_id,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<TestExecution {self.id}: case#{self.test_case_id} → {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# DEFECT
# ═════════════════════════════════════════════════════════════════════════════

class Defect(db.Model):
    """
    Defect raised during UAT.

    Severity: critical → low
    Lifecycle: open → confirmed → in_progress → fixed → verified → closed
    """

    __tablename__ = "defects"

    id = db.Column(db.Integer, primary_key=True)
    program_id = db.Column(
        db.Integer, db.ForeignKey("programs.id", ondelete="CASCADE"), nullable=False,
        index=True,
    )
    story_id = db.Column(
        db.Integer, db.ForeignKey("stories.id", ondelete="CASCADE"), nullable=False,
        index=True,
    )
    test_case_id = db.Column(
        db.Integer, db.ForeignKey("test_cases.id", ondelete="SET NULL"), nullable=True,
        index=True,
    )
    execution_id = db.Column(
        db.Integer, db.ForeignKey("test_executions.id", ondelete="SET NULL"), nullable=True,
        index=True,
    )

    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    steps_to_reproduce = db.Column(db.Text, default="")
    expected_behavior = db.Column(db.Text, default="")
    actual_behavior = db.Column(db.Text, default="")
    severity = db.Column(db.String(10), nullable=False, default="medium",
                         comment="critical | high | medium | low")
    environment = db.Column(db.String(50), nullable=True)
    failed_step_number = db.Column(db.Integer, nullable=True)

    status = db.Column(
        db.String(20), nullable=False, default=DefectStatus.OPEN.value, index=True,
        comment="open | confirmed | in_progress | fixed | verified | closed",
    )
    version = db.Column(db.Integer, nullable=False, default=1)

    reported_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    assigned_to = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    resolved_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "program_id": self.program_id,
            "story_id": self.story_id,
            "test_case_id": self.test_case_id,
            "execution_id": self.execution_id,
            "title": self.title,
            "description": self.description,
            "steps_to_reproduce": self.steps_to_reproduce,
            "expected_behavior": self.expected_behavior,
            "actual_behavior": self.actual_behavior,
            "severity": self.severity,
            "environment": self.environment,
            "failed_step_number": self.failed_step_number,
            "status": self.status,
            "version": self.version,
            "reported_by": self.reported_by,
            "assigned_to": self.assigned_to,
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Defect {self.id}: {self.title[:30]} [{self.severity}/{self.status}]>"
