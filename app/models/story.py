"""
TraceWell
Story domain models.

Models:
    - Story:          user story moving through the approval workflow
    - StoryApproval:  append-only approval decisions (internal review, stakeholder, …)
    - StoryVersion:   append-only snapshots written on every content/status change

Workflow: see ``app.core.story_workflow``. ``status`` and ``version`` are
only ever written through ``app.services.status_writer``.
"""

from datetime import datetime, timezone

from app.core.story_workflow import StoryStatus
from app.models import db


def _iso(value):
    return value.isoformat() if value else None


class Story(db.Model):
    """
    Requirement expressed as a user story.

    ``version`` starts at 1 and is bumped by every write; writers compare it
    (together with ``status``) to detect concurrent changes.
    """

    __tablename__ = "stories"

    id = db.Column(db.Integer, primary_key=True)
    program_id = db.Column(
        db.Integer, db.ForeignKey("programs.id", ondelete="CASCADE"), nullable=False,
        index=True,
    )

    title = db.Column(db.String(300), nullable=False)
    user_story = db.Column(db.Text, default="", comment="As a … I want … so that …")
    acceptance_criteria = db.Column(db.Text, default="")
    priority = db.Column(db.String(20), default="medium", comment="critical | high | medium | low")

    status = db.Column(
        db.String(30), nullable=False, default=StoryStatus.DRAFT.value, index=True,
        comment="Draft | Internal Review | Pending Client Review | Approved | "
                "In Development | In UAT | Needs Discussion | Out of Scope",
    )
    version = db.Column(db.Integer, nullable=False, default=1)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # ── Status dates
    draft_date = db.Column(db.DateTime(timezone=True), nullable=True)
    internal_review_date = db.Column(db.DateTime(timezone=True), nullable=True)
    client_review_date = db.Column(db.DateTime(timezone=True), nullable=True)
    needs_discussion_date = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    stakeholder_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stakeholder_approved_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    approvals = db.relationship(
        "StoryApproval", backref="story", lazy="dynamic",
        cascade="all, delete-orphan", order_by="StoryApproval.id",
    )
    versions = db.relationship(
        "StoryVersion", backref="story", lazy="dynamic",
        cascade="all, delete-orphan", order_by="StoryVersion.version_number",
    )

    # Columns copied into StoryVersion snapshots
    SNAPSHOT_FIELDS = (
        "title", "user_story", "acceptance_criteria", "priority", "status", "version",
    )

    def snapshot(self, **overrides):
        data = {f: getattr(self, f) for f in self.SNAPSHOT_FIELDS}
        data.update(overrides)
        return data

    def to_dict(self):
        return {
            "id": self.id,
            "program_id": self.program_id,
            "title": self.title,
            "user_story": self.user_story,
            "acceptance_criteria": self.acceptance_criteria,
            "priority": self.priority,
            "status": self.status,
            "version": self.version,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "draft_date": _iso(self.draft_date),
            "internal_review_date": _iso(self.internal_review_date),
            "client_review_date": _iso(self.client_review_date),
            "needs_discussion_date": _iso(self.needs_discussion_date),
            "approved_at": _iso(self.approved_at),
            "approved_by": self.approved_by,
            "stakeholder_approved_at": _iso(self.stakeholder_approved_at),
            "stakeholder_approved_by": self.stakeholder_approved_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Story {self.id}: {self.title[:30]} [{self.status}]>"


class StoryApproval(db.Model):
    """
    Immutable approval decision on a story.

    Bound to the story ``version`` it was given against: once the story moves
    on (any write bumps the version) the approval no longer satisfies a
    transition, so every gated edge needs a fresh decision.
    """

    __tablename__ = "story_approvals"
    __table_args__ = (
        db.Index("ix_story_approval_lookup", "story_id", "approval_kind", "story_version"),
    )

    id = db.Column(db.Integer, primary_key=True)
    story_id = db.Column(
        db.Integer, db.ForeignKey("stories.id", ondelete="CASCADE"), nullable=False,
    )
    approval_kind = db.Column(
        db.String(30), nullable=False, comment="internal_review | stakeholder | portfolio",
    )
    decision = db.Column(
        db.String(30), nullable=False, default="approved",
        comment="approved | rejected | needs_discussion",
    )
    approved_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    previous_status = db.Column(db.String(30), nullable=False)
    story_version = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "story_id": self.story_id,
            "approval_kind": self.approval_kind,
            "decision": self.decision,
            "approved_by": self.approved_by,
            "previous_status": self.previous_status,
            "story_version": self.story_version,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<StoryApproval {self.id}: story#{self.story_id} {self.approval_kind}={self.decision}>"


class StoryVersion(db.Model):
    """Append-only snapshot of a story after a change."""

    __tablename__ = "story_versions"

    id = db.Column(db.Integer, primary_key=True)
    story_id = db.Column(
        db.Integer, db.ForeignKey("stories.id", ondelete="CASCADE"), nullable=False,
        index=True,
    )
    version_number = db.Column(db.Integer, nullable=False)
    snapshot = db.Column(db.JSON, nullable=False, default=dict)
    change_summary = db.Column(db.Text, default="")
    changed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    changed_fields = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "story_id": self.story_id,
            "version_number": self.version_number,
            "snapshot": self.snapshot,
            "change_summary": self.change_summary,
            "changed_by": self.changed_by,
            "changed_fields": self.changed_fields,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<StoryVersion story#{self.story_id} v{self.version_number}>"
