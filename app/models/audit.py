"""
TraceWell
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for lifecycle events
      (21 CFR Part 11 electronic record of who changed what, when and why).
"""

import json
from datetime import UTC, datetime

from app.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "story", "test_case", "execution", "defect", "cycle",
}

AUDIT_ACTIONS = {
    # Story
    "story.create",
    "story.update",
    "story.delete",
    "story.approval",
    "story.transition",
    # Test case
    "test_case.create",
    "test_case.update",
    "test_case.ingest_generated",
    "test_case.review",
    "test_case.transition",
    # Execution
    "execution.assign",
    "execution.step_result",
    "execution.transition",
    # Defect
    "defect.create",
    "defect.update",
    "defect.assign",
    "defect.transition",
    # UAT cycle
    "cycle.create",
    "cycle.update",
    "cycle.transition",
    "cycle.lock",
    "cycle.delete",
    "cycle.tester_add",
    "cycle.tester_update",
    "cycle.tester_remove",
    "cycle.acknowledge",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action. Transition notes are stored in ``notes`` and never
    edited afterwards; ``diff_json`` carries an old→new snapshot for
    field-level changes.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor_user_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="story | test_case | execution | defect",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced entity (int-as-string)",
    )

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="story.transition | defect.assign | …",
    )
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    actor_role = db.Column(db.String(50), nullable=True)

    from_status = db.Column(db.String(30), nullable=True)
    to_status = db.Column(db.String(30), nullable=True)
    notes = db.Column(db.Text, nullable=True, comment="Justification captured with the change")

    # Change payload
    diff_json = db.Column(
        db.Text, default="{}",
        comment="JSON: {field: {old, new}}",
    )

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "actor_role": self.actor_role,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "notes": self.notes,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor_user_id: int | None = None,
    actor_role: str | None = None,
    from_status: str | None = None,
    to_status: str | None = None,
    notes: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control: the audit row commits or rolls back together with
    the change it describes.

    Unknown entity types or actions are programming errors and raise
    ``ValueError`` before anything is written.

    Returns the (flushed) AuditLog instance.
    """
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValueError(f"Unknown audit entity type: {entity_type}")
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")

    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        actor_role=getattr(actor_role, "value", actor_role),
        from_status=from_status,
        to_status=to_status,
        notes=notes,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
