"""
TraceWell
UAT cycle models.

Models:
    - UatCycle:             a time-boxed round of UAT for one program
    - CycleTester:          tester pool membership (N:M cycle ↔ user)
    - TesterAcknowledgment: a tester's identity / HIPAA / test-data
                            acknowledgment for one cycle, recorded once

Architecture ref:
    Program ──1:N──▶ UatCycle ──1:N──▶ Test Execution
    UatCycle ──N:M──▶ User (via CycleTester)
    UatCycle ──1:N──▶ TesterAcknowledgment (one per user, append-only)

Lifecycle: ``app.core.cycle_workflow``. ``status`` / ``version`` are written
only via ``app.services.status_writer``.
"""

from datetime import datetime, timezone

from app.core.cycle_workflow import CycleStatus, DistributionMethod
from app.models import db


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# UAT CYCLE
# ═════════════════════════════════════════════════════════════════════════════

class UatCycle(db.Model):
    """
    One round of UAT, e.g. "Discharge Summary UAT – Round 2".

    A locked cycle (``locked_at`` set) is frozen: settings, status and tester
    pool can no longer change and no executions can be added.
    """

    __tablename__ = "uat_cycles"

    id = db.Column(db.Integer, primary_key=True)
    program_id = db.Column(
        db.Integer, db.ForeignKey("programs.id", ondelete="CASCADE"), nullable=False,
        index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(
        db.String(20), nullable=False, default=CycleStatus.DRAFT.value, index=True,
        comment="draft | active | completed | archived",
    )
    version = db.Column(db.Integer, nullable=False, default=1)
    distribution_method = db.Column(
        db.String(20), nullable=False, default=DistributionMethod.EQUAL.value,
        comment="equal | weighted",
    )
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)

    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    locked_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    testers = db.relationship(
        "CycleTester", backref="cycle", lazy="dynamic", cascade="all, delete-orphan",
    )
    acknowledgments = db.relationship("TesterAcknowledgment", backref="cycle", lazy="dynamic")
    executions = db.relationship("TestExecution", backref="cycle", lazy="dynamic")

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None

    def to_dict(self):
        return {
            "id": self.id,
            "program_id": self.program_id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "version": self.version,
            "distribution_method": self.distribution_method,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "is_locked": self.is_locked,
            "locked_at": _iso(self.locked_at),
            "locked_by": self.locked_by,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<UatCycle {self.id}: {self.name[:30]} [{self.status}]>"


class CycleTester(db.Model):
    """Tester pool membership. Removed testers with executions are only deactivated."""

    __tablename__ = "cycle_testers"

    id = db.Column(db.Integer, primary_key=True)
    cycle_id = db.Column(
        db.Integer, db.ForeignKey("uat_cycles.id", ondelete="CASCADE"), nullable=False,
        index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    capacity_weight = db.Column(db.Integer, nullable=False, default=100, comment="1-100")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    added_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    added_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("cycle_id", "user_id", name="uq_cycle_tester"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "cycle_id": self.cycle_id,
            "user_id": self.user_id,
            "capacity_weight": self.capacity_weight,
            "is_active": self.is_active,
            "added_by": self.added_by,
            "added_at": _iso(self.added_at),
        }

    def __repr__(self):
        return f"<CycleTester cycle#{self.cycle_id} ↔ user#{self.user_id}>"


class TesterAcknowledgment(db.Model):
    """
    Electronic acknowledgment (21 CFR Part 11 / HIPAA) a tester gives before
    touching a cycle's test data. Written once, never updated or deleted.
    """

    __tablename__ = "tester_acknowledgments"

    id = db.Column(db.Integer, primary_key=True)
    cycle_id = db.Column(
        db.Integer, db.ForeignKey("uat_cycles.id", ondelete="RESTRICT"), nullable=False,
        index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    identity_confirmed_at = db.Column(db.DateTime(timezone=True), nullable=False)
    identity_method = db.Column(db.String(30), nullable=False, default="checkbox")
    hipaa_acknowledged_at = db.Column(db.DateTime(timezone=True), nullable=False)
    test_data_filter_acknowledged = db.Column(db.Boolean, nullable=False, default=False)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("cycle_id", "user_id", name="uq_tester_acknowledgment"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "cycle_id": self.cycle_id,
            "user_id": self.user_id,
            "identity_confirmed_at": _iso(self.identity_confirmed_at),
            "identity_method": self.identity_method,
            "hipaa_acknowledged_at": _iso(self.hipaa_acknowledged_at),
            "test_data_filter_acknowledged": self.test_data_filter_acknowledged,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<TesterAcknowledgment cycle#{self.cycle_id} user#{self.user_id}>"
