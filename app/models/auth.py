"""
TraceWell
Identity models.

Models:
    - User: an acting identity. Sessions are issued by the external auth
      provider; this table is the identity store the role is read from.
"""

from datetime import datetime, timezone

from app.models import db


class User(db.Model):
    """
    Platform user.

    ``role`` is stored as free text because it is provisioned by the identity
    store; it is parsed into ``app.core.roles.Role`` when the user becomes the
    acting identity of a request (see ``app.middleware.identity``).
    """

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    full_name = db.Column(db.String(200), default="")
    role = db.Column(
        db.String(50), nullable=True,
        comment="Admin | Portfolio Manager | Program Manager | Developer | UAT Manager | UAT Tester",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email} ({self.role})>"
