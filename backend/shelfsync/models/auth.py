from __future__ import annotations

from ..extensions import db
from shelfsync.time_utils import to_utc_z

class User(db.Model):
    """
    User accounts used for request attribution.

    MULTI-TENANT: Users belong to exactly one organization (org_id).
    Usernames are unique within an organization, not globally.

    SYSTEM ACTOR: Requests raised by hardware (button presses) have no human
    requester. They are attributed to a per-organization user with
    is_system=True and an unusable password hash (see actor_service).
    """
    __tablename__ = "users"
    __table_args__ = (
        db.UniqueConstraint("org_id", "username", name="uq_users_org_username"),
        db.Index("ix_users_org_id", "org_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False)

    username = db.Column(db.String(64), nullable=False, index=True)

    # Bcrypt hashed password
    password_hash = db.Column(db.String(255), nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_system = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    organization = db.relationship("Organization", backref=db.backref("users", lazy=True))

    def __repr__(self) -> str:
        return f"<User id={self.id} username={self.username!r} org_id={self.org_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "username": self.username,
            "is_active": self.is_active,
            "is_system": self.is_system,
            "created_at": to_utc_z(self.created_at),
        }
