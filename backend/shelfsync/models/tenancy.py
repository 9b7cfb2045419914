from __future__ import annotations

from ..extensions import db
from shelfsync.time_utils import to_utc_z

class Organization(db.Model):
    """
    Multi-tenant root: every tenant (store manager account) is an Organization.

    WHY: Gateways, device shadows, products, replenishment requests and sync
    queue items are all exclusively owned by one organization. No data may
    cross organization boundaries.

    DESIGN:
    - owner_id / org_id on every owned table points here
    - All service queries are scoped through tenant_service
    - Inactive organizations are skipped by cron reconciliation
    """
    __tablename__ = "organizations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)  # Short code for lookups

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Organization id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
