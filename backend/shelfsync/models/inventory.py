from __future__ import annotations

from ..extensions import db
from shelfsync.time_utils import to_utc_z


REQUEST_METHOD_BUTTON = "BUTTON"
REQUEST_METHOD_MANUAL = "MANUAL"

REQUEST_STATUSES = ("PENDING", "APPROVED", "REJECTED", "ORDERED", "COMPLETED")
REQUEST_PRIORITIES = ("LOW", "NORMAL", "HIGH", "URGENT")


class Product(db.Model):
    """
    Product master data mirrored to the ESL cloud as "goods".

    MULTI-TENANT: Products are scoped to organizations via org_id.
    SKUs are unique within an organization.

    CLOUD LINKAGE:
    - cloud_goods_id: goods identifier assigned when the product was pushed
      (the stringified local id). Button events reference products by it.
    - cloud_synced / cloud_synced_at / cloud_sync_error: last push outcome
    - bound_label_mac / bound_at: ESL tag currently showing this product
      (lower-case canonical MAC), written only after the cloud confirms a bind
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("org_id", "sku", name="uq_products_org_sku"),
        db.Index("ix_products_org_goods", "org_id", "cloud_goods_id"),
        db.Index("ix_products_org_synced", "org_id", "cloud_synced"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    location = db.Column(db.String(255), nullable=True)

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=True)
    standard_order_qty = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    cloud_goods_id = db.Column(db.String(64), nullable=True)
    cloud_synced = db.Column(db.Boolean, nullable=False, default=False)
    cloud_synced_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cloud_sync_error = db.Column(db.Text, nullable=True)

    bound_label_mac = db.Column(db.String(32), nullable=True, index=True)
    bound_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    organization = db.relationship("Organization", backref=db.backref("products", lazy=True))

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r} org_id={self.org_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "location": self.location,
            "price_cents": self.price_cents,
            "standard_order_qty": self.standard_order_qty,
            "is_active": self.is_active,
            "cloud_goods_id": self.cloud_goods_id,
            "cloud_synced": self.cloud_synced,
            "cloud_synced_at": to_utc_z(self.cloud_synced_at) if self.cloud_synced_at else None,
            "cloud_sync_error": self.cloud_sync_error,
            "bound_label_mac": self.bound_label_mac,
            "bound_at": to_utc_z(self.bound_at) if self.bound_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ReplenishmentRequest(db.Model):
    """
    Domain event: somebody (or some button) asked for a product to be restocked.

    DEDUP INVARIANT (BUTTON requests):
    At most one request per (org_id, product_id, source_device_id) may have a
    created_at inside another such request's dedup window. created_at holds
    the *event* time for button requests, so the window is relative to when
    the button was pressed, not when the event was processed. Enforced by
    event_reconciler before insert, not by a constraint.

    source_event_id: the cloud's log id when available; an exact match on it
    short-circuits the time-window check.
    """
    __tablename__ = "replenishment_requests"
    __table_args__ = (
        db.Index(
            "ix_replenishment_dedup",
            "org_id", "product_id", "request_method", "source_device_id", "created_at",
        ),
        db.Index("ix_replenishment_org_status", "org_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    requested_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    request_method = db.Column(db.String(16), nullable=False, default=REQUEST_METHOD_MANUAL)
    source_device_id = db.Column(db.String(32), nullable=True)
    source_event_id = db.Column(db.String(64), nullable=True, index=True)

    requested_qty = db.Column(db.Integer, nullable=True)
    location = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    priority = db.Column(db.String(16), nullable=False, default="NORMAL")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("replenishment_requests", lazy=True))
    requested_by = db.relationship("User", foreign_keys=[requested_by_user_id])

    def __repr__(self) -> str:
        return (
            f"<ReplenishmentRequest id={self.id} product_id={self.product_id} "
            f"method={self.request_method} status={self.status}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "product_id": self.product_id,
            "requested_by_user_id": self.requested_by_user_id,
            "request_method": self.request_method,
            "source_device_id": self.source_device_id,
            "source_event_id": self.source_event_id,
            "requested_qty": self.requested_qty,
            "location": self.location,
            "notes": self.notes,
            "status": self.status,
            "priority": self.priority,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
