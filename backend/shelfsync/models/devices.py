from __future__ import annotations

from ..extensions import db
from shelfsync.time_utils import to_utc_z


class Gateway(db.Model):
    """
    Locally registered ESL gateway (network bridge between tags and the cloud).

    MAC CANONICAL FORM: UPPER-case hex, no separators (e.g. "AABBCC112233").
    This differs from DeviceStatus on purpose; existing rows were written
    this way. Use identity_service.gateway_mac() before every write/lookup.

    LIFECYCLE:
    - Created only after the cloud accepted the registration
    - Deleted only after cloud-side deletion (or explicit override)
    """
    __tablename__ = "gateways"
    __table_args__ = (
        db.UniqueConstraint("org_id", "mac_address", name="uq_gateways_org_mac"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    mac_address = db.Column(db.String(20), nullable=False)

    # Written by gateway_service.reconcile_gateway_status only
    is_online = db.Column(db.Boolean, nullable=False, default=False)
    last_seen_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    organization = db.relationship("Organization", backref=db.backref("gateways", lazy=True))

    def __repr__(self) -> str:
        return f"<Gateway id={self.id} mac={self.mac_address!r} org_id={self.org_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "name": self.name,
            "mac_address": self.mac_address,
            "is_online": self.is_online,
            "last_seen_at": to_utc_z(self.last_seen_at) if self.last_seen_at else None,
            "created_at": to_utc_z(self.created_at),
        }


class DeviceStatus(db.Model):
    """
    Local shadow of an ESL tag as last seen in the cloud.

    MAC CANONICAL FORM: lower-case hex, no separators (e.g. "e10000031c76"),
    matching what the cloud tag endpoints expect. Use
    identity_service.device_mac().

    OWNERSHIP OF FIELDS:
    - is_online, battery_level, last_sync_at, cloud_store_id: device_service sync only
    - bound_*: binding_service only, after the cloud confirmed
    - name, location: the only fields a person may edit

    Never auto-deleted: products may reference the device by MAC.
    """
    __tablename__ = "device_status"
    __table_args__ = (
        db.UniqueConstraint("org_id", "device_id", name="uq_device_status_org_device"),
        db.Index("ix_device_status_org_online", "org_id", "is_online"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    device_id = db.Column(db.String(32), nullable=False)
    device_type = db.Column(db.String(32), nullable=True)  # firmware variant, e.g. "MIX" or "BLE"
    name = db.Column(db.String(255), nullable=True)
    location = db.Column(db.String(255), nullable=True)

    is_online = db.Column(db.Boolean, nullable=False, default=False)
    battery_level = db.Column(db.Integer, nullable=True)  # 0-100
    last_sync_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cloud_store_id = db.Column(db.String(64), nullable=True)

    bound_flag = db.Column(db.Boolean, nullable=False, default=False)
    bound_goods_id = db.Column(db.String(64), nullable=True)
    bound_template_id = db.Column(db.String(64), nullable=True)
    bound_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    organization = db.relationship("Organization", backref=db.backref("devices", lazy=True))

    def __repr__(self) -> str:
        return f"<DeviceStatus id={self.id} device_id={self.device_id!r} online={self.is_online}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "device_id": self.device_id,
            "device_type": self.device_type,
            "name": self.name,
            "location": self.location,
            "is_online": self.is_online,
            "battery_level": self.battery_level,
            "last_sync_at": to_utc_z(self.last_sync_at) if self.last_sync_at else None,
            "cloud_store_id": self.cloud_store_id,
            "bound_flag": self.bound_flag,
            "bound_goods_id": self.bound_goods_id,
            "bound_template_id": self.bound_template_id,
            "bound_at": to_utc_z(self.bound_at) if self.bound_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
