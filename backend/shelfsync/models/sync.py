from __future__ import annotations

from ..extensions import db
from shelfsync.time_utils import to_utc_z


SYNC_STATUS_PENDING = "pending"
SYNC_STATUS_PROCESSING = "processing"
SYNC_STATUS_SUCCESS = "success"
SYNC_STATUS_FAILED = "failed"

SYNC_TERMINAL_STATUSES = (SYNC_STATUS_SUCCESS, SYNC_STATUS_FAILED)

SYNC_ENTITY_TYPES = ("product", "device")
SYNC_OPERATIONS = ("create", "update", "delete", "bind", "unbind")


class SyncQueueItem(db.Model):
    """
    Durable unit of work that must be propagated to the ESL cloud.

    STATE MACHINE:
        pending -> processing -> success            (terminal)
                              -> pending (retry)    (scheduled_at pushed out)
                              -> failed             (terminal until manual reset)

    RULES:
    - Only sync_queue_service moves items between states
    - Claims are compare-and-swap updates (status='pending' in the WHERE clause)
    - Never hard-deleted except by retention cleanup of terminal items
    """
    __tablename__ = "sync_queue"
    __table_args__ = (
        db.Index("ix_sync_queue_status_scheduled", "status", "scheduled_at"),
        db.Index("ix_sync_queue_entity", "entity_type", "entity_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    operation = db.Column(db.String(16), nullable=False)
    payload = db.Column(db.JSON, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=SYNC_STATUS_PENDING)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    max_retries = db.Column(db.Integer, nullable=False, default=3)
    scheduled_at = db.Column(db.DateTime(timezone=True), nullable=False)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<SyncQueueItem id={self.id} {self.entity_type}:{self.entity_id} "
            f"{self.operation} status={self.status} retries={self.retry_count}/{self.max_retries}>"
        )

    @property
    def entity_key(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "operation": self.operation,
            "status": self.status,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "scheduled_at": to_utc_z(self.scheduled_at),
            "processed_at": to_utc_z(self.processed_at) if self.processed_at else None,
            "last_error": self.last_error,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class TokenCache(db.Model):
    """
    Cached cloud authentication token, one row per cloud account.

    Overwritten on every refresh; read on every cloud call. Shared by every
    worker process pointed at the same database.
    """
    __tablename__ = "token_cache"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(255), nullable=False, unique=True)
    token = db.Column(db.Text, nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    last_refreshed_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        # Never serialize the token itself
        return {
            "username": self.username,
            "expires_at": to_utc_z(self.expires_at),
            "last_refreshed_at": to_utc_z(self.last_refreshed_at),
        }


class CloudConfig(db.Model):
    """
    Key/value configuration for the cloud integration.

    org_id NULL means the row applies to every organization (e.g. the
    account-wide default store); a tenant row overrides it.
    """
    __tablename__ = "cloud_config"
    __table_args__ = (
        db.UniqueConstraint("org_id", "config_key", name="uq_cloud_config_org_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=True, index=True)
    config_key = db.Column(db.String(128), nullable=False)
    config_value = db.Column(db.Text, nullable=True)
    description = db.Column(db.String(255), nullable=True)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "config_key": self.config_key,
            "config_value": self.config_value,
            "description": self.description,
            "updated_at": to_utc_z(self.updated_at),
        }
