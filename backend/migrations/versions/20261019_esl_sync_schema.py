"""ESL replenishment sync schema

Revision ID: 20261019_esl_sync
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_esl_sync"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, updated=True):
    cols = [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    ]
    if updated:
        cols.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False)
        )
    return cols


def upgrade():
    op.create_table(
        "organizations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_organizations_code", "organizations", ["code"], unique=True)
    op.create_index("ix_organizations_is_active", "organizations", ["is_active"], unique=False)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(length=64), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "username", name="uq_users_org_username"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_users_org_id", "users", ["org_id"], unique=False)
    op.create_index("ix_users_username", "users", ["username"], unique=False)

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("sku", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("price_cents", sa.Integer(), nullable=True),
        sa.Column("standard_order_qty", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("cloud_goods_id", sa.String(length=64), nullable=True),
        sa.Column("cloud_synced", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cloud_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cloud_sync_error", sa.Text(), nullable=True),
        sa.Column("bound_label_mac", sa.String(length=32), nullable=True),
        sa.Column("bound_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "sku", name="uq_products_org_sku"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_products_org_id", "products", ["org_id"], unique=False)
    op.create_index("ix_products_bound_label_mac", "products", ["bound_label_mac"], unique=False)
    op.create_index("ix_products_org_goods", "products", ["org_id", "cloud_goods_id"], unique=False)
    op.create_index("ix_products_org_synced", "products", ["org_id", "cloud_synced"], unique=False)

    op.create_table(
        "replenishment_requests",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("requested_by_user_id", sa.Integer(), nullable=True),
        sa.Column("request_method", sa.String(length=16), nullable=False, server_default="MANUAL"),
        sa.Column("source_device_id", sa.String(length=32), nullable=True),
        sa.Column("source_event_id", sa.String(length=64), nullable=True),
        sa.Column("requested_qty", sa.Integer(), nullable=True),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="NORMAL"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["requested_by_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_replenishment_requests_org_id", "replenishment_requests", ["org_id"], unique=False)
    op.create_index("ix_replenishment_requests_product_id", "replenishment_requests", ["product_id"], unique=False)
    op.create_index("ix_replenishment_requests_source_event_id", "replenishment_requests", ["source_event_id"], unique=False)
    op.create_index("ix_replenishment_requests_status", "replenishment_requests", ["status"], unique=False)
    op.create_index(
        "ix_replenishment_dedup",
        "replenishment_requests",
        ["org_id", "product_id", "request_method", "source_device_id", "created_at"],
        unique=False,
    )
    op.create_index("ix_replenishment_org_status", "replenishment_requests", ["org_id", "status"], unique=False)

    op.create_table(
        "gateways",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("mac_address", sa.String(length=20), nullable=False),
        sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "mac_address", name="uq_gateways_org_mac"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_gateways_org_id", "gateways", ["org_id"], unique=False)

    op.create_table(
        "device_status",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("device_id", sa.String(length=32), nullable=False),
        sa.Column("device_type", sa.String(length=32), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("battery_level", sa.Integer(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cloud_store_id", sa.String(length=64), nullable=True),
        sa.Column("bound_flag", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("bound_goods_id", sa.String(length=64), nullable=True),
        sa.Column("bound_template_id", sa.String(length=64), nullable=True),
        sa.Column("bound_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "device_id", name="uq_device_status_org_device"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_device_status_org_id", "device_status", ["org_id"], unique=False)
    op.create_index("ix_device_status_org_online", "device_status", ["org_id", "is_online"], unique=False)

    op.create_table(
        "sync_queue",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("operation", sa.String(length=16), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_sync_queue_org_id", "sync_queue", ["org_id"], unique=False)
    op.create_index("ix_sync_queue_status_scheduled", "sync_queue", ["status", "scheduled_at"], unique=False)
    op.create_index("ix_sync_queue_entity", "sync_queue", ["entity_type", "entity_id", "status"], unique=False)

    op.create_table(
        "token_cache",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(length=255), nullable=False),
        sa.Column("token", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_refreshed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username", name="uq_token_cache_username"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "cloud_config",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=True),
        sa.Column("config_key", sa.String(length=128), nullable=False),
        sa.Column("config_value", sa.Text(), nullable=True),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "config_key", name="uq_cloud_config_org_key"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_cloud_config_org_id", "cloud_config", ["org_id"], unique=False)


def downgrade():
    op.drop_index("ix_cloud_config_org_id", table_name="cloud_config")
    op.drop_table("cloud_config")
    op.drop_table("token_cache")

    op.drop_index("ix_sync_queue_entity", table_name="sync_queue")
    op.drop_index("ix_sync_queue_status_scheduled", table_name="sync_queue")
    op.drop_index("ix_sync_queue_org_id", table_name="sync_queue")
    op.drop_table("sync_queue")

    op.drop_index("ix_device_status_org_online", table_name="device_status")
    op.drop_index("ix_device_status_org_id", table_name="device_status")
    op.drop_table("device_status")

    op.drop_index("ix_gateways_org_id", table_name="gateways")
    op.drop_table("gateways")

    op.drop_index("ix_replenishment_org_status", table_name="replenishment_requests")
    op.drop_index("ix_replenishment_dedup", table_name="replenishment_requests")
    op.drop_index("ix_replenishment_requests_status", table_name="replenishment_requests")
    op.drop_index("ix_replenishment_requests_source_event_id", table_name="replenishment_requests")
    op.drop_index("ix_replenishment_requests_product_id", table_name="replenishment_requests")
    op.drop_index("ix_replenishment_requests_org_id", table_name="replenishment_requests")
    op.drop_table("replenishment_requests")

    op.drop_index("ix_products_org_synced", table_name="products")
    op.drop_index("ix_products_org_goods", table_name="products")
    op.drop_index("ix_products_bound_label_mac", table_name="products")
    op.drop_index("ix_products_org_id", table_name="products")
    op.drop_table("products")

    op.drop_index("ix_users_username", table_name="users")
    op.drop_index("ix_users_org_id", table_name="users")
    op.drop_table("users")

    op.drop_index("ix_organizations_is_active", table_name="organizations")
    op.drop_index("ix_organizations_code", table_name="organizations")
    op.drop_table("organizations")
