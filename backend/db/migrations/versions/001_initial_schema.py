"""
Initial schema - stock alert pipeline (6 tables)

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # 1. Tenants
    op.create_table(
        "tenants",
        sa.Column("tenant_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("commerce_client_code", sa.String(64), unique=True),
        sa.Column("commerce_access_token", sa.Text),
        sa.Column("sync_status", sa.String(20), nullable=False, server_default="idle"),
        sa.Column("sync_started_at", sa.DateTime),
        sa.Column("last_sync_at", sa.DateTime),
        sa.Column("sync_error", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("sync_status IN ('idle', 'syncing', 'success', 'failed')", name="ck_tenant_sync_status"),
    )
    op.create_index("ix_tenants_sync_order", "tenants", ["sync_status", "last_sync_at"])

    # 2. Users
    op.create_table(
        "users",
        sa.Column("user_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "tenant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("tenants.tenant_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255)),
        sa.Column("notification_email", sa.String(255)),
        sa.Column("notifications_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("digest_frequency", sa.String(10), nullable=False, server_default="daily"),
        sa.Column("subscription_status", sa.String(20), nullable=False, server_default="none"),
        sa.Column("subscription_ends_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        sa.CheckConstraint("digest_frequency IN ('daily', 'weekly', 'none')", name="ck_user_digest_frequency"),
    )

    # 3. Stock snapshots (append-only)
    op.create_table(
        "stock_snapshots",
        sa.Column("snapshot_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "tenant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("tenants.tenant_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("variant_id", sa.Integer, nullable=False),
        sa.Column("sku", sa.String(128)),
        sa.Column("product_name", sa.String(255)),
        sa.Column("quantity_available", sa.Integer, nullable=False),
        sa.Column("captured_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_snapshots_tenant_variant_time", "stock_snapshots", ["tenant_id", "variant_id", "captured_at"])
    op.create_index("ix_snapshots_tenant_time", "stock_snapshots", ["tenant_id", "captured_at"])

    # 4. Daily consumption
    op.create_table(
        "daily_consumption",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "tenant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("tenants.tenant_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("variant_id", sa.Integer, nullable=False),
        sa.Column("consumption_date", sa.Date, nullable=False),
        sa.Column("quantity_sold", sa.Integer, nullable=False, server_default="0"),
        sa.Column("document_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "tenant_id", "variant_id", "consumption_date", name="uq_consumption_tenant_variant_date"
        ),
    )
    op.create_index("ix_consumption_tenant_date", "daily_consumption", ["tenant_id", "consumption_date"])

    # 5. Thresholds
    op.create_table(
        "thresholds",
        sa.Column("threshold_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "tenant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("tenants.tenant_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False),
        sa.Column("variant_id", sa.Integer),
        sa.Column("threshold_type", sa.String(10), nullable=False, server_default="quantity"),
        sa.Column("min_quantity", sa.Integer),
        sa.Column("min_days", sa.Integer),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "tenant_id", "variant_id", name="uq_threshold_user_tenant_variant"),
        sa.CheckConstraint("threshold_type IN ('quantity', 'days')", name="ck_threshold_type"),
        sa.CheckConstraint(
            "(threshold_type = 'quantity' AND min_quantity IS NOT NULL AND min_days IS NULL) OR "
            "(threshold_type = 'days' AND min_days IS NOT NULL AND min_quantity IS NULL)",
            name="ck_threshold_type_fields",
        ),
    )
    op.create_index("ix_thresholds_user_created", "thresholds", ["user_id", "created_at"])
    op.create_index("ix_thresholds_tenant_variant", "thresholds", ["tenant_id", "variant_id"])

    # 6. Alerts
    op.create_table(
        "alerts",
        sa.Column("alert_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "tenant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("tenants.tenant_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "threshold_id",
            UUID(as_uuid=True),
            sa.ForeignKey("thresholds.threshold_id", ondelete="SET NULL"),
        ),
        sa.Column("variant_id", sa.Integer, nullable=False),
        sa.Column("sku", sa.String(128)),
        sa.Column("product_name", sa.String(255)),
        sa.Column("alert_kind", sa.String(20), nullable=False),
        sa.Column("state", sa.String(20), nullable=False, server_default="alert"),
        sa.Column("current_quantity", sa.Integer, nullable=False),
        sa.Column("threshold_quantity", sa.Integer),
        sa.Column("threshold_days", sa.Integer),
        sa.Column("days_left", sa.Float),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("last_evaluated_at", sa.DateTime),
        sa.Column("last_notified_at", sa.DateTime),
        sa.Column("dismissed_at", sa.DateTime),
        sa.Column("resolved_at", sa.DateTime),
        sa.CheckConstraint("alert_kind IN ('low_stock', 'out_of_stock', 'low_velocity')", name="ck_alert_kind"),
        sa.CheckConstraint("state IN ('alert', 'dismissed', 'resolved')", name="ck_alert_state"),
    )
    op.create_index("ix_alerts_tenant_state", "alerts", ["tenant_id", "state"])
    op.create_index("ix_alerts_user_state", "alerts", ["user_id", "state"])
    # At most one active alert per (tenant, user, variant); resolved rows are history
    op.create_index(
        "uq_alerts_active_variant",
        "alerts",
        ["tenant_id", "user_id", "variant_id"],
        unique=True,
        postgresql_where=sa.text("state IN ('alert', 'dismissed')"),
    )


def downgrade() -> None:
    op.drop_table("alerts")
    op.drop_table("thresholds")
    op.drop_table("daily_consumption")
    op.drop_table("stock_snapshots")
    op.drop_table("users")
    op.drop_table("tenants")
