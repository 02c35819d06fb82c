"""
StockWatch Database Models

6 tables for the stock alert pipeline.
Multi-tenant via tenant_id on all tables.

Tables:
  1. tenants            - Commerce platform accounts (+ sync status)
  2. users              - People who own thresholds and receive digests
  3. stock_snapshots    - Append-only available-stock captures per sync
  4. daily_consumption  - Units sold per variant per calendar day
  5. thresholds         - Quantity or days-of-stock alert triggers
  6. alerts             - Alert lifecycle rows (alert / dismissed / resolved)
"""

import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from core.clock import utcnow
from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


SYNC_STATUSES = ("idle", "syncing", "success", "failed")
DIGEST_FREQUENCIES = ("daily", "weekly", "none")
THRESHOLD_TYPES = ("quantity", "days")
ALERT_KINDS = ("low_stock", "out_of_stock", "low_velocity")
ALERT_STATES = ("alert", "dismissed", "resolved")
ACTIVE_ALERT_STATES = ("alert", "dismissed")


# ─── 1. Tenants ────────────────────────────────────────────────────────────


class Tenant(Base):
    __tablename__ = "tenants"

    tenant_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    commerce_client_code = Column(String(64), unique=True)
    commerce_access_token = Column(Text)
    sync_status = Column(String(20), nullable=False, default="idle")
    sync_started_at = Column(DateTime)
    last_sync_at = Column(DateTime)
    sync_error = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("sync_status IN ('idle', 'syncing', 'success', 'failed')", name="ck_tenant_sync_status"),
        Index("ix_tenants_sync_order", "sync_status", "last_sync_at"),
    )

    users = relationship("User", back_populates="tenant", cascade="all, delete-orphan")


# ─── 2. Users ──────────────────────────────────────────────────────────────


class User(Base):
    __tablename__ = "users"

    user_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False)
    email = Column(String(255), nullable=False)
    name = Column(String(255))
    notification_email = Column(String(255))  # Overrides email for digests
    notifications_enabled = Column(Boolean, nullable=False, default=True)
    digest_frequency = Column(String(10), nullable=False, default="daily")
    subscription_status = Column(String(20), nullable=False, default="none")
    subscription_ends_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        CheckConstraint("digest_frequency IN ('daily', 'weekly', 'none')", name="ck_user_digest_frequency"),
    )

    tenant = relationship("Tenant", back_populates="users")


# ─── 3. Stock Snapshots (append-only) ──────────────────────────────────────


class StockSnapshot(Base):
    __tablename__ = "stock_snapshots"

    snapshot_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False)
    variant_id = Column(Integer, nullable=False)
    sku = Column(String(128))
    product_name = Column(String(255))
    quantity_available = Column(Integer, nullable=False)
    captured_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_snapshots_tenant_variant_time", "tenant_id", "variant_id", "captured_at"),
        Index("ix_snapshots_tenant_time", "tenant_id", "captured_at"),
    )


# ─── 4. Daily Consumption ──────────────────────────────────────────────────


class DailyConsumption(Base):
    __tablename__ = "daily_consumption"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False)
    variant_id = Column(Integer, nullable=False)
    consumption_date = Column(Date, nullable=False)
    quantity_sold = Column(Integer, nullable=False, default=0)
    document_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "variant_id", "consumption_date", name="uq_consumption_tenant_variant_date"),
        Index("ix_consumption_tenant_date", "tenant_id", "consumption_date"),
    )


# ─── 5. Thresholds ─────────────────────────────────────────────────────────


class Threshold(Base):
    __tablename__ = "thresholds"

    threshold_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False)
    user_id = Column(GUID(), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    variant_id = Column(Integer)  # NULL = tenant-wide default
    threshold_type = Column(String(10), nullable=False, default="quantity")
    min_quantity = Column(Integer)
    min_days = Column(Integer)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "tenant_id", "variant_id", name="uq_threshold_user_tenant_variant"),
        Index("ix_thresholds_user_created", "user_id", "created_at"),
        Index("ix_thresholds_tenant_variant", "tenant_id", "variant_id"),
        CheckConstraint("threshold_type IN ('quantity', 'days')", name="ck_threshold_type"),
        CheckConstraint(
            "(threshold_type = 'quantity' AND min_quantity IS NOT NULL AND min_days IS NULL) OR "
            "(threshold_type = 'days' AND min_days IS NOT NULL AND min_quantity IS NULL)",
            name="ck_threshold_type_fields",
        ),
    )

    def change_type(self, threshold_type: str, bound: int) -> None:
        """Switch threshold semantics; the bound of the other type is cleared."""
        if threshold_type == "quantity":
            self.min_quantity = bound
            self.min_days = None
        elif threshold_type == "days":
            self.min_days = bound
            self.min_quantity = None
        else:
            raise ValueError(f"Unknown threshold type: {threshold_type}")
        self.threshold_type = threshold_type


# ─── 6. Alerts ─────────────────────────────────────────────────────────────


class Alert(Base):
    __tablename__ = "alerts"

    alert_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False)
    user_id = Column(GUID(), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    threshold_id = Column(GUID(), ForeignKey("thresholds.threshold_id", ondelete="SET NULL"))
    variant_id = Column(Integer, nullable=False)
    sku = Column(String(128))
    product_name = Column(String(255))
    alert_kind = Column(String(20), nullable=False)
    state = Column(String(20), nullable=False, default="alert")
    current_quantity = Column(Integer, nullable=False)
    threshold_quantity = Column(Integer)
    threshold_days = Column(Integer)
    days_left = Column(Float)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    last_evaluated_at = Column(DateTime)
    last_notified_at = Column(DateTime)
    dismissed_at = Column(DateTime)
    resolved_at = Column(DateTime)

    __table_args__ = (
        Index("ix_alerts_tenant_state", "tenant_id", "state"),
        Index("ix_alerts_user_state", "user_id", "state"),
        # At most one active alert per (tenant, user, variant)
        Index(
            "uq_alerts_active_variant",
            "tenant_id",
            "user_id",
            "variant_id",
            unique=True,
            postgresql_where=text("state IN ('alert', 'dismissed')"),
            sqlite_where=text("state IN ('alert', 'dismissed')"),
        ),
        CheckConstraint("alert_kind IN ('low_stock', 'out_of_stock', 'low_velocity')", name="ck_alert_kind"),
        CheckConstraint("state IN ('alert', 'dismissed', 'resolved')", name="ck_alert_state"),
    )
