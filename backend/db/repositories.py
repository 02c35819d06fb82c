"""
Repository classes over an ``AsyncSession``.

Each repository operates inside the caller's transaction: writes flush but
never commit. Reads return frozen records instead of ORM instances so
pipeline stages pass immutable data around and a rollback in one stage can
never expire objects another stage is still holding.
"""

import uuid
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, fields
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utcnow
from db.models import (
    ACTIVE_ALERT_STATES,
    Alert,
    DailyConsumption,
    StockSnapshot,
    Tenant,
    Threshold,
    User,
)
from integrations.base import TenantCredentials

UPSERT_CHUNK_SIZE = 100


# ── Records ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TenantRecord:
    tenant_id: uuid.UUID
    name: str
    commerce_client_code: str | None
    commerce_access_token: str | None
    sync_status: str
    sync_started_at: datetime | None
    last_sync_at: datetime | None
    sync_error: str | None
    created_at: datetime

    def credentials(self) -> TenantCredentials:
        return TenantCredentials(
            tenant_id=str(self.tenant_id),
            client_code=self.commerce_client_code,
            access_token=self.commerce_access_token,
        )


@dataclass(frozen=True)
class UserRecord:
    user_id: uuid.UUID
    tenant_id: uuid.UUID
    email: str
    name: str | None
    notification_email: str | None
    notifications_enabled: bool
    digest_frequency: str
    subscription_status: str
    subscription_ends_at: datetime | None
    created_at: datetime

    @property
    def recipient(self) -> str:
        return self.notification_email or self.email


@dataclass(frozen=True)
class SnapshotRecord:
    tenant_id: uuid.UUID
    variant_id: int
    sku: str | None
    product_name: str | None
    quantity_available: int
    captured_at: datetime


@dataclass(frozen=True)
class ConsumptionPoint:
    variant_id: int
    consumption_date: date
    quantity_sold: int


@dataclass(frozen=True)
class ThresholdRecord:
    threshold_id: uuid.UUID
    tenant_id: uuid.UUID
    user_id: uuid.UUID
    variant_id: int | None
    threshold_type: str
    min_quantity: int | None
    min_days: int | None
    created_at: datetime


@dataclass(frozen=True)
class AlertRecord:
    alert_id: uuid.UUID
    tenant_id: uuid.UUID
    user_id: uuid.UUID
    threshold_id: uuid.UUID | None
    variant_id: int
    sku: str | None
    product_name: str | None
    alert_kind: str
    state: str
    current_quantity: int
    threshold_quantity: int | None
    threshold_days: int | None
    days_left: float | None
    created_at: datetime
    last_evaluated_at: datetime | None
    last_notified_at: datetime | None
    dismissed_at: datetime | None
    resolved_at: datetime | None


def _record(cls, row):
    return cls(**{f.name: getattr(row, f.name) for f in fields(cls)})


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


async def _dialect_upsert(
    db: AsyncSession,
    table: Any,
    rows: list[dict[str, Any]],
    index_elements: list[str],
    update_columns: list[str],
) -> None:
    """Dialect-aware multi-row upsert: ``INSERT ... ON CONFLICT DO UPDATE``."""
    dialect_name = db.get_bind().dialect.name
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    else:
        from sqlalchemy.dialects.sqlite import insert as dialect_insert

    stmt = dialect_insert(table).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={col: getattr(stmt.excluded, col) for col in update_columns},
    )
    await db.execute(stmt)


# ── Tenants ───────────────────────────────────────────────────────────────


class TenantRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, tenant_id: uuid.UUID) -> TenantRecord | None:
        tenant = await self.db.get(Tenant, tenant_id, populate_existing=True)
        return _record(TenantRecord, tenant) if tenant else None

    async def list_all(self) -> list[TenantRecord]:
        result = await self.db.execute(select(Tenant).order_by(Tenant.created_at, Tenant.tenant_id))
        return [_record(TenantRecord, t) for t in result.scalars().all()]

    async def list_eligible_for_sync(self, now: datetime, stale_after: timedelta) -> list[TenantRecord]:
        """Tenants not mid-sync (or stuck in a stale sync), oldest-synced first."""
        stale_cutoff = now - stale_after
        result = await self.db.execute(
            select(Tenant)
            .where(
                or_(
                    Tenant.sync_status != "syncing",
                    Tenant.sync_started_at.is_(None),
                    Tenant.sync_started_at < stale_cutoff,
                )
            )
            .order_by(Tenant.last_sync_at.asc().nulls_first(), Tenant.created_at, Tenant.tenant_id)
        )
        return [_record(TenantRecord, t) for t in result.scalars().all()]

    async def mark_syncing(self, tenant_id: uuid.UUID, started_at: datetime) -> None:
        await self.db.execute(
            update(Tenant)
            .where(Tenant.tenant_id == tenant_id)
            .values(sync_status="syncing", sync_started_at=started_at, updated_at=started_at)
        )

    async def mark_success(self, tenant_id: uuid.UUID, completed_at: datetime) -> None:
        await self.db.execute(
            update(Tenant)
            .where(Tenant.tenant_id == tenant_id)
            .values(
                sync_status="success",
                last_sync_at=completed_at,
                sync_started_at=None,
                sync_error=None,
                updated_at=completed_at,
            )
        )

    async def mark_failed(self, tenant_id: uuid.UUID, error: str, completed_at: datetime) -> None:
        # last_sync_at is left alone so the tenant keeps its place at the front of the queue
        await self.db.execute(
            update(Tenant)
            .where(Tenant.tenant_id == tenant_id)
            .values(sync_status="failed", sync_started_at=None, sync_error=error, updated_at=completed_at)
        )


# ── Users ─────────────────────────────────────────────────────────────────


class UserRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: uuid.UUID) -> UserRecord | None:
        user = await self.db.get(User, user_id, populate_existing=True)
        return _record(UserRecord, user) if user else None

    async def list_by_ids(self, user_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, UserRecord]:
        ids = list(user_ids)
        if not ids:
            return {}
        result = await self.db.execute(select(User).where(User.user_id.in_(ids)))
        return {u.user_id: _record(UserRecord, u) for u in result.scalars().all()}

    async def list_for_digest(self, tenant_id: uuid.UUID, frequency: str) -> list[UserRecord]:
        result = await self.db.execute(
            select(User)
            .where(
                User.tenant_id == tenant_id,
                User.notifications_enabled.is_(True),
                User.digest_frequency == frequency,
            )
            .order_by(User.created_at, User.user_id)
        )
        return [_record(UserRecord, u) for u in result.scalars().all()]


# ── Stock snapshots ───────────────────────────────────────────────────────


class SnapshotRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def add_batch(self, rows: list[dict[str, Any]]) -> int:
        """Append snapshot rows; existing history is never touched."""
        if not rows:
            return 0
        await self.db.execute(insert(StockSnapshot), [{"snapshot_id": uuid.uuid4(), **row} for row in rows])
        return len(rows)

    async def latest_for_tenant(self, tenant_id: uuid.UUID) -> dict[int, SnapshotRecord]:
        """Most recent snapshot per variant."""
        latest_subq = (
            select(
                StockSnapshot.variant_id,
                func.max(StockSnapshot.captured_at).label("latest_ts"),
            )
            .where(StockSnapshot.tenant_id == tenant_id)
            .group_by(StockSnapshot.variant_id)
            .subquery()
        )
        result = await self.db.execute(
            select(StockSnapshot)
            .join(
                latest_subq,
                (StockSnapshot.variant_id == latest_subq.c.variant_id)
                & (StockSnapshot.captured_at == latest_subq.c.latest_ts),
            )
            .where(StockSnapshot.tenant_id == tenant_id)
        )
        return {snap.variant_id: _record(SnapshotRecord, snap) for snap in result.scalars().all()}


# ── Daily consumption ─────────────────────────────────────────────────────


class ConsumptionRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def upsert_window(
        self,
        tenant_id: uuid.UUID,
        start_date: date,
        end_date: date,
        rows: Sequence[dict[str, Any]],
    ) -> int:
        """Replace the tenant's consumption for [start_date, end_date] with ``rows``.

        Stored totals inside the window are first reset to zero, then the
        fresh totals are upserted on (tenant, variant, date). Running this
        twice with the same input leaves the same rows behind.
        """
        now = utcnow()
        await self.db.execute(
            update(DailyConsumption)
            .where(
                DailyConsumption.tenant_id == tenant_id,
                DailyConsumption.consumption_date >= start_date,
                DailyConsumption.consumption_date <= end_date,
            )
            .values(quantity_sold=0, document_count=0, updated_at=now)
        )

        prepared = [
            {
                "id": uuid.uuid4(),
                "tenant_id": tenant_id,
                "variant_id": row["variant_id"],
                "consumption_date": row["consumption_date"],
                "quantity_sold": row["quantity_sold"],
                "document_count": row["document_count"],
                "created_at": now,
                "updated_at": now,
            }
            for row in rows
        ]
        for chunk in _chunks(prepared, UPSERT_CHUNK_SIZE):
            await _dialect_upsert(
                self.db,
                DailyConsumption,
                list(chunk),
                index_elements=["tenant_id", "variant_id", "consumption_date"],
                update_columns=["quantity_sold", "document_count", "updated_at"],
            )
        return len(prepared)

    async def history_for_tenant(
        self,
        tenant_id: uuid.UUID,
        start_date: date,
        end_date: date,
    ) -> dict[int, list[ConsumptionPoint]]:
        result = await self.db.execute(
            select(
                DailyConsumption.variant_id,
                DailyConsumption.consumption_date,
                DailyConsumption.quantity_sold,
            )
            .where(
                DailyConsumption.tenant_id == tenant_id,
                DailyConsumption.consumption_date >= start_date,
                DailyConsumption.consumption_date <= end_date,
            )
            .order_by(DailyConsumption.variant_id, DailyConsumption.consumption_date)
        )
        history: dict[int, list[ConsumptionPoint]] = defaultdict(list)
        for row in result.all():
            history[row.variant_id].append(
                ConsumptionPoint(
                    variant_id=row.variant_id,
                    consumption_date=row.consumption_date,
                    quantity_sold=row.quantity_sold,
                )
            )
        return dict(history)


# ── Thresholds ────────────────────────────────────────────────────────────


class ThresholdRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_for_user(self, user_id: uuid.UUID) -> list[ThresholdRecord]:
        """All of a user's thresholds across tenants, in stable creation order."""
        result = await self.db.execute(
            select(Threshold)
            .where(Threshold.user_id == user_id)
            .order_by(Threshold.created_at, Threshold.threshold_id)
        )
        return [_record(ThresholdRecord, t) for t in result.scalars().all()]

    async def user_ids_for_tenant(self, tenant_id: uuid.UUID) -> list[uuid.UUID]:
        result = await self.db.execute(
            select(Threshold.user_id).where(Threshold.tenant_id == tenant_id).distinct()
        )
        return sorted({row[0] for row in result.all()}, key=str)


# ── Alerts ────────────────────────────────────────────────────────────────


class AlertRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, alert_id: uuid.UUID) -> AlertRecord | None:
        alert = await self.db.get(Alert, alert_id, populate_existing=True)
        return _record(AlertRecord, alert) if alert else None

    async def active_for_tenant(self, tenant_id: uuid.UUID) -> dict[tuple[uuid.UUID, int], AlertRecord]:
        """Active (alert/dismissed) rows keyed by (user_id, variant_id)."""
        result = await self.db.execute(
            select(Alert)
            .where(Alert.tenant_id == tenant_id, Alert.state.in_(ACTIVE_ALERT_STATES))
            .order_by(Alert.created_at, Alert.alert_id)
            .execution_options(populate_existing=True)
        )
        return {(a.user_id, a.variant_id): _record(AlertRecord, a) for a in result.scalars().all()}

    async def create(self, **values: Any) -> AlertRecord:
        fresh = {"dismissed_at": None, "resolved_at": None, "last_notified_at": None, **values}
        alert = Alert(alert_id=uuid.uuid4(), state="alert", **fresh)
        self.db.add(alert)
        await self.db.flush()
        return _record(AlertRecord, alert)

    async def update_breach(
        self,
        alert_id: uuid.UUID,
        *,
        alert_kind: str,
        threshold_id: uuid.UUID | None,
        current_quantity: int,
        threshold_quantity: int | None,
        threshold_days: int | None,
        days_left: float | None,
        evaluated_at: datetime,
        clear_notified: bool = False,
    ) -> None:
        values: dict[str, Any] = {
            "alert_kind": alert_kind,
            "threshold_id": threshold_id,
            "current_quantity": current_quantity,
            "threshold_quantity": threshold_quantity,
            "threshold_days": threshold_days,
            "days_left": days_left,
            "last_evaluated_at": evaluated_at,
            "updated_at": evaluated_at,
        }
        if clear_notified:
            values["last_notified_at"] = None
        await self.db.execute(
            update(Alert).where(Alert.alert_id == alert_id, Alert.state == "alert").values(**values)
        )

    async def track_dismissed(
        self,
        alert_id: uuid.UUID,
        *,
        current_quantity: int,
        days_left: float | None,
        evaluated_at: datetime,
    ) -> None:
        """Record that a dismissed alert's breach continues; state and notification stamps stay put."""
        await self.db.execute(
            update(Alert)
            .where(Alert.alert_id == alert_id, Alert.state == "dismissed")
            .values(
                current_quantity=current_quantity,
                days_left=days_left,
                last_evaluated_at=evaluated_at,
                updated_at=evaluated_at,
            )
        )

    async def resolve(self, alert_id: uuid.UUID, resolved_at: datetime) -> bool:
        result = await self.db.execute(
            update(Alert)
            .where(Alert.alert_id == alert_id, Alert.state.in_(ACTIVE_ALERT_STATES))
            .values(state="resolved", resolved_at=resolved_at, last_evaluated_at=resolved_at, updated_at=resolved_at)
        )
        return result.rowcount > 0

    async def dismiss(self, alert_id: uuid.UUID, dismissed_at: datetime) -> bool:
        result = await self.db.execute(
            update(Alert)
            .where(Alert.alert_id == alert_id, Alert.state == "alert")
            .values(state="dismissed", dismissed_at=dismissed_at, updated_at=dismissed_at)
        )
        return result.rowcount > 0

    async def list_for_digest(
        self,
        tenant_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        resolved_since: datetime,
        notified_before: datetime,
    ) -> list[AlertRecord]:
        """Open alerts due a (re-)notification plus recently resolved ones not yet reported."""
        result = await self.db.execute(
            select(Alert)
            .where(
                Alert.tenant_id == tenant_id,
                Alert.user_id == user_id,
                or_(
                    and_(
                        Alert.state == "alert",
                        or_(Alert.last_notified_at.is_(None), Alert.last_notified_at < notified_before),
                    ),
                    and_(
                        Alert.state == "resolved",
                        Alert.resolved_at >= resolved_since,
                        or_(Alert.last_notified_at.is_(None), Alert.last_notified_at < Alert.resolved_at),
                    ),
                ),
            )
            .order_by(Alert.created_at, Alert.alert_id)
            .execution_options(populate_existing=True)
        )
        return [_record(AlertRecord, a) for a in result.scalars().all()]

    async def mark_notified(self, alert_ids: Sequence[uuid.UUID], notified_at: datetime) -> int:
        if not alert_ids:
            return 0
        # Dismissed rows are never stamped
        result = await self.db.execute(
            update(Alert)
            .where(Alert.alert_id.in_(list(alert_ids)), Alert.state != "dismissed")
            .values(last_notified_at=notified_at)
        )
        return result.rowcount
