"""
Test Configuration — Fixtures for async DB, fake commerce client, and seed data.

Each test gets its own SQLite file database so code under test can open
and commit as many sessions as it likes without leaking state.
"""

import asyncio
import uuid
from datetime import date, datetime, timedelta

import pytest

from core.config import Settings
from db.models import Alert, DailyConsumption, StockSnapshot, Tenant, Threshold, User
from db.session import Database
from integrations.base import CommercePlatformClient, DateRange, SaleLine, StockItem, TenantCredentials

NOW = datetime(2026, 3, 10, 12, 0, 0)


class TickingClock:
    """Deterministic clock that advances one second per call."""

    def __init__(self, start: datetime = NOW, step: timedelta = timedelta(seconds=1)):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value

    def advance(self, delta: timedelta) -> None:
        self.current = self.current + delta


class FakeCommerceClient(CommercePlatformClient):
    """In-memory commerce platform keyed by tenant client code."""

    def __init__(self, stock=None, sales=None, failures=None, hang=None):
        self.stock: dict[str, list] = stock or {}
        self.sales: dict[str, list] = sales or {}
        self.failures: dict[str, Exception] = failures or {}
        self.hang: set[str] = set(hang or ())
        self.calls: list[tuple] = []

    async def list_stock(self, credentials: TenantCredentials):
        self.calls.append(("list_stock", credentials.client_code))
        if credentials.client_code in self.hang:
            await asyncio.sleep(3600)
        if credentials.client_code in self.failures:
            raise self.failures[credentials.client_code]
        return list(self.stock.get(credentials.client_code, []))

    async def list_sales_documents(self, credentials: TenantCredentials, date_range: DateRange):
        self.calls.append(("list_sales_documents", credentials.client_code, date_range))
        return list(self.sales.get(credentials.client_code, []))


def stock_item(variant_id: int, quantity: int, sku: str | None = None, name: str | None = None) -> StockItem:
    return StockItem(
        variant_id=variant_id,
        sku=sku or f"SKU-{variant_id}",
        quantity_available=quantity,
        product_name=name or f"Product {variant_id}",
    )


def sale_line(variant_id: int, quantity: int, when: datetime | date, document_id: str | None = None) -> SaleLine:
    return SaleLine(variant_id=variant_id, quantity_sold=quantity, document_date=when, document_id=document_id)


@pytest.fixture
def settings():
    return Settings(
        app_env="test",
        app_url="https://app.stockwatch.test",
        sync_tenant_delay_seconds=0.0,
        collaborator_timeout_seconds=1.0,
        sendgrid_api_key="",
    )


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'stockwatch.db'}")
    await db.open()
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def session_factory(database):
    return database.session_factory


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


# ── Seed helpers ───────────────────────────────────────────────────────────


async def seed_tenant(db, name: str = "Test Store", client_code: str | None = None, **overrides) -> Tenant:
    tenant = Tenant(
        tenant_id=overrides.pop("tenant_id", uuid.uuid4()),
        name=name,
        commerce_client_code=client_code or f"code-{uuid.uuid4().hex[:8]}",
        commerce_access_token="token",
        **overrides,
    )
    db.add(tenant)
    await db.commit()
    return tenant


async def seed_user(db, tenant: Tenant, email: str = "owner@example.com", **overrides) -> User:
    user = User(user_id=overrides.pop("user_id", uuid.uuid4()), tenant_id=tenant.tenant_id, email=email, **overrides)
    db.add(user)
    await db.commit()
    return user


async def seed_threshold(
    db,
    tenant: Tenant,
    user: User,
    variant_id: int | None = None,
    *,
    min_quantity: int | None = None,
    min_days: int | None = None,
    created_at: datetime | None = None,
) -> Threshold:
    threshold = Threshold(
        threshold_id=uuid.uuid4(),
        tenant_id=tenant.tenant_id,
        user_id=user.user_id,
        variant_id=variant_id,
        threshold_type="days" if min_days is not None else "quantity",
        min_quantity=min_quantity,
        min_days=min_days,
        created_at=created_at or NOW - timedelta(days=30),
    )
    db.add(threshold)
    await db.commit()
    return threshold


async def seed_snapshot(db, tenant: Tenant, variant_id: int, quantity: int, captured_at: datetime | None = None):
    snapshot = StockSnapshot(
        snapshot_id=uuid.uuid4(),
        tenant_id=tenant.tenant_id,
        variant_id=variant_id,
        sku=f"SKU-{variant_id}",
        product_name=f"Product {variant_id}",
        quantity_available=quantity,
        captured_at=captured_at or NOW - timedelta(hours=1),
    )
    db.add(snapshot)
    await db.commit()
    return snapshot


async def seed_consumption(db, tenant: Tenant, variant_id: int, day: date, quantity: int):
    row = DailyConsumption(
        id=uuid.uuid4(),
        tenant_id=tenant.tenant_id,
        variant_id=variant_id,
        consumption_date=day,
        quantity_sold=quantity,
        document_count=1,
    )
    db.add(row)
    await db.commit()
    return row


async def fetch_alerts(session_factory, tenant_id=None) -> list[Alert]:
    from sqlalchemy import select

    async with session_factory() as db:
        stmt = select(Alert).order_by(Alert.created_at, Alert.alert_id)
        if tenant_id is not None:
            stmt = stmt.where(Alert.tenant_id == tenant_id)
        return list((await db.execute(stmt)).scalars().all())
