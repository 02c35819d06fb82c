"""
Tests for the Alert Engine — lifecycle state machine.

Covers:
  - Idempotent creation (at most one active alert)
  - Snapshot refresh and kind changes
  - Dismiss suppression and recovery into a fresh cycle
  - Plan cap determinism and default shadowing
  - Per-row write failure isolation
  - Reset-recovered sweep
"""

from datetime import date, timedelta

import pytest
from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError

from alerts.engine import AlertLifecycleManager, build_coverage
from billing.plans import free_plan
from conftest import (
    NOW,
    fetch_alerts,
    seed_consumption,
    seed_snapshot,
    seed_tenant,
    seed_threshold,
    seed_user,
)
from db.models import Alert, Threshold
from db.repositories import AlertRepository, ThresholdRecord


def active(alerts):
    return [a for a in alerts if a.state in ("alert", "dismissed")]


async def evaluate(session_factory, tenant, clock, **manager_kwargs):
    async with session_factory() as db:
        manager = AlertLifecycleManager(db, clock=clock, **manager_kwargs)
        return await manager.evaluate_tenant(tenant.tenant_id)


# ── Creation + dedup ───────────────────────────────────────────────────


class TestCreation:
    @pytest.mark.asyncio
    async def test_breach_creates_single_alert(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            user = await seed_user(db, tenant)
            await seed_threshold(db, tenant, user, variant_id=1, min_quantity=10)
            await seed_snapshot(db, tenant, 1, 10)

        result = await evaluate(session_factory, tenant, clock)

        assert result.created == 1
        assert result.created_by_kind["low_stock"] == 1
        alerts = await fetch_alerts(session_factory, tenant.tenant_id)
        assert len(alerts) == 1
        assert alerts[0].state == "alert"
        assert alerts[0].alert_kind == "low_stock"
        assert alerts[0].current_quantity == 10
        assert alerts[0].threshold_quantity == 10
        assert alerts[0].sku == "SKU-1"

    @pytest.mark.asyncio
    async def test_repeated_breaches_keep_one_active_row(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            user = await seed_user(db, tenant)
            await seed_threshold(db, tenant, user, variant_id=1, min_quantity=10)
            await seed_snapshot(db, tenant, 1, 8)

        results = [await evaluate(session_factory, tenant, clock) for _ in range(4)]

        assert [r.created for r in results] == [1, 0, 0, 0]
        assert [r.updated for r in results] == [0, 1, 1, 1]
        alerts = await fetch_alerts(session_factory, tenant.tenant_id)
        assert len(alerts) == 1
        assert len(active(alerts)) == 1

    @pytest.mark.asyncio
    async def test_no_threshold_never_alerts(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            await seed_user(db, tenant)
            await seed_snapshot(db, tenant, 1, 0)

        result = await evaluate(session_factory, tenant, clock)

        assert result.evaluated == 0
        assert await fetch_alerts(session_factory, tenant.tenant_id) == []

    @pytest.mark.asyncio
    async def test_tenant_default_covers_every_variant(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            user = await seed_user(db, tenant)
            await seed_threshold(db, tenant, user, variant_id=None, min_quantity=5)
            await seed_snapshot(db, tenant, 1, 0)
            await seed_snapshot(db, tenant, 2, 3)
            await seed_snapshot(db, tenant, 3, 50)

        result = await evaluate(session_factory, tenant, clock)

        assert result.evaluated == 3
        kinds = {a.variant_id: a.alert_kind for a in await fetch_alerts(session_factory, tenant.tenant_id)}
        assert kinds == {1: "out_of_stock", 2: "low_stock"}

    @pytest.mark.asyncio
    async def test_variant_threshold_takes_precedence_over_default(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            user = await seed_user(db, tenant)
            await seed_threshold(db, tenant, user, variant_id=None, min_quantity=100)
            await seed_threshold(db, tenant, user, variant_id=1, min_quantity=2)
            await seed_snapshot(db, tenant, 1, 20)

        await evaluate(session_factory, tenant, clock)

        assert await fetch_alerts(session_factory, tenant.tenant_id) == []

    @pytest.mark.asyncio
    async def test_days_threshold_uses_velocity(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            user = await seed_user(db, tenant)
            await seed_threshold(db, tenant, user, variant_id=1, min_days=7)
            await seed_snapshot(db, tenant, 1, 12)
            await seed_consumption(db, tenant, 1, date(2026, 3, 9), 28)

        await evaluate(session_factory, tenant, clock)

        (alert,) = await fetch_alerts(session_factory, tenant.tenant_id)
        assert alert.alert_kind == "low_velocity"
        assert alert.threshold_days == 7
        assert alert.days_left == pytest.approx(3.0)

    @pytest.mark.asyncio
    async def test_days_threshold_without_sales_does_not_alert(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            user = await seed_user(db, tenant)
            await seed_threshold(db, tenant, user, variant_id=1, min_days=30)
            await seed_snapshot(db, tenant, 1, 1)

        await evaluate(session_factory, tenant, clock)

        assert await fetch_alerts(session_factory, tenant.tenant_id) == []


# ── Updates ────────────────────────────────────────────────────────────


class TestBreachUpdates:
    @pytest.mark.asyncio
    async def test_continuing_breach_refreshes_snapshot_fields(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            user = await seed_user(db, tenant)
            await seed_threshold(db, tenant, user, variant_id=1, min_quantity=10)
            await seed_snapshot(db, tenant, 1, 9)

        await evaluate(session_factory, tenant, clock)
        async with session_factory() as db:
            await seed_snapshot(db, tenant, 1, 4, captured_at=NOW - timedelta(minutes=5))
        await evaluate(session_factory, tenant, clock)

        (alert,) = await fetch_alerts(session_factory, tenant.tenant_id)
        assert alert.current_quantity == 4
        assert alert.state == "alert"

    @pytest.mark.asyncio
    async def test_kind_change_clears_notification_stamp(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            user = await seed_user(db, tenant)
            await seed_threshold(db, tenant, user, variant_id=1, min_quantity=10)
            await seed_snapshot(db, tenant, 1, 5)

        await evaluate(session_factory, tenant, clock)
        async with session_factory() as db:
            await db.execute(update(Alert).values(last_notified_at=NOW))
            await db.commit()

        # Same kind: stamp kept
        await evaluate(session_factory, tenant, clock)
        (alert,) = await fetch_alerts(session_factory, tenant.tenant_id)
        assert alert.last_notified_at == NOW

        async with session_factory() as db:
            await seed_snapshot(db, tenant, 1, 0, captured_at=NOW - timedelta(minutes=5))
        await evaluate(session_factory, tenant, clock)

        (alert,) = await fetch_alerts(session_factory, tenant.tenant_id)
        assert alert.alert_kind == "out_of_stock"
        assert alert.last_notified_at is None


# ── Dismiss + recovery ─────────────────────────────────────────────────


class TestDismissAndRecovery:
    @pytest.mark.asyncio
    async def test_dismissed_alert_is_not_renotified(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            user = await seed_user(db, tenant)
            await seed_threshold(db, tenant, user, variant_id=1, min_quantity=10)
            await seed_snapshot(db, tenant, 1, 6)

        await evaluate(session_factory, tenant, clock)
        notified_at = NOW - timedelta(hours=2)
        async with session_factory() as db:
            await db.execute(update(Alert).values(last_notified_at=notified_at))
            await db.commit()
            (alert,) = await fetch_alerts(session_factory, tenant.tenant_id)
            assert await AlertLifecycleManager(db, clock=clock).dismiss_alert(alert.alert_id) is True

        for stock in (5, 3):
            async with session_factory() as db:
                await seed_snapshot(db, tenant, 1, stock, captured_at=clock())
            result = await evaluate(session_factory, tenant, clock)
            assert result.suppressed == 1

        (alert,) = await fetch_alerts(session_factory, tenant.tenant_id)
        assert alert.state == "dismissed"
        assert alert.last_notified_at == notified_at
        assert alert.current_quantity == 3
        assert alert.dismissed_at is not None

    @pytest.mark.asyncio
    async def test_recovery_then_new_breach_starts_fresh_cycle(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            user = await seed_user(db, tenant)
            await seed_threshold(db, tenant, user, variant_id=1, min_quantity=10)
            await seed_snapshot(db, tenant, 1, 10)

        await evaluate(session_factory, tenant, clock)
        async with session_factory() as db:
            await db.execute(update(Alert).values(last_notified_at=NOW))
            await db.commit()
            (first,) = await fetch_alerts(session_factory, tenant.tenant_id)
            await AlertLifecycleManager(db, clock=clock).dismiss_alert(first.alert_id)

        async with session_factory() as db:
            await seed_snapshot(db, tenant, 1, 50, captured_at=clock())
        recovered = await evaluate(session_factory, tenant, clock)
        assert recovered.resolved == 1
        assert active(await fetch_alerts(session_factory, tenant.tenant_id)) == []

        async with session_factory() as db:
            await seed_snapshot(db, tenant, 1, 4, captured_at=clock())
        await evaluate(session_factory, tenant, clock)

        alerts = await fetch_alerts(session_factory, tenant.tenant_id)
        assert len(alerts) == 2
        old = next(a for a in alerts if a.alert_id == first.alert_id)
        new = next(a for a in alerts if a.alert_id != first.alert_id)
        assert old.state == "resolved"
        assert old.resolved_at is not None
        assert new.state == "alert"
        assert new.dismissed_at is None
        assert new.last_notified_at is None

    @pytest.mark.asyncio
    async def test_dismiss_only_applies_to_open_alerts(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            user = await seed_user(db, tenant)
            await seed_threshold(db, tenant, user, variant_id=1, min_quantity=10)
            await seed_snapshot(db, tenant, 1, 1)

        await evaluate(session_factory, tenant, clock)
        (alert,) = await fetch_alerts(session_factory, tenant.tenant_id)
        async with session_factory() as db:
            manager = AlertLifecycleManager(db, clock=clock)
            assert await manager.dismiss_alert(alert.alert_id) is True
            assert await manager.dismiss_alert(alert.alert_id) is False


# ── Plan cap ───────────────────────────────────────────────────────────


class TestPlanCap:
    @pytest.mark.asyncio
    async def test_only_first_n_thresholds_are_evaluated(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            user = await seed_user(db, tenant)
            for variant_id in (1, 2, 3):
                await seed_threshold(
                    db,
                    tenant,
                    user,
                    variant_id=variant_id,
                    min_quantity=10,
                    created_at=NOW - timedelta(days=10 - variant_id),
                )
                await seed_snapshot(db, tenant, variant_id, 0)

        runs = [await evaluate(session_factory, tenant, clock, free_max_thresholds=2) for _ in range(3)]

        assert all(r.skipped_threshold_count == 1 for r in runs)
        variants = sorted(a.variant_id for a in await fetch_alerts(session_factory, tenant.tenant_id))
        assert variants == [1, 2]

    @pytest.mark.asyncio
    async def test_pro_users_are_not_capped(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            user = await seed_user(db, tenant, subscription_status="active")
            for variant_id in (1, 2, 3):
                await seed_threshold(db, tenant, user, variant_id=variant_id, min_quantity=10)
                await seed_snapshot(db, tenant, variant_id, 0)

        result = await evaluate(session_factory, tenant, clock, free_max_thresholds=1)

        assert result.created == 3
        assert result.skipped_threshold_count == 0

    @pytest.mark.asyncio
    async def test_capped_variant_threshold_still_shadows_default(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            user = await seed_user(db, tenant)
            await seed_threshold(db, tenant, user, variant_id=None, min_quantity=10, created_at=NOW - timedelta(days=5))
            await seed_threshold(db, tenant, user, variant_id=1, min_quantity=3, created_at=NOW - timedelta(days=1))
            await seed_snapshot(db, tenant, 1, 0)
            await seed_snapshot(db, tenant, 2, 0)

        result = await evaluate(session_factory, tenant, clock, free_max_thresholds=1)

        assert result.skipped_threshold_count == 1
        variants = [a.variant_id for a in await fetch_alerts(session_factory, tenant.tenant_id)]
        assert variants == [2]

    def test_coverage_orders_cap_by_caller_order(self):
        import uuid

        tenant_id = uuid.uuid4()
        user_id = uuid.uuid4()
        thresholds = [
            ThresholdRecord(uuid.uuid4(), tenant_id, user_id, v, "quantity", 5, None, NOW - timedelta(days=10 - v))
            for v in (1, 2, 3)
        ]
        coverage = build_coverage(tenant_id, thresholds, free_plan(2))
        assert sorted(coverage.variant_thresholds) == [1, 2]
        assert coverage.lookup(3) == ("capped", None)
        assert coverage.lookup(4) == ("uncovered", None)
        assert coverage.skipped_count == 1

    def test_coverage_lookup_prefers_variant_over_default(self):
        import uuid

        tenant_id = uuid.uuid4()
        user_id = uuid.uuid4()
        default = ThresholdRecord(uuid.uuid4(), tenant_id, user_id, None, "quantity", 10, None, NOW - timedelta(days=5))
        specific = ThresholdRecord(uuid.uuid4(), tenant_id, user_id, 7, "quantity", 2, None, NOW - timedelta(days=4))

        coverage = build_coverage(tenant_id, [default, specific], free_plan(5))
        assert coverage.lookup(7) == ("evaluated", specific)
        assert coverage.lookup(8) == ("evaluated", default)


# ── Failure isolation ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_write_failure_is_recorded_and_evaluation_continues(session_factory, clock, monkeypatch):
    async with session_factory() as db:
        tenant = await seed_tenant(db)
        user = await seed_user(db, tenant)
        for variant_id in (1, 2, 3):
            await seed_threshold(db, tenant, user, variant_id=variant_id, min_quantity=10)
            await seed_snapshot(db, tenant, variant_id, 1)

    original = AlertRepository.create

    async def flaky_create(self, **values):
        if values["variant_id"] == 2:
            raise SQLAlchemyError("disk I/O error")
        return await original(self, **values)

    monkeypatch.setattr(AlertRepository, "create", flaky_create)

    result = await evaluate(session_factory, tenant, clock)

    assert result.created == 2
    assert len(result.errors) == 1
    assert result.errors[0].variant_id == 2
    assert "disk I/O error" in result.errors[0].error
    variants = sorted(a.variant_id for a in await fetch_alerts(session_factory, tenant.tenant_id))
    assert variants == [1, 3]


# ── Reset sweep ────────────────────────────────────────────────────────


class TestResetRecoveredAlerts:
    @pytest.mark.asyncio
    async def test_resolves_recovered_and_orphaned_alerts(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            user = await seed_user(db, tenant)
            await seed_threshold(db, tenant, user, variant_id=1, min_quantity=10)
            orphan = await seed_threshold(db, tenant, user, variant_id=2, min_quantity=10)
            await seed_threshold(db, tenant, user, variant_id=3, min_quantity=10)
            for variant_id in (1, 2, 3):
                await seed_snapshot(db, tenant, variant_id, 5)

        await evaluate(session_factory, tenant, clock)

        async with session_factory() as db:
            await db.execute(delete(Threshold).where(Threshold.threshold_id == orphan.threshold_id))
            await db.commit()
            await seed_snapshot(db, tenant, 1, 40, captured_at=clock())

            reset = await AlertLifecycleManager(db, clock=clock).reset_recovered_alerts(tenant.tenant_id)

        assert reset.checked == 3
        assert reset.resolved == 2
        states = {a.variant_id: a.state for a in await fetch_alerts(session_factory, tenant.tenant_id)}
        assert states == {1: "resolved", 2: "resolved", 3: "alert"}

    @pytest.mark.asyncio
    async def test_capped_alerts_are_left_alone(self, session_factory, clock):
        async with session_factory() as db:
            tenant = await seed_tenant(db)
            user = await seed_user(db, tenant)
            await seed_threshold(db, tenant, user, variant_id=1, min_quantity=10, created_at=NOW - timedelta(days=9))
            await seed_threshold(db, tenant, user, variant_id=2, min_quantity=10, created_at=NOW - timedelta(days=8))
            await seed_snapshot(db, tenant, 1, 5)
            await seed_snapshot(db, tenant, 2, 5)

        await evaluate(session_factory, tenant, clock)

        async with session_factory() as db:
            await seed_snapshot(db, tenant, 2, 50, captured_at=clock())
            manager = AlertLifecycleManager(db, clock=clock, free_max_thresholds=1)
            reset = await manager.reset_recovered_alerts(tenant.tenant_id)

        assert reset.left_capped == 1
        assert reset.resolved == 0
        states = {a.variant_id: a.state for a in await fetch_alerts(session_factory, tenant.tenant_id)}
        assert states == {1: "alert", 2: "alert"}
