"""
Inventory Sync Workers — scheduled per-tenant pull from the commerce platform.

Flow per tenant (sequential, never in parallel):
  1. mark syncing
  2. list_stock → stock_snapshots (append-only, batched)
  3. list_sales_documents (trailing window) → daily_consumption (upsert)
  4. velocity + thresholds + alert lifecycle
  5. mark success / failed

After every tenant: reset recovered alerts for the tenants that synced.

A tenant's failure (collaborator, parse, persistence) is recorded and the
run moves on; only failing to list tenants aborts the run.
"""

import asyncio
import time
import uuid
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts.engine import AlertEvaluationResult, AlertLifecycleManager, PlanResolver, ResetResult
from core.clock import utcnow
from core.config import Settings, get_settings
from core.errors import CollaboratorError, CollaboratorTimeoutError, MalformedResponseError, TenantNotFoundError
from db.repositories import SnapshotRepository, TenantRecord, TenantRepository
from db.session import Database
from integrations.base import CommercePlatformClient, StockItem, get_client, parse_sales, parse_stock
from inventory.consumption import ConsumptionAggregator, ConsumptionWindow
from workers.celery_app import celery_app

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────────────────
# Reports
# ──────────────────────────────────────────────────────────────────────────


@dataclass
class TenantSyncResult:
    tenant_id: str
    success: bool
    items_synced: int
    started_at: datetime
    completed_at: datetime
    error: str | None = None
    alerts: AlertEvaluationResult | None = None

    @property
    def alerts_generated(self) -> int:
        return self.alerts.created if self.alerts else 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "tenantId": self.tenant_id,
            "success": self.success,
            "itemsSynced": self.items_synced,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat(),
            "error": self.error,
            "alertsGenerated": self.alerts_generated,
        }


@dataclass
class SyncProgress:
    total_tenants: int = 0
    completed_tenants: int = 0
    success_count: int = 0
    failure_count: int = 0
    results: list[TenantSyncResult] = field(default_factory=list)
    alert_counts: Counter = field(default_factory=Counter)
    reset: dict[str, ResetResult] = field(default_factory=dict)

    def record(self, result: TenantSyncResult) -> None:
        self.results.append(result)
        self.completed_tenants += 1
        if result.success:
            self.success_count += 1
        else:
            self.failure_count += 1
        if result.alerts is not None:
            self.alert_counts.update(result.alerts.as_counts())

    def result_for(self, tenant_id: str) -> TenantSyncResult | None:
        return next((r for r in self.results if r.tenant_id == tenant_id), None)

    def as_dict(self) -> dict[str, Any]:
        return {
            "totalTenants": self.total_tenants,
            "completedTenants": self.completed_tenants,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "results": [r.as_dict() for r in self.results],
            "alertCounts": dict(self.alert_counts),
            "resolvedOnReset": sum(r.resolved for r in self.reset.values()),
        }


@dataclass(frozen=True)
class ManualSyncResult:
    success: bool
    products_updated: int
    alerts_generated: int
    duration_ms: int
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload = {
            "success": self.success,
            "productsUpdated": self.products_updated,
            "alertsGenerated": self.alerts_generated,
            "durationMs": self.duration_ms,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


def collapse_stock(items: list[StockItem], captured_at: datetime) -> list[dict[str, Any]]:
    """One snapshot row per variant; duplicate entries are summed."""
    rows: dict[int, dict[str, Any]] = {}
    for item in items:
        row = rows.get(item.variant_id)
        if row is None:
            rows[item.variant_id] = {
                "variant_id": item.variant_id,
                "sku": item.sku,
                "product_name": item.product_name,
                "quantity_available": item.quantity_available,
                "captured_at": captured_at,
            }
            continue
        row["quantity_available"] += item.quantity_available
        row["sku"] = row["sku"] or item.sku
        row["product_name"] = row["product_name"] or item.product_name
    return [rows[variant_id] for variant_id in sorted(rows)]


# ──────────────────────────────────────────────────────────────────────────
# Orchestrator
# ──────────────────────────────────────────────────────────────────────────


class InventorySyncService:
    def __init__(
        self,
        database: Database | async_sessionmaker[AsyncSession],
        client: CommercePlatformClient,
        *,
        settings: Settings | None = None,
        plan_resolver: PlanResolver | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session_factory = database.session_factory if isinstance(database, Database) else database
        self.client = client
        self.settings = settings or get_settings()
        self.plan_resolver = plan_resolver
        self.clock = clock
        self.sleep = sleep

    def _manager(self, db: AsyncSession) -> AlertLifecycleManager:
        return AlertLifecycleManager(
            db,
            plan_resolver=self.plan_resolver,
            clock=self.clock,
            window_days=self.settings.consumption_window_days,
            free_max_thresholds=self.settings.free_plan_max_thresholds,
        )

    async def _call(self, operation: str, call: Awaitable[Any], tenant_id: str) -> Any:
        timeout = self.settings.collaborator_timeout_seconds
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise CollaboratorTimeoutError(f"{operation} timed out after {timeout}s", tenant_id) from exc
        except CollaboratorError:
            raise
        except Exception as exc:
            raise CollaboratorError(f"{operation} failed: {_describe(exc)}", tenant_id) from exc

    @staticmethod
    def _parse(parser: Callable[[Any], list], payload: Any, operation: str, tenant_id: str) -> list:
        try:
            return parser(payload)
        except (ValidationError, TypeError) as exc:
            raise MalformedResponseError(f"{operation} returned a malformed payload: {exc}", tenant_id) from exc

    async def _pull_inventory(self, db: AsyncSession, tenant: TenantRecord, started_at: datetime) -> int:
        tenant_id = str(tenant.tenant_id)
        credentials = tenant.credentials()

        raw_stock = await self._call("list_stock", self.client.list_stock(credentials), tenant_id)
        stock = self._parse(parse_stock, raw_stock, "list_stock", tenant_id)
        rows = collapse_stock(stock, started_at)

        snapshots = SnapshotRepository(db)
        batch_size = self.settings.sync_batch_size
        for start in range(0, len(rows), batch_size):
            batch = rows[start : start + batch_size]
            await snapshots.add_batch([{"tenant_id": tenant.tenant_id, **row} for row in batch])
            logger.debug("sync.tenant.snapshot_batch", tenant_id=tenant_id, offset=start, size=len(batch))

        window = ConsumptionWindow.trailing(started_at, self.settings.consumption_window_days)
        raw_sales = await self._call(
            "list_sales_documents",
            self.client.list_sales_documents(credentials, window.to_date_range()),
            tenant_id,
        )
        sales = self._parse(parse_sales, raw_sales, "list_sales_documents", tenant_id)
        await ConsumptionAggregator(db).sync(tenant.tenant_id, sales, window)

        await db.commit()
        return len(rows)

    async def sync_tenant(self, tenant: TenantRecord) -> TenantSyncResult:
        tenant_id = str(tenant.tenant_id)
        started_at = self.clock()
        log = logger.bind(tenant_id=tenant_id)
        log.info("sync.tenant.started")

        async with self.session_factory() as db:
            tenants = TenantRepository(db)
            try:
                await tenants.mark_syncing(tenant.tenant_id, started_at)
                await db.commit()

                items_synced = await self._pull_inventory(db, tenant, started_at)
                evaluation = await self._manager(db).evaluate_tenant(tenant.tenant_id, as_of=started_at)

                completed_at = self.clock()
                await tenants.mark_success(tenant.tenant_id, completed_at)
                await db.commit()
            except Exception as exc:
                await db.rollback()
                error = _describe(exc)
                completed_at = self.clock()
                log.error("sync.tenant.failed", error=error, error_type=type(exc).__name__, exc_info=True)
                try:
                    await tenants.mark_failed(tenant.tenant_id, error, completed_at)
                    await db.commit()
                except SQLAlchemyError:
                    await db.rollback()
                    log.error("sync.tenant.mark_failed_error", exc_info=True)
                return TenantSyncResult(
                    tenant_id=tenant_id,
                    success=False,
                    items_synced=0,
                    started_at=started_at,
                    completed_at=completed_at,
                    error=error,
                )

        log.info(
            "sync.tenant.completed",
            items_synced=items_synced,
            alerts_created=evaluation.created,
            alerts_resolved=evaluation.resolved,
            alert_errors=len(evaluation.errors),
        )
        return TenantSyncResult(
            tenant_id=tenant_id,
            success=True,
            items_synced=items_synced,
            started_at=started_at,
            completed_at=completed_at,
            alerts=evaluation,
        )

    async def _reset(self, tenant_id: str) -> ResetResult | None:
        async with self.session_factory() as db:
            try:
                return await self._manager(db).reset_recovered_alerts(uuid.UUID(tenant_id))
            except Exception:
                await db.rollback()
                logger.error("sync.reset.failed", tenant_id=tenant_id, exc_info=True)
                return None

    async def sync_all_tenants(self) -> SyncProgress:
        now = self.clock()
        stale_after = timedelta(minutes=self.settings.sync_stale_after_minutes)
        async with self.session_factory() as db:
            tenants = await TenantRepository(db).list_eligible_for_sync(now, stale_after)

        progress = SyncProgress(total_tenants=len(tenants))
        logger.info("sync.run.started", total_tenants=len(tenants))

        delay = self.settings.sync_tenant_delay_seconds
        for index, tenant in enumerate(tenants):
            if index > 0 and delay > 0:
                await self.sleep(delay)
            progress.record(await self.sync_tenant(tenant))

        for result in progress.results:
            if not result.success:
                continue
            reset = await self._reset(result.tenant_id)
            if reset is not None:
                progress.reset[result.tenant_id] = reset

        logger.info(
            "sync.run.completed",
            total_tenants=progress.total_tenants,
            success_count=progress.success_count,
            failure_count=progress.failure_count,
            **dict(progress.alert_counts),
        )
        return progress

    async def run_manual_sync(self, tenant_id: str | uuid.UUID) -> ManualSyncResult:
        """'Sync now': runs a batch and reports only the requesting tenant's outcome."""
        try:
            key = uuid.UUID(str(tenant_id))
        except ValueError as exc:
            raise TenantNotFoundError(str(tenant_id)) from exc

        async with self.session_factory() as db:
            tenant = await TenantRepository(db).get(key)
        if tenant is None:
            raise TenantNotFoundError(str(tenant_id))

        started = time.monotonic()
        progress = await self.sync_all_tenants()
        duration_ms = int((time.monotonic() - started) * 1000)

        mine = progress.result_for(str(key))
        if mine is None:
            return ManualSyncResult(
                success=False,
                products_updated=0,
                alerts_generated=0,
                duration_ms=duration_ms,
                error="Sync already in progress for this tenant",
            )
        return ManualSyncResult(
            success=mine.success,
            products_updated=mine.items_synced,
            alerts_generated=mine.alerts_generated,
            duration_ms=duration_ms,
            error=mine.error,
        )


# ──────────────────────────────────────────────────────────────────────────
# Celery tasks
# ──────────────────────────────────────────────────────────────────────────


async def _with_service(action: Callable[[InventorySyncService], Awaitable[Any]]) -> Any:
    settings = get_settings()
    database = await Database(settings.database_url, echo=settings.database_echo).open()
    try:
        client = get_client(settings.commerce_provider, settings)
        return await action(InventorySyncService(database, client, settings=settings))
    finally:
        await database.close()


@celery_app.task(
    name="workers.sync.run_inventory_sync",
    bind=True,
    acks_late=True,
)
def run_inventory_sync(self):
    """
    Nightly sync of every eligible tenant.
    Scheduled via Celery Beat at sync_hour:sync_minute UTC.
    """
    run_id = self.request.id or "manual"
    logger.info("sync.inventory.started", run_id=run_id)

    async def _sync():
        progress = await _with_service(lambda service: service.sync_all_tenants())
        return progress.as_dict()

    try:
        return asyncio.run(_sync())
    except Exception as exc:
        logger.error("sync.inventory.failed", run_id=run_id, error=str(exc))
        raise


@celery_app.task(
    name="workers.sync.run_manual_sync",
    bind=True,
    acks_late=True,
)
def run_manual_sync(self, tenant_id: str):
    """On-demand 'sync now' for one tenant."""
    logger.info("sync.manual.started", tenant_id=tenant_id, run_id=self.request.id or "manual")

    async def _sync():
        result = await _with_service(lambda service: service.run_manual_sync(tenant_id))
        return result.as_dict()

    try:
        return asyncio.run(_sync())
    except Exception as exc:
        logger.error("sync.manual.failed", tenant_id=tenant_id, error=str(exc))
        raise
