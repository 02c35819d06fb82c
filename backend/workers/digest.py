"""
Digest Workers — periodic alert summaries per user.

For every tenant, each user whose digest_frequency matches the run gets one
digest of open alerts due a notification plus alerts resolved since the
last run. Alerts are stamped last_notified_at only after the notifier
accepted the message, so a failed send is retried on the next run.
"""

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts.digest import compose_digest
from alerts.email import DigestNotifier, SendGridDigestNotifier
from alerts.engine import CAPPED, PlanResolver, ThresholdCoverage, build_coverage
from billing.plans import get_plan_for_user
from core.clock import utcnow
from core.config import Settings, get_settings
from db.repositories import (
    AlertRepository,
    TenantRecord,
    TenantRepository,
    ThresholdRepository,
    UserRecord,
    UserRepository,
)
from db.session import Database
from workers.celery_app import celery_app

logger = structlog.get_logger()


@dataclass
class DigestJobResult:
    frequency: str
    tenants: int = 0
    users_considered: int = 0
    sent: int = 0
    empty: int = 0
    failed: int = 0
    alerts_notified: int = 0
    failures: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "frequency": self.frequency,
            "tenants": self.tenants,
            "usersConsidered": self.users_considered,
            "sent": self.sent,
            "empty": self.empty,
            "failed": self.failed,
            "alertsNotified": self.alerts_notified,
        }


def billing_url(app_url: str) -> str:
    return f"{app_url.rstrip('/')}/settings/billing"


def renotify_cutoff(now: datetime, settings: Settings) -> datetime:
    """Open alerts last notified before this instant are due again."""
    return (
        now
        - timedelta(hours=settings.digest_renotify_hours)
        + timedelta(minutes=settings.digest_renotify_grace_minutes)
    )


def drop_capped_alerts(alerts: list, coverage: ThresholdCoverage) -> list:
    """Open alerts on thresholds currently over the plan cap are not reported."""
    return [a for a in alerts if a.state != "alert" or coverage.lookup(a.variant_id)[0] != CAPPED]


async def _digest_for_user(
    db: AsyncSession,
    tenant: TenantRecord,
    user: UserRecord,
    notifier: DigestNotifier,
    settings: Settings,
    plan_resolver: PlanResolver,
    now: datetime,
    result: DigestJobResult,
) -> None:
    alerts = await AlertRepository(db).list_for_digest(
        tenant.tenant_id,
        user.user_id,
        resolved_since=now - timedelta(hours=settings.digest_resolved_window_hours),
        notified_before=renotify_cutoff(now, settings),
    )
    thresholds = await ThresholdRepository(db).list_for_user(user.user_id)
    coverage = build_coverage(tenant.tenant_id, thresholds, plan_resolver(user))

    payload = compose_digest(
        tenant.tenant_id,
        user.user_id,
        drop_capped_alerts(alerts, coverage),
        coverage.skipped_count,
        now=now,
        resolved_window=timedelta(hours=settings.digest_resolved_window_hours),
        upgrade_url=billing_url(settings.app_url),
    )
    if payload is None:
        result.empty += 1
        return

    sent = await notifier.send_digest(user.recipient, tenant.name, payload)
    if not sent:
        result.failed += 1
        result.failures.append({"tenant_id": str(tenant.tenant_id), "user_id": str(user.user_id)})
        logger.warning("digest.send_failed", tenant_id=str(tenant.tenant_id), user_id=str(user.user_id))
        return

    stamped = await AlertRepository(db).mark_notified([uuid.UUID(a) for a in payload.alert_ids], now)
    await db.commit()
    result.sent += 1
    result.alerts_notified += stamped
    logger.info(
        "digest.sent",
        tenant_id=str(tenant.tenant_id),
        user_id=str(user.user_id),
        alerts=len(payload.alerts),
        skipped_thresholds=payload.skipped_threshold_count,
    )


async def run_digest_job(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: DigestNotifier,
    *,
    frequency: str = "daily",
    settings: Settings | None = None,
    plan_resolver: PlanResolver | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> DigestJobResult:
    settings = settings or get_settings()
    plan_resolver = plan_resolver or (
        lambda user: get_plan_for_user(user, now=clock(), free_max_thresholds=settings.free_plan_max_thresholds)
    )
    result = DigestJobResult(frequency=frequency)

    async with session_factory() as db:
        tenants = await TenantRepository(db).list_all()
    result.tenants = len(tenants)

    for tenant in tenants:
        async with session_factory() as db:
            users = await UserRepository(db).list_for_digest(tenant.tenant_id, frequency)
            for user in users:
                result.users_considered += 1
                try:
                    await _digest_for_user(db, tenant, user, notifier, settings, plan_resolver, clock(), result)
                except SQLAlchemyError as exc:
                    await db.rollback()
                    result.failed += 1
                    result.failures.append({"tenant_id": str(tenant.tenant_id), "user_id": str(user.user_id)})
                    logger.error(
                        "digest.user_failed",
                        tenant_id=str(tenant.tenant_id),
                        user_id=str(user.user_id),
                        error=str(exc),
                        exc_info=True,
                    )

    logger.info("digest.run.completed", **result.as_dict())
    return result


def _run_scheduled_digest(frequency: str) -> dict[str, Any]:
    async def _run():
        settings = get_settings()
        database = await Database(settings.database_url, echo=settings.database_echo).open()
        try:
            notifier = SendGridDigestNotifier(settings.sendgrid_api_key, settings.alert_from_email)
            job = await run_digest_job(database.session_factory, notifier, frequency=frequency, settings=settings)
            return job.as_dict()
        finally:
            await database.close()

    try:
        return asyncio.run(_run())
    except Exception as exc:
        logger.error("digest.run.failed", frequency=frequency, error=str(exc))
        raise


@celery_app.task(name="workers.digest.send_daily_digests", bind=True, acks_late=True)
def send_daily_digests(self):
    """Daily digest for users on the daily frequency."""
    return _run_scheduled_digest("daily")


@celery_app.task(name="workers.digest.send_weekly_digests", bind=True, acks_late=True)
def send_weekly_digests(self):
    """Monday digest for users on the weekly frequency."""
    return _run_scheduled_digest("weekly")
