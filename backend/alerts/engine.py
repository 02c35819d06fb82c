"""
Alert Engine — threshold evaluation and the alert lifecycle.

Patterns used: latest-snapshot subquery, active-alert deduplication,
one transaction per alert write.

Agent: full-stack-engineer + data-engineer
Skill: alert-systems

Lifecycle per (tenant, user, variant):
  ok (implicit, no active row)
    → alert      breach with no active row: a new row is created
  alert
    → alert      breach continues: snapshots refreshed, no new row
    → dismissed  external "mark dismissed" input
    → resolved   back within bounds
  dismissed
    → dismissed  breach continues: tracked, never re-notified
    → resolved   back within bounds
  resolved is terminal for the row; the next breach opens a new row.

Plan cap:
  A user's thresholds across every tenant are ordered by (created_at, id);
  only the first plan.max_thresholds are evaluated, the rest are skipped.
  A skipped variant-specific threshold still shadows the tenant default.
"""

import math
import uuid
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.thresholds import Breach, Ok, Verdict, evaluate_threshold, select_threshold
from billing.plans import FREE_MAX_THRESHOLDS, Plan, get_plan_for_user, split_by_plan
from core.clock import utc_date, utcnow
from db.repositories import (
    AlertRecord,
    AlertRepository,
    ConsumptionPoint,
    ConsumptionRepository,
    SnapshotRecord,
    SnapshotRepository,
    ThresholdRecord,
    ThresholdRepository,
    UserRecord,
    UserRepository,
)
from inventory.velocity import DEFAULT_WINDOW_DAYS, calculate_velocity

logger = structlog.get_logger()

PlanResolver = Callable[[UserRecord], Plan]


class AlertState(str, Enum):
    ALERT = "alert"
    DISMISSED = "dismissed"
    RESOLVED = "resolved"


# ──────────────────────────────────────────────────────────────────────────
# Results
# ──────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AlertWriteError:
    user_id: str
    variant_id: int
    error: str


@dataclass
class AlertEvaluationResult:
    tenant_id: str
    evaluated: int = 0
    created: int = 0
    updated: int = 0
    suppressed: int = 0
    resolved: int = 0
    unchanged: int = 0
    missing_snapshot: int = 0
    created_by_kind: Counter = field(default_factory=Counter)
    skipped_thresholds: dict[str, int] = field(default_factory=dict)
    errors: list[AlertWriteError] = field(default_factory=list)

    @property
    def skipped_threshold_count(self) -> int:
        return sum(self.skipped_thresholds.values())

    def as_counts(self) -> dict[str, int]:
        return {
            "evaluated": self.evaluated,
            "created": self.created,
            "updated": self.updated,
            "suppressed": self.suppressed,
            "resolved": self.resolved,
            "errors": len(self.errors),
            **{f"created_{kind}": count for kind, count in sorted(self.created_by_kind.items())},
        }


@dataclass
class ResetResult:
    tenant_id: str
    checked: int = 0
    resolved: int = 0
    left_capped: int = 0
    errors: list[AlertWriteError] = field(default_factory=list)


# ──────────────────────────────────────────────────────────────────────────
# Threshold coverage (plan cap + variant precedence)
# ──────────────────────────────────────────────────────────────────────────

EVALUATED = "evaluated"
CAPPED = "capped"
UNCOVERED = "uncovered"


@dataclass(frozen=True)
class ThresholdCoverage:
    """Which threshold governs each variant of one tenant for one user."""

    variant_thresholds: dict[int, ThresholdRecord]
    default: ThresholdRecord | None
    shadowed_variants: frozenset[int]
    default_capped: bool
    skipped_count: int

    def lookup(self, variant_id: int) -> tuple[str, ThresholdRecord | None]:
        if variant_id in self.shadowed_variants and variant_id not in self.variant_thresholds:
            return CAPPED, None
        threshold = select_threshold(variant_id, self.variant_thresholds, self.default)
        if threshold is not None:
            return EVALUATED, threshold
        if self.default_capped:
            return CAPPED, None
        return UNCOVERED, None

    def target_variants(self, known_variants) -> list[int]:
        targets = set(self.variant_thresholds)
        if self.default is not None:
            targets.update(v for v in known_variants if v not in self.shadowed_variants)
        return sorted(targets)


def build_coverage(
    tenant_id: uuid.UUID,
    ordered_thresholds: list[ThresholdRecord],
    plan: Plan,
) -> ThresholdCoverage:
    evaluated, skipped = split_by_plan(ordered_thresholds, plan)
    mine = [t for t in evaluated if t.tenant_id == tenant_id]
    capped = [t for t in skipped if t.tenant_id == tenant_id]

    default = next((t for t in mine if t.variant_id is None), None)
    return ThresholdCoverage(
        variant_thresholds={t.variant_id: t for t in mine if t.variant_id is not None},
        default=default,
        shadowed_variants=frozenset(t.variant_id for t in mine + capped if t.variant_id is not None),
        default_capped=default is None and any(t.variant_id is None for t in capped),
        skipped_count=len(skipped),
    )


def _finite_or_none(value: float | None) -> float | None:
    if value is None or math.isinf(value) or math.isnan(value):
        return None
    return value


@dataclass(frozen=True)
class _TenantView:
    as_of: date
    snapshots: dict[int, SnapshotRecord]
    history: dict[int, list[ConsumptionPoint]]


# ──────────────────────────────────────────────────────────────────────────
# Lifecycle manager
# ──────────────────────────────────────────────────────────────────────────


class AlertLifecycleManager:
    """
    Drives alert rows for one tenant at a time.

    Reads happen up front; every alert write is committed on its own so a
    failing row is rolled back, recorded, and evaluation moves on.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        plan_resolver: PlanResolver | None = None,
        clock: Callable[[], datetime] = utcnow,
        window_days: int = DEFAULT_WINDOW_DAYS,
        free_max_thresholds: int = FREE_MAX_THRESHOLDS,
    ):
        self.db = db
        self.clock = clock
        self.window_days = window_days
        self.plan_resolver = plan_resolver or (
            lambda user: get_plan_for_user(user, now=self.clock(), free_max_thresholds=free_max_thresholds)
        )
        self.alerts = AlertRepository(db)
        self.thresholds = ThresholdRepository(db)
        self.users = UserRepository(db)
        self.snapshots = SnapshotRepository(db)
        self.consumption = ConsumptionRepository(db)

    async def _load_view(self, tenant_id: uuid.UUID, as_of: date) -> _TenantView:
        start = as_of - timedelta(days=self.window_days - 1)
        return _TenantView(
            as_of=as_of,
            snapshots=await self.snapshots.latest_for_tenant(tenant_id),
            history=await self.consumption.history_for_tenant(tenant_id, start, as_of),
        )

    async def _coverage_for(self, tenant_id: uuid.UUID, user: UserRecord) -> ThresholdCoverage:
        ordered = await self.thresholds.list_for_user(user.user_id)
        return build_coverage(tenant_id, ordered, self.plan_resolver(user))

    def _verdict(self, view: _TenantView, snapshot: SnapshotRecord, threshold: ThresholdRecord) -> Verdict:
        velocity = calculate_velocity(
            view.history.get(snapshot.variant_id, []),
            snapshot.quantity_available,
            view.as_of,
            self.window_days,
        )
        return evaluate_threshold(snapshot.quantity_available, threshold, velocity)

    # ── Evaluation ────────────────────────────────────────────────────────

    async def evaluate_tenant(self, tenant_id: uuid.UUID, as_of: datetime | date | None = None) -> AlertEvaluationResult:
        """Evaluate every thresholded variant of the tenant for every user."""
        as_of_date = utc_date(as_of or self.clock())
        result = AlertEvaluationResult(tenant_id=str(tenant_id))

        view = await self._load_view(tenant_id, as_of_date)
        user_ids = await self.thresholds.user_ids_for_tenant(tenant_id)
        users = await self.users.list_by_ids(user_ids)
        active = await self.alerts.active_for_tenant(tenant_id)

        for user_id in user_ids:
            user = users.get(user_id)
            if user is None:
                continue
            coverage = await self._coverage_for(tenant_id, user)
            result.skipped_thresholds[str(user_id)] = coverage.skipped_count
            if coverage.skipped_count:
                logger.info(
                    "alerts.thresholds_skipped",
                    tenant_id=str(tenant_id),
                    user_id=str(user_id),
                    skipped=coverage.skipped_count,
                )

            for variant_id in coverage.target_variants(view.snapshots):
                _, threshold = coverage.lookup(variant_id)
                snapshot = view.snapshots.get(variant_id)
                if snapshot is None:
                    result.missing_snapshot += 1
                    continue

                result.evaluated += 1
                verdict = self._verdict(view, snapshot, threshold)
                await self.apply_verdict(
                    tenant_id,
                    user_id,
                    snapshot,
                    threshold,
                    verdict,
                    active.get((user_id, variant_id)),
                    result,
                )

        logger.info("alerts.tenant_evaluated", **result.as_counts(), tenant_id=str(tenant_id))
        return result

    async def apply_verdict(
        self,
        tenant_id: uuid.UUID,
        user_id: uuid.UUID,
        snapshot: SnapshotRecord,
        threshold: ThresholdRecord | None,
        verdict: Verdict,
        existing: AlertRecord | None,
        result: AlertEvaluationResult,
    ) -> str | None:
        """Apply one verdict to the variant's active alert row (if any) in its own transaction."""
        try:
            outcome = await self._transition(tenant_id, user_id, snapshot, threshold, verdict, existing)
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "alerts.write_failed",
                tenant_id=str(tenant_id),
                user_id=str(user_id),
                variant_id=snapshot.variant_id,
                error=str(exc),
                exc_info=True,
            )
            result.errors.append(AlertWriteError(str(user_id), snapshot.variant_id, str(exc)))
            return None

        if outcome == "created":
            result.created += 1
            result.created_by_kind[verdict.kind.value] += 1
        elif outcome == "updated":
            result.updated += 1
        elif outcome == "suppressed":
            result.suppressed += 1
        elif outcome == "resolved":
            result.resolved += 1
        else:
            result.unchanged += 1
        return outcome

    async def _transition(
        self,
        tenant_id: uuid.UUID,
        user_id: uuid.UUID,
        snapshot: SnapshotRecord,
        threshold: ThresholdRecord | None,
        verdict: Verdict,
        existing: AlertRecord | None,
    ) -> str:
        now = self.clock()

        if isinstance(verdict, Breach):
            days_left = _finite_or_none(verdict.days_left)
            if existing is None:
                created = await self.alerts.create(
                    tenant_id=tenant_id,
                    user_id=user_id,
                    threshold_id=threshold.threshold_id if threshold else None,
                    variant_id=snapshot.variant_id,
                    sku=snapshot.sku,
                    product_name=snapshot.product_name,
                    alert_kind=verdict.kind.value,
                    current_quantity=verdict.current_stock,
                    threshold_quantity=verdict.threshold_quantity,
                    threshold_days=verdict.threshold_days,
                    days_left=days_left,
                    created_at=now,
                    updated_at=now,
                    last_evaluated_at=now,
                )
                logger.info(
                    "alerts.created",
                    alert_id=str(created.alert_id),
                    tenant_id=str(tenant_id),
                    variant_id=snapshot.variant_id,
                    kind=verdict.kind.value,
                )
                return "created"

            if existing.state == AlertState.ALERT.value:
                await self.alerts.update_breach(
                    existing.alert_id,
                    alert_kind=verdict.kind.value,
                    threshold_id=threshold.threshold_id if threshold else existing.threshold_id,
                    current_quantity=verdict.current_stock,
                    threshold_quantity=verdict.threshold_quantity,
                    threshold_days=verdict.threshold_days,
                    days_left=days_left,
                    evaluated_at=now,
                    clear_notified=existing.alert_kind != verdict.kind.value,
                )
                return "updated"

            if existing.state == AlertState.DISMISSED.value:
                await self.alerts.track_dismissed(
                    existing.alert_id,
                    current_quantity=verdict.current_stock,
                    days_left=days_left,
                    evaluated_at=now,
                )
                return "suppressed"

            raise ValueError(f"Alert {existing.alert_id} is not active: {existing.state}")

        if isinstance(verdict, Ok):
            if existing is None:
                return "unchanged"
            await self.alerts.resolve(existing.alert_id, now)
            logger.info(
                "alerts.resolved",
                alert_id=str(existing.alert_id),
                tenant_id=str(tenant_id),
                variant_id=snapshot.variant_id,
                previous_state=existing.state,
            )
            return "resolved"

        raise TypeError(f"Unhandled verdict: {verdict!r}")

    # ── Recovery sweep ────────────────────────────────────────────────────

    async def reset_recovered_alerts(self, tenant_id: uuid.UUID, as_of: datetime | date | None = None) -> ResetResult:
        """
        Resolve every active alert of the tenant that is back within bounds.

        Alerts whose threshold was deleted are resolved as well. Alerts whose
        threshold is currently over the plan cap are left as they are.
        """
        as_of_date = utc_date(as_of or self.clock())
        result = ResetResult(tenant_id=str(tenant_id))

        active = await self.alerts.active_for_tenant(tenant_id)
        if not active:
            return result

        view = await self._load_view(tenant_id, as_of_date)
        users = await self.users.list_by_ids({user_id for user_id, _ in active})
        coverages: dict[uuid.UUID, ThresholdCoverage] = {}

        for (user_id, variant_id), alert in active.items():
            result.checked += 1
            user = users.get(user_id)
            if user is None:
                status, threshold = UNCOVERED, None
            else:
                if user_id not in coverages:
                    coverages[user_id] = await self._coverage_for(tenant_id, user)
                status, threshold = coverages[user_id].lookup(variant_id)

            if status == CAPPED:
                result.left_capped += 1
                continue

            if status == EVALUATED:
                snapshot = view.snapshots.get(variant_id)
                if snapshot is None:
                    continue
                if not isinstance(self._verdict(view, snapshot, threshold), Ok):
                    continue

            try:
                if await self.alerts.resolve(alert.alert_id, self.clock()):
                    result.resolved += 1
                await self.db.commit()
            except SQLAlchemyError as exc:
                await self.db.rollback()
                logger.error(
                    "alerts.reset_failed",
                    alert_id=str(alert.alert_id),
                    tenant_id=str(tenant_id),
                    error=str(exc),
                    exc_info=True,
                )
                result.errors.append(AlertWriteError(str(user_id), variant_id, str(exc)))

        logger.info(
            "alerts.reset_recovered",
            tenant_id=str(tenant_id),
            checked=result.checked,
            resolved=result.resolved,
            left_capped=result.left_capped,
        )
        return result

    # ── External input ────────────────────────────────────────────────────

    async def dismiss_alert(self, alert_id: uuid.UUID) -> bool:
        """Move an `alert` row to `dismissed`. Returns False if it was not in `alert`."""
        dismissed = await self.alerts.dismiss(alert_id, self.clock())
        await self.db.commit()
        if dismissed:
            logger.info("alerts.dismissed", alert_id=str(alert_id))
        else:
            logger.warning("alerts.dismiss_ignored", alert_id=str(alert_id))
        return dismissed
