"""
Digest Composer — a tenant's alerts into one periodic summary.

Pure transform: no database, no delivery. Returns None when there is
nothing to report so the caller skips sending.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from alerts.thresholds import AlertKind
from core.clock import utcnow

DEFAULT_RESOLVED_WINDOW = timedelta(hours=24)

KIND_ORDER = {
    AlertKind.OUT_OF_STOCK.value: 0,
    AlertKind.LOW_STOCK.value: 1,
    AlertKind.LOW_VELOCITY.value: 2,
}


@dataclass(frozen=True)
class AlertCounts:
    low_stock: int = 0
    out_of_stock: int = 0
    low_velocity: int = 0

    @property
    def total(self) -> int:
        return self.low_stock + self.out_of_stock + self.low_velocity

    def as_dict(self) -> dict[str, int]:
        return {
            "lowStock": self.low_stock,
            "outOfStock": self.out_of_stock,
            "lowVelocity": self.low_velocity,
        }


@dataclass(frozen=True)
class DigestAlert:
    alert_id: str
    variant_id: int
    sku: str | None
    product_name: str | None
    kind: str
    state: str
    current_quantity: int
    threshold_quantity: int | None
    threshold_days: int | None
    days_left: float | None
    created_at: datetime
    resolved_at: datetime | None

    @property
    def is_open(self) -> bool:
        return self.state == "alert"

    def as_dict(self) -> dict[str, Any]:
        return {
            "alertId": self.alert_id,
            "variantId": self.variant_id,
            "sku": self.sku,
            "productName": self.product_name,
            "kind": self.kind,
            "state": self.state,
            "currentQuantity": self.current_quantity,
            "thresholdQuantity": self.threshold_quantity,
            "thresholdDays": self.threshold_days,
            "daysLeft": self.days_left,
            "createdAt": self.created_at.isoformat(),
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass(frozen=True)
class DigestPayload:
    tenant_id: str
    user_id: str | None
    alert_counts: AlertCounts
    alerts: tuple[DigestAlert, ...]
    skipped_threshold_count: int
    upgrade_url: str | None = None

    @property
    def open_alerts(self) -> list[DigestAlert]:
        return [a for a in self.alerts if a.is_open]

    @property
    def resolved_alerts(self) -> list[DigestAlert]:
        return [a for a in self.alerts if not a.is_open]

    @property
    def alert_ids(self) -> list[str]:
        return [a.alert_id for a in self.alerts]

    def as_dict(self) -> dict[str, Any]:
        payload = {
            "tenantId": self.tenant_id,
            "alertCounts": self.alert_counts.as_dict(),
            "alerts": [a.as_dict() for a in self.alerts],
            "skippedThresholdCount": self.skipped_threshold_count,
        }
        if self.upgrade_url:
            payload["upgradeUrl"] = self.upgrade_url
        return payload


def _included(alert: Any, now: datetime, resolved_window: timedelta) -> bool:
    if alert.state == "alert":
        return True
    if alert.state == "resolved" and alert.resolved_at is not None:
        if alert.resolved_at < now - resolved_window:
            return False
        return alert.last_notified_at is None or alert.last_notified_at < alert.resolved_at
    # dismissed alerts never appear
    return False


def _sort_key(alert: DigestAlert) -> tuple:
    return (
        0 if alert.is_open else 1,
        KIND_ORDER.get(alert.kind, len(KIND_ORDER)),
        alert.sku or "",
        alert.variant_id,
        alert.alert_id,
    )


def compose_digest(
    tenant_id: Any,
    user_id: Any,
    alerts: Iterable[Any],
    skipped_threshold_count: int = 0,
    *,
    now: datetime | None = None,
    resolved_window: timedelta = DEFAULT_RESOLVED_WINDOW,
    upgrade_url: str | None = None,
) -> DigestPayload | None:
    """
    Build the digest for one recipient.

    ``alerts`` are alert records (open and recently resolved). Counts cover
    open alerts only; resolved ones are listed so the reader sees recovery.
    The upgrade URL is kept only when thresholds were skipped by the plan cap.
    """
    now = now or utcnow()
    items = [
        DigestAlert(
            alert_id=str(a.alert_id),
            variant_id=a.variant_id,
            sku=a.sku,
            product_name=a.product_name,
            kind=a.alert_kind,
            state=a.state,
            current_quantity=a.current_quantity,
            threshold_quantity=a.threshold_quantity,
            threshold_days=a.threshold_days,
            days_left=a.days_left,
            created_at=a.created_at,
            resolved_at=a.resolved_at,
        )
        for a in alerts
        if _included(a, now, resolved_window)
    ]
    if not items:
        return None

    items.sort(key=_sort_key)
    open_kinds = [a.kind for a in items if a.is_open]
    counts = AlertCounts(
        low_stock=open_kinds.count(AlertKind.LOW_STOCK.value),
        out_of_stock=open_kinds.count(AlertKind.OUT_OF_STOCK.value),
        low_velocity=open_kinds.count(AlertKind.LOW_VELOCITY.value),
    )
    return DigestPayload(
        tenant_id=str(tenant_id),
        user_id=str(user_id) if user_id is not None else None,
        alert_counts=counts,
        alerts=tuple(items),
        skipped_threshold_count=skipped_threshold_count,
        upgrade_url=upgrade_url if skipped_threshold_count > 0 else None,
    )
