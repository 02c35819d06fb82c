"""
Threshold Evaluator — one variant, one applicable threshold, one verdict.

Rules:
  quantity: breach when stock <= min_quantity (inclusive)
            kind = out_of_stock if stock <= 0 else low_stock
  days:     breach when days_left < min_days (strict), kind = low_velocity

A threshold that cannot be interpreted (unknown type, both or neither bound,
negative bound) is handled exactly like no threshold: the verdict is Ok.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar, Union

import structlog

from inventory.velocity import VelocityInfo

logger = structlog.get_logger()


class ThresholdType(str, Enum):
    QUANTITY = "quantity"
    DAYS = "days"


class AlertKind(str, Enum):
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"
    LOW_VELOCITY = "low_velocity"


# ── Interpreted rules ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class QuantityRule:
    min_quantity: int


@dataclass(frozen=True)
class DaysRule:
    min_days: int


Rule = Union[QuantityRule, DaysRule]


def _valid_bound(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def interpret(threshold: Any) -> Rule | None:
    """Turn a stored threshold into a rule, or None when it is absent or malformed."""
    if threshold is None:
        return None

    threshold_type = getattr(threshold, "threshold_type", None)
    min_quantity = getattr(threshold, "min_quantity", None)
    min_days = getattr(threshold, "min_days", None)

    if threshold_type == ThresholdType.QUANTITY.value:
        if _valid_bound(min_quantity) and min_days is None:
            return QuantityRule(min_quantity=min_quantity)
    elif threshold_type == ThresholdType.DAYS.value:
        if _valid_bound(min_days) and min_quantity is None:
            return DaysRule(min_days=min_days)

    logger.warning(
        "thresholds.malformed",
        threshold_id=str(getattr(threshold, "threshold_id", "")),
        threshold_type=threshold_type,
        min_quantity=min_quantity,
        min_days=min_days,
    )
    return None


T = TypeVar("T")


def select_threshold(
    variant_id: int,
    variant_thresholds: Mapping[int, T],
    tenant_default: T | None,
) -> T | None:
    """Variant-specific threshold wins over the tenant-wide default."""
    specific = variant_thresholds.get(variant_id)
    if specific is not None:
        return specific
    return tenant_default


# ── Verdicts ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Ok:
    reason: str = "within_bounds"


@dataclass(frozen=True)
class Breach:
    kind: AlertKind
    current_stock: int
    threshold_quantity: int | None = None
    threshold_days: int | None = None
    days_left: float | None = None


Verdict = Union[Ok, Breach]


def evaluate_threshold(
    current_stock: int,
    threshold: Any,
    velocity: VelocityInfo | None = None,
) -> Verdict:
    rule = interpret(threshold)
    if rule is None:
        return Ok(reason="no_threshold")

    if isinstance(rule, QuantityRule):
        if current_stock <= rule.min_quantity:
            kind = AlertKind.OUT_OF_STOCK if current_stock <= 0 else AlertKind.LOW_STOCK
            return Breach(
                kind=kind,
                current_stock=current_stock,
                threshold_quantity=rule.min_quantity,
                days_left=velocity.days_left if velocity else None,
            )
        return Ok()

    if isinstance(rule, DaysRule):
        if velocity is None:
            return Ok(reason="no_velocity")
        if velocity.is_below_days_threshold(rule.min_days):
            return Breach(
                kind=AlertKind.LOW_VELOCITY,
                current_stock=current_stock,
                threshold_days=rule.min_days,
                days_left=velocity.days_left,
            )
        return Ok()

    raise TypeError(f"Unhandled threshold rule: {rule!r}")
