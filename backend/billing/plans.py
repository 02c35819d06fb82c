"""
Pricing plans and the threshold cap.

Plans are not stored: they are derived from the user's subscription fields
every time alerts are evaluated. FREE users get their first N thresholds
(oldest first) evaluated; everything after that is reported as skipped.
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, TypeVar

from core.clock import utcnow

FREE_MAX_THRESHOLDS = 50


@dataclass(frozen=True)
class Plan:
    name: str
    max_thresholds: float  # math.inf when unbounded

    @property
    def is_unbounded(self) -> bool:
        return math.isinf(self.max_thresholds)


PRO = Plan(name="PRO", max_thresholds=math.inf)


def free_plan(max_thresholds: int = FREE_MAX_THRESHOLDS) -> Plan:
    return Plan(name="FREE", max_thresholds=max_thresholds)


FREE = free_plan()


class Subscriber(Protocol):
    subscription_status: str
    subscription_ends_at: datetime | None


def get_plan_for_user(
    user: Subscriber,
    *,
    now: datetime | None = None,
    free_max_thresholds: int = FREE_MAX_THRESHOLDS,
) -> Plan:
    """Active subscribers are PRO; cancelled ones stay PRO until the paid period ends."""
    now = now or utcnow()
    if user.subscription_status == "active":
        return PRO
    if user.subscription_status == "cancelled" and user.subscription_ends_at is not None:
        if user.subscription_ends_at > now:
            return PRO
    if free_max_thresholds == FREE_MAX_THRESHOLDS:
        return FREE
    return free_plan(free_max_thresholds)


T = TypeVar("T")


def split_by_plan(ordered_thresholds: Sequence[T], plan: Plan) -> tuple[list[T], list[T]]:
    """Split an already-ordered threshold list into (evaluated, skipped).

    The caller owns the ordering; it must be stable across runs
    (creation time, then id) so the same thresholds stay active.
    """
    if plan.is_unbounded:
        return list(ordered_thresholds), []
    limit = max(int(plan.max_thresholds), 0)
    return list(ordered_thresholds[:limit]), list(ordered_thresholds[limit:])
