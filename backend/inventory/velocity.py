"""
Velocity Calculator — rolling daily consumption and days of stock left.

  daily_consumption = Σ units sold over the trailing window (as-of date inclusive) / window
  days_left         = max(stock, 0) / daily_consumption      (daily_consumption > 0)
                    = ∞                                      (daily_consumption == 0)

A product with stock and no recent sales is never "running out" by velocity.
"""

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from core.clock import utc_date
from db.repositories import ConsumptionPoint

DEFAULT_WINDOW_DAYS = 7


@dataclass(frozen=True)
class VelocityInfo:
    daily_consumption: float
    days_left: float
    current_stock: int
    window_days: int = DEFAULT_WINDOW_DAYS

    def is_below_days_threshold(self, min_days: float) -> bool:
        # Strict: exactly at the bound is not yet a breach; inf is never below
        return self.days_left < min_days


def calculate_velocity(
    points: Iterable[ConsumptionPoint],
    current_stock: int,
    as_of: datetime | date,
    window_days: int = DEFAULT_WINDOW_DAYS,
) -> VelocityInfo:
    if window_days < 1:
        raise ValueError("window_days must be at least 1")

    end = utc_date(as_of)
    start = end - timedelta(days=window_days - 1)
    total = sum(p.quantity_sold for p in points if start <= p.consumption_date <= end)

    daily = total / window_days
    if daily > 0:
        days_left = max(current_stock, 0) / daily
    else:
        days_left = math.inf

    return VelocityInfo(
        daily_consumption=daily,
        days_left=days_left,
        current_stock=current_stock,
        window_days=window_days,
    )
