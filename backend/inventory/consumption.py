"""
Consumption Aggregator — raw sale lines to daily per-variant totals.

Runs inside each tenant's sync after the stock snapshot is written.

Algorithm:
  key     = (variant_id, UTC calendar date of the document)
  total   = Σ quantity_sold over lines with that key
  docs    = count of distinct document ids (lines without an id count once each)

Persistence is an upsert on (tenant, variant, date) that REPLACES the
stored total, so re-running the trailing window daily never double-counts.
Stored rows inside the window that received no fresh sales are reset to 0.

Agent: data-engineer
Skill: postgresql
"""

import uuid
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utc_date
from db.repositories import ConsumptionRepository
from integrations.base import DateRange, SaleLine

logger = structlog.get_logger()

DEFAULT_WINDOW_DAYS = 7


@dataclass(frozen=True)
class ConsumptionWindow:
    """Inclusive calendar-date window [start_date, end_date]."""

    start_date: date
    end_date: date

    @classmethod
    def trailing(cls, as_of: datetime | date, days: int = DEFAULT_WINDOW_DAYS) -> "ConsumptionWindow":
        if days < 1:
            raise ValueError("window must cover at least one day")
        end = utc_date(as_of)
        return cls(start_date=end - timedelta(days=days - 1), end_date=end)

    @property
    def days(self) -> int:
        return (self.end_date - self.start_date).days + 1

    def contains(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def to_date_range(self) -> DateRange:
        """Half-open datetime range covering every day of the window."""
        return DateRange(
            start=datetime.combine(self.start_date, time.min),
            end=datetime.combine(self.end_date + timedelta(days=1), time.min),
        )


@dataclass(frozen=True)
class DailyConsumptionInput:
    variant_id: int
    consumption_date: date
    quantity_sold: int
    document_count: int

    def as_row(self) -> dict:
        return {
            "variant_id": self.variant_id,
            "consumption_date": self.consumption_date,
            "quantity_sold": self.quantity_sold,
            "document_count": self.document_count,
        }


def aggregate_sales(lines: Iterable[SaleLine]) -> list[DailyConsumptionInput]:
    """Collapse sale lines into one row per (variant, date), sorted by key."""
    quantities: dict[tuple[int, date], int] = defaultdict(int)
    documents: dict[tuple[int, date], set] = defaultdict(set)
    anonymous_docs: dict[tuple[int, date], int] = defaultdict(int)

    for line in lines:
        key = (line.variant_id, utc_date(line.document_date))
        quantities[key] += line.quantity_sold
        if line.document_id is None:
            anonymous_docs[key] += 1
        else:
            documents[key].add(line.document_id)

    return [
        DailyConsumptionInput(
            variant_id=variant_id,
            consumption_date=day,
            quantity_sold=quantities[(variant_id, day)],
            document_count=len(documents[(variant_id, day)]) + anonymous_docs[(variant_id, day)],
        )
        for variant_id, day in sorted(quantities)
    ]


class ConsumptionAggregator:
    """Persists aggregated consumption for one tenant inside its transaction."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = ConsumptionRepository(db)

    async def sync(
        self,
        tenant_id: uuid.UUID,
        lines: Iterable[SaleLine],
        window: ConsumptionWindow,
    ) -> list[DailyConsumptionInput]:
        rows = aggregate_sales(lines)
        in_window = [row for row in rows if window.contains(row.consumption_date)]
        if len(in_window) != len(rows):
            logger.warning(
                "consumption.lines_outside_window",
                tenant_id=str(tenant_id),
                dropped=len(rows) - len(in_window),
                start=window.start_date.isoformat(),
                end=window.end_date.isoformat(),
            )

        await self.repo.upsert_window(
            tenant_id,
            window.start_date,
            window.end_date,
            [row.as_row() for row in in_window],
        )
        logger.info(
            "consumption.synced",
            tenant_id=str(tenant_id),
            rows=len(in_window),
            units=sum(row.quantity_sold for row in in_window),
        )
        return in_window
