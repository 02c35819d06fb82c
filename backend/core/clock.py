"""Naive-UTC clock helpers (all DateTime columns store naive UTC)."""

from datetime import date, datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def utc_date(value: datetime | date) -> date:
    """Calendar date in UTC for a datetime; dates pass through unchanged."""
    if isinstance(value, datetime):
        return to_naive_utc(value).date()
    return value
