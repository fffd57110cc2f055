"""
Billing period arithmetic. Periods are calendar months in UTC, half-open.
"""

from datetime import date, datetime, timezone
from typing import Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc_date(moment: datetime) -> date:
    """Calendar date of ``moment`` in UTC. Naive datetimes are taken as UTC."""
    if moment.tzinfo is None:
        return moment.date()
    return moment.astimezone(timezone.utc).date()


def billing_period(moment: datetime) -> Tuple[date, date]:
    """Return ``(first day of the month, first day of the next month)`` for ``moment``."""
    today = as_utc_date(moment)
    start = today.replace(day=1)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def in_period(moment: datetime, period_start: date, period_end: date) -> bool:
    """True if ``moment`` falls inside ``[period_start, period_end)``."""
    return period_start <= as_utc_date(moment) < period_end


def seconds_until(moment: datetime, boundary: date) -> int:
    """Whole seconds from ``moment`` until midnight UTC at ``boundary``."""
    target = datetime(boundary.year, boundary.month, boundary.day, tzinfo=timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return max(0, int((target - moment).total_seconds()))
