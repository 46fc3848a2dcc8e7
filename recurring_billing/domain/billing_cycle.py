"""Billing cycle date arithmetic."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from dateutil.relativedelta import relativedelta

MAX_CYCLES = 1000

Number = Union[int, float]


def next_order_date(period: str, duration: Number, start: Optional[datetime] = None) -> datetime:
    """
    Return the date one billing cycle after ``start``.

    Args:
        period: day, week, month or year (anything else counts as year)
        duration: number of periods in one cycle
        start: date the cycle starts from, defaults to now

    Returns:
        A new datetime; ``start`` is never modified.
    """
    start = start or datetime.now(timezone.utc)
    if period == "day":
        return start + timedelta(days=duration)
    if period == "week":
        return start + timedelta(days=duration * 7)
    if period == "month":
        # relativedelta clamps Jan 31 + 1 month to the last day of February
        return start + relativedelta(months=int(duration))
    return start + relativedelta(years=int(duration))


def end_date(
    start: datetime,
    period: str,
    duration: Number,
    cycles_max: Optional[int],
) -> datetime:
    """
    Return the date a subscription ends after ``cycles_max`` cycles.

    Unbounded subscriptions (unset, zero, negative or more than
    ``MAX_CYCLES`` cycles) end ``MAX_CYCLES`` years after ``start``.
    """
    if not cycles_max or cycles_max <= 0 or cycles_max > MAX_CYCLES:
        return start + relativedelta(years=MAX_CYCLES)
    result = start
    for _ in range(int(cycles_max)):
        result = next_order_date(period, duration, result)
    return result
