from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import BudgetPeriod


@dataclass(frozen=True)
class Period:
    start: datetime
    end: datetime


def local_now() -> datetime:
    """Current wall-clock time in the configured timezone, without tzinfo.

    All timestamps are stored naive in that zone, so comparisons against the
    database never mix aware and naive values.
    """
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone)).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def to_local_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    settings = get_settings()
    return value.astimezone(ZoneInfo(settings.timezone)).replace(tzinfo=None)


def window_start(period: BudgetPeriod, now: datetime) -> datetime:
    today = now.date()
    if period == BudgetPeriod.daily:
        start = today
    elif period == BudgetPeriod.weekly:
        start = today - timedelta(days=today.weekday())
    elif period == BudgetPeriod.monthly:
        start = today.replace(day=1)
    elif period == BudgetPeriod.quarterly:
        quarter_start_month = ((today.month - 1) // 3) * 3 + 1
        start = today.replace(month=quarter_start_month, day=1)
    elif period == BudgetPeriod.yearly:
        start = today.replace(month=1, day=1)
    else:
        raise ValueError(f"Unsupported budget period: {period}")
    return datetime.combine(start, time.min)


def current_window(period: BudgetPeriod, now: Optional[datetime] = None) -> Period:
    now = now or local_now()
    return Period(window_start(period, now), now)


def resolve_range(
    start: Optional[datetime],
    end: Optional[datetime],
    *,
    default_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Period:
    now = now or local_now()
    end_value = to_local_naive(end) if end else now
    if start:
        start_value = to_local_naive(start)
    elif default_days is not None:
        start_value = end_value - timedelta(days=default_days)
    else:
        raise ValueError("Start date is required")
    if start_value > end_value:
        raise ValueError("Start date must be before end date")
    return Period(start_value, end_value)
