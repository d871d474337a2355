from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def is_current_month(year: int, month: int, today: Optional[date] = None) -> bool:
    today = today or local_today()
    return year == today.year and month == today.month


def remaining_days(year: int, month: int, today: Optional[date] = None) -> int:
    """Days left in the month including today; 0 for any other month."""
    today = today or local_today()
    if not is_current_month(year, month, today):
        return 0
    return max(0, days_in_month(year, month) - today.day + 1)


def resolve_period(period: Optional[str], *, today: Optional[date] = None) -> Period:
    today = today or local_today()
    if period == "today":
        return Period("today", today, today)
    if period == "yesterday":
        yesterday = today - timedelta(days=1)
        return Period("yesterday", yesterday, yesterday)
    if period == "week":
        # weeks start on Sunday
        start = today - timedelta(days=(today.weekday() + 1) % 7)
        return Period("week", start, today)
    if period in (None, "", "month"):
        return Period("month", today.replace(day=1), today)
    raise ValueError(f"Unknown period: {period}")
