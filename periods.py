import calendar
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class MonthPeriod:
    year: int
    month: int
    start: date
    end: date

    @property
    def name(self) -> str:
        return f"{calendar.month_name[self.month]} {self.year}"


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_period(year: int, month: int) -> MonthPeriod:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return MonthPeriod(year, month, first, next_month - date.resolution)


def resolve_month(
    month: Optional[int], year: Optional[int], *, today: Optional[date] = None
) -> MonthPeriod:
    if month is None or year is None:
        today = today or local_today()
        month = month if month is not None else today.month
        year = year if year is not None else today.year
    return month_period(year, month)


def shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    total = year * 12 + (month - 1) + delta
    return total // 12, total % 12 + 1


def trailing_months(count: int, *, today: Optional[date] = None) -> list[MonthPeriod]:
    """The ``count`` calendar months ending with the current one, oldest first."""
    today = today or local_today()
    periods = []
    for back in range(count - 1, -1, -1):
        year, month = shift_month(today.year, today.month, -back)
        periods.append(month_period(year, month))
    return periods
