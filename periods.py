from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import BudgetType


@dataclass(frozen=True)
class Period:
    """A closed ``[start, end]`` window over naive UTC timestamps."""

    start: datetime
    end: datetime

    def covers(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def month_period(today: date) -> Period:
    first = today.replace(day=1)
    last = first.replace(day=days_in_month(first.year, first.month))
    return Period(datetime.combine(first, time.min), datetime.combine(last, time.max))


def year_period(today: date) -> Period:
    return Period(
        datetime.combine(date(today.year, 1, 1), time.min),
        datetime.combine(date(today.year, 12, 31), time.max),
    )


def default_period(budget_type: BudgetType, *, today: Optional[date] = None) -> Period:
    today = today or local_today()
    if budget_type == BudgetType.yearly:
        return year_period(today)
    return month_period(today)
