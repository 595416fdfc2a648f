import calendar
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationError


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def bounds(self) -> tuple[datetime, datetime]:
        """First and last instant of the period, both inclusive."""
        return datetime.combine(self.start, time.min), datetime.combine(
            self.end, time.max
        )


def now_local() -> datetime:
    """Wall-clock time in the household timezone, stored naive."""
    return datetime.now(ZoneInfo(get_settings().timezone)).replace(tzinfo=None)


def today_local() -> date:
    return now_local().date()


def add_months(d: date, count: int) -> date:
    month_index = d.year * 12 + (d.month - 1) + count
    return date(month_index // 12, month_index % 12 + 1, 1)


def month_period(year: int, month: int) -> Period:
    last_day = calendar.monthrange(year, month)[1]
    return Period(
        f"{year:04d}-{month:02d}", date(year, month, 1), date(year, month, last_day)
    )


def current_month(today: Optional[date] = None) -> Period:
    today = today or today_local()
    return month_period(today.year, today.month)


def trailing_months(count: int, today: Optional[date] = None) -> list[Period]:
    """``count`` consecutive months ending with the current one, oldest first."""
    today = today or today_local()
    first = today.replace(day=1)
    months = []
    for offset in range(count - 1, -1, -1):
        d = add_months(first, -offset)
        months.append(month_period(d.year, d.month))
    return months


def month_key(value: Union[date, datetime]) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def month_label(key: str) -> str:
    year, month = key.split("-")
    return f"{calendar.month_name[int(month)]} {year}"


def short_month_label(key: str) -> str:
    return calendar.month_abbr[int(key.split("-")[1])]


def resolve_range(
    date_from: Optional[date], date_to: Optional[date]
) -> tuple[Optional[datetime], Optional[datetime]]:
    if date_from and date_to and date_from > date_to:
        raise ValidationError("Start date must be before end date")
    start = datetime.combine(date_from, time.min) if date_from else None
    end = datetime.combine(date_to, time.max) if date_to else None
    return start, end
