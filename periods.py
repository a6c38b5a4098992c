from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date


def month_range(year: int, month: int) -> DateRange:
    start = date(year, month, 1)
    if month == 12:
        end = date(year + 1, 1, 1) - date.resolution
    else:
        end = date(year, month + 1, 1) - date.resolution
    return DateRange(start, end)


def year_range(year: int) -> DateRange:
    return DateRange(date(year, 1, 1), date(year, 12, 31))


def resolve_date_filter(
    period: str, year: Optional[int], month: Optional[int]
) -> Optional[DateRange]:
    """Map an analytics period selector onto an inclusive date range.

    ``month`` with both year and month narrows to that month, any selector
    with only a year narrows to the year, and no year means all-time (None).
    """
    if year is None:
        return None
    if period == "month" and month is not None:
        return month_range(year, month)
    return year_range(year)


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def today_local() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()
