from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationError


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    first = month_start(d)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


@dataclass(frozen=True, order=True)
class YearMonth:
    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValidationError(f"Month must be between 1 and 12, got {self.month}")
        if not 1 <= self.year <= 9998:
            raise ValidationError(f"Year out of range: {self.year}")

    @classmethod
    def from_date(cls, d: date) -> "YearMonth":
        return cls(d.year, d.month)

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        return month_end(self.start)

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def next(self) -> "YearMonth":
        return YearMonth.from_date(add_months(self.start, 1))


def iter_months(start: date, end: date) -> Iterator[YearMonth]:
    """Every calendar month touched by ``[start, end]``, both ends inclusive."""
    current = YearMonth.from_date(start)
    last = YearMonth.from_date(end)
    while current <= last:
        yield current
        current = current.next()


def affected_periods(
    new_date: date, old_date: Optional[date] = None
) -> set[YearMonth]:
    """Months whose aggregates a ledger mutation invalidates.

    Create passes only the new date, an edit passes the previous date as well,
    and soft delete or restore pass the row's own date.
    """
    periods = {YearMonth.from_date(new_date)}
    if old_date is not None:
        periods.add(YearMonth.from_date(old_date))
    return periods


@dataclass(frozen=True)
class Period:
    slug: str
    start: Optional[date]
    end: date


TIME_RANGE_MONTHS: dict[str, Optional[int]] = {
    "current": 1,
    "quarter": 3,
    "semester": 6,
    "year": 12,
    "full": None,
}


def resolve_time_range(time_range: str, *, today: Optional[date] = None) -> Period:
    if time_range not in TIME_RANGE_MONTHS:
        allowed = ", ".join(TIME_RANGE_MONTHS)
        raise ValidationError(f"time_range must be one of: {allowed}")
    today = today or local_today()
    months_back = TIME_RANGE_MONTHS[time_range]
    if months_back is None:
        return Period(time_range, None, today)
    return Period(time_range, add_months(today, -months_back), today)


def previous_period(time_range: str, *, today: Optional[date] = None) -> Optional[Period]:
    """The equally long window right before ``time_range``; None for full history."""
    if time_range not in TIME_RANGE_MONTHS:
        allowed = ", ".join(TIME_RANGE_MONTHS)
        raise ValidationError(f"time_range must be one of: {allowed}")
    today = today or local_today()
    months_back = TIME_RANGE_MONTHS[time_range]
    if months_back is None:
        return None
    start = add_months(today, -(months_back * 2))
    end = add_months(today, -months_back) - date.resolution
    return Period(f"previous_{time_range}", start, end)
