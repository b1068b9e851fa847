"""Time buckets for trend charts.

A trend covers a window of calendar dates split into day, ISO week (starting
Monday), calendar month or calendar year buckets. Every bucket in the window
is emitted, including empty ones, and each carries the running net income of
all buckets up to and including itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Iterable, Iterator, Optional

from config import get_settings
from errors import ValidationError
from periods import add_months


class Granularity(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


# Bucket counts a chart reads comfortably; the selector never exceeds them.
DISPLAY_TARGETS: dict[Granularity, int] = {
    Granularity.daily: 14,
    Granularity.weekly: 14,
    Granularity.monthly: 36,
}


@dataclass(frozen=True)
class TimeWindow:
    start: Optional[date]
    end: date

    def __post_init__(self) -> None:
        if self.start is not None and self.start > self.end:
            raise ValidationError("date_from must not be after date_to")


@dataclass(frozen=True)
class TrendBucket:
    granularity: Granularity
    period: str
    period_start: date
    period_end: date
    income_cents: int
    expenses_cents: int
    net_income_cents: int
    cumulative_net_income_cents: int


# Default chart granularity for each time-range preset.
PRESET_GRANULARITY: dict[str, Granularity] = {
    "current": Granularity.weekly,
    "quarter": Granularity.weekly,
    "semester": Granularity.monthly,
    "year": Granularity.monthly,
    "full": Granularity.yearly,
}


def preset_granularity(time_range: Optional[str]) -> Optional[Granularity]:
    if time_range is None:
        return None
    return PRESET_GRANULARITY.get(time_range)


def bucket_start(d: date, granularity: Granularity) -> date:
    if granularity == Granularity.daily:
        return d
    if granularity == Granularity.weekly:
        return d - timedelta(days=d.weekday())
    if granularity == Granularity.monthly:
        return d.replace(day=1)
    return date(d.year, 1, 1)


def next_bucket(start: date, granularity: Granularity) -> date:
    if granularity == Granularity.daily:
        return start + timedelta(days=1)
    if granularity == Granularity.weekly:
        return start + timedelta(days=7)
    if granularity == Granularity.monthly:
        return add_months(start, 1)
    return date(start.year + 1, 1, 1)


def bucket_label(start: date, granularity: Granularity) -> str:
    if granularity == Granularity.daily:
        return start.isoformat()
    if granularity == Granularity.weekly:
        iso_year, iso_week, _ = start.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    if granularity == Granularity.monthly:
        return f"{start.year:04d}-{start.month:02d}"
    return f"{start.year:04d}"


def iter_buckets(start: date, end: date, granularity: Granularity) -> Iterator[date]:
    current = bucket_start(start, granularity)
    while current <= end:
        yield current
        current = next_bucket(current, granularity)


def bucket_count(start: date, end: date, granularity: Granularity) -> int:
    if end < start:
        return 0
    if granularity == Granularity.daily:
        return (end - start).days + 1
    if granularity == Granularity.weekly:
        first = bucket_start(start, granularity)
        last = bucket_start(end, granularity)
        return (last - first).days // 7 + 1
    if granularity == Granularity.monthly:
        return (end.year * 12 + end.month) - (start.year * 12 + start.month) + 1
    return end.year - start.year + 1


def select_granularity(window: TimeWindow) -> Granularity:
    """Finest granularity whose bucket count fits the chart; yearly for full history."""
    if window.start is None:
        return Granularity.yearly
    for granularity in (Granularity.daily, Granularity.weekly, Granularity.monthly):
        if bucket_count(window.start, window.end, granularity) <= DISPLAY_TARGETS[granularity]:
            return granularity
    return Granularity.yearly


def validate_granularity(
    granularity: Granularity,
    window: TimeWindow,
    max_buckets: Optional[dict[str, int]] = None,
) -> None:
    if window.start is None:
        return
    limits = max_buckets or get_settings().max_buckets
    limit = limits.get(granularity.value)
    if limit is None:
        return
    count = bucket_count(window.start, window.end, granularity)
    if count > limit:
        raise ValidationError(
            f"{granularity.value.capitalize()} granularity would produce {count} "
            f"buckets for {window.start.isoformat()}..{window.end.isoformat()}; "
            f"at most {limit} are supported, choose a coarser granularity"
        )


def accumulate(
    rows: Iterable[tuple[date, bool, int]], granularity: Granularity
) -> dict[date, list[int]]:
    """Sum ``(day, is_income, cents)`` rows into ``{bucket_start: [income, expenses]}``."""
    totals: dict[date, list[int]] = {}
    for day, is_income, cents in rows:
        key = bucket_start(day, granularity)
        bucket = totals.setdefault(key, [0, 0])
        if is_income:
            bucket[0] += int(cents)
        else:
            bucket[1] += int(cents)
    return totals


def build_trend(
    totals: dict[date, list[int]],
    start: date,
    end: date,
    granularity: Granularity,
) -> list[TrendBucket]:
    out: list[TrendBucket] = []
    cumulative = 0
    for current in iter_buckets(start, end, granularity):
        income, expenses = totals.get(current, (0, 0))
        net = income - expenses
        cumulative += net
        out.append(
            TrendBucket(
                granularity=granularity,
                period=bucket_label(current, granularity),
                period_start=current,
                period_end=next_bucket(current, granularity) - date.resolution,
                income_cents=income,
                expenses_cents=expenses,
                net_income_cents=net,
                cumulative_net_income_cents=cumulative,
            )
        )
    return out
