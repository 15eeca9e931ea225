from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from errors import InvalidArgument


REPORT_PERIODS = ("day", "week", "month", "year")
WEEKDAY_LABELS = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
MONTH_LABELS = [
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
]


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime  # inclusive, last microsecond of the range


@dataclass(frozen=True)
class Bucket:
    label: str
    start: datetime
    end: datetime  # exclusive

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


def local_now(timezone: str) -> datetime:
    """Wall-clock time in ``timezone`` as a naive datetime (how dates are stored)."""
    return datetime.now(ZoneInfo(timezone)).replace(tzinfo=None)


def to_local(moment: datetime, timezone: str) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(ZoneInfo(timezone)).replace(tzinfo=None)


def _start_of(day: date) -> datetime:
    return datetime.combine(day, time.min)


def _end_of(day: date) -> datetime:
    return datetime.combine(day, time.max)


def _next_month(first: date) -> date:
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def report_range(period: Optional[str], now: datetime) -> Period:
    period = period or "month"
    today = now.date()
    if period == "day":
        return Period("day", _start_of(today), _end_of(today))
    if period == "week":
        # weeks run Sunday to Saturday
        sunday = today - timedelta(days=(today.weekday() + 1) % 7)
        return Period("week", _start_of(sunday), _end_of(sunday + timedelta(days=6)))
    if period == "month":
        first = today.replace(day=1)
        last = _next_month(first) - date.resolution
        return Period("month", _start_of(first), _end_of(last))
    if period == "year":
        return Period(
            "year",
            _start_of(date(today.year, 1, 1)),
            _end_of(date(today.year, 12, 31)),
        )
    raise InvalidArgument(
        f"Invalid period '{period}', expected one of: {', '.join(REPORT_PERIODS)}"
    )


def report_buckets(period: Period) -> list[Bucket]:
    start = period.start
    if period.slug == "day":
        day_end = start + timedelta(days=1)
        # 06:00 through 21:00; the last bucket runs to midnight
        return [
            Bucket(
                f"{hour:02d}:00",
                start + timedelta(hours=hour),
                day_end if hour == 21 else start + timedelta(hours=hour + 3),
            )
            for hour in range(6, 22, 3)
        ]
    if period.slug == "week":
        return [
            Bucket(
                WEEKDAY_LABELS[offset],
                start + timedelta(days=offset),
                start + timedelta(days=offset + 1),
            )
            for offset in range(7)
        ]
    if period.slug == "month":
        month_end = _start_of(period.end.date() + timedelta(days=1))
        buckets = []
        for week in range(4):
            week_start = start + timedelta(days=week * 7)
            # the fourth week absorbs days 29-31
            week_end = month_end if week == 3 else week_start + timedelta(days=7)
            buckets.append(Bucket(f"W{week + 1}", week_start, week_end))
        return buckets
    if period.slug == "year":
        buckets = []
        for month in range(1, 13):
            first = date(start.year, month, 1)
            buckets.append(
                Bucket(MONTH_LABELS[month - 1], _start_of(first), _start_of(_next_month(first)))
            )
        return buckets
    raise InvalidArgument(f"No time buckets for period '{period.slug}'")


def parse_bound(value: Optional[str], *, end: bool = False) -> Optional[datetime]:
    """Parse a query-string date or datetime.

    A bare ``YYYY-MM-DD`` expands to the start of that day, or to its last
    microsecond when used as an upper bound.
    """
    if value is None or not value.strip():
        return None
    value = value.strip()
    try:
        if len(value) == 10:
            day = date.fromisoformat(value)
            return _end_of(day) if end else _start_of(day)
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise InvalidArgument(f"Invalid date: {value}") from exc


def resolve_range(
    start: Optional[datetime], end: Optional[datetime], *, slug: str = "custom"
) -> Optional[Period]:
    if start is None and end is None:
        return None
    if start is not None and end is not None and start > end:
        raise InvalidArgument("Start date must be before end date")
    return Period(slug, start or datetime.min, end or datetime.max)
