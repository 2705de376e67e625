"""Canonical calendar of weekly, bi-monthly and monthly source periods.

Every boundary is computed on naive UTC datetimes: a period starts at
00:00:00.000 of its first day and ends at 23:59:59.999 of its last day.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import ClassVar, Iterator, Optional

from models import PeriodType, SourcePeriod

DAY_END = time(23, 59, 59, 999000)


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError("Start date must be before end date")

    @property
    def start_at(self) -> datetime:
        return day_start(self.start)

    @property
    def end_at(self) -> datetime:
        return day_end(self.end)


@dataclass(frozen=True)
class PeriodKey:
    """Composite id of one obligation inside one source period."""

    obligation_id: str
    source_period_id: str

    SEPARATOR: ClassVar[str] = "_"

    def __str__(self) -> str:
        return f"{self.obligation_id}{self.SEPARATOR}{self.source_period_id}"

    @property
    def id(self) -> str:
        return str(self)

    @classmethod
    def parse(cls, value: str) -> "PeriodKey":
        # Source period ids never contain the separator, obligation ids may.
        obligation_id, sep, source_period_id = value.rpartition(cls.SEPARATOR)
        if not sep or not obligation_id or not source_period_id:
            raise ValueError(f"Invalid period key: {value}")
        return cls(obligation_id, source_period_id)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_today() -> date:
    return utc_now().date()


def day_start(day: date) -> datetime:
    return datetime.combine(day, time.min)


def day_end(day: date) -> datetime:
    return datetime.combine(day, DAY_END)


def month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def sunday_on_or_before(day: date) -> date:
    # weekday(): Monday=0 ... Sunday=6
    return day - timedelta(days=(day.weekday() + 1) % 7)


def monthly_period_id(year: int, month: int) -> str:
    return f"{year}M{month:02d}"


def bi_monthly_period_id(year: int, month: int, half: int) -> str:
    return f"{year}BM{month:02d}{'A' if half == 1 else 'B'}"


def weekly_period_id(year: int, week: int) -> str:
    return f"{year}W{week:02d}"


def _period(
    period_id: str,
    period_type: PeriodType,
    start: date,
    end: date,
    year: int,
    index: int,
    now: datetime,
    **metadata: Optional[int],
) -> SourcePeriod:
    start_at = day_start(start)
    end_at = day_end(end)
    return SourcePeriod(
        id=period_id,
        type=period_type,
        start_date=start_at,
        end_date=end_at,
        year=year,
        index=index,
        is_current=start_at <= now <= end_at,
        **metadata,
    )


def monthly_periods(year: int, now: datetime) -> Iterator[SourcePeriod]:
    for month in range(1, 13):
        yield _period(
            monthly_period_id(year, month),
            PeriodType.monthly,
            date(year, month, 1),
            month_end(year, month),
            year,
            int(f"{year}{month:02d}"),
            now,
            month=month,
        )


def bi_monthly_periods(year: int, now: datetime) -> Iterator[SourcePeriod]:
    for month in range(1, 13):
        halves = (
            (1, date(year, month, 1), date(year, month, 15)),
            (2, date(year, month, 16), month_end(year, month)),
        )
        for half, start, end in halves:
            yield _period(
                bi_monthly_period_id(year, month, half),
                PeriodType.bi_monthly,
                start,
                end,
                year,
                int(f"{year}{month:02d}{half}"),
                now,
                month=month,
                bi_monthly_half=half,
            )


def weekly_periods(year: int, now: datetime) -> Iterator[SourcePeriod]:
    """Sunday-start weeks owned by ``year``.

    The year owns every week starting from the Sunday on/before Jan 1 up to,
    not including, the Sunday on/before Jan 1 of the following year, so
    consecutive years never overlap.
    """
    start = sunday_on_or_before(date(year, 1, 1))
    stop = sunday_on_or_before(date(year + 1, 1, 1))
    week = 1
    while start < stop:
        yield _week(year, week, start, now)
        start += timedelta(days=7)
        week += 1


def _week(year: int, week: int, start: date, now: datetime) -> SourcePeriod:
    return _period(
        weekly_period_id(year, week),
        PeriodType.weekly,
        start,
        start + timedelta(days=6),
        year,
        int(f"{year}{week:02d}"),
        now,
        week_number=start.isocalendar()[1],
        week_start_day=0,
    )


def build_source_periods(
    start_year: int, end_year: int, *, now: Optional[datetime] = None
) -> list[SourcePeriod]:
    if start_year > end_year:
        raise ValueError("Horizon start year must not be after end year")
    now = now or utc_now()
    periods: list[SourcePeriod] = []
    for year in range(start_year, end_year + 1):
        periods.extend(monthly_periods(year, now))
        periods.extend(bi_monthly_periods(year, now))
        periods.extend(weekly_periods(year, now))
    last_week = periods[-1]
    if last_week.end_date.date() < date(end_year, 12, 31):
        first_next = sunday_on_or_before(date(end_year + 1, 1, 1))
        periods.append(_week(end_year + 1, 1, first_next, now))
    return periods


def source_period_ids_for(day: date) -> dict[PeriodType, str]:
    """Ids of the monthly, bi-monthly and weekly periods containing ``day``."""
    half = 1 if day.day <= 15 else 2
    week_start = sunday_on_or_before(day)
    owner_year = week_start.year + 1
    while sunday_on_or_before(date(owner_year, 1, 1)) > week_start:
        owner_year -= 1
    first_week = sunday_on_or_before(date(owner_year, 1, 1))
    week = (week_start - first_week).days // 7 + 1
    return {
        PeriodType.monthly: monthly_period_id(day.year, day.month),
        PeriodType.bi_monthly: bi_monthly_period_id(day.year, day.month, half),
        PeriodType.weekly: weekly_period_id(owner_year, week),
    }
