import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional, Union

from models import Frequency, Obligation, SourcePeriod

logger = logging.getLogger(__name__)

FREQUENCY_ALIASES = {
    "YEARLY": Frequency.annually,
    "ANNUAL": Frequency.annually,
    "BI_MONTHLY": Frequency.semi_monthly,
    "BIMONTHLY": Frequency.semi_monthly,
    "SEMIMONTHLY": Frequency.semi_monthly,
    "BI_WEEKLY": Frequency.biweekly,
}

_DAY_STEPS = {
    Frequency.weekly: 7,
    Frequency.biweekly: 14,
    Frequency.semi_monthly: 15,
}

_MONTH_STEPS = {
    Frequency.monthly: 1,
    Frequency.quarterly: 3,
    Frequency.annually: 12,
}


def parse_frequency(value: Union[Frequency, str, None]) -> Frequency:
    if isinstance(value, Frequency):
        return value
    raw = str(value or "").strip().upper()
    if raw in FREQUENCY_ALIASES:
        return FREQUENCY_ALIASES[raw]
    try:
        return Frequency(raw)
    except ValueError:
        logger.warning(f"recurrence: unknown frequency={value!r} using MONTHLY")
        return Frequency.monthly


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    # Missing days clamp to the month end (Jan 31 + 1 month -> Feb 28/29).
    day = min(desired_day, days_in_month(year, month))
    return date(year, month, day)


def _step(frequency: Frequency) -> tuple[int, int]:
    """(days, months) moved by one interval of ``frequency``."""
    if frequency in _DAY_STEPS:
        return _DAY_STEPS[frequency], 0
    if frequency in _MONTH_STEPS:
        return 0, _MONTH_STEPS[frequency]
    logger.warning(f"recurrence: no interval for frequency={frequency.value} using MONTHLY")
    return 0, 1


def shift(anchor: date, frequency: Union[Frequency, str], steps: int) -> date:
    """Date ``steps`` intervals away from ``anchor``, keeping the anchor's day."""
    days, months = _step(parse_frequency(frequency))
    if days:
        return anchor + timedelta(days=days * steps)
    return _add_months(anchor, months * steps, desired_day=anchor.day)


def add_interval(value: date, frequency: Union[Frequency, str]) -> date:
    return shift(value, frequency, 1)


def subtract_interval(value: date, frequency: Union[Frequency, str]) -> date:
    return shift(value, frequency, -1)


def resolve_anchor(obligation: Obligation) -> Optional[date]:
    return obligation.predicted_next_date or obligation.last_date or obligation.first_date


def adjust_for_weekend(value: date) -> date:
    """Banks draw on the next business day: Saturday and Sunday move to Monday."""
    weekday = value.weekday()
    if weekday == 5:
        return value + timedelta(days=2)
    if weekday == 6:
        return value + timedelta(days=1)
    return value


@dataclass(frozen=True)
class OccurrenceProjection:
    due_dates: tuple[date, ...]
    amount_per_occurrence_cents: int

    @property
    def draw_dates(self) -> tuple[date, ...]:
        return tuple(adjust_for_weekend(value) for value in self.due_dates)

    @property
    def count(self) -> int:
        return len(self.due_dates)

    @property
    def total_amount_cents(self) -> int:
        return self.count * self.amount_per_occurrence_cents


def _first_step_guess(anchor: date, start: date, frequency: Frequency) -> int:
    days, months = _step(frequency)
    if days:
        return (start - anchor).days // days
    month_delta = (start.year - anchor.year) * 12 + start.month - anchor.month
    return month_delta // months


def occurrence_dates(
    anchor: date, frequency: Union[Frequency, str], start: date, end: date
) -> list[date]:
    frequency = parse_frequency(frequency)
    step = _first_step_guess(anchor, start, frequency)
    max_iterations = 64
    iterations = 0
    while shift(anchor, frequency, step) > start and iterations < max_iterations:
        step -= 1
        iterations += 1
    while shift(anchor, frequency, step) < start and iterations < max_iterations * 2:
        step += 1
        iterations += 1
    if iterations >= max_iterations * 2:
        raise ValueError(
            f"Cannot align {frequency.value} schedule anchored at {anchor} with {start}"
        )

    dates: list[date] = []
    current = shift(anchor, frequency, step)
    while current <= end:
        dates.append(current)
        step += 1
        current = shift(anchor, frequency, step)
    return dates


def project_occurrences(
    obligation: Obligation, source_period: SourcePeriod
) -> OccurrenceProjection:
    amount = abs(obligation.amount_cents)
    anchor = resolve_anchor(obligation)
    if anchor is None:
        # Not synced yet: no schedule, no occurrences.
        return OccurrenceProjection(due_dates=(), amount_per_occurrence_cents=amount)

    dates = occurrence_dates(
        anchor,
        obligation.frequency,
        source_period.start_date.date(),
        source_period.end_date.date(),
    )
    if obligation.end_date and not obligation.is_ongoing:
        dates = [value for value in dates if value <= obligation.end_date]
    return OccurrenceProjection(
        due_dates=tuple(dates), amount_per_occurrence_cents=amount
    )


def add_months(base: date, months: int) -> date:
    return _add_months(base, months, desired_day=base.day)
