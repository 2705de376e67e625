import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

from models import Frequency, PeriodType, SourcePeriod

logger = logging.getLogger(__name__)

AVERAGE_DAYS_PER_MONTH = Decimal("30.44")

_PERIOD_FACTORS = {
    PeriodType.monthly: Decimal("1"),
    PeriodType.bi_monthly: Decimal("0.5"),
    PeriodType.weekly: Decimal("7") / AVERAGE_DAYS_PER_MONTH,
}

# Multiplier turning one charge at the given frequency into a per-month amount.
_MONTHLY_FACTORS = {
    Frequency.weekly: AVERAGE_DAYS_PER_MONTH / Decimal("7"),
    Frequency.biweekly: AVERAGE_DAYS_PER_MONTH / Decimal("14"),
    Frequency.semi_monthly: Decimal("2"),
    Frequency.monthly: Decimal("1"),
    Frequency.quarterly: Decimal("1") / Decimal("3"),
    Frequency.annually: Decimal("1") / Decimal("12"),
    Frequency.custom: Decimal("1"),
}

_BUDGET_MONTHLY_FACTORS = {
    Frequency.weekly: AVERAGE_DAYS_PER_MONTH / Decimal("7"),
    Frequency.monthly: Decimal("1"),
    Frequency.quarterly: Decimal("1") / Decimal("3"),
    Frequency.annually: Decimal("1") / Decimal("12"),
    Frequency.custom: Decimal("1"),
}


def _to_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def coerce_period_type(value: Union[PeriodType, str, None]) -> PeriodType:
    if isinstance(value, PeriodType):
        return value
    try:
        return PeriodType(str(value).upper())
    except ValueError:
        logger.warning(f"allocation: unknown period_type={value!r} using MONTHLY")
        return PeriodType.monthly


def allocate(amount_cents: int, period_type: Union[PeriodType, str]) -> int:
    """Share of a per-month amount that applies to one period of ``period_type``."""
    factor = _PERIOD_FACTORS[coerce_period_type(period_type)]
    return _to_cents(Decimal(abs(amount_cents)) * factor)


def allocate_by_duration(amount_cents: int, source_period: SourcePeriod) -> int:
    """Day-count variant: ``amount * actual_days / 30.44``."""
    coerce_period_type(source_period.type)
    days = Decimal(source_period.day_count)
    return _to_cents(Decimal(abs(amount_cents)) * days / AVERAGE_DAYS_PER_MONTH)


def allocate_for_period(amount_cents: int, source_period: SourcePeriod) -> int:
    period_type = coerce_period_type(source_period.type)
    share = allocate(amount_cents, period_type)
    if period_type == PeriodType.bi_monthly and source_period.bi_monthly_half == 2:
        # Second half takes the rounding remainder so both halves sum exactly.
        return abs(amount_cents) - share
    return share


def monthly_equivalent(
    amount_cents: int, frequency: Union[Frequency, str], *, budget: bool = False
) -> int:
    factors = _BUDGET_MONTHLY_FACTORS if budget else _MONTHLY_FACTORS
    try:
        factor = factors[Frequency(frequency)]
    except (KeyError, ValueError):
        logger.warning(f"allocation: unknown frequency={frequency!r} using MONTHLY")
        factor = Decimal("1")
    return _to_cents(Decimal(abs(amount_cents)) * factor)
