"""Occurrence bookkeeping and the derived status of a period instance.

Status is never stored as a source of truth: ``recalculate`` rebuilds it from
the occurrence arrays (streams) or from spent/allocated (budgets) every time
an instance is matched, reconciled or refreshed.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from models import (
    Frequency,
    ObligationKind,
    PaymentType,
    PeriodInstance,
    PeriodStatus,
)

DUE_SOON_DAYS = 3
OVERDUE_GRACE_DAYS = 1
PREFERRED_UNPAID_WINDOW_DAYS = 14
MAX_MATCH_DISTANCE_DAYS = 30
ADVANCE_PAYMENT_DAYS = 7
EXTRA_PRINCIPAL_RATIO = 1.1

_OCCURRENCE_UNITS = {
    Frequency.weekly: ("week", "weeks"),
    Frequency.biweekly: ("paycheck", "paychecks"),
    Frequency.semi_monthly: ("payment", "payments"),
    Frequency.monthly: ("month", "months"),
    Frequency.quarterly: ("quarter", "quarters"),
    Frequency.annually: ("year", "years"),
}


def _grow(values: list, size: int, default) -> list:
    values = list(values or [])
    if len(values) < size:
        values.extend([default] * (size - len(values)))
    return values[:size]


@dataclass
class OccurrenceSet:
    due_dates: list[str] = field(default_factory=list)
    paid_flags: list[bool] = field(default_factory=list)
    transaction_ids: list[Optional[str]] = field(default_factory=list)
    amounts: list[int] = field(default_factory=list)
    draw_dates: list[Optional[str]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._normalize(len(self.due_dates))

    def _normalize(self, size: int) -> None:
        self.due_dates = _grow(self.due_dates, size, None)
        self.paid_flags = [bool(flag) for flag in _grow(self.paid_flags, size, False)]
        self.transaction_ids = _grow(self.transaction_ids, size, None)
        self.amounts = [int(value or 0) for value in _grow(self.amounts, size, 0)]
        self.draw_dates = _grow(self.draw_dates, size, None)

    @classmethod
    def from_instance(cls, instance: PeriodInstance) -> "OccurrenceSet":
        return cls(
            due_dates=instance.occurrence_due_dates,
            paid_flags=instance.occurrence_paid_flags,
            transaction_ids=instance.occurrence_transaction_ids,
            amounts=instance.occurrence_amounts,
            draw_dates=instance.occurrence_draw_dates,
        )

    @classmethod
    def from_dates(cls, due_dates, draw_dates=()) -> "OccurrenceSet":
        return cls(
            due_dates=[value.isoformat() for value in due_dates],
            draw_dates=[value.isoformat() for value in draw_dates],
        )

    def __len__(self) -> int:
        return len(self.due_dates)

    @property
    def dates(self) -> list[Optional[date]]:
        return [date.fromisoformat(value) if value else None for value in self.due_dates]

    @property
    def paid_count(self) -> int:
        return sum(1 for flag in self.paid_flags if flag)

    @property
    def total_paid_cents(self) -> int:
        return sum(self.amounts)

    @property
    def is_fully_paid(self) -> bool:
        return len(self) > 0 and self.paid_count == len(self)

    def earliest_unpaid(self) -> Optional[date]:
        unpaid = [
            d for d, paid in zip(self.dates, self.paid_flags) if d and not paid
        ]
        return min(unpaid) if unpaid else None

    def mark_paid(self, index: int, transaction_id: str, amount_cents: int) -> None:
        if index < 0:
            raise IndexError(f"Invalid occurrence index {index}")
        if index >= len(self.due_dates):
            self._normalize(index + 1)
        self.paid_flags[index] = True
        self.transaction_ids[index] = transaction_id
        self.amounts[index] = abs(amount_cents)

    def clear_transaction(self, transaction_id: str) -> list[int]:
        cleared = []
        for index, linked in enumerate(self.transaction_ids):
            if linked == transaction_id:
                self.paid_flags[index] = False
                self.transaction_ids[index] = None
                self.amounts[index] = 0
                cleared.append(index)
        return cleared

    def apply_to(self, instance: PeriodInstance) -> None:
        instance.occurrence_due_dates = list(self.due_dates)
        instance.occurrence_paid_flags = list(self.paid_flags)
        instance.occurrence_transaction_ids = list(self.transaction_ids)
        instance.occurrence_amounts = list(self.amounts)
        instance.occurrence_draw_dates = list(self.draw_dates)


def find_best_occurrence(
    transaction_date: date, due_dates: list[Optional[date]], paid_flags: list[bool]
) -> Optional[int]:
    """Index of the occurrence a payment on ``transaction_date`` belongs to.

    An unpaid occurrence within 14 days beats any paid one, otherwise the
    nearest occurrence within 30 days wins. Anything further is no match.
    """
    best_any: Optional[int] = None
    best_any_distance = None
    best_unpaid: Optional[int] = None
    best_unpaid_distance = None
    for index, due in enumerate(due_dates):
        if due is None:
            continue
        distance = abs((transaction_date - due).days)
        if best_any_distance is None or distance < best_any_distance:
            best_any, best_any_distance = index, distance
        paid = index < len(paid_flags) and paid_flags[index]
        if not paid and (best_unpaid_distance is None or distance < best_unpaid_distance):
            best_unpaid, best_unpaid_distance = index, distance

    if best_unpaid is not None and best_unpaid_distance <= PREFERRED_UNPAID_WINDOW_DAYS:
        return best_unpaid
    if best_any is not None and best_any_distance <= MAX_MATCH_DISTANCE_DAYS:
        return best_any
    return None


def determine_payment_type(
    amount_cents: int, expected_cents: int, transaction_date: date, due_date: date
) -> PaymentType:
    if expected_cents and abs(amount_cents) > expected_cents * EXTRA_PRINCIPAL_RATIO:
        return PaymentType.extra_principal
    days_early = (due_date - transaction_date).days
    if days_early > ADVANCE_PAYMENT_DAYS:
        return PaymentType.advance
    if days_early < 0:
        return PaymentType.catch_up
    return PaymentType.regular


def stream_status(
    kind: ObligationKind,
    occurrences: OccurrenceSet,
    today: date,
) -> PeriodStatus:
    if len(occurrences) == 0:
        return PeriodStatus.not_expected

    paid_count = occurrences.paid_count
    if occurrences.is_fully_paid:
        if kind == ObligationKind.inflow:
            return PeriodStatus.received
        due_dates = [value for value in occurrences.dates if value]
        if due_dates and max(due_dates) > today:
            return PeriodStatus.paid_early
        return PeriodStatus.paid

    earliest_unpaid = occurrences.earliest_unpaid()
    if earliest_unpaid is not None and (today - earliest_unpaid).days > OVERDUE_GRACE_DAYS:
        return PeriodStatus.overdue
    if paid_count > 0:
        return PeriodStatus.partial
    if earliest_unpaid is not None and 0 <= (earliest_unpaid - today).days <= DUE_SOON_DAYS:
        return PeriodStatus.due_soon
    return PeriodStatus.pending


def budget_status(allocated_cents: int, spent_cents: int) -> PeriodStatus:
    if spent_cents <= 0:
        return PeriodStatus.not_expected if allocated_cents <= 0 else PeriodStatus.pending
    if spent_cents < allocated_cents:
        return PeriodStatus.partial
    if spent_cents == allocated_cents:
        return PeriodStatus.paid
    return PeriodStatus.over_budget


def occurrence_status_text(
    frequency: Frequency, paid_count: int, total: int
) -> Optional[str]:
    if total == 0:
        return None
    singular, plural = _OCCURRENCE_UNITS.get(frequency, ("payment", "payments"))
    unit = singular if total == 1 else plural
    return f"{paid_count} of {total} {unit} paid"


def recalculate(
    instance: PeriodInstance, today: date, *, now: Optional[datetime] = None
) -> PeriodInstance:
    """Refresh every derived field of ``instance`` in place."""
    if instance.kind == ObligationKind.budget:
        spent = max(instance.spent_cents, 0)
        instance.spent_cents = spent
        instance.remaining_cents = instance.allocated_amount_cents - spent
        instance.total_paid_cents = spent
        instance.total_unpaid_cents = max(0, instance.allocated_amount_cents - spent)
        instance.is_fully_paid = (
            instance.allocated_amount_cents > 0
            and spent >= instance.allocated_amount_cents
        )
        instance.is_partially_paid = spent > 0 and not instance.is_fully_paid
        instance.status = budget_status(instance.allocated_amount_cents, spent)
        instance.status_text = None
    else:
        occurrences = OccurrenceSet.from_instance(instance)
        occurrences.apply_to(instance)
        total_paid = occurrences.total_paid_cents
        paid_count = occurrences.paid_count
        instance.number_of_occurrences = len(occurrences)
        instance.number_of_occurrences_paid = paid_count
        instance.total_paid_cents = total_paid
        instance.total_unpaid_cents = max(0, instance.expected_amount_cents - total_paid)
        instance.remaining_cents = instance.total_unpaid_cents
        instance.is_fully_paid = occurrences.is_fully_paid
        instance.is_partially_paid = paid_count > 0 and not instance.is_fully_paid
        instance.status = stream_status(instance.kind, occurrences, today)
        instance.status_text = occurrence_status_text(
            instance.frequency, paid_count, len(occurrences)
        )
    instance.last_calculated = now or datetime.combine(today, datetime.min.time())
    return instance
