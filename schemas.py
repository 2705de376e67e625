import datetime as dt
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import (
    Frequency,
    ObligationKind,
    PaymentType,
    PeriodStatus,
    PeriodType,
    TransactionType,
)
from recurrence import parse_frequency


class ItemError(BaseModel):
    id: str
    message: str


class BulkResult(BaseModel):
    success: bool = True
    errors: list[ItemError] = Field(default_factory=list)

    def fail(self, item_id: str, exc: Exception) -> None:
        self.errors.append(ItemError(id=item_id, message=str(exc)))
        self.success = False


class GenerateCalendarIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start_year: Optional[int] = Field(default=None, ge=1970, le=3000)
    end_year: Optional[int] = Field(default=None, ge=1970, le=3000)


class CalendarResult(BulkResult):
    total_periods: int = 0
    deleted_periods: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    current_periods: dict[str, str] = Field(default_factory=dict)
    start_year: int
    end_year: int


class CurrentSweepResult(BulkResult):
    flipped_to_false: list[str] = Field(default_factory=list)
    flipped_to_true: list[str] = Field(default_factory=list)
    current_periods: dict[str, str] = Field(default_factory=dict)


class SourcePeriodOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: PeriodType
    start_date: datetime
    end_date: datetime
    year: int
    index: int
    is_current: bool
    month: Optional[int] = None
    bi_monthly_half: Optional[int] = None
    week_number: Optional[int] = None
    week_start_day: Optional[int] = None


class ObligationIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    kind: ObligationKind
    name: str = Field(..., min_length=1, max_length=200)
    amount_cents: int
    frequency: Frequency = Frequency.monthly
    category_ids: list[str] = Field(default_factory=list)
    transaction_ids: list[str] = Field(default_factory=list)
    start_date: date
    end_date: Optional[dt.date] = None
    is_ongoing: bool = True
    group_id: Optional[str] = Field(default=None, max_length=64)
    predicted_next_date: Optional[dt.date] = None
    last_date: Optional[dt.date] = None
    first_date: Optional[dt.date] = None

    @field_validator("amount_cents")
    @classmethod
    def _magnitude(cls, value: int) -> int:
        return abs(value)

    @field_validator("frequency", mode="before")
    @classmethod
    def _frequency(cls, value):
        return parse_frequency(value)

    @field_validator("id")
    @classmethod
    def _no_separator_suffix(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value.endswith("_"):
            raise ValueError("Obligation id must not end with '_'")
        return value

    @model_validator(mode="after")
    def _check_dates(self) -> "ObligationIn":
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class ObligationUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    amount_cents: Optional[int] = None
    frequency: Optional[Frequency] = None
    category_ids: Optional[list[str]] = None
    end_date: Optional[dt.date] = None
    is_ongoing: Optional[bool] = None
    is_active: Optional[bool] = None
    predicted_next_date: Optional[dt.date] = None
    last_date: Optional[dt.date] = None

    @field_validator("amount_cents")
    @classmethod
    def _magnitude(cls, value: Optional[int]) -> Optional[int]:
        return abs(value) if value is not None else None

    @field_validator("frequency", mode="before")
    @classmethod
    def _frequency(cls, value):
        return parse_frequency(value) if value is not None else None


class ObligationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: ObligationKind
    user_id: str
    group_id: Optional[str] = None
    name: str
    amount_cents: int
    frequency: Frequency
    category_ids: list[str]
    transaction_ids: list[str]
    start_date: date
    end_date: Optional[dt.date] = None
    is_ongoing: bool
    is_active: bool
    is_system_catch_all: bool
    predicted_next_date: Optional[dt.date] = None
    last_date: Optional[dt.date] = None
    first_date: Optional[dt.date] = None
    active_period_start: Optional[str] = None
    active_period_end: Optional[str] = None
    last_extended: Optional[datetime] = None
    periods_generated_until: Optional[dt.date] = None


class DateRangeIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start: Optional[date] = None
    end: Optional[dt.date] = None

    @model_validator(mode="after")
    def _check_range(self) -> "DateRangeIn":
        if (self.start is None) != (self.end is None):
            raise ValueError("Provide both start and end, or neither")
        if self.start and self.end and self.start > self.end:
            raise ValueError("Start date must be before end date")
        return self


class MaterializeResult(BulkResult):
    obligation_id: str
    created: int = 0
    instance_ids: list[str] = Field(default_factory=list)
    skipped_existing: list[str] = Field(default_factory=list)
    active_period_start: Optional[str] = None
    active_period_end: Optional[str] = None


class PeriodInstanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    obligation_id: str
    source_period_id: str
    kind: ObligationKind
    obligation_name: str
    period_type: PeriodType
    period_start: datetime
    period_end: datetime
    allocated_amount_cents: int
    original_amount_cents: int
    is_modified: bool
    expected_amount_cents: int
    spent_cents: int
    remaining_cents: int
    total_paid_cents: int
    total_unpaid_cents: int
    extra_principal_cents: int
    number_of_occurrences: int
    number_of_occurrences_paid: int
    occurrence_due_dates: list[Optional[str]]
    occurrence_paid_flags: list[bool]
    occurrence_transaction_ids: list[Optional[str]]
    occurrence_amounts: list[int]
    occurrence_draw_dates: list[Optional[str]]
    transaction_ids: list[str]
    is_fully_paid: bool
    is_partially_paid: bool
    status: PeriodStatus
    status_text: Optional[str] = None
    is_active: bool


class PeriodAllocationUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    allocated_amount_cents: int = Field(..., ge=0)


class ExtendRangeIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start_period_id: str = Field(..., min_length=1, max_length=16)
    end_period_id: str = Field(..., min_length=1, max_length=16)
    period_type: PeriodType
    max_periods: int = Field(default=20, ge=1, le=500)

    @model_validator(mode="after")
    def _check_order(self) -> "ExtendRangeIn":
        if self.start_period_id > self.end_period_id:
            raise ValueError("start_period_id must not be after end_period_id")
        return self


class ExtendRangeResult(BulkResult):
    created: int = 0
    skipped_existing: list[str] = Field(default_factory=list)
    obligations_extended: int = 0
    periods_processed: int = 0


class ExtensionResult(BulkResult):
    obligations_processed: int = 0
    periods_created: int = 0


class SplitIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: int
    category: Optional[str] = Field(default=None, max_length=100)
    payment_type: Optional[PaymentType] = None
    budget_id: Optional[str] = None
    stream_id: Optional[str] = None

    @field_validator("amount_cents")
    @classmethod
    def _magnitude(cls, value: int) -> int:
        return abs(value)


class TransactionIn(BaseModel):
    """Normalized feed transaction; positive amounts are money out."""

    model_config = ConfigDict(extra="forbid")

    transaction_id: str = Field(..., min_length=1, max_length=64)
    account_id: Optional[str] = Field(default=None, max_length=64)
    amount_cents: int
    date: dt.date
    category: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=200)
    pending: bool = False
    stream_id: Optional[str] = None
    splits: list[SplitIn] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_splits(self) -> "TransactionIn":
        if self.splits:
            total = sum(split.amount_cents for split in self.splits)
            if total != abs(self.amount_cents):
                raise ValueError("Split amounts must add up to the transaction amount")
        return self


class SplitOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    position: int
    category: Optional[str] = None
    amount_cents: int
    payment_type: PaymentType
    budget_id: Optional[str] = None
    stream_id: Optional[str] = None
    monthly_period_id: Optional[str] = None
    bi_monthly_period_id: Optional[str] = None
    weekly_period_id: Optional[str] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    account_id: Optional[str] = None
    date: dt.date
    type: TransactionType
    amount_cents: int
    category: Optional[str] = None
    description: Optional[str] = None
    pending: bool
    splits: list[SplitOut]


class MatchIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    obligation_id: str


class ReassignIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    from_obligation_id: str
    to_obligation_id: str


class MatchResult(BaseModel):
    obligation_id: str
    transaction_id: str
    matched: bool = False
    periods_updated: list[str] = Field(default_factory=list)
    reason: Optional[str] = None


class IngestResult(BaseModel):
    transaction: TransactionOut
    matches: list[MatchResult] = Field(default_factory=list)


class AutoMatchResult(BulkResult):
    obligation_id: str
    transactions_checked: int = 0
    transactions_matched: int = 0


class ReconcileResult(BulkResult):
    obligation_id: str
    splits_evaluated: int = 0
    splits_reassigned: int = 0
    transactions_touched: int = 0
    periods_recalculated: int = 0


class StatusRefreshResult(BulkResult):
    periods_checked: int = 0
    periods_changed: int = 0
