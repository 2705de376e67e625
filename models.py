import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def _new_id() -> str:
    return uuid.uuid4().hex


class PeriodType(str, Enum):
    weekly = "WEEKLY"
    bi_monthly = "BI_MONTHLY"
    monthly = "MONTHLY"


class ObligationKind(str, Enum):
    budget = "budget"
    outflow = "outflow"
    inflow = "inflow"


class Frequency(str, Enum):
    weekly = "WEEKLY"
    biweekly = "BIWEEKLY"
    semi_monthly = "SEMI_MONTHLY"
    monthly = "MONTHLY"
    quarterly = "QUARTERLY"
    annually = "ANNUALLY"
    custom = "CUSTOM"


BUDGET_FREQUENCIES = (
    Frequency.weekly,
    Frequency.monthly,
    Frequency.quarterly,
    Frequency.annually,
    Frequency.custom,
)


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class PaymentType(str, Enum):
    regular = "regular"
    catch_up = "catch_up"
    advance = "advance"
    extra_principal = "extra_principal"
    refund = "refund"
    ignored = "ignored"


class PeriodStatus(str, Enum):
    not_expected = "NOT_EXPECTED"
    pending = "PENDING"
    due_soon = "DUE_SOON"
    overdue = "OVERDUE"
    partial = "PARTIAL"
    paid = "PAID"
    received = "RECEIVED"
    paid_early = "PAID_EARLY"
    over_budget = "OVER_BUDGET"


def _enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda cls: [member.value for member in cls],
    )


PERIOD_TYPE_ENUM = _enum(PeriodType, "periodtype")
FREQUENCY_ENUM = _enum(Frequency, "frequency")
PERIOD_STATUS_ENUM = _enum(PeriodStatus, "periodstatus")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class SourcePeriod(Base):
    __tablename__ = "source_periods"
    __table_args__ = (
        UniqueConstraint("type", "index", name="uq_source_period_type_index"),
        Index("ix_source_periods_type_start", "type", "start_date"),
        Index("ix_source_periods_type_current", "type", "is_current"),
    )

    id: Mapped[str] = mapped_column(String(16), primary_key=True)
    type: Mapped[PeriodType] = mapped_column(PERIOD_TYPE_ENUM, nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    month: Mapped[Optional[int]] = mapped_column(Integer)
    bi_monthly_half: Mapped[Optional[int]] = mapped_column(Integer)
    # ISO 8601 week of start_date; ids use the Sunday-start sequence instead.
    week_number: Mapped[Optional[int]] = mapped_column(Integer)
    week_start_day: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    def contains(self, moment: datetime) -> bool:
        return self.start_date <= moment <= self.end_date

    @property
    def day_count(self) -> int:
        return (self.end_date.date() - self.start_date.date()).days + 1


class Obligation(Base, TimestampMixin):
    __tablename__ = "obligations"
    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_obligation_amount_positive"),
        Index("ix_obligations_user_kind", "user_id", "kind"),
        Index("ix_obligations_ongoing_active", "is_ongoing", "is_active"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    kind: Mapped[ObligationKind] = mapped_column(
        SAEnum(ObligationKind), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    group_id: Mapped[Optional[str]] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    frequency: Mapped[Frequency] = mapped_column(FREQUENCY_ENUM, nullable=False)
    category_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    # Provider transaction ids the feed linked to this stream.
    transaction_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    is_ongoing: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_system_catch_all: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    predicted_next_date: Mapped[Optional[date]] = mapped_column(Date)
    last_date: Mapped[Optional[date]] = mapped_column(Date)
    first_date: Mapped[Optional[date]] = mapped_column(Date)
    active_period_start: Mapped[Optional[str]] = mapped_column(String(16))
    active_period_end: Mapped[Optional[str]] = mapped_column(String(16))
    last_extended: Mapped[Optional[datetime]] = mapped_column(DateTime)
    periods_generated_until: Mapped[Optional[date]] = mapped_column(Date)

    periods: Mapped[list["PeriodInstance"]] = relationship(
        "PeriodInstance", back_populates="obligation", passive_deletes=True
    )

    @property
    def active_period_range(self) -> Optional[dict[str, str]]:
        if not self.active_period_start or not self.active_period_end:
            return None
        return {
            "start_period": self.active_period_start,
            "end_period": self.active_period_end,
        }

    @property
    def is_stream(self) -> bool:
        return self.kind in (ObligationKind.outflow, ObligationKind.inflow)


class PeriodInstance(Base, TimestampMixin):
    __tablename__ = "period_instances"
    __table_args__ = (
        UniqueConstraint(
            "obligation_id", "source_period_id", name="uq_period_obligation_source"
        ),
        Index(
            "ix_period_instances_obligation_type_start",
            "obligation_id",
            "period_type",
            "period_start",
        ),
        Index("ix_period_instances_user_start", "user_id", "period_start"),
        CheckConstraint(
            "allocated_amount_cents >= 0", name="ck_period_allocated_positive"
        ),
    )

    id: Mapped[str] = mapped_column(String(96), primary_key=True)
    obligation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("obligations.id", ondelete="CASCADE"), nullable=False
    )
    # Plain string reference: regeneration deletes and recreates source periods.
    source_period_id: Mapped[str] = mapped_column(
        String(16), nullable=False, index=True
    )
    kind: Mapped[ObligationKind] = mapped_column(
        SAEnum(ObligationKind), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # Copy of Obligation.name, rewritten whenever the obligation is renamed.
    obligation_name: Mapped[str] = mapped_column(String(200), nullable=False)
    period_type: Mapped[PeriodType] = mapped_column(PERIOD_TYPE_ENUM, nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    frequency: Mapped[Frequency] = mapped_column(FREQUENCY_ENUM, nullable=False)
    allocated_amount_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    original_amount_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    is_modified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    amount_per_occurrence_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    expected_amount_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    spent_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    remaining_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_paid_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_unpaid_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    extra_principal_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    number_of_occurrences: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    number_of_occurrences_paid: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    occurrence_due_dates: Mapped[list] = mapped_column(
        JSON, default=list, nullable=False
    )
    occurrence_paid_flags: Mapped[list] = mapped_column(
        JSON, default=list, nullable=False
    )
    occurrence_transaction_ids: Mapped[list] = mapped_column(
        JSON, default=list, nullable=False
    )
    occurrence_amounts: Mapped[list] = mapped_column(
        JSON, default=list, nullable=False
    )
    occurrence_draw_dates: Mapped[list] = mapped_column(
        JSON, default=list, nullable=False
    )
    transaction_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    is_fully_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_partially_paid: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    status: Mapped[PeriodStatus] = mapped_column(
        PERIOD_STATUS_ENUM, default=PeriodStatus.pending, nullable=False
    )
    status_text: Mapped[Optional[str]] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_calculated: Mapped[Optional[datetime]] = mapped_column(DateTime)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    obligation: Mapped[Obligation] = relationship(
        "Obligation", back_populates="periods"
    )

    __mapper_args__ = {"version_id_col": version}


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[Optional[str]] = mapped_column(String(64))
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100))
    description: Mapped[Optional[str]] = mapped_column(String(200))
    pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    splits: Mapped[list["TransactionSplit"]] = relationship(
        "TransactionSplit",
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="TransactionSplit.position",
    )


class TransactionSplit(Base, TimestampMixin):
    __tablename__ = "transaction_splits"
    __table_args__ = (
        UniqueConstraint("transaction_id", "position", name="uq_split_position"),
        Index("ix_transaction_splits_budget", "budget_id"),
        Index("ix_transaction_splits_stream", "stream_id"),
        CheckConstraint("amount_cents >= 0", name="ck_split_amount_positive"),
    )

    id: Mapped[str] = mapped_column(String(96), primary_key=True)
    transaction_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_type: Mapped[PaymentType] = mapped_column(
        SAEnum(PaymentType), default=PaymentType.regular, nullable=False
    )
    budget_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("obligations.id", ondelete="SET NULL")
    )
    stream_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("obligations.id", ondelete="SET NULL")
    )
    monthly_period_id: Mapped[Optional[str]] = mapped_column(String(16))
    bi_monthly_period_id: Mapped[Optional[str]] = mapped_column(String(16))
    weekly_period_id: Mapped[Optional[str]] = mapped_column(String(16))

    transaction: Mapped[Transaction] = relationship(
        "Transaction", back_populates="splits"
    )
