from datetime import date, datetime

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import PreconditionError
from models import (
    Frequency,
    Obligation,
    ObligationKind,
    PeriodInstance,
    PeriodStatus,
    PeriodType,
)
from periods import DateRange
from schemas import ObligationIn, ObligationUpdate
from services import ObligationService, PeriodMaterializer, SourcePeriodService

TODAY = date(2025, 3, 15)


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        SourcePeriodService(session).generate(2025, 2026, now=datetime(2025, 3, 15, 9, 0))
    return engine


def _instance_count(session: Session, obligation_id: str) -> int:
    return session.scalar(
        select(func.count())
        .select_from(PeriodInstance)
        .where(PeriodInstance.obligation_id == obligation_id)
    )


def test_budget_materializes_every_period_type_with_allocations():
    engine = _engine()
    with Session(engine) as session:
        budget = ObligationService(session).create(
            ObligationIn(
                kind=ObligationKind.budget,
                name="Groceries",
                amount_cents=20000,
                category_ids=["groceries"],
                start_date=date(2025, 3, 1),
            ),
            today=TODAY,
        )
        periods = {p.source_period_id: p for p in ObligationService(session).periods(budget.id)}

        assert periods["2025M03"].allocated_amount_cents == 20000
        assert periods["2025BM03A"].allocated_amount_cents == 10000
        assert periods["2025BM03B"].allocated_amount_cents == 10000
        assert periods["2025W11"].allocated_amount_cents == 4599
        assert periods["2025M03"].id == f"{budget.id}_2025M03"
        assert periods["2025M03"].status == PeriodStatus.pending
        assert periods["2025M03"].remaining_cents == 20000
        assert "2026M02" in periods
        assert "2026M03" not in periods

        assert budget.active_period_start is not None
        assert budget.periods_generated_until == date(2026, 2, 28)


def test_materialize_is_idempotent():
    engine = _engine()
    with Session(engine) as session:
        service = ObligationService(session)
        budget = service.create(
            ObligationIn(
                kind=ObligationKind.budget,
                name="Fuel",
                amount_cents=12000,
                start_date=date(2025, 3, 1),
            ),
            today=TODAY,
        )
        before = _instance_count(session, budget.id)
        result = service.materializer.materialize(budget, today=TODAY)
        assert result.created == 0
        assert len(result.skipped_existing) == before
        assert _instance_count(session, budget.id) == before


def test_materialize_without_calendar_is_a_precondition_failure():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        with pytest.raises(PreconditionError):
            ObligationService(session).create(
                ObligationIn(
                    kind=ObligationKind.budget,
                    name="Fuel",
                    amount_cents=12000,
                    start_date=date(2030, 1, 1),
                ),
                today=TODAY,
            )
        assert session.scalars(select(Obligation)).all() == []


def test_stream_materializes_occurrences_per_period():
    engine = _engine()
    with Session(engine) as session:
        salary = ObligationService(session).create(
            ObligationIn(
                kind=ObligationKind.inflow,
                name="Salary",
                amount_cents=80000,
                frequency="SEMI_MONTHLY",
                start_date=date(2025, 3, 1),
                predicted_next_date=date(2025, 3, 1),
            ),
            today=TODAY,
        )
        periods = {p.source_period_id: p for p in ObligationService(session).periods(salary.id)}

        march = periods["2025M03"]
        assert march.occurrence_due_dates == ["2025-03-01", "2025-03-16", "2025-03-31"]
        assert march.expected_amount_cents == 240000
        assert march.number_of_occurrences == 3
        assert march.status_text == "0 of 3 payments paid"

        week = periods["2025W12"]
        assert week.occurrence_due_dates == ["2025-03-16"]
        assert week.expected_amount_cents == 80000
        assert periods["2025W10"].number_of_occurrences == 0
        assert periods["2025W10"].status == PeriodStatus.not_expected


def test_explicit_range_limits_created_periods():
    engine = _engine()
    with Session(engine) as session:
        budget = Obligation(
            id="fuel",
            kind=ObligationKind.budget,
            user_id="default",
            name="Fuel",
            amount_cents=12000,
            frequency=Frequency.monthly,
            category_ids=[],
            start_date=date(2025, 4, 1),
        )
        session.add(budget)
        session.commit()

        result = PeriodMaterializer(session).materialize(
            budget, DateRange(date(2025, 4, 1), date(2025, 4, 30)), today=TODAY
        )
        monthly = [i for i in result.instance_ids if "M" in i.split("_")[-1] and "BM" not in i]
        assert monthly == ["fuel_2025M04"]
        # Range spans the earliest and latest overlapping periods of any type.
        assert budget.active_period_start == "2025W14"
        assert budget.active_period_end == "2025W18"


def test_repricing_only_touches_untouched_future_periods():
    engine = _engine()
    with Session(engine) as session:
        service = ObligationService(session)
        budget = service.create(
            ObligationIn(
                kind=ObligationKind.budget,
                name="Dining",
                amount_cents=20000,
                start_date=date(2025, 3, 1),
            ),
            today=TODAY,
        )
        service.update_period_allocation(f"{budget.id}_2025M05", 25000, today=TODAY)
        service.update(budget.id, ObligationUpdate(amount_cents=30000, name="Eating out"), today=TODAY)

        periods = {
            p.source_period_id: p
            for p in service.periods(budget.id, PeriodType.monthly)
        }
        assert periods["2025M03"].allocated_amount_cents == 20000
        assert periods["2025M04"].allocated_amount_cents == 30000
        # The baseline is the amount each instance was created with.
        assert periods["2025M04"].original_amount_cents == 20000
        assert periods["2025M05"].allocated_amount_cents == 25000
        assert periods["2025M05"].original_amount_cents == 20000
        assert periods["2025M05"].is_modified
        assert {p.obligation_name for p in periods.values()} == {"Eating out"}
