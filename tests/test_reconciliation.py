from datetime import date, datetime

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import (
    Frequency,
    Obligation,
    ObligationKind,
    PeriodInstance,
    PeriodStatus,
    PeriodType,
    TransactionSplit,
)
from schemas import ExtendRangeIn, ObligationIn, ObligationUpdate, TransactionIn
from services import (
    CATCH_ALL_BUDGET_NAME,
    ObligationService,
    PeriodMaterializer,
    ReconciliationService,
    SourcePeriodService,
    TransactionService,
)

TODAY = date(2025, 3, 15)


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        SourcePeriodService(session).generate(2025, 2026, now=datetime(2025, 3, 15, 9, 0))
    return engine


def _fuel_budget(session: Session) -> Obligation:
    budget = Obligation(
        id="fuel",
        kind=ObligationKind.budget,
        user_id="default",
        name="Fuel",
        amount_cents=30000,
        frequency=Frequency.monthly,
        category_ids=["fuel"],
        start_date=date(2025, 1, 1),
        is_ongoing=True,
    )
    session.add(budget)
    session.commit()
    return budget


def _split(session: Session, transaction_id: str) -> TransactionSplit:
    return session.scalars(
        select(TransactionSplit).where(TransactionSplit.transaction_id == transaction_id)
    ).one()


def test_extend_range_skips_existing_instances():
    engine = _engine()
    with Session(engine) as session:
        budget = _fuel_budget(session)
        calendar = SourcePeriodService(session)
        PeriodMaterializer(session).materialize_periods(
            budget,
            calendar.in_id_range(PeriodType.monthly, "2025M01", "2025M03", 10),
            today=TODAY,
        )

        result = ReconciliationService(session).extend_range(
            ExtendRangeIn(
                start_period_id="2025M01",
                end_period_id="2025M05",
                period_type=PeriodType.monthly,
            ),
            today=TODAY,
        )
        assert result.periods_processed == 5
        assert result.created == 2
        assert result.skipped_existing == ["fuel_2025M01", "fuel_2025M02", "fuel_2025M03"]
        assert result.obligations_extended == 1
        assert session.get(PeriodInstance, "fuel_2025M05").allocated_amount_cents == 30000
        assert budget.active_period_end == "2025M05"


def test_extend_range_respects_max_periods():
    engine = _engine()
    with Session(engine) as session:
        _fuel_budget(session)
        result = ReconciliationService(session).extend_range(
            ExtendRangeIn(
                start_period_id="2025M01",
                end_period_id="2025M12",
                period_type=PeriodType.monthly,
                max_periods=4,
            ),
            today=TODAY,
        )
        assert result.periods_processed == 4
        assert result.created == 4


def test_extend_all_rolls_ongoing_obligations_forward():
    engine = _engine()
    with Session(engine) as session:
        budget = _fuel_budget(session)
        result = ReconciliationService(session, user_id=None).extend_all(today=TODAY)
        assert result.obligations_processed == 1
        assert result.periods_created > 0
        assert session.get(PeriodInstance, "fuel_2025M03") is not None
        assert session.get(PeriodInstance, "fuel_2025M02") is None
        assert session.get(PeriodInstance, "fuel_2026M03") is not None
        assert session.get(PeriodInstance, "fuel_2026M04") is None
        assert budget.periods_generated_until >= date(2026, 3, 14)

        again = ReconciliationService(session, user_id=None).extend_all(today=TODAY)
        assert again.periods_created == 0


def test_new_budget_claims_matching_catch_all_spending():
    engine = _engine()
    with Session(engine) as session:
        service = ObligationService(session)
        catch_all = service.ensure_catch_all_budget(today=TODAY)
        assert catch_all.name == CATCH_ALL_BUDGET_NAME
        assert service.ensure_catch_all_budget(today=TODAY).id == catch_all.id

        TransactionService(session).ingest(
            TransactionIn(
                transaction_id="coffee", amount_cents=500, date=date(2025, 3, 10), category="Coffee"
            ),
            today=TODAY,
        )
        assert _split(session, "coffee").budget_id == catch_all.id
        catch_all_month = session.get(PeriodInstance, f"{catch_all.id}_2025M03")
        assert catch_all_month.spent_cents == 500
        assert catch_all_month.status == PeriodStatus.over_budget

        cafe = service.create(
            ObligationIn(
                kind=ObligationKind.budget,
                name="Cafe",
                amount_cents=4000,
                category_ids=["coffee"],
                start_date=date(2025, 3, 1),
            ),
            today=TODAY,
        )
        assert _split(session, "coffee").budget_id == cafe.id
        session.refresh(catch_all_month)
        assert catch_all_month.spent_cents == 0
        assert catch_all_month.status == PeriodStatus.not_expected
        assert session.get(PeriodInstance, f"{cafe.id}_2025M03").spent_cents == 500


def test_removing_a_category_moves_spend_back_to_catch_all():
    engine = _engine()
    with Session(engine) as session:
        service = ObligationService(session)
        catch_all = service.ensure_catch_all_budget(today=TODAY)
        snacks = service.create(
            ObligationIn(
                kind=ObligationKind.budget,
                name="Snacks",
                amount_cents=3000,
                category_ids=["snacks", "coffee"],
                start_date=date(2025, 3, 1),
            ),
            today=TODAY,
        )
        TransactionService(session).ingest(
            TransactionIn(
                transaction_id="coffee", amount_cents=450, date=date(2025, 3, 11), category="coffee"
            ),
            today=TODAY,
        )
        assert _split(session, "coffee").budget_id == snacks.id

        service.update(snacks.id, ObligationUpdate(category_ids=["snacks"]), today=TODAY)
        assert _split(session, "coffee").budget_id == catch_all.id
        assert session.get(PeriodInstance, f"{snacks.id}_2025M03").spent_cents == 0
        assert session.get(PeriodInstance, f"{catch_all.id}_2025M03").spent_cents == 450
        # Allocations are not touched by category changes.
        assert session.get(PeriodInstance, f"{snacks.id}_2025M03").allocated_amount_cents == 3000


def test_deleting_catch_all_recreates_it_and_rehomes_splits():
    engine = _engine()
    with Session(engine) as session:
        service = ObligationService(session)
        catch_all = service.ensure_catch_all_budget(today=TODAY)
        old_id = catch_all.id
        TransactionService(session).ingest(
            TransactionIn(
                transaction_id="misc", amount_cents=999, date=date(2025, 3, 10), category="misc"
            ),
            today=TODAY,
        )

        service.delete(old_id, today=TODAY)

        assert session.get(Obligation, old_id) is None
        replacement = session.scalars(
            select(Obligation).where(Obligation.is_system_catch_all.is_(True))
        ).one()
        assert replacement.id != old_id
        assert _split(session, "misc").budget_id == replacement.id
        assert session.get(PeriodInstance, f"{replacement.id}_2025M03").spent_cents == 999
        assert session.get(PeriodInstance, f"{old_id}_2025M03") is None


def test_status_refresh_moves_bills_to_overdue():
    engine = _engine()
    with Session(engine) as session:
        rent = ObligationService(session).create(
            ObligationIn(
                kind=ObligationKind.outflow,
                name="Rent",
                amount_cents=150000,
                start_date=date(2025, 3, 1),
                predicted_next_date=date(2025, 4, 5),
            ),
            today=date(2025, 4, 1),
        )
        april = session.get(PeriodInstance, f"{rent.id}_2025M04")
        assert april.status == PeriodStatus.pending

        reconciliation = ReconciliationService(session)
        reconciliation.refresh_statuses(today=date(2025, 4, 3))
        session.refresh(april)
        assert april.status == PeriodStatus.due_soon

        result = reconciliation.refresh_statuses(today=date(2025, 4, 10))
        session.refresh(april)
        assert april.status == PeriodStatus.overdue
        assert result.periods_changed > 0


def test_extend_all_records_a_failing_obligation_and_finishes_the_rest(monkeypatch):
    engine = _engine()
    with Session(engine) as session:
        _fuel_budget(session)
        session.add(
            Obligation(
                id="broken",
                kind=ObligationKind.budget,
                user_id="default",
                name="Broken",
                amount_cents=1000,
                frequency=Frequency.monthly,
                category_ids=["misc"],
                start_date=date(2025, 1, 1),
                is_ongoing=True,
            )
        )
        session.commit()

        materialize = PeriodMaterializer.materialize

        def failing_materialize(self, obligation, *args, **kwargs):
            if obligation.id == "broken":
                raise RuntimeError("calendar unavailable")
            return materialize(self, obligation, *args, **kwargs)

        monkeypatch.setattr(PeriodMaterializer, "materialize", failing_materialize)

        result = ReconciliationService(session, user_id=None).extend_all(today=TODAY)
        assert result.success is False
        assert [error.id for error in result.errors] == ["broken"]
        assert "calendar unavailable" in result.errors[0].message
        assert result.obligations_processed == 1
        assert result.periods_created > 0
        assert session.get(PeriodInstance, "fuel_2025M03") is not None
        assert session.get(PeriodInstance, "broken_2025M03") is None
