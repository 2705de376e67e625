from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import and_, case, delete, func, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from allocation import allocate_for_period, monthly_equivalent
from auth import Identity, require_admin
from config import Settings, get_settings
from errors import EngineError, InvalidInputError, NotFoundError, PreconditionError
from models import (
    BUDGET_FREQUENCIES,
    Frequency,
    Obligation,
    ObligationKind,
    PaymentType,
    PeriodInstance,
    PeriodType,
    SourcePeriod,
    Transaction,
    TransactionSplit,
    TransactionType,
)
from periods import (
    DateRange,
    PeriodKey,
    build_source_periods,
    day_end,
    day_start,
    source_period_ids_for,
    utc_now,
)
from recurrence import (
    add_months,
    occurrence_dates,
    project_occurrences,
    resolve_anchor,
)
from schemas import (
    AutoMatchResult,
    CalendarResult,
    CurrentSweepResult,
    ExtendRangeIn,
    ExtendRangeResult,
    ExtensionResult,
    IngestResult,
    MatchResult,
    MaterializeResult,
    ObligationIn,
    ObligationUpdate,
    ReconcileResult,
    SplitIn,
    StatusRefreshResult,
    TransactionIn,
    TransactionOut,
)
from status import (
    OccurrenceSet,
    determine_payment_type,
    find_best_occurrence,
    recalculate,
)
from store import BatchWriter

logger = logging.getLogger(__name__)

CATCH_ALL_BUDGET_NAME = "Everything Else"
DEFAULT_USER_ID = "default"
STATUS_LOOKBACK_DAYS = 31


def _clock(
    today: Optional[date] = None, now: Optional[datetime] = None
) -> tuple[date, datetime]:
    if now is None:
        now = day_start(today) if today else utc_now()
    return today or now.date(), now


def _chunks(values: list, size: int) -> Iterable[list]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _chronological(period) -> tuple[datetime, datetime]:
    return period.start_date, period.end_date


def _normalized(values: Iterable[Optional[str]]) -> set[str]:
    return {value.strip().lower() for value in values if value and value.strip()}


class SourcePeriodService:
    """Owner of the source period calendar; nothing else writes to it."""

    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def get(self, period_id: str) -> SourcePeriod:
        period = self.session.get(SourcePeriod, period_id)
        if not period:
            raise NotFoundError(f"Source period {period_id} not found")
        return period

    def list(
        self,
        period_type: Optional[PeriodType] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> list[SourcePeriod]:
        stmt = select(SourcePeriod)
        if period_type:
            stmt = stmt.where(SourcePeriod.type == period_type)
        if start:
            stmt = stmt.where(SourcePeriod.end_date >= day_start(start))
        if end:
            stmt = stmt.where(SourcePeriod.start_date <= day_end(end))
        stmt = stmt.order_by(SourcePeriod.start_date, SourcePeriod.end_date)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt).all())

    def overlapping(
        self,
        start_at: datetime,
        end_at: datetime,
        period_type: Optional[PeriodType] = None,
    ) -> list[SourcePeriod]:
        stmt = select(SourcePeriod).where(
            SourcePeriod.end_date >= start_at,
            SourcePeriod.start_date <= end_at,
        )
        if period_type:
            stmt = stmt.where(SourcePeriod.type == period_type)
        stmt = stmt.order_by(SourcePeriod.start_date, SourcePeriod.end_date)
        return list(self.session.scalars(stmt).all())

    def containing(
        self, moment: datetime, period_type: PeriodType
    ) -> Optional[SourcePeriod]:
        stmt = (
            select(SourcePeriod)
            .where(
                SourcePeriod.type == period_type,
                SourcePeriod.start_date <= moment,
                SourcePeriod.end_date >= moment,
            )
            .limit(1)
        )
        return self.session.scalars(stmt).first()

    def in_id_range(
        self, period_type: PeriodType, start_id: str, end_id: str, limit: int
    ) -> list[SourcePeriod]:
        stmt = (
            select(SourcePeriod)
            .where(
                SourcePeriod.type == period_type,
                SourcePeriod.id >= start_id,
                SourcePeriod.id <= end_id,
            )
            .order_by(SourcePeriod.id)
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def current(self) -> dict[str, str]:
        stmt = select(SourcePeriod).where(SourcePeriod.is_current.is_(True))
        return {period.type.value: period.id for period in self.session.scalars(stmt)}

    def generate(
        self,
        start_year: Optional[int] = None,
        end_year: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> CalendarResult:
        """Insert every missing period of the horizon; existing ids are kept."""
        start_year = start_year or self.settings.horizon_start_year
        end_year = end_year or self.settings.horizon_end_year
        _, now = _clock(now=now)
        try:
            periods = build_source_periods(start_year, end_year, now=now)
        except ValueError as exc:
            raise InvalidInputError(str(exc)) from exc

        existing = set(self.session.scalars(select(SourcePeriod.id)).all())
        result = CalendarResult(start_year=start_year, end_year=end_year)
        writer = BatchWriter(self.session, self.settings.batch_size, label="calendar")
        for period in periods:
            if period.id in existing:
                continue
            writer.put(period)
            result.total_periods += 1
            key = period.type.value
            result.by_type[key] = result.by_type.get(key, 0) + 1
            if period.is_current:
                result.current_periods[key] = period.id
        writer.commit()
        logger.info(
            f"calendar_generate: years={start_year}-{end_year} "
            f"created={result.total_periods} batches={writer.batches_committed}"
        )
        return result

    def regenerate(
        self,
        identity: Identity,
        start_year: Optional[int] = None,
        end_year: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> CalendarResult:
        """Delete the whole calendar and rebuild it with the same id scheme."""
        require_admin(identity)
        deleted = self.session.execute(delete(SourcePeriod)).rowcount or 0
        self.session.commit()
        logger.warning(
            f"calendar_regenerate: user={identity.user_id} deleted_periods={deleted}"
        )
        result = self.generate(start_year, end_year, now=now)
        result.deleted_periods = deleted
        return result

    def refresh_current_flags(
        self, *, now: Optional[datetime] = None
    ) -> CurrentSweepResult:
        _, now = _clock(now=now)
        flagged = self.session.scalars(
            select(SourcePeriod).where(SourcePeriod.is_current.is_(True))
        ).all()
        containing = self.session.scalars(
            select(SourcePeriod).where(
                SourcePeriod.start_date <= now, SourcePeriod.end_date >= now
            )
        ).all()
        should_be_current = {period.id for period in containing}

        result = CurrentSweepResult()
        writer = BatchWriter(self.session, self.settings.batch_size, label="current_sweep")
        for period in flagged:
            if period.id not in should_be_current:
                period.is_current = False
                writer.touch(period)
                result.flipped_to_false.append(period.id)
        for period in containing:
            if not period.is_current:
                period.is_current = True
                writer.touch(period)
                result.flipped_to_true.append(period.id)
            result.current_periods[period.type.value] = period.id
        writer.commit()

        if not containing:
            logger.warning(f"current_sweep: no source period contains now={now.isoformat()}")
        logger.info(
            f"current_sweep: now={now.isoformat()} "
            f"off={len(result.flipped_to_false)} on={len(result.flipped_to_true)}"
        )
        return result


class PeriodStrategy:
    """How one obligation kind fills and reprices its period instances."""

    kind: ObligationKind

    def build(
        self,
        obligation: Obligation,
        source_period: SourcePeriod,
        today: date,
        now: datetime,
    ) -> PeriodInstance:
        key = PeriodKey(obligation.id, source_period.id)
        instance = PeriodInstance(
            id=key.id,
            obligation_id=obligation.id,
            source_period_id=source_period.id,
            kind=obligation.kind,
            user_id=obligation.user_id,
            obligation_name=obligation.name,
            period_type=source_period.type,
            period_start=source_period.start_date,
            period_end=source_period.end_date,
            frequency=obligation.frequency,
            is_modified=False,
            is_active=obligation.is_active,
            spent_cents=0,
            extra_principal_cents=0,
            transaction_ids=[],
        )
        self.populate(instance, obligation, source_period)
        instance.original_amount_cents = instance.allocated_amount_cents
        return recalculate(instance, today, now=now)

    def populate(
        self,
        instance: PeriodInstance,
        obligation: Obligation,
        source_period: SourcePeriod,
    ) -> None:
        raise NotImplementedError

    def has_activity(self, instance: PeriodInstance) -> bool:
        return bool(instance.transaction_ids)

    def reprice(
        self,
        instance: PeriodInstance,
        obligation: Obligation,
        source_period: SourcePeriod,
        today: date,
    ) -> bool:
        """Recompute amounts of an untouched future instance; False if skipped."""
        if self.has_activity(instance):
            return False
        allocated_before = instance.allocated_amount_cents
        is_modified = instance.is_modified
        self.populate(instance, obligation, source_period)
        # original_amount_cents stays at the value the instance was created with.
        if is_modified:
            instance.allocated_amount_cents = allocated_before
        instance.frequency = obligation.frequency
        recalculate(instance, today)
        return True


class BudgetPeriodStrategy(PeriodStrategy):
    kind = ObligationKind.budget

    def populate(self, instance, obligation, source_period) -> None:
        monthly = monthly_equivalent(
            obligation.amount_cents, obligation.frequency, budget=True
        )
        instance.allocated_amount_cents = allocate_for_period(monthly, source_period)
        instance.amount_per_occurrence_cents = 0
        instance.expected_amount_cents = instance.allocated_amount_cents
        OccurrenceSet().apply_to(instance)

    def has_activity(self, instance: PeriodInstance) -> bool:
        return bool(instance.transaction_ids) or instance.spent_cents > 0


class StreamPeriodStrategy(PeriodStrategy):
    def __init__(self, kind: ObligationKind) -> None:
        self.kind = kind

    def populate(self, instance, obligation, source_period) -> None:
        projection = project_occurrences(obligation, source_period)
        OccurrenceSet.from_dates(projection.due_dates, projection.draw_dates).apply_to(
            instance
        )
        instance.amount_per_occurrence_cents = projection.amount_per_occurrence_cents
        instance.expected_amount_cents = projection.total_amount_cents
        # Amount to set aside in this period, independent of the due dates.
        monthly = monthly_equivalent(obligation.amount_cents, obligation.frequency)
        instance.allocated_amount_cents = allocate_for_period(monthly, source_period)

    def has_activity(self, instance: PeriodInstance) -> bool:
        return bool(instance.transaction_ids) or any(
            instance.occurrence_paid_flags or []
        )


STRATEGIES: dict[ObligationKind, PeriodStrategy] = {
    ObligationKind.budget: BudgetPeriodStrategy(),
    ObligationKind.outflow: StreamPeriodStrategy(ObligationKind.outflow),
    ObligationKind.inflow: StreamPeriodStrategy(ObligationKind.inflow),
}


def strategy_for(kind: ObligationKind) -> PeriodStrategy:
    return STRATEGIES[ObligationKind(kind)]


class PeriodMaterializer:
    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.calendar = SourcePeriodService(session, self.settings)

    def default_range(self, obligation: Obligation) -> DateRange:
        start = obligation.start_date
        if not obligation.is_ongoing and obligation.end_date:
            return DateRange(start, obligation.end_date)
        one_year = add_months(start, 12) - timedelta(days=1)
        return DateRange(start, one_year)

    def materialize(
        self,
        obligation: Obligation,
        date_range: Optional[DateRange] = None,
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> MaterializeResult:
        date_range = date_range or self.default_range(obligation)
        periods = self.calendar.overlapping(date_range.start_at, date_range.end_at)
        if not periods:
            raise PreconditionError(
                f"No source periods found in date range {date_range.start} to "
                f"{date_range.end}. Run source period generation first."
            )
        return self.materialize_periods(obligation, periods, today=today, now=now)

    def existing_ids(self, instance_ids: list[str]) -> set[str]:
        found: set[str] = set()
        for chunk in _chunks(instance_ids, self.settings.batch_size):
            stmt = select(PeriodInstance.id).where(PeriodInstance.id.in_(chunk))
            found.update(self.session.scalars(stmt).all())
        return found

    def materialize_periods(
        self,
        obligation: Obligation,
        source_periods: list[SourcePeriod],
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> MaterializeResult:
        today, now = _clock(today, now)
        strategy = strategy_for(obligation.kind)
        ordered = sorted(source_periods, key=_chronological)
        keys = {period.id: PeriodKey(obligation.id, period.id) for period in ordered}
        existing = self.existing_ids([key.id for key in keys.values()])

        result = MaterializeResult(obligation_id=obligation.id)
        created: list[SourcePeriod] = []
        writer = BatchWriter(
            self.session, self.settings.batch_size, label=f"materialize:{obligation.id}"
        )
        for period in ordered:
            key = keys[period.id]
            if key.id in existing:
                result.skipped_existing.append(key.id)
                continue
            writer.put(strategy.build(obligation, period, today, now))
            created.append(period)
            result.instance_ids.append(key.id)

        self._update_range(obligation, created, now)
        writer.touch(obligation)
        writer.commit()

        result.created = len(created)
        result.active_period_start = obligation.active_period_start
        result.active_period_end = obligation.active_period_end
        logger.info(
            f"materialize: obligation={obligation.id} kind={obligation.kind.value} "
            f"created={result.created} skipped={len(result.skipped_existing)}"
        )
        return result

    def _update_range(
        self, obligation: Obligation, created: list[SourcePeriod], now: datetime
    ) -> None:
        obligation.last_extended = now
        if not created:
            return
        candidates = list(created)
        for period_id in (obligation.active_period_start, obligation.active_period_end):
            if period_id:
                period = self.session.get(SourcePeriod, period_id)
                if period is not None:
                    candidates.append(period)
        candidates.sort(key=_chronological)
        obligation.active_period_start = candidates[0].id
        obligation.active_period_end = candidates[-1].id
        if obligation.is_ongoing:
            until = max(period.end_date for period in candidates).date()
            if not obligation.periods_generated_until or until > obligation.periods_generated_until:
                obligation.periods_generated_until = until


def resolve_budget_for_split(
    category: Optional[str],
    on_date: date,
    budgets: list[Obligation],
    catch_all_id: Optional[str],
) -> Optional[str]:
    """First budget covering the category on ``on_date``, else the catch-all."""
    key = (category or "").strip().lower()
    if key:
        for budget in budgets:
            if not budget.is_active or budget.is_system_catch_all:
                continue
            if key not in _normalized(budget.category_ids or []):
                continue
            if on_date < budget.start_date:
                continue
            if not budget.is_ongoing and budget.end_date and on_date > budget.end_date:
                continue
            return budget.id
    return catch_all_id


def active_budgets(
    session: Session, user_id: str
) -> tuple[list[Obligation], Optional[str]]:
    """Active budgets of a user in creation order, plus the catch-all id."""
    stmt = (
        select(Obligation)
        .where(
            Obligation.user_id == user_id,
            Obligation.kind == ObligationKind.budget,
            Obligation.is_active.is_(True),
        )
        .order_by(Obligation.created_at, Obligation.id)
    )
    budgets = list(session.scalars(stmt).all())
    catch_all = next((b.id for b in budgets if b.is_system_catch_all), None)
    return budgets, catch_all


class TransactionMatcher:
    """Records payments and spending of transactions on period instances."""

    MAX_ATTEMPTS = 3

    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def _transaction(self, transaction_id: str) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return txn

    def _obligation(self, obligation_id: str) -> Obligation:
        obligation = self.session.get(Obligation, obligation_id)
        if not obligation:
            raise NotFoundError(f"Obligation {obligation_id} not found")
        return obligation

    def instances_containing(
        self, obligation_id: str, on_date: date
    ) -> list[PeriodInstance]:
        moment = day_start(on_date)
        instances = []
        for period_type in PeriodType:
            stmt = (
                select(PeriodInstance)
                .where(
                    PeriodInstance.obligation_id == obligation_id,
                    PeriodInstance.period_type == period_type,
                    PeriodInstance.period_start <= moment,
                    PeriodInstance.period_end >= moment,
                )
                .limit(1)
            )
            instance = self.session.scalars(stmt).first()
            if instance is not None:
                instances.append(instance)
        return instances

    def match(
        self, transaction_id: str, obligation_id: str, *, today: Optional[date] = None
    ) -> MatchResult:
        today, _ = _clock(today)
        txn = self._transaction(transaction_id)
        obligation = self._obligation(obligation_id)
        result = MatchResult(obligation_id=obligation_id, transaction_id=transaction_id)
        if txn.pending:
            result.reason = "pending"
            return result

        splits = self._claim_splits(txn, obligation)
        self.session.commit()
        if not splits:
            result.reason = "assigned-elsewhere"
            return result

        if obligation.kind == ObligationKind.budget:
            return self._match_budget(txn, obligation, result, today)
        return self._match_stream(txn, obligation, splits, result, today)

    def _claim_splits(
        self, txn: Transaction, obligation: Obligation
    ) -> list[TransactionSplit]:
        field = "budget_id" if obligation.kind == ObligationKind.budget else "stream_id"
        splits = [s for s in txn.splits if getattr(s, field) == obligation.id]
        if splits:
            return splits
        # An explicit match claims the splits not yet assigned for this concern.
        splits = [s for s in txn.splits if getattr(s, field) is None]
        for split in splits:
            setattr(split, field, obligation.id)
        return splits

    def _match_budget(
        self,
        txn: Transaction,
        obligation: Obligation,
        result: MatchResult,
        today: date,
    ) -> MatchResult:
        instances = self.instances_containing(obligation.id, txn.date)
        writer = BatchWriter(self.session, self.settings.batch_size, label="match")
        for instance in instances:
            self.recompute_spend(instance, today)
            writer.touch(instance)
            result.periods_updated.append(instance.id)
        writer.commit()
        result.matched = bool(instances)
        if not instances:
            result.reason = "no-period"
        return result

    def recompute_spend(self, instance: PeriodInstance, today: date) -> PeriodInstance:
        signed = case(
            (
                TransactionSplit.payment_type == PaymentType.refund,
                -TransactionSplit.amount_cents,
            ),
            else_=TransactionSplit.amount_cents,
        )
        conditions = (
            TransactionSplit.budget_id == instance.obligation_id,
            TransactionSplit.payment_type != PaymentType.ignored,
            Transaction.pending.is_(False),
            Transaction.date >= instance.period_start.date(),
            Transaction.date <= instance.period_end.date(),
        )
        spent = self.session.execute(
            select(func.coalesce(func.sum(signed), 0))
            .select_from(TransactionSplit)
            .join(Transaction, TransactionSplit.transaction_id == Transaction.id)
            .where(*conditions)
        ).scalar_one()
        txn_ids = self.session.scalars(
            select(Transaction.id)
            .join(TransactionSplit, TransactionSplit.transaction_id == Transaction.id)
            .where(*conditions)
            .distinct()
            .order_by(Transaction.id)
        ).all()
        instance.spent_cents = max(int(spent or 0), 0)
        instance.transaction_ids = list(txn_ids)
        return recalculate(instance, today)

    def refresh_budget_spend(
        self, budget_id: str, on_date: date, *, today: Optional[date] = None
    ) -> list[str]:
        today, _ = _clock(today)
        updated = []
        for instance in self.instances_containing(budget_id, on_date):
            self.recompute_spend(instance, today)
            updated.append(instance.id)
        return updated

    def _match_stream(
        self,
        txn: Transaction,
        obligation: Obligation,
        splits: list[TransactionSplit],
        result: MatchResult,
        today: date,
    ) -> MatchResult:
        amount = sum(
            abs(s.amount_cents)
            for s in splits
            if s.payment_type
            not in (PaymentType.ignored, PaymentType.refund, PaymentType.extra_principal)
        )
        extra = sum(
            abs(s.amount_cents)
            for s in splits
            if s.payment_type == PaymentType.extra_principal
        )
        if not amount and not extra:
            result.reason = "not-a-payment"
            return result

        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                writer = BatchWriter(self.session, self.settings.batch_size, label="match")
                updated, already = [], False
                for instance in self.instances_containing(obligation.id, txn.date):
                    outcome = self._apply_payment(instance, txn, amount, extra, today)
                    if outcome == "matched":
                        writer.touch(instance)
                        updated.append(instance.id)
                    elif outcome == "duplicate":
                        already = True
                writer.commit()
                self.session.commit()
                break
            except StaleDataError:
                self.session.rollback()
                logger.warning(
                    f"match_conflict: transaction={txn.id} obligation={obligation.id} "
                    f"attempt={attempt}"
                )
                if attempt == self.MAX_ATTEMPTS:
                    raise

        result.periods_updated = updated
        result.matched = bool(updated) or already
        if not result.matched:
            result.reason = "no-occurrence"
        logger.info(
            f"match: transaction={txn.id} obligation={obligation.id} "
            f"periods_updated={len(updated)} matched={result.matched}"
        )
        return result

    def _apply_payment(
        self,
        instance: PeriodInstance,
        txn: Transaction,
        amount: int,
        extra: int,
        today: date,
    ) -> str:
        if txn.id in (instance.transaction_ids or []):
            return "duplicate"
        occurrences = OccurrenceSet.from_instance(instance)
        matched = False
        if amount:
            index = find_best_occurrence(txn.date, occurrences.dates, occurrences.paid_flags)
            if index is not None:
                previous = occurrences.transaction_ids[index]
                if previous and previous != txn.id:
                    logger.warning(
                        f"match_replace: period={instance.id} occurrence={index} "
                        f"previous={previous} transaction={txn.id}"
                    )
                    instance.transaction_ids = [
                        value for value in instance.transaction_ids if value != previous
                    ]
                occurrences.mark_paid(index, txn.id, amount)
                matched = True
        if extra:
            instance.extra_principal_cents = (instance.extra_principal_cents or 0) + extra
            matched = True
        if not matched:
            return "no-occurrence"
        occurrences.apply_to(instance)
        instance.transaction_ids = [*(instance.transaction_ids or []), txn.id]
        recalculate(instance, today)
        return "matched"

    def unassign(
        self, transaction_id: str, obligation_id: str, *, today: Optional[date] = None
    ) -> MatchResult:
        """Remove a transaction from an obligation; the only path back to unpaid."""
        today, _ = _clock(today)
        txn = self._transaction(transaction_id)
        obligation = self._obligation(obligation_id)
        result = MatchResult(obligation_id=obligation_id, transaction_id=transaction_id)
        writer = BatchWriter(self.session, self.settings.batch_size, label="unassign")

        if obligation.kind == ObligationKind.budget:
            for split in txn.splits:
                if split.budget_id == obligation.id:
                    split.budget_id = None
                    writer.touch(split)
            self.session.flush()
            for instance in self.instances_containing(obligation.id, txn.date):
                self.recompute_spend(instance, today)
                writer.touch(instance)
                result.periods_updated.append(instance.id)
            writer.commit()
            result.matched = False
            return result

        extra = 0
        for split in txn.splits:
            if split.stream_id == obligation.id:
                if split.payment_type == PaymentType.extra_principal:
                    extra += abs(split.amount_cents)
                split.stream_id = None
                writer.touch(split)
        stmt = select(PeriodInstance).where(PeriodInstance.obligation_id == obligation.id)
        for instance in self.session.scalars(stmt).all():
            if txn.id not in (instance.transaction_ids or []):
                continue
            occurrences = OccurrenceSet.from_instance(instance)
            occurrences.clear_transaction(txn.id)
            occurrences.apply_to(instance)
            instance.transaction_ids = [
                value for value in instance.transaction_ids if value != txn.id
            ]
            if extra:
                instance.extra_principal_cents = max(
                    0, (instance.extra_principal_cents or 0) - extra
                )
            recalculate(instance, today)
            writer.touch(instance)
            result.periods_updated.append(instance.id)
        writer.commit()
        logger.info(
            f"unassign: transaction={txn.id} obligation={obligation.id} "
            f"periods_updated={len(result.periods_updated)}"
        )
        return result

    def reassign(
        self,
        transaction_id: str,
        from_obligation_id: str,
        to_obligation_id: str,
        *,
        today: Optional[date] = None,
    ) -> MatchResult:
        source = self._obligation(from_obligation_id)
        target = self._obligation(to_obligation_id)
        if (source.kind == ObligationKind.budget) != (target.kind == ObligationKind.budget):
            raise InvalidInputError("Cannot move a transaction between budgets and bills")
        self.unassign(transaction_id, from_obligation_id, today=today)
        return self.match(transaction_id, to_obligation_id, today=today)

    def rematch_obligation(
        self, obligation: Obligation, *, today: Optional[date] = None
    ) -> int:
        """Apply every transaction already linked to ``obligation``; idempotent."""
        today, _ = _clock(today)
        if obligation.kind == ObligationKind.budget:
            writer = BatchWriter(self.session, self.settings.batch_size, label="rematch")
            stmt = select(PeriodInstance).where(
                PeriodInstance.obligation_id == obligation.id
            )
            count = 0
            for instance in self.session.scalars(stmt).all():
                self.recompute_spend(instance, today)
                writer.touch(instance)
                count += 1
            writer.commit()
            return count

        stmt = (
            select(Transaction.id)
            .join(TransactionSplit, TransactionSplit.transaction_id == Transaction.id)
            .where(
                TransactionSplit.stream_id == obligation.id,
                Transaction.pending.is_(False),
            )
            .distinct()
            .order_by(Transaction.id)
        )
        matched = 0
        for transaction_id in self.session.scalars(stmt).all():
            if self.match(transaction_id, obligation.id, today=today).matched:
                matched += 1
        return matched

    def match_linked_transactions(
        self, obligation: Obligation, *, today: Optional[date] = None
    ) -> AutoMatchResult:
        """Match the provider transactions the feed linked to a stream.

        Each transaction is claimed for the stream unless one of its splits
        already belongs to another stream. A failing transaction is recorded
        in ``errors`` and the rest are still matched.
        """
        today, _ = _clock(today)
        obligation_id = obligation.id
        user_id = obligation.user_id
        result = AutoMatchResult(obligation_id=obligation_id)
        if not obligation.is_stream:
            return result
        for transaction_id in list(dict.fromkeys(obligation.transaction_ids or [])):
            result.transactions_checked += 1
            try:
                txn = self.session.get(Transaction, transaction_id)
                if txn is None or txn.user_id != user_id:
                    raise NotFoundError(f"Transaction {transaction_id} not found")
                if self.match(transaction_id, obligation_id, today=today).matched:
                    result.transactions_matched += 1
            except (EngineError, StaleDataError) as exc:
                self.session.rollback()
                logger.warning(
                    f"auto_match_failed: obligation={obligation_id} "
                    f"transaction={transaction_id} error={exc}"
                )
                result.fail(transaction_id, exc)
        logger.info(
            f"auto_match: obligation={obligation_id} "
            f"checked={result.transactions_checked} "
            f"matched={result.transactions_matched} errors={len(result.errors)}"
        )
        return result


class TransactionService:
    def __init__(
        self,
        session: Session,
        user_id: str = DEFAULT_USER_ID,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or get_settings()
        self.matcher = TransactionMatcher(session, self.settings)

    def get(self, transaction_id: str) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return txn

    def _payment_type(
        self, split_amount: int, stream: Optional[Obligation], on_date: date
    ) -> PaymentType:
        if stream is None or stream.kind != ObligationKind.outflow:
            return PaymentType.regular
        anchor = resolve_anchor(stream)
        if anchor is None:
            return PaymentType.regular
        window = timedelta(days=45)
        dates = occurrence_dates(
            anchor, stream.frequency, on_date - window, on_date + window
        )
        if not dates:
            return PaymentType.regular
        nearest = min(dates, key=lambda value: abs((value - on_date).days))
        return determine_payment_type(split_amount, stream.amount_cents, on_date, nearest)

    def ingest(
        self,
        data: TransactionIn,
        *,
        today: Optional[date] = None,
    ) -> IngestResult:
        today, _ = _clock(today)
        txn = self.session.get(Transaction, data.transaction_id)
        if txn is not None and txn.user_id != self.user_id:
            raise InvalidInputError(
                f"Transaction {data.transaction_id} belongs to another user"
            )

        previous: list[tuple[str, date]] = []
        if txn is not None:
            for split in txn.splits:
                if split.budget_id:
                    previous.append((split.budget_id, txn.date))
                if split.stream_id and not txn.pending:
                    self.matcher.unassign(txn.id, split.stream_id, today=today)
            txn.splits.clear()
            self.session.flush()
        else:
            txn = Transaction(id=data.transaction_id, user_id=self.user_id)
            self.session.add(txn)

        # Feed convention: negative amounts are money in.
        txn.type = (
            TransactionType.income if data.amount_cents < 0 else TransactionType.expense
        )
        txn.amount_cents = abs(data.amount_cents)
        txn.account_id = data.account_id
        txn.date = data.date
        txn.category = data.category
        txn.description = data.description
        txn.pending = data.pending

        split_inputs = data.splits or []
        if not split_inputs:
            split_inputs = [
                SplitIn(
                    amount_cents=data.amount_cents,
                    category=data.category,
                    stream_id=data.stream_id,
                )
            ]

        budgets, catch_all = active_budgets(self.session, self.user_id)
        period_ids = source_period_ids_for(txn.date)
        for position, item in enumerate(split_inputs):
            stream_id = item.stream_id or data.stream_id
            stream = self.session.get(Obligation, stream_id) if stream_id else None
            if stream_id and stream is None:
                raise NotFoundError(f"Obligation {stream_id} not found")
            budget_id = item.budget_id
            if budget_id is None and txn.type == TransactionType.expense:
                budget_id = resolve_budget_for_split(
                    item.category or data.category, txn.date, budgets, catch_all
                )
            payment_type = item.payment_type or self._payment_type(
                item.amount_cents, stream, txn.date
            )
            txn.splits.append(
                TransactionSplit(
                    id=f"{txn.id}_split_{position}",
                    position=position,
                    category=item.category or data.category,
                    amount_cents=abs(item.amount_cents),
                    payment_type=payment_type,
                    budget_id=budget_id,
                    stream_id=stream_id,
                    monthly_period_id=period_ids[PeriodType.monthly],
                    bi_monthly_period_id=period_ids[PeriodType.bi_monthly],
                    weekly_period_id=period_ids[PeriodType.weekly],
                )
            )
        self.session.commit()

        for budget_id, on_date in previous:
            self.matcher.refresh_budget_spend(budget_id, on_date, today=today)
        self.session.commit()

        matches: list[MatchResult] = []
        if not txn.pending:
            targets = sorted(
                {s.budget_id for s in txn.splits if s.budget_id}
                | {s.stream_id for s in txn.splits if s.stream_id}
            )
            for obligation_id in targets:
                matches.append(self.matcher.match(txn.id, obligation_id, today=today))
        logger.info(
            f"ingest: transaction={txn.id} pending={txn.pending} "
            f"splits={len(txn.splits)} matches={sum(1 for m in matches if m.matched)}"
        )
        return IngestResult(
            transaction=TransactionOut.model_validate(txn), matches=matches
        )


class ObligationService:
    def __init__(
        self,
        session: Session,
        user_id: str = DEFAULT_USER_ID,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or get_settings()
        self.materializer = PeriodMaterializer(session, self.settings)
        self.matcher = TransactionMatcher(session, self.settings)

    def list(self, kind: Optional[ObligationKind] = None) -> list[Obligation]:
        stmt = select(Obligation).where(Obligation.user_id == self.user_id)
        if kind:
            stmt = stmt.where(Obligation.kind == kind)
        stmt = stmt.order_by(Obligation.created_at, Obligation.id)
        return list(self.session.scalars(stmt).all())

    def get(self, obligation_id: str) -> Obligation:
        obligation = self.session.get(Obligation, obligation_id)
        if not obligation or obligation.user_id != self.user_id:
            raise NotFoundError(f"Obligation {obligation_id} not found")
        return obligation

    def periods(
        self, obligation_id: str, period_type: Optional[PeriodType] = None
    ) -> list[PeriodInstance]:
        self.get(obligation_id)
        stmt = select(PeriodInstance).where(PeriodInstance.obligation_id == obligation_id)
        if period_type:
            stmt = stmt.where(PeriodInstance.period_type == period_type)
        stmt = stmt.order_by(PeriodInstance.period_start, PeriodInstance.period_end)
        return list(self.session.scalars(stmt).all())

    def get_period(self, period_id: str) -> PeriodInstance:
        instance = self.session.get(PeriodInstance, period_id)
        if not instance or instance.user_id != self.user_id:
            raise NotFoundError(f"Period {period_id} not found")
        return instance

    @staticmethod
    def _frequency_for(kind: ObligationKind, frequency: Frequency) -> Frequency:
        if kind == ObligationKind.budget and frequency not in BUDGET_FREQUENCIES:
            logger.warning(
                f"obligation: unsupported budget frequency={frequency.value} using MONTHLY"
            )
            return Frequency.monthly
        return frequency

    def create(
        self,
        data: ObligationIn,
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
        is_system_catch_all: bool = False,
    ) -> Obligation:
        today, now = _clock(today, now)
        if data.id and self.session.get(Obligation, data.id):
            raise InvalidInputError(f"Obligation {data.id} already exists")
        obligation = Obligation(
            kind=data.kind,
            user_id=self.user_id,
            group_id=data.group_id,
            name=data.name,
            amount_cents=data.amount_cents,
            frequency=self._frequency_for(data.kind, data.frequency),
            category_ids=list(data.category_ids),
            transaction_ids=list(data.transaction_ids),
            start_date=data.start_date,
            end_date=data.end_date,
            is_ongoing=data.is_ongoing,
            is_active=True,
            is_system_catch_all=is_system_catch_all,
            predicted_next_date=data.predicted_next_date,
            last_date=data.last_date,
            first_date=data.first_date,
            created_at=now,
            updated_at=now,
        )
        if data.id:
            obligation.id = data.id
        self.session.add(obligation)
        self.session.flush()
        try:
            self.materializer.materialize(obligation, today=today, now=now)
        except PreconditionError:
            self.session.rollback()
            raise

        if obligation.kind == ObligationKind.budget:
            ReconciliationService(self.session, self.user_id, self.settings).reconcile_category_change(
                obligation.id, previous_category_ids=[], today=today
            )
        else:
            self.matcher.rematch_obligation(obligation, today=today)
            self.matcher.match_linked_transactions(obligation, today=today)
        logger.info(
            f"obligation_create: id={obligation.id} kind={obligation.kind.value} "
            f"range={obligation.active_period_start}..{obligation.active_period_end}"
        )
        return obligation

    def ensure_catch_all_budget(
        self, *, today: Optional[date] = None, now: Optional[datetime] = None
    ) -> Obligation:
        today, now = _clock(today, now)
        stmt = select(Obligation).where(
            Obligation.user_id == self.user_id,
            Obligation.is_system_catch_all.is_(True),
        )
        existing = self.session.scalars(stmt).first()
        if existing:
            return existing
        data = ObligationIn(
            kind=ObligationKind.budget,
            name=CATCH_ALL_BUDGET_NAME,
            amount_cents=0,
            frequency=Frequency.monthly,
            category_ids=[],
            start_date=today.replace(day=1),
            is_ongoing=True,
        )
        return self.create(data, today=today, now=now, is_system_catch_all=True)

    def update(
        self,
        obligation_id: str,
        data: ObligationUpdate,
        *,
        today: Optional[date] = None,
    ) -> Obligation:
        today, _ = _clock(today)
        obligation = self.get(obligation_id)
        previous_name = obligation.name
        previous_amount = obligation.amount_cents
        previous_categories = list(obligation.category_ids or [])
        previous_schedule = (
            obligation.frequency,
            obligation.predicted_next_date,
            obligation.last_date,
            obligation.end_date,
            obligation.is_ongoing,
        )

        changes = data.model_dump(exclude_unset=True)
        if "frequency" in changes and changes["frequency"] is not None:
            changes["frequency"] = self._frequency_for(obligation.kind, changes["frequency"])
        if obligation.is_system_catch_all:
            changes.pop("category_ids", None)
            changes.pop("amount_cents", None)
        for field, value in changes.items():
            if value is None and field in ("name", "amount_cents", "frequency", "is_ongoing", "is_active"):
                continue
            setattr(obligation, field, value)
        if obligation.end_date and obligation.end_date < obligation.start_date:
            raise InvalidInputError("End date must not be before start date")
        self.session.commit()

        schedule = (
            obligation.frequency,
            obligation.predicted_next_date,
            obligation.last_date,
            obligation.end_date,
            obligation.is_ongoing,
        )
        ReconciliationService(self.session, self.user_id, self.settings).propagate_obligation_change(
            obligation,
            previous_name=previous_name,
            previous_amount=previous_amount,
            previous_category_ids=previous_categories,
            schedule_changed=schedule != previous_schedule,
            today=today,
        )
        return obligation

    def update_period_allocation(
        self, period_id: str, allocated_amount_cents: int, *, today: Optional[date] = None
    ) -> PeriodInstance:
        today, _ = _clock(today)
        instance = self.get_period(period_id)
        instance.allocated_amount_cents = allocated_amount_cents
        instance.is_modified = True
        recalculate(instance, today)
        self.session.commit()
        return instance

    def delete(
        self,
        obligation_id: str,
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> None:
        today, now = _clock(today, now)
        obligation = self.get(obligation_id)
        kind = obligation.kind
        was_catch_all = obligation.is_system_catch_all

        writer = BatchWriter(
            self.session, self.settings.batch_size, label=f"delete:{obligation.id}"
        )
        stmt = select(PeriodInstance).where(PeriodInstance.obligation_id == obligation.id)
        for instance in self.session.scalars(stmt).all():
            writer.delete(instance)

        orphaned: list[str] = []
        split_stmt = select(TransactionSplit).where(
            or_(
                TransactionSplit.budget_id == obligation.id,
                TransactionSplit.stream_id == obligation.id,
            )
        )
        for split in self.session.scalars(split_stmt).all():
            if split.budget_id == obligation.id:
                split.budget_id = None
                orphaned.append(split.id)
            if split.stream_id == obligation.id:
                split.stream_id = None
            writer.touch(split)
        writer.delete(obligation)
        writer.commit()
        logger.info(
            f"obligation_delete: id={obligation_id} kind={kind.value} "
            f"orphaned_splits={len(orphaned)}"
        )

        if was_catch_all:
            self.ensure_catch_all_budget(today=today, now=now)
        if orphaned:
            ReconciliationService(self.session, self.user_id, self.settings).reassign_splits(
                orphaned, today=today
            )


class ReconciliationService:
    """Keeps period instances consistent as obligations and time move on."""

    def __init__(
        self,
        session: Session,
        user_id: Optional[str] = DEFAULT_USER_ID,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or get_settings()
        self.materializer = PeriodMaterializer(session, self.settings)
        self.matcher = TransactionMatcher(session, self.settings)

    def _apply_assignments(
        self,
        rows: list[tuple[TransactionSplit, Transaction]],
        user_id: str,
        result: ReconcileResult,
        today: date,
    ) -> None:
        budgets, catch_all = active_budgets(self.session, user_id)
        writer = BatchWriter(self.session, self.settings.batch_size, label="reconcile")
        affected: set[tuple[str, date]] = set()
        touched: set[str] = set()
        for split, txn in rows:
            result.splits_evaluated += 1
            try:
                target = resolve_budget_for_split(split.category, txn.date, budgets, catch_all)
                if target == split.budget_id:
                    continue
                if split.budget_id:
                    affected.add((split.budget_id, txn.date))
                if target:
                    affected.add((target, txn.date))
                split.budget_id = target
                writer.touch(split)
                result.splits_reassigned += 1
                touched.add(txn.id)
            except Exception as exc:
                logger.warning(f"reconcile_split_failed: split={split.id} error={exc}")
                result.fail(split.id, exc)
        writer.commit()

        recalculated: set[str] = set()
        for budget_id, on_date in sorted(affected):
            try:
                for instance in self.matcher.instances_containing(budget_id, on_date):
                    if instance.id in recalculated:
                        continue
                    self.matcher.recompute_spend(instance, today)
                    writer.touch(instance)
                    recalculated.add(instance.id)
            except Exception as exc:
                logger.warning(f"reconcile_spend_failed: budget={budget_id} error={exc}")
                result.fail(budget_id, exc)
        writer.commit()
        result.transactions_touched = len(touched)
        result.periods_recalculated = len(recalculated)

    def reconcile_category_change(
        self,
        obligation_id: str,
        previous_category_ids: Optional[list[str]] = None,
        *,
        today: Optional[date] = None,
    ) -> ReconcileResult:
        """Re-home splits after a budget's category set changed.

        Splits currently on the budget are re-evaluated; unassigned or
        catch-all splits whose category was added are picked up. Only splits
        whose assignment changes are written. Allocated amounts and stream
        occurrence arrays are left as they are.
        """
        today, _ = _clock(today)
        budget = self.session.get(Obligation, obligation_id)
        if not budget:
            raise NotFoundError(f"Obligation {obligation_id} not found")
        if budget.kind != ObligationKind.budget:
            raise InvalidInputError(f"Obligation {obligation_id} is not a budget")

        result = ReconcileResult(obligation_id=obligation_id)
        _, catch_all = active_budgets(self.session, budget.user_id)
        current = _normalized(budget.category_ids or [])
        if previous_category_ids is None:
            added = current
        else:
            added = current - _normalized(previous_category_ids)

        claim = TransactionSplit.budget_id == budget.id
        if added and budget.is_active:
            unassigned = TransactionSplit.budget_id.is_(None)
            if catch_all:
                unassigned = or_(unassigned, TransactionSplit.budget_id == catch_all)
            claim = or_(
                claim,
                and_(unassigned, func.lower(TransactionSplit.category).in_(sorted(added))),
            )
        stmt = (
            select(TransactionSplit, Transaction)
            .join(Transaction, TransactionSplit.transaction_id == Transaction.id)
            .where(
                Transaction.user_id == budget.user_id,
                Transaction.type == TransactionType.expense,
                claim,
            )
            .order_by(Transaction.date, TransactionSplit.id)
        )
        rows = [(split, txn) for split, txn in self.session.execute(stmt).all()]
        self._apply_assignments(rows, budget.user_id, result, today)
        logger.info(
            f"reconcile_categories: budget={obligation_id} evaluated={result.splits_evaluated} "
            f"reassigned={result.splits_reassigned} errors={len(result.errors)}"
        )
        return result

    def reassign_splits(
        self, split_ids: list[str], *, today: Optional[date] = None
    ) -> ReconcileResult:
        today, _ = _clock(today)
        result = ReconcileResult(obligation_id="")
        rows_by_user: dict[str, list] = {}
        for chunk in _chunks(split_ids, self.settings.batch_size):
            stmt = (
                select(TransactionSplit, Transaction)
                .join(Transaction, TransactionSplit.transaction_id == Transaction.id)
                .where(
                    TransactionSplit.id.in_(chunk),
                    Transaction.type == TransactionType.expense,
                )
            )
            for split, txn in self.session.execute(stmt).all():
                rows_by_user.setdefault(txn.user_id, []).append((split, txn))
        for user_id, rows in rows_by_user.items():
            self._apply_assignments(rows, user_id, result, today)
        return result

    def propagate_obligation_change(
        self,
        obligation: Obligation,
        *,
        previous_name: str,
        previous_amount: int,
        previous_category_ids: list[str],
        schedule_changed: bool = False,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        today, now = _clock(today, now)
        result = ReconcileResult(obligation_id=obligation.id)
        renamed = obligation.name != previous_name
        repriced = obligation.amount_cents != previous_amount or schedule_changed

        if renamed or repriced:
            strategy = strategy_for(obligation.kind)
            writer = BatchWriter(self.session, self.settings.batch_size, label="propagate")
            stmt = select(PeriodInstance).where(
                PeriodInstance.obligation_id == obligation.id
            )
            for instance in self.session.scalars(stmt).all():
                changed = False
                if renamed:
                    instance.obligation_name = obligation.name
                    changed = True
                # Only periods that have not started yet and carry no payments.
                if repriced and instance.period_start > now:
                    source_period = self.session.get(SourcePeriod, instance.source_period_id)
                    if source_period is not None and strategy.reprice(
                        instance, obligation, source_period, today
                    ):
                        result.periods_recalculated += 1
                        changed = True
                if changed:
                    writer.touch(instance)
            writer.commit()

        if obligation.kind == ObligationKind.budget and _normalized(
            obligation.category_ids or []
        ) != _normalized(previous_category_ids):
            categories = self.reconcile_category_change(
                obligation.id, previous_category_ids, today=today
            )
            result.splits_evaluated = categories.splits_evaluated
            result.splits_reassigned = categories.splits_reassigned
            result.transactions_touched = categories.transactions_touched
            result.periods_recalculated += categories.periods_recalculated
            result.errors.extend(categories.errors)
            result.success = result.success and categories.success
        logger.info(
            f"propagate: obligation={obligation.id} renamed={renamed} repriced={repriced} "
            f"periods={result.periods_recalculated}"
        )
        return result

    def extension_window(self, obligation: Obligation, today: date) -> Optional[DateRange]:
        start = max(obligation.start_date, today)
        months = self.settings.extension_months
        end = add_months(today, months) - timedelta(days=1)
        if not obligation.is_ongoing and obligation.end_date:
            end = min(end, obligation.end_date)
        if start > end:
            return None
        return DateRange(start, end)

    def extend_obligation(
        self,
        obligation: Obligation,
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> MaterializeResult:
        today, now = _clock(today, now)
        window = self.extension_window(obligation, today)
        if window is None:
            obligation.last_extended = now
            self.session.commit()
            return MaterializeResult(obligation_id=obligation.id)
        return self.materializer.materialize(obligation, window, today=today, now=now)

    def _ongoing(self) -> list[Obligation]:
        stmt = select(Obligation).where(
            Obligation.is_active.is_(True), Obligation.is_ongoing.is_(True)
        )
        if self.user_id:
            stmt = stmt.where(Obligation.user_id == self.user_id)
        return list(self.session.scalars(stmt.order_by(Obligation.id)).all())

    def extend_all(
        self, *, today: Optional[date] = None, now: Optional[datetime] = None
    ) -> ExtensionResult:
        today, now = _clock(today, now)
        result = ExtensionResult()
        for obligation in self._ongoing():
            try:
                extended = self.extend_obligation(obligation, today=today, now=now)
                result.periods_created += extended.created
                result.obligations_processed += 1
            except Exception as exc:
                self.session.rollback()
                logger.warning(f"extend_failed: obligation={obligation.id} error={exc}")
                result.fail(obligation.id, exc)
        logger.info(
            f"extend_all: obligations={result.obligations_processed} "
            f"created={result.periods_created} errors={len(result.errors)}"
        )
        return result

    def extend_range(
        self,
        request: ExtendRangeIn,
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> ExtendRangeResult:
        today, now = _clock(today, now)
        periods = self.materializer.calendar.in_id_range(
            request.period_type,
            request.start_period_id,
            request.end_period_id,
            request.max_periods,
        )
        if not periods:
            raise PreconditionError(
                f"No source periods found between {request.start_period_id} and "
                f"{request.end_period_id}. Run source period generation first."
            )

        result = ExtendRangeResult(periods_processed=len(periods))
        for obligation in self._ongoing():
            try:
                eligible = [
                    period
                    for period in periods
                    if period.end_date.date() >= obligation.start_date
                    and (
                        obligation.is_ongoing
                        or not obligation.end_date
                        or period.start_date.date() <= obligation.end_date
                    )
                ]
                if not eligible:
                    continue
                extended = self.materializer.materialize_periods(
                    obligation, eligible, today=today, now=now
                )
                result.created += extended.created
                result.skipped_existing.extend(extended.skipped_existing)
                if extended.created:
                    result.obligations_extended += 1
            except Exception as exc:
                self.session.rollback()
                logger.warning(f"extend_range_failed: obligation={obligation.id} error={exc}")
                result.fail(obligation.id, exc)
        logger.info(
            f"extend_range: type={request.period_type.value} "
            f"range={request.start_period_id}..{request.end_period_id} "
            f"created={result.created} skipped={len(result.skipped_existing)}"
        )
        return result

    def refresh_statuses(self, *, today: Optional[date] = None) -> StatusRefreshResult:
        """Re-derive stream statuses so DUE_SOON and OVERDUE follow the clock."""
        today, _ = _clock(today)
        cutoff = day_start(today - timedelta(days=STATUS_LOOKBACK_DAYS))
        stmt = select(PeriodInstance).where(
            PeriodInstance.kind != ObligationKind.budget,
            PeriodInstance.period_end >= cutoff,
        )
        if self.user_id:
            stmt = stmt.where(PeriodInstance.user_id == self.user_id)
        result = StatusRefreshResult()
        writer = BatchWriter(self.session, self.settings.batch_size, label="status_refresh")
        for instance in self.session.scalars(stmt).all():
            result.periods_checked += 1
            try:
                before = instance.status
                recalculate(instance, today)
                if instance.status != before:
                    writer.touch(instance)
                    result.periods_changed += 1
            except Exception as exc:
                logger.warning(f"status_refresh_failed: period={instance.id} error={exc}")
                result.fail(instance.id, exc)
        writer.commit()
        logger.info(
            f"status_refresh: checked={result.periods_checked} changed={result.periods_changed}"
        )
        return result
