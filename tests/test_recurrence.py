from datetime import date, datetime

from models import Frequency, Obligation, ObligationKind, PeriodType, SourcePeriod
from recurrence import (
    add_interval,
    add_months,
    adjust_for_weekend,
    occurrence_dates,
    parse_frequency,
    project_occurrences,
    shift,
    subtract_interval,
)


def _week(start: date, end: date) -> SourcePeriod:
    return SourcePeriod(
        id="2025W12",
        type=PeriodType.weekly,
        start_date=datetime.combine(start, datetime.min.time()),
        end_date=datetime(end.year, end.month, end.day, 23, 59, 59, 999000),
        year=2025,
        index=202512,
    )


def _stream(**overrides) -> Obligation:
    values = dict(
        id="salary",
        kind=ObligationKind.inflow,
        user_id="u1",
        name="Salary",
        amount_cents=80000,
        frequency=Frequency.semi_monthly,
        category_ids=[],
        start_date=date(2025, 1, 1),
        is_ongoing=True,
    )
    values.update(overrides)
    return Obligation(**values)


def test_month_end_clamps_to_shorter_month():
    assert add_interval(date(2024, 1, 31), Frequency.monthly) == date(2024, 2, 29)
    assert add_interval(date(2023, 1, 31), Frequency.monthly) == date(2023, 2, 28)


def test_shift_keeps_anchor_day_after_clamping():
    assert shift(date(2024, 1, 31), Frequency.monthly, 2) == date(2024, 3, 31)
    assert subtract_interval(date(2024, 3, 31), Frequency.monthly) == date(2024, 2, 29)


def test_day_based_frequencies():
    assert add_interval(date(2025, 3, 1), Frequency.weekly) == date(2025, 3, 8)
    assert add_interval(date(2025, 3, 1), Frequency.biweekly) == date(2025, 3, 15)
    assert add_interval(date(2025, 3, 1), Frequency.semi_monthly) == date(2025, 3, 16)


def test_quarterly_and_annually():
    assert add_interval(date(2025, 11, 30), Frequency.quarterly) == date(2026, 2, 28)
    assert add_interval(date(2024, 2, 29), Frequency.annually) == date(2025, 2, 28)
    assert add_months(date(2025, 1, 15), 12) == date(2026, 1, 15)


def test_parse_frequency_aliases_and_fallback():
    assert parse_frequency("yearly") == Frequency.annually
    assert parse_frequency("bi_weekly") == Frequency.biweekly
    assert parse_frequency("MONTHLY") == Frequency.monthly
    assert parse_frequency("every blue moon") == Frequency.monthly


def test_occurrence_dates_walks_back_from_future_anchor():
    dates = occurrence_dates(
        date(2025, 6, 5), Frequency.monthly, date(2025, 3, 1), date(2025, 4, 30)
    )
    assert dates == [date(2025, 3, 5), date(2025, 4, 5)]


def test_occurrence_dates_inclusive_bounds():
    dates = occurrence_dates(
        date(2025, 1, 1), Frequency.weekly, date(2025, 1, 8), date(2025, 1, 22)
    )
    assert dates == [date(2025, 1, 8), date(2025, 1, 15), date(2025, 1, 22)]


def test_semi_monthly_income_projected_onto_week():
    stream = _stream(predicted_next_date=date(2025, 3, 1))
    projection = project_occurrences(stream, _week(date(2025, 3, 16), date(2025, 3, 22)))
    assert projection.due_dates == (date(2025, 3, 16),)
    assert projection.total_amount_cents == projection.count * 80000

    empty_week = project_occurrences(stream, _week(date(2025, 3, 2), date(2025, 3, 8)))
    assert empty_week.count == 0
    assert empty_week.total_amount_cents == 0


def test_anchor_prefers_predicted_next_then_last_then_first():
    week = _week(date(2025, 3, 2), date(2025, 3, 8))
    stream = _stream(
        frequency=Frequency.weekly,
        predicted_next_date=date(2025, 3, 4),
        last_date=date(2025, 3, 6),
    )
    assert project_occurrences(stream, week).due_dates == (date(2025, 3, 4),)
    stream.predicted_next_date = None
    assert project_occurrences(stream, week).due_dates == (date(2025, 3, 6),)


def test_stream_without_anchor_has_no_occurrences():
    stream = _stream()
    projection = project_occurrences(stream, _week(date(2025, 3, 16), date(2025, 3, 22)))
    assert projection.count == 0
    assert projection.amount_per_occurrence_cents == 80000


def test_ended_stream_drops_occurrences_after_end_date():
    stream = _stream(
        frequency=Frequency.weekly,
        predicted_next_date=date(2025, 3, 16),
        is_ongoing=False,
        end_date=date(2025, 3, 17),
    )
    month = SourcePeriod(
        id="2025M03",
        type=PeriodType.monthly,
        start_date=datetime(2025, 3, 1),
        end_date=datetime(2025, 3, 31, 23, 59, 59, 999000),
        year=2025,
        index=202503,
    )
    assert project_occurrences(stream, month).due_dates == (
        date(2025, 3, 2),
        date(2025, 3, 9),
        date(2025, 3, 16),
    )


def test_weekend_due_dates_draw_on_monday():
    assert adjust_for_weekend(date(2025, 3, 15)) == date(2025, 3, 17)
    assert adjust_for_weekend(date(2025, 3, 16)) == date(2025, 3, 17)
    assert adjust_for_weekend(date(2025, 3, 14)) == date(2025, 3, 14)


def test_draw_dates_parallel_due_dates():
    stream = _stream(predicted_next_date=date(2025, 3, 1))
    month = SourcePeriod(
        id="2025M03",
        type=PeriodType.monthly,
        start_date=datetime(2025, 3, 1),
        end_date=datetime(2025, 3, 31, 23, 59, 59, 999000),
        year=2025,
        index=202503,
    )
    projection = project_occurrences(stream, month)
    assert projection.due_dates == (date(2025, 3, 1), date(2025, 3, 16), date(2025, 3, 31))
    assert projection.draw_dates == (date(2025, 3, 3), date(2025, 3, 17), date(2025, 3, 31))
