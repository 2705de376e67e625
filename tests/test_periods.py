from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from errors import InvalidInputError
from models import PeriodType, SourcePeriod
from periods import (
    DateRange,
    PeriodKey,
    build_source_periods,
    source_period_ids_for,
    sunday_on_or_before,
)
from services import SourcePeriodService

NOW = datetime(2025, 3, 10, 12, 0)


def _by_type(periods):
    grouped = {period_type: [] for period_type in PeriodType}
    for period in periods:
        grouped[period.type].append(period)
    for values in grouped.values():
        values.sort(key=lambda p: p.start_date)
    return grouped


def test_every_day_of_horizon_covered_exactly_once_per_type():
    periods = build_source_periods(2023, 2033, now=NOW)
    for period_type, values in _by_type(periods).items():
        assert values[0].start_date.date() <= date(2023, 1, 1), period_type
        assert values[-1].end_date.date() >= date(2033, 12, 31), period_type
        for previous, current in zip(values, values[1:]):
            assert current.start_date.date() == previous.end_date.date() + timedelta(days=1)


def test_period_ids_and_indexes_are_unique():
    periods = build_source_periods(2023, 2033, now=NOW)
    assert len({p.id for p in periods}) == len(periods)
    assert len({(p.type, p.index) for p in periods}) == len(periods)


def test_boundaries_are_day_start_and_day_end():
    periods = {p.id: p for p in build_source_periods(2024, 2024, now=NOW)}
    feb = periods["2024M02"]
    assert feb.start_date == datetime(2024, 2, 1, 0, 0)
    assert feb.end_date == datetime(2024, 2, 29, 23, 59, 59, 999000)
    assert feb.index == 202402
    second_half = periods["2024BM02B"]
    assert second_half.start_date.date() == date(2024, 2, 16)
    assert second_half.end_date.date() == date(2024, 2, 29)
    assert second_half.index == 2024022
    assert periods["2024BM02A"].end_date.date() == date(2024, 2, 15)


def test_weekly_periods_start_on_sunday_and_do_not_overlap_across_years():
    periods = build_source_periods(2024, 2026, now=NOW)
    weeks = _by_type(periods)[PeriodType.weekly]
    for week in weeks:
        assert week.start_date.date().weekday() == 6
        assert week.day_count == 7
        assert week.week_start_day == 0
    first_2025 = next(w for w in weeks if w.id == "2025W01")
    assert first_2025.start_date.date() == date(2024, 12, 29)
    assert "2024W53" not in {w.id for w in weeks}


def test_next_year_first_week_appended_when_horizon_end_uncovered():
    periods = build_source_periods(2025, 2025, now=NOW)
    ids = [p.id for p in periods]
    assert len(periods) == 12 + 24 + 52 + 1
    assert ids[-1] == "2026W01"


def test_current_flags_follow_now():
    periods = build_source_periods(2025, 2025, now=NOW)
    current = {p.type: p.id for p in periods if p.is_current}
    assert current == {
        PeriodType.monthly: "2025M03",
        PeriodType.bi_monthly: "2025BM03A",
        PeriodType.weekly: "2025W11",
    }


def test_source_period_ids_for_matches_containing_period():
    periods = {p.id: p for p in build_source_periods(2023, 2033, now=NOW)}
    day = date(2023, 1, 1)
    while day <= date(2033, 12, 31):
        ids = source_period_ids_for(day)
        for period_type, period_id in ids.items():
            period = periods[period_id]
            assert period.type == period_type
            assert period.start_date.date() <= day <= period.end_date.date()
        day += timedelta(days=1)


def test_sunday_on_or_before():
    assert sunday_on_or_before(date(2025, 3, 5)) == date(2025, 3, 2)
    assert sunday_on_or_before(date(2025, 3, 2)) == date(2025, 3, 2)


def test_build_rejects_inverted_horizon():
    with pytest.raises(ValueError):
        build_source_periods(2030, 2025)


def test_period_key_round_trip_with_separator_in_obligation_id():
    key = PeriodKey("rent_2025", "2025BM03A")
    assert key.id == "rent_2025_2025BM03A"
    assert PeriodKey.parse(key.id) == key
    with pytest.raises(ValueError):
        PeriodKey.parse("nokey")


def test_date_range_rejects_inverted_bounds():
    with pytest.raises(ValueError):
        DateRange(date(2025, 3, 2), date(2025, 3, 1))


def test_generate_is_idempotent_and_refresh_flips_current_flags():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = SourcePeriodService(session)
        first = service.generate(2025, 2025, now=NOW)
        assert first.total_periods == 89
        assert first.by_type == {"MONTHLY": 12, "BI_MONTHLY": 24, "WEEKLY": 53}
        assert first.current_periods["WEEKLY"] == "2025W11"

        again = service.generate(2025, 2025, now=NOW)
        assert again.total_periods == 0
        assert len(session.scalars(select(SourcePeriod)).all()) == 89

        sweep = service.refresh_current_flags(now=datetime(2025, 3, 20, 8, 0))
        assert sorted(sweep.flipped_to_false) == ["2025BM03A", "2025W11"]
        assert sorted(sweep.flipped_to_true) == ["2025BM03B", "2025W12"]
        assert service.current() == {
            "MONTHLY": "2025M03",
            "BI_MONTHLY": "2025BM03B",
            "WEEKLY": "2025W12",
        }

        with pytest.raises(InvalidInputError):
            service.generate(2026, 2025, now=NOW)
