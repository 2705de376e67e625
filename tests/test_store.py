from datetime import datetime

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from models import SourcePeriod
from periods import build_source_periods
from store import BatchWriter


def test_batch_writer_commits_in_fixed_size_chunks():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    periods = build_source_periods(2025, 2025, now=datetime(2025, 3, 10))[:5]

    with Session(engine) as session:
        writer = BatchWriter(session, batch_size=2, label="test")
        for period in periods:
            writer.put(period)
        assert writer.batches_committed == 2
        assert writer.pending == 1

        writer.commit()
        assert writer.batches_committed == 3
        assert writer.operations == 5

    with Session(engine) as session:
        assert session.scalar(select(func.count()).select_from(SourcePeriod)) == 5


def test_batch_size_is_capped():
    engine = create_engine("sqlite:///:memory:")
    with Session(engine) as session:
        assert BatchWriter(session, batch_size=10_000).batch_size == 500


def test_context_manager_commits_remainder():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    periods = build_source_periods(2025, 2025, now=datetime(2025, 3, 10))[:3]

    with Session(engine) as session:
        with BatchWriter(session, batch_size=10) as writer:
            for period in periods:
                writer.put(period)
        assert writer.batches_committed == 1
