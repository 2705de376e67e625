import logging
from typing import Optional

from sqlalchemy.orm import Session

from config import MAX_BATCH_SIZE, get_settings

logger = logging.getLogger(__name__)


class BatchWriter:
    """Groups ORM writes into sequential commits of at most ``batch_size`` ops.

    Chunks committed before a failure stay committed; callers rely on
    deterministic ids and existence checks to resume safely.
    """

    def __init__(
        self, session: Session, batch_size: Optional[int] = None, label: str = "batch"
    ) -> None:
        self.session = session
        size = batch_size or get_settings().batch_size
        self.batch_size = max(1, min(size, MAX_BATCH_SIZE))
        self.label = label
        self.pending = 0
        self.operations = 0
        self.batches_committed = 0

    def put(self, obj) -> None:
        self.session.add(obj)
        self._count()

    def touch(self, obj) -> None:
        """Count an update to an object already attached to the session."""
        if obj not in self.session:
            self.session.add(obj)
        self._count()

    def delete(self, obj) -> None:
        self.session.delete(obj)
        self._count()

    def _count(self) -> None:
        self.pending += 1
        self.operations += 1
        if self.pending >= self.batch_size:
            self.commit()

    def commit(self) -> None:
        if not self.pending:
            return
        self.session.commit()
        self.batches_committed += 1
        logger.info(
            f"{self.label}: committed batch={self.batches_committed} ops={self.pending}"
        )
        self.pending = 0

    def __enter__(self) -> "BatchWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.commit()
