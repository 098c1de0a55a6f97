import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import config
from services.reconciler import Action, Decision, Record, decide, model_for
from services.sync_errors import PersistenceUnavailableError
from utils.structured_logging import sync_logger

logger = logging.getLogger("drive_mirror.committer")

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    if size < 1:
        raise ValueError("batch size must be positive")
    for start in range(0, len(items), size):
        yield items[start:start + size]


@dataclass
class BatchResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    failed_ids: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return self.created + self.updated + self.skipped

    def merge(self, other: "BatchResult") -> "BatchResult":
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.errors += other.errors
        self.failed_ids.extend(other.failed_ids)
        return self

    def count(self, action: Action) -> None:
        if action is Action.CREATE:
            self.created += 1
        elif action is Action.UPDATE:
            self.updated += 1
        else:
            self.skipped += 1


class BatchCommitter:
    """
    Applies reconciled decisions, one database transaction per batch.

    Each decision runs inside its own SAVEPOINT: a failing record is rolled
    back and counted, and the rest of the batch still commits. Applying the
    same batch twice converges to the same rows, since every write re-reads
    the current row first.
    """

    def __init__(
        self,
        db: Session,
        batch_size: int = config.SYNC_BATCH_SIZE,
        run_id: Optional[str] = None,
        on_decision: Optional[Callable[[Decision], None]] = None,
    ):
        self.db = db
        self.batch_size = batch_size
        self.run_id = run_id
        self.on_decision = on_decision

    def batches(self, records: Sequence[T]) -> Iterator[Sequence[T]]:
        return chunked(records, self.batch_size)

    def commit(self, batch: Iterable[Decision]) -> BatchResult:
        """Apply precomputed decisions in a single transaction."""
        return self._commit((decision.record, decision) for decision in batch)

    def reconcile_and_commit(self, records: Iterable[Record]) -> BatchResult:
        """Decide and apply each record inside the same batch transaction."""
        return self._commit((record, None) for record in records)

    def _commit(self, items) -> BatchResult:
        result = BatchResult()
        try:
            for record, planned in items:
                self._apply_isolated(record, result, planned)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceUnavailableError(f"Batch commit failed: {e}") from e
        return result

    def _apply_isolated(self, record: Record, result: BatchResult, planned: Optional[Decision] = None) -> None:
        try:
            with self.db.begin_nested():
                # Re-decide against the current row so re-applied batches stay idempotent
                decision = decide(self.db, record)
                self._apply(decision)
                self.db.flush()
        except (SQLAlchemyError, ValueError) as e:
            result.errors += 1
            result.failed_ids.append(record.id)
            sync_logger.error(
                action="commit_record",
                message=f"Failed to persist {type(record).__name__} {record.id}",
                error=e,
                run_id=self.run_id,
                entity_id=record.id,
            )
            return

        if planned is not None and planned.action is not decision.action:
            logger.debug(f"Planned {planned!r} resolved as {decision!r}")
        result.count(decision.action)
        if self.on_decision:
            self.on_decision(decision)

    def _apply(self, decision: Decision) -> None:
        model = model_for(decision.record)
        values = decision.record.to_row_values()

        if decision.action is Action.CREATE:
            self.db.add(model(**values))
        elif decision.action is Action.UPDATE:
            row = self.db.get(model, decision.record_id)
            for name, value in values.items():
                setattr(row, name, value)
