"""
Drive -> database sync run.

Phases run strictly in order:

    IDLE -> COUNTING -> FETCHING -> PERSISTING -> SYNCING_GRANTS -> PRUNING -> COMPLETE

Any non-terminal phase may end in ERRORED. Per-record failures are counted
and the run continues; catalog, credential or database failures abort the
run. Pruning only ever sees id sets from a fetch that ran to completion.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import config
from schemas.catalog import AccessGrant, CatalogEntry
from services.batch_committer import BatchCommitter, BatchResult
from services.orphan_pruner import OrphanPruner
from services.progress import (
    COUNTING_BAND,
    FETCHING_BAND,
    GRANTS_BAND,
    PERSISTING_BAND,
    ProgressBroadcaster,
    ProgressPhase,
    RunProgress,
)
from services.reconciler import Decision
from services.sync_errors import (
    CatalogAuthError,
    CatalogUnavailableError,
    InvalidStateTransition,
    PersistenceUnavailableError,
)
from utils.prometheus import SYNC_DURATION, SYNC_PRUNED, SYNC_RECORDS, SYNC_RUNS
from utils.structured_logging import sync_logger

ALL_SCOPE = "all"


class SyncState(str, Enum):
    IDLE = "idle"
    COUNTING = "counting"
    FETCHING = "fetching"
    PERSISTING = "persisting"
    SYNCING_GRANTS = "syncing_grants"
    PRUNING = "pruning"
    COMPLETE = "complete"
    ERRORED = "errored"


TERMINAL_STATES = (SyncState.COMPLETE, SyncState.ERRORED)

_NEXT_STATE = {
    SyncState.IDLE: SyncState.COUNTING,
    SyncState.COUNTING: SyncState.FETCHING,
    SyncState.FETCHING: SyncState.PERSISTING,
    SyncState.PERSISTING: SyncState.SYNCING_GRANTS,
    SyncState.SYNCING_GRANTS: SyncState.PRUNING,
    SyncState.PRUNING: SyncState.COMPLETE,
}


def can_transition(current: SyncState, requested: SyncState) -> bool:
    if current in TERMINAL_STATES:
        return False
    return requested is SyncState.ERRORED or _NEXT_STATE.get(current) is requested


@dataclass
class SyncRun:
    """Counters for one run. Owned by a single orchestrator."""
    run_id: str
    scope: Optional[str]
    state: SyncState = SyncState.IDLE
    total_entries: int = 0
    processed_entries: int = 0
    total_grants: int = 0
    processed_grants: int = 0
    error_count: int = 0
    entries: BatchResult = field(default_factory=BatchResult)
    grants: BatchResult = field(default_factory=BatchResult)
    pruned_entries: int = 0
    pruned_grants: int = 0
    error_message: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    _started_clock: float = field(default_factory=time.monotonic, repr=False)
    _finished_clock: Optional[float] = field(default=None, repr=False)

    def finish(self) -> None:
        self.finished_at = datetime.now(timezone.utc)
        self._finished_clock = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        end = self._finished_clock if self._finished_clock is not None else time.monotonic()
        return end - self._started_clock


@dataclass(frozen=True)
class SyncStats:
    """Final report of a run, complete or not."""
    run_id: str
    scope: str
    state: SyncState
    total_files: int
    processed_files: int
    total_permissions: int
    processed_permissions: int
    errors: int
    processing_time_ms: int
    created: Dict[str, int]
    updated: Dict[str, int]
    skipped: Dict[str, int]
    pruned_entries: int
    pruned_permissions: int
    started_at: datetime
    finished_at: Optional[datetime]
    error_message: Optional[str] = None

    @classmethod
    def from_run(cls, run: SyncRun) -> "SyncStats":
        return cls(
            run_id=run.run_id,
            scope=run.scope or ALL_SCOPE,
            state=run.state,
            total_files=run.total_entries,
            processed_files=run.processed_entries,
            total_permissions=run.total_grants,
            processed_permissions=run.processed_grants,
            errors=run.error_count,
            processing_time_ms=int(run.elapsed_seconds * 1000),
            created={"entries": run.entries.created, "permissions": run.grants.created},
            updated={"entries": run.entries.updated, "permissions": run.grants.updated},
            skipped={"entries": run.entries.skipped, "permissions": run.grants.skipped},
            pruned_entries=run.pruned_entries,
            pruned_permissions=run.pruned_grants,
            started_at=run.started_at,
            finished_at=run.finished_at,
            error_message=run.error_message,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "scope": self.scope,
            "state": self.state.value,
            "total_files": self.total_files,
            "processed_files": self.processed_files,
            "total_permissions": self.total_permissions,
            "processed_permissions": self.processed_permissions,
            "errors": self.errors,
            "processing_time_ms": self.processing_time_ms,
            "created": dict(self.created),
            "updated": dict(self.updated),
            "skipped": dict(self.skipped),
            "pruned_entries": self.pruned_entries,
            "pruned_permissions": self.pruned_permissions,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error_message": self.error_message,
        }

    def __str__(self) -> str:
        return (
            f"Sync {self.state.value}: {self.processed_files}/{self.total_files} files, "
            f"{self.processed_permissions}/{self.total_permissions} permissions, "
            f"{self.pruned_entries} entries pruned, {self.errors} errors "
            f"in {self.processing_time_ms}ms"
        )


class SyncOrchestrator:
    """
    Runs one sync of a catalog scope into the database.

    Usage:
        orchestrator = SyncOrchestrator(
            catalog=GoogleDriveCatalogClient(),
            session_factory=SessionLocal,
            broadcaster=broadcaster,
            scope="<folder id>",
        )
        stats = orchestrator.run()
    """

    def __init__(
        self,
        catalog: Any,
        session_factory: Callable[[], Session],
        broadcaster: ProgressBroadcaster,
        scope: Optional[str] = None,
        batch_size: int = config.SYNC_BATCH_SIZE,
        run_id: Optional[str] = None,
    ):
        self.catalog = catalog
        self.session_factory = session_factory
        self.scope = scope or None
        self.batch_size = batch_size
        self.run = SyncRun(run_id=run_id or uuid.uuid4().hex, scope=self.scope)
        self.progress = RunProgress(broadcaster, self.run.run_id, self.scope or ALL_SCOPE)

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def state(self) -> SyncState:
        return self.run.state

    def _transition(self, requested: SyncState) -> None:
        if not can_transition(self.run.state, requested):
            raise InvalidStateTransition(self.run.state, requested)
        sync_logger.info(
            action="transition",
            message=f"{self.run.state.value} -> {requested.value}",
            run_id=self.run_id,
            scope=self.scope or ALL_SCOPE,
        )
        self.run.state = requested

    def execute(self) -> SyncStats:
        """
        Run every phase. Always returns stats: on a fatal error the run ends
        ERRORED with the counters gathered so far and an error event is published.
        """
        if self.run.state is not SyncState.IDLE:
            raise InvalidStateTransition(self.run.state, SyncState.COUNTING)

        sync_logger.info(action="sync_start", message="Starting Drive sync", run_id=self.run_id, scope=self.scope or ALL_SCOPE)
        db: Optional[Session] = None
        try:
            db = self._open_session()

            self._transition(SyncState.COUNTING)
            self._count_entries()

            self._transition(SyncState.FETCHING)
            entries = self._fetch_entries()

            self._transition(SyncState.PERSISTING)
            persisted = self._persist_entries(db, entries)

            self._transition(SyncState.SYNCING_GRANTS)
            grant_ids, listed_entry_ids = self._sync_grants(db, persisted)

            self._transition(SyncState.PRUNING)
            self._prune(db, {entry.id for entry in entries}, grant_ids, listed_entry_ids)

            self._transition(SyncState.COMPLETE)
        except Exception as e:
            self._fail(e)
        finally:
            if db is not None:
                db.close()
            self.run.finish()
            SYNC_DURATION.observe(self.run.elapsed_seconds)
            SYNC_RUNS.labels(outcome=self.run.state.value).inc()

        stats = SyncStats.from_run(self.run)
        if stats.state is SyncState.COMPLETE:
            sync_logger.info(action="sync_complete", message=str(stats), run_id=self.run_id)
            self.progress.emit(
                ProgressPhase.COMPLETE,
                100.0,
                total=stats.total_files,
                done=stats.processed_files,
                message="Sync completed",
                payload=stats.to_dict(),
            )
        else:
            self.progress.emit(
                ProgressPhase.ERROR,
                self.progress.percent,
                total=stats.total_files,
                done=stats.processed_files,
                message=stats.error_message,
                payload=stats.to_dict(),
            )
        return stats

    def _fail(self, error: Exception) -> None:
        self.run.error_message = str(error) or type(error).__name__
        failed_in = self.run.state
        if can_transition(self.run.state, SyncState.ERRORED):
            self.run.state = SyncState.ERRORED
        fatal = isinstance(error, (CatalogUnavailableError, PersistenceUnavailableError))
        sync_logger.error(
            action="sync_failed",
            message=f"Sync aborted during {failed_in.value}" + ("" if fatal else " (unexpected error)"),
            error=error,
            run_id=self.run_id,
        )

    def _open_session(self) -> Session:
        try:
            db = self.session_factory()
            db.execute(text("SELECT 1"))
            db.rollback()
            return db
        except SQLAlchemyError as e:
            raise PersistenceUnavailableError(f"Database unavailable: {e}") from e

    # --- phases ---

    def _count_entries(self) -> None:
        pages = 0

        def on_page(page_count: int, running_total: int) -> None:
            nonlocal pages
            pages += 1
            self.run.total_entries = running_total
            self.progress.emit(
                ProgressPhase.PAGE_LOADED,
                COUNTING_BAND.at(pages, pages + 1),
                total=running_total,
                done=0,
                message=f"Counted page with {page_count} files",
            )

        try:
            self.run.total_entries = self.catalog.count_entries(self.scope, on_page=on_page)
        except CatalogAuthError:
            raise
        except CatalogUnavailableError as e:
            # The estimate only drives percentages; the full fetch decides whether the catalog is reachable
            sync_logger.warning(action="count_entries", message=f"Entry count unavailable: {e}", run_id=self.run_id)

    def _fetch_entries(self) -> List[CatalogEntry]:
        fetched: Dict[str, CatalogEntry] = {}
        page_token = None
        pages = 0

        while True:
            page, page_token = self.catalog.list_page(self.scope, page_token)
            pages += 1
            for entry in page:
                fetched[entry.id] = entry

            estimate = max(self.run.total_entries, len(fetched))
            self.progress.emit(
                ProgressPhase.PAGE_LOADED,
                FETCHING_BAND.at(len(fetched), estimate) if page_token else FETCHING_BAND.end,
                total=estimate,
                done=len(fetched),
                message=f"Loaded page with {len(page)} files ({len(fetched)}/{estimate})",
                payload={"page": pages, "page_files": len(page)},
            )
            if not page_token:
                break

        self.run.total_entries = len(fetched)
        sync_logger.info(action="fetch_entries", message=f"Fetched {len(fetched)} entries in {pages} pages", run_id=self.run_id)
        return list(fetched.values())

    def _persist_entries(self, db: Session, entries: List[CatalogEntry]) -> List[CatalogEntry]:
        committer = BatchCommitter(db, self.batch_size, run_id=self.run_id, on_decision=self._count_decision)
        total = len(entries)
        done = 0

        for batch_index, batch in enumerate(committer.batches(entries), start=1):
            result = committer.reconcile_and_commit(batch)
            self.run.entries.merge(result)
            self.run.processed_entries += result.succeeded
            self.run.error_count += result.errors
            done += len(batch)

            self.progress.emit(
                ProgressPhase.ENTRY_PROCESSED,
                PERSISTING_BAND.at(done, total),
                total=total,
                done=self.run.processed_entries,
                message=f"Processed batch {batch_index} ({done}/{total} files)",
                payload={
                    "batch": batch_index,
                    "created": result.created,
                    "updated": result.updated,
                    "skipped": result.skipped,
                    "errors": result.errors,
                },
            )

        failed = set(self.run.entries.failed_ids)
        return [entry for entry in entries if entry.id not in failed]

    def _sync_grants(self, db: Session, entries: List[CatalogEntry]):
        committer = BatchCommitter(db, self.batch_size, run_id=self.run_id, on_decision=self._count_decision)
        seen_grant_ids: Set[str] = set()
        listed_entry_ids: Set[str] = set()
        total = len(entries)

        for index, entry in enumerate(entries, start=1):
            try:
                grants = self.catalog.list_grants(entry.id)
            except CatalogAuthError:
                raise
            except Exception as e:
                # Zero grants for this entry in this pass; its stored grants are left alone
                self.run.error_count += 1
                grants = []
                sync_logger.error(
                    action="list_grants",
                    message=f"Failed to list permissions for {entry.id}",
                    error=e,
                    run_id=self.run_id,
                    entity_type="entry",
                    entity_id=entry.id,
                )
            else:
                listed_entry_ids.add(entry.id)

            self.run.total_grants += len(grants)
            fresh: List[AccessGrant] = []
            for grant in grants:
                # Drive reuses permission ids across files; the first entry listed keeps the grant
                if grant.id in seen_grant_ids:
                    continue
                seen_grant_ids.add(grant.id)
                fresh.append(grant)

            for batch in committer.batches(fresh):
                result = committer.reconcile_and_commit(batch)
                self.run.grants.merge(result)
                self.run.processed_grants += result.succeeded
                self.run.error_count += result.errors

            self.progress.emit(
                ProgressPhase.ENTRY_PROCESSED,
                GRANTS_BAND.at(index, total),
                total=total,
                done=index,
                message=f"Processed permissions for file {index}/{total}",
                payload={"file_id": entry.id, "permissions_count": len(grants)},
            )

        return seen_grant_ids, listed_entry_ids

    def _prune(self, db: Session, entry_ids: Set[str], grant_ids: Set[str], listed_entry_ids: Set[str]) -> None:
        result = OrphanPruner(db, run_id=self.run_id).prune(
            current_entry_ids=entry_ids,
            current_grant_ids=grant_ids,
            scope=self.scope,
            listed_grant_entry_ids=listed_entry_ids,
        )
        self.run.pruned_entries = result.entries_deleted
        self.run.pruned_grants = result.total_grants_deleted
        SYNC_PRUNED.labels(kind="entry").inc(result.entries_deleted)
        SYNC_PRUNED.labels(kind="grant").inc(result.total_grants_deleted)

    @staticmethod
    def _count_decision(decision: Decision) -> None:
        SYNC_RECORDS.labels(kind=decision.kind.value, action=decision.action.value).inc()
