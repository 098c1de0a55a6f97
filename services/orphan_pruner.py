import logging
from dataclasses import dataclass
from typing import AbstractSet, Iterable, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
from services.sync_errors import PersistenceUnavailableError

logger = logging.getLogger("drive_mirror.pruner")

# Keep IN (...) lists well below SQLite's bound-parameter limit
DELETE_CHUNK_SIZE = 500


@dataclass
class PruneResult:
    entries_deleted: int = 0
    cascaded_grants: int = 0
    grants_deleted: int = 0
    dangling_grants_deleted: int = 0

    @property
    def total_grants_deleted(self) -> int:
        return self.cascaded_grants + self.grants_deleted + self.dangling_grants_deleted


def _chunks(ids: Iterable[str], size: int = DELETE_CHUNK_SIZE) -> Iterable[List[str]]:
    ordered = sorted(ids)
    for start in range(0, len(ordered), size):
        yield ordered[start:start + size]


class OrphanPruner:
    """
    Removes mirrored rows that the latest complete fetch no longer contains.

    Must only be handed the id sets of a fetch that ran to completion: an
    incomplete listing cannot be told apart from upstream deletions.
    """

    def __init__(self, db: Session, run_id: Optional[str] = None):
        self.db = db
        self.run_id = run_id

    def persisted_entry_ids(self, scope: Optional[str] = None) -> Set[str]:
        """Ids of persisted entries a sync of `scope` is responsible for."""
        rows = self.db.execute(select(models.DriveEntry.id, models.DriveEntry.parent_ids)).all()
        if not scope:
            return {row.id for row in rows}
        return {row.id for row in rows if scope in (row.parent_ids or [])}

    def prune(
        self,
        current_entry_ids: AbstractSet[str],
        current_grant_ids: AbstractSet[str],
        scope: Optional[str] = None,
        listed_grant_entry_ids: Optional[AbstractSet[str]] = None,
    ) -> PruneResult:
        """
        Delete orphans in one transaction.

        Args:
            current_entry_ids: every entry id returned by the completed fetch
            current_grant_ids: every grant id listed during this run
            scope: folder id the run was limited to, or None for the whole catalog
            listed_grant_entry_ids: entries whose grant listing succeeded; only their
                grants are candidates for id-based pruning. Defaults to current_entry_ids.
        """
        if listed_grant_entry_ids is None:
            listed_grant_entry_ids = current_entry_ids

        result = PruneResult()
        try:
            orphan_entries = self.persisted_entry_ids(scope) - set(current_entry_ids)
            for chunk in _chunks(orphan_entries):
                result.cascaded_grants += self.db.query(models.DriveGrant).filter(
                    models.DriveGrant.entry_id.in_(chunk)
                ).count()
                # Grants go with their entry through ON DELETE CASCADE
                result.entries_deleted += self.db.query(models.DriveEntry).filter(
                    models.DriveEntry.id.in_(chunk)
                ).delete(synchronize_session=False)

            stale_grants = self._stale_grant_ids(listed_grant_entry_ids, current_grant_ids)
            for chunk in _chunks(stale_grants):
                result.grants_deleted += self.db.query(models.DriveGrant).filter(
                    models.DriveGrant.id.in_(chunk)
                ).delete(synchronize_session=False)

            result.dangling_grants_deleted = self.db.query(models.DriveGrant).filter(
                ~models.DriveGrant.entry_id.in_(select(models.DriveEntry.id))
            ).delete(synchronize_session=False)

            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceUnavailableError(f"Orphan pruning failed: {e}") from e

        self.db.expire_all()
        logger.info(
            "Pruned orphaned records",
            extra={
                "run_id": self.run_id,
                "scope": scope or "all",
                "entries_deleted": result.entries_deleted,
                "cascaded_grants": result.cascaded_grants,
                "grants_deleted": result.grants_deleted,
                "dangling_grants_deleted": result.dangling_grants_deleted,
            },
        )
        return result

    def _stale_grant_ids(
        self,
        listed_grant_entry_ids: AbstractSet[str],
        current_grant_ids: AbstractSet[str],
    ) -> Set[str]:
        stale: Set[str] = set()
        for chunk in _chunks(listed_grant_entry_ids):
            rows = self.db.execute(
                select(models.DriveGrant.id).where(models.DriveGrant.entry_id.in_(chunk))
            ).scalars()
            stale.update(grant_id for grant_id in rows if grant_id not in current_grant_ids)
        return stale
