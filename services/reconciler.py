"""
Change detection for mirrored Drive records.

Each incoming record is compared, field by field, with the typed form of
the persisted row sharing its primary key:

- no row            -> CREATE
- any field differs -> UPDATE (with the names of the differing fields)
- otherwise         -> SKIP
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union

from sqlalchemy.orm import Session

import models
from schemas.catalog import (
    ENTRY_TRACKED_FIELDS,
    GRANT_TRACKED_FIELDS,
    AccessGrant,
    CatalogEntry,
)

Record = Union[CatalogEntry, AccessGrant]


class RecordKind(str, Enum):
    ENTRY = "entry"
    GRANT = "grant"


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"


@dataclass(frozen=True)
class Decision:
    kind: RecordKind
    action: Action
    record: Record
    changed_fields: Tuple[str, ...] = ()

    @property
    def record_id(self) -> str:
        return self.record.id

    def __repr__(self) -> str:
        return (
            f"Decision({self.kind.value} {self.record_id}: {self.action.value}"
            f"{' ' + ','.join(self.changed_fields) if self.changed_fields else ''})"
        )


_KINDS = {
    CatalogEntry: (RecordKind.ENTRY, models.DriveEntry, ENTRY_TRACKED_FIELDS),
    AccessGrant: (RecordKind.GRANT, models.DriveGrant, GRANT_TRACKED_FIELDS),
}


def kind_of(record: Record) -> RecordKind:
    return _KINDS[type(record)][0]


def model_for(record: Record):
    return _KINDS[type(record)][1]


def changed_fields(existing: Record, incoming: Record) -> Tuple[str, ...]:
    """Names of tracked fields whose values differ, in declaration order."""
    tracked = _KINDS[type(incoming)][2]
    return tuple(
        name for name in tracked
        if getattr(existing, name) != getattr(incoming, name)
    )


def reconcile(incoming: Record, existing: Optional[Record]) -> Decision:
    kind = kind_of(incoming)
    if existing is None:
        return Decision(kind, Action.CREATE, incoming)

    diff = changed_fields(existing, incoming)
    if diff:
        return Decision(kind, Action.UPDATE, incoming, diff)
    return Decision(kind, Action.SKIP, incoming)


def load_existing(db: Session, record: Record) -> Optional[Record]:
    row = db.get(model_for(record), record.id)
    if row is None:
        return None
    return type(record).from_row(row)


def decide(db: Session, record: Record) -> Decision:
    """Compare an incoming record with its persisted counterpart."""
    return reconcile(record, load_existing(db, record))
