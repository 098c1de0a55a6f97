from datetime import datetime, timedelta, timezone

import models
from schemas.catalog import AccessGrant, CatalogEntry
from services.reconciler import Action, RecordKind, changed_fields, decide, reconcile

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_entry(**overrides):
    values = {
        "id": "file-1",
        "name": "Plan.docx",
        "mime_type": "application/pdf",
        "parent_ids": frozenset({"folder-1"}),
        "size_bytes": 100,
        "created_at": T0,
        "modified_at": T0,
    }
    values.update(overrides)
    return CatalogEntry(**values)


def test_missing_row_is_create():
    decision = reconcile(make_entry(), None)

    assert decision.kind is RecordKind.ENTRY
    assert decision.action is Action.CREATE


def test_identical_record_is_skip():
    decision = reconcile(make_entry(), make_entry())

    assert decision.action is Action.SKIP
    assert decision.changed_fields == ()


def test_modified_at_only_difference_is_single_update():
    decision = reconcile(make_entry(modified_at=T0 + timedelta(minutes=5)), make_entry())

    assert decision.action is Action.UPDATE
    assert decision.changed_fields == ("modified_at",)


def test_parent_order_is_not_a_change():
    existing = make_entry(parent_ids=["b", "a"])
    incoming = make_entry(parent_ids=["a", "b"])

    assert reconcile(incoming, existing).action is Action.SKIP


def test_changed_fields_lists_every_difference():
    incoming = make_entry(name="Plan v2.docx", parent_ids=frozenset({"folder-2"}), trashed=True)

    assert changed_fields(make_entry(), incoming) == ("name", "parent_ids", "trashed")


def test_grant_defaults_applied_before_comparison():
    stored = AccessGrant(id="perm-1", entry_id="file-1", grantee_type="user", role="reader")
    incoming = AccessGrant.from_drive("file-1", {"id": "perm-1"})

    assert reconcile(incoming, stored).action is Action.SKIP


def test_grant_role_change_is_update():
    stored = AccessGrant(id="perm-1", entry_id="file-1", role="reader")
    incoming = AccessGrant(id="perm-1", entry_id="file-1", role="writer")

    decision = reconcile(incoming, stored)

    assert decision.kind is RecordKind.GRANT
    assert decision.changed_fields == ("role",)


def test_decide_against_persisted_row(db_session):
    entry = make_entry()
    db_session.add(models.DriveEntry(**entry.to_row_values()))
    db_session.commit()
    db_session.expire_all()

    assert decide(db_session, entry).action is Action.SKIP
    assert decide(db_session, make_entry(size_bytes=200)).changed_fields == ("size_bytes",)
    assert decide(db_session, make_entry(id="file-2")).action is Action.CREATE
