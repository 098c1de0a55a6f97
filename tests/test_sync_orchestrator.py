"""
End-to-end sync runs against the in-memory catalog and a SQLite mirror.
"""

import pytest
from sqlalchemy.exc import OperationalError

import models
from services.catalog_mock import MockCatalogClient
from services.progress import ProgressBroadcaster, ProgressPhase
from services.sync_errors import CatalogAuthError, CatalogUnavailableError, InvalidStateTransition
from services.sync_orchestrator import SyncOrchestrator, SyncState, can_transition


class FlakyGrantsCatalog(MockCatalogClient):
    """Permission listing fails for selected entries."""

    def __init__(self, failing_ids, **kwargs):
        super().__init__(**kwargs)
        self.failing_ids = set(failing_ids)

    def list_grants(self, entry_id):
        if entry_id in self.failing_ids:
            raise CatalogUnavailableError(f"permissions.list {entry_id} failed")
        return super().list_grants(entry_id)


class BrokenPagingCatalog(MockCatalogClient):
    """Every page after the first is unreachable."""

    def list_page(self, parent_id=None, page_token=None):
        if page_token:
            raise CatalogUnavailableError("files.list failed after retries")
        return super().list_page(parent_id, page_token)


def seed_three_entries(catalog):
    catalog.create_folder("Projects", parent_id="root", folder_id="A")
    catalog.upload_file("budget.xlsx", "application/vnd.ms-excel", parent_id="A", size=10, file_id="B")
    catalog.upload_file("notes.txt", "text/plain", parent_id="A", size=20, file_id="C")
    catalog.add_permission("A", "owner", "owner@example.com", permission_id="pA1")
    catalog.add_permission("A", "writer", "team@example.com", type="group", permission_id="pA2")
    catalog.add_permission("B", "reader", "guest@example.com", permission_id="pB1")
    catalog.add_permission("C", "commenter", "legal@example.com", permission_id="pC1")
    catalog.add_permission("C", "reader", type="anyone", permission_id="pC2")
    return catalog


@pytest.fixture
def catalog():
    return seed_three_entries(MockCatalogClient(page_size=2))


@pytest.fixture
def events():
    return []


@pytest.fixture
def broadcaster(events):
    broadcaster = ProgressBroadcaster()
    broadcaster.subscribe(events.append)
    return broadcaster


def run_sync(catalog, session_factory, broadcaster, **kwargs):
    return SyncOrchestrator(catalog, session_factory, broadcaster, batch_size=2, **kwargs).execute()


def test_fresh_sync(catalog, session_factory, broadcaster, db_session):
    stats = run_sync(catalog, session_factory, broadcaster)

    assert stats.state is SyncState.COMPLETE
    assert stats.total_files == 3
    assert stats.processed_files == 3
    assert stats.total_permissions == 5
    assert stats.processed_permissions == 5
    assert stats.errors == 0
    assert stats.created == {"entries": 3, "permissions": 5}
    assert db_session.query(models.DriveEntry).count() == 3
    assert db_session.query(models.DriveGrant).count() == 5

    folder = db_session.get(models.DriveEntry, "A")
    assert folder.is_container is True
    assert db_session.get(models.DriveEntry, "B").parent_ids == ["A"]


def test_second_run_skips_everything(catalog, session_factory, broadcaster):
    run_sync(catalog, session_factory, broadcaster)

    stats = run_sync(catalog, session_factory, broadcaster)

    assert stats.created == {"entries": 0, "permissions": 0}
    assert stats.updated == {"entries": 0, "permissions": 0}
    assert stats.skipped == {"entries": 3, "permissions": 5}
    assert stats.pruned_entries == 0
    assert stats.pruned_permissions == 0


def test_changed_entry_is_updated(catalog, session_factory, broadcaster, db_session):
    run_sync(catalog, session_factory, broadcaster)
    catalog.update_item("B", modifiedTime="2030-01-01T00:00:00Z")

    stats = run_sync(catalog, session_factory, broadcaster)

    assert stats.updated["entries"] == 1
    assert stats.skipped["entries"] == 2
    assert db_session.get(models.DriveEntry, "B").modified_at.year == 2030


def test_deleted_entry_is_pruned(catalog, session_factory, broadcaster, db_session):
    run_sync(catalog, session_factory, broadcaster)
    catalog.delete_item("C")

    stats = run_sync(catalog, session_factory, broadcaster)

    assert stats.state is SyncState.COMPLETE
    assert stats.pruned_entries == 1
    assert stats.pruned_permissions == 2
    assert {e.id for e in db_session.query(models.DriveEntry).all()} == {"A", "B"}
    assert db_session.query(models.DriveGrant).filter_by(entry_id="C").count() == 0


def test_partial_grant_failure(session_factory, broadcaster, db_session):
    catalog = FlakyGrantsCatalog(failing_ids={"f7"}, page_size=4)
    for i in range(10):
        catalog.upload_file(f"file-{i}.txt", "text/plain", file_id=f"f{i}")
        catalog.add_permission(f"f{i}", "reader", f"user{i}@example.com", permission_id=f"p{i}")

    stats = run_sync(catalog, session_factory, broadcaster)

    assert stats.state is SyncState.COMPLETE
    assert stats.errors == 1
    assert stats.processed_files == 10
    assert stats.processed_permissions == 9
    assert db_session.query(models.DriveGrant).count() == 9


def test_failed_grant_listing_keeps_stored_grants(catalog, session_factory, broadcaster, db_session):
    run_sync(catalog, session_factory, broadcaster)
    flaky = FlakyGrantsCatalog(failing_ids={"C"}, page_size=2)
    flaky.db = catalog.db

    stats = run_sync(flaky, session_factory, broadcaster)

    assert stats.errors == 1
    assert stats.pruned_permissions == 0
    assert db_session.query(models.DriveGrant).filter_by(entry_id="C").count() == 2


def test_fatal_page_failure_errors_without_pruning(catalog, session_factory, events, broadcaster, db_session):
    run_sync(catalog, session_factory, broadcaster)
    broken = BrokenPagingCatalog(page_size=2)
    broken.db = catalog.db
    events.clear()

    stats = run_sync(broken, session_factory, broadcaster)

    assert stats.state is SyncState.ERRORED
    assert "files.list failed" in stats.error_message
    assert stats.pruned_entries == 0
    assert db_session.query(models.DriveEntry).count() == 3
    assert db_session.query(models.DriveGrant).count() == 5
    assert events[-1].phase is ProgressPhase.ERROR
    assert events[-1].message == stats.error_message


def test_auth_failure_is_fatal(catalog, session_factory, events, broadcaster):
    def no_credentials(*args, **kwargs):
        raise CatalogAuthError("GOOGLE_SERVICE_ACCOUNT_JSON is missing")

    catalog.count_entries = no_credentials

    stats = run_sync(catalog, session_factory, broadcaster)

    assert stats.state is SyncState.ERRORED
    assert stats.processed_files == 0
    assert events[-1].phase is ProgressPhase.ERROR


def test_unreachable_database_is_fatal(catalog, broadcaster, events):
    def broken_session():
        raise OperationalError("connect", {}, Exception("unable to open database file"))

    stats = run_sync(catalog, broken_session, broadcaster)

    assert stats.state is SyncState.ERRORED
    assert "Database unavailable" in stats.error_message
    assert events[-1].phase is ProgressPhase.ERROR


def test_progress_is_monotonic_and_ends_complete(catalog, session_factory, events, broadcaster):
    stats = run_sync(catalog, session_factory, broadcaster)

    percents = [e.percent for e in events]
    assert percents == sorted(percents)
    assert events[-1].phase is ProgressPhase.COMPLETE
    assert events[-1].percent == 100.0
    assert events[-1].payload["run_id"] == stats.run_id
    assert {ProgressPhase.PAGE_LOADED, ProgressPhase.ENTRY_PROCESSED} <= {e.phase for e in events}


def test_scoped_sync_only_prunes_inside_scope(session_factory, broadcaster, db_session):
    catalog = MockCatalogClient()
    catalog.create_folder("Scope", folder_id="S")
    catalog.create_folder("Other", folder_id="O")
    catalog.upload_file("in.txt", "text/plain", parent_id="S", file_id="in-1")
    catalog.upload_file("gone.txt", "text/plain", parent_id="S", file_id="in-2")
    catalog.upload_file("out.txt", "text/plain", parent_id="O", file_id="out-1")
    run_sync(catalog, session_factory, broadcaster)
    catalog.delete_item("in-2")

    stats = run_sync(catalog, session_factory, broadcaster, scope="S")

    assert stats.scope == "S"
    assert stats.total_files == 1
    assert stats.pruned_entries == 1
    assert {e.id for e in db_session.query(models.DriveEntry).all()} == {"S", "O", "in-1", "out-1"}


def test_duplicate_permission_ids_are_stored_once(session_factory, broadcaster, db_session):
    catalog = MockCatalogClient()
    catalog.upload_file("a.txt", "text/plain", file_id="a")
    catalog.upload_file("b.txt", "text/plain", file_id="b")
    catalog.add_permission("a", "writer", "shared@example.com", permission_id="shared")
    catalog.add_permission("b", "writer", "shared@example.com", permission_id="shared")

    stats = run_sync(catalog, session_factory, broadcaster)

    assert stats.errors == 0
    assert stats.total_permissions == 2
    assert stats.processed_permissions == 1
    assert db_session.query(models.DriveGrant).count() == 1


def test_state_machine_transitions():
    assert can_transition(SyncState.IDLE, SyncState.COUNTING)
    assert can_transition(SyncState.PERSISTING, SyncState.ERRORED)
    assert not can_transition(SyncState.IDLE, SyncState.PRUNING)
    assert not can_transition(SyncState.COMPLETE, SyncState.ERRORED)
    assert not can_transition(SyncState.ERRORED, SyncState.COUNTING)


def test_orchestrator_runs_once(catalog, session_factory, broadcaster):
    orchestrator = SyncOrchestrator(catalog, session_factory, broadcaster)
    orchestrator.execute()

    with pytest.raises(InvalidStateTransition):
        orchestrator.execute()
