"""
HTTP surface tests: starting runs, conflicts, status, entries, health and SSE framing.
"""

import asyncio
import json
import threading

import pytest
from fastapi.testclient import TestClient

from database import get_db
from main import app
from routers.sync import get_sync_service, sse_events
from services.catalog_mock import MockCatalogClient
from services.progress import AsyncSubscription, ProgressBroadcaster, ProgressEvent, ProgressPhase
from services.sync_errors import CatalogAuthError
from services.sync_service import SyncService


class GatedCatalog(MockCatalogClient):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()
        self.release.set()

    def count_entries(self, parent_id=None, on_page=None):
        self.entered.set()
        self.release.wait(5)
        return super().count_entries(parent_id, on_page)


class UnauthorizedCatalog(MockCatalogClient):
    def count_entries(self, parent_id=None, on_page=None):
        raise CatalogAuthError("No Drive credentials")


@pytest.fixture
def catalog():
    catalog = GatedCatalog()
    catalog.create_folder("Clients", folder_id="folder-1")
    catalog.upload_file("contract.pdf", "application/pdf", parent_id="folder-1", size=512, file_id="file-1")
    catalog.upload_file("logo.png", "image/png", parent_id="folder-1", size=64, file_id="file-2")
    catalog.add_permission("file-1", "writer", "lawyer@example.com", permission_id="perm-1")
    catalog.add_permission("file-1", "reader", type="anyone", permission_id="perm-2")
    return catalog


@pytest.fixture
def sync_service(catalog, session_factory):
    return SyncService(catalog_factory=lambda: catalog, session_factory=session_factory)


@pytest.fixture
def client(sync_service, session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_service] = lambda: sync_service
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_start_sync_returns_202(client, sync_service):
    response = client.post("/api/drive/sync")

    assert response.status_code == 202
    body = response.json()
    assert body["scope"] == "all"
    assert body["progress_url"] == "/api/drive/sync/progress"

    stats = sync_service.get_run().wait(10)
    assert stats.run_id == body["run_id"]
    assert stats.errors == 0


def test_start_sync_for_folder(client, sync_service):
    response = client.post("/api/drive/sync", json={"folder_id": "folder-1"})

    assert response.status_code == 202
    assert response.json()["scope"] == "folder-1"
    assert sync_service.get_run("folder-1").wait(10).total_files == 2


def test_conflict_returns_409(client, catalog, sync_service):
    catalog.release.clear()
    first = client.post("/api/drive/sync")
    assert catalog.entered.wait(5)
    try:
        second = client.post("/api/drive/sync")
    finally:
        catalog.release.set()

    assert first.status_code == 202
    assert second.status_code == 409
    body = second.json()
    assert body["code"] == "conflict"
    assert body["details"]["run_id"] == first.json()["run_id"]
    sync_service.get_run().wait(10)


def test_status_lists_runs(client, sync_service):
    client.post("/api/drive/sync")
    sync_service.get_run().wait(10)

    response = client.get("/api/drive/sync/status")

    assert response.status_code == 200
    body = response.json()
    assert body["active"] is False
    assert body["runs"][0]["state"] == "complete"
    assert body["runs"][0]["created"] == {"entries": 3, "permissions": 2}


def test_entries_listing(client, sync_service):
    client.post("/api/drive/sync")
    sync_service.get_run().wait(10)

    response = client.get("/api/drive/entries", params={"parent_id": "folder-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    by_id = {item["id"]: item for item in body["items"]}
    assert by_id["file-1"]["grant_count"] == 2
    assert by_id["file-2"]["grant_count"] == 0
    assert by_id["file-1"]["grants"] is None


def test_entries_pagination(client, sync_service):
    client.post("/api/drive/sync")
    sync_service.get_run().wait(10)

    whole = client.get("/api/drive/entries", params={"page": 2, "limit": 1}).json()
    scoped = client.get("/api/drive/entries", params={"parent_id": "folder-1", "page": 2, "limit": 1}).json()
    past_end = client.get("/api/drive/entries", params={"page": 5, "limit": 1}).json()

    assert whole["total"] == 3
    assert [item["id"] for item in whole["items"]] == ["file-1"]
    assert scoped["total"] == 2
    assert [item["id"] for item in scoped["items"]] == ["file-2"]
    assert past_end == {"items": [], "total": 3}


def test_entry_detail_and_404(client, sync_service):
    client.post("/api/drive/sync")
    sync_service.get_run().wait(10)

    detail = client.get("/api/drive/entries/file-1")
    missing = client.get("/api/drive/entries/nope")

    assert detail.status_code == 200
    assert {g["id"] for g in detail.json()["grants"]} == {"perm-1", "perm-2"}
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"


def test_invalid_query_is_normalized(client):
    response = client.get("/api/drive/entries", params={"limit": 0})

    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


def test_health_reports_database_and_runs(client, sync_service):
    client.post("/api/drive/sync")
    sync_service.get_run().wait(10)

    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["database"] == {"reachable": True, "entries": 3, "grants": 2}
    assert body["runs"][0]["state"] == "complete"


def test_health_reports_every_failed_scope(client, session_factory):
    failing = SyncService(catalog_factory=UnauthorizedCatalog, session_factory=session_factory)
    failing.start_run("folder-a", background=False)
    failing.start_run("folder-b", background=False)
    app.dependency_overrides[get_sync_service] = lambda: failing

    body = client.get("/health").json()

    assert body["status"] == "degraded"
    assert body["issues"] == [
        "Last sync of scope 'folder-a' failed",
        "Last sync of scope 'folder-b' failed",
    ]


def test_metrics_endpoint(client):
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "drive_mirror_sync_runs_total" in response.text


def test_sse_stream_frames():
    async def _collect():
        subscription = AsyncSubscription()
        subscription.deliver(ProgressEvent(phase=ProgressPhase.PAGE_LOADED, percent=30.0, total=10, done=3))
        subscription.deliver(ProgressEvent(phase=ProgressPhase.COMPLETE, percent=100.0, total=10, done=10))
        return [frame async for frame in sse_events(subscription, heartbeat_interval=0.05, until_complete=True)]

    frames = asyncio.run(_collect())

    assert [frame.split("\n", 1)[0] for frame in frames] == [
        "event: connected",
        "event: page_loaded",
        "event: complete",
    ]
    data = json.loads(frames[2].split("data: ", 1)[1])
    assert data["percent"] == 100.0


def test_sse_stream_heartbeat_and_close():
    frames = []

    async def _collect():
        subscription = AsyncSubscription()
        async for frame in sse_events(subscription, heartbeat_interval=0.01):
            frames.append(frame)
            if len(frames) == 2:
                subscription.close()

    asyncio.run(_collect())

    assert frames[1].startswith("event: heartbeat")
    assert len(frames) == 2


def test_many_stream_subscribers_receive_events_from_run_thread():
    """Waiting streams hold no worker threads, so every one of them is woken by a publish."""
    broadcaster = ProgressBroadcaster()

    async def _run():
        subscriptions = [broadcaster.add(AsyncSubscription()) for _ in range(100)]
        waiters = [asyncio.ensure_future(s.next_event(5)) for s in subscriptions]
        await asyncio.sleep(0)
        publisher = threading.Thread(
            target=broadcaster.publish,
            args=(ProgressEvent(phase=ProgressPhase.PAGE_LOADED, percent=12.5, run_id="run-1"),),
        )
        publisher.start()
        received = await asyncio.wait_for(asyncio.gather(*waiters), 2)
        publisher.join()
        return received

    received = asyncio.run(_run())

    assert len(received) == 100
    assert all(event.phase is ProgressPhase.PAGE_LOADED and event.run_id == "run-1" for event in received)
