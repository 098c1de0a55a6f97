import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from config import config
from database import SessionLocal
from locks import RedisLockService
from services.catalog_client import GoogleDriveCatalogClient
from services.catalog_mock import MockCatalogClient
from services.progress import AsyncSubscription, ProgressBroadcaster, ProgressEvent, Subscriber
from services.sync_errors import AlreadyRunningError
from services.sync_orchestrator import ALL_SCOPE, SyncOrchestrator, SyncState, SyncStats

logger = logging.getLogger("drive_mirror.sync_service")


def build_catalog_client():
    """Catalog client for the current configuration (in-memory catalog in mock mode)."""
    if config.USE_MOCK_DRIVE:
        return MockCatalogClient(page_size=config.SYNC_PAGE_SIZE, db_file=config.MOCK_DRIVE_FILE)
    return GoogleDriveCatalogClient()


def scope_key(scope: Optional[str]) -> str:
    return scope or ALL_SCOPE


class RunHandle:
    """Caller-side view of a run started by SyncService."""

    def __init__(self, orchestrator: SyncOrchestrator):
        self.orchestrator = orchestrator
        self.thread: Optional[threading.Thread] = None
        self._done = threading.Event()
        self._stats: Optional[SyncStats] = None

    @property
    def run_id(self) -> str:
        return self.orchestrator.run_id

    @property
    def scope(self) -> str:
        return scope_key(self.orchestrator.scope)

    @property
    def state(self) -> SyncState:
        return self.orchestrator.state

    @property
    def is_running(self) -> bool:
        return not self._done.is_set()

    @property
    def stats(self) -> SyncStats:
        """Final stats once finished, otherwise a snapshot of the counters so far."""
        if self._stats is not None:
            return self._stats
        return SyncStats.from_run(self.orchestrator.run)

    def wait(self, timeout: Optional[float] = None) -> Optional[SyncStats]:
        if not self._done.wait(timeout):
            return None
        return self._stats

    def _finish(self, stats: Optional[SyncStats]) -> None:
        self._stats = stats
        self._done.set()

    def to_dict(self) -> Dict[str, Any]:
        return {"running": self.is_running, **self.stats.to_dict()}


@dataclass
class ActiveScope:
    run_id: str
    lock: Any = ""
    stop: threading.Event = field(default_factory=threading.Event)
    renewer: Optional[threading.Thread] = None


def scopes_overlap(scope: str, other: str) -> bool:
    """A whole-catalog run touches every folder's records; distinct folders do not overlap."""
    return scope == other or ALL_SCOPE in (scope, other)


class SingleFlightGuard:
    """
    At most one active run per persisted record set.

    "all" conflicts with every active scope and every folder conflicts with an
    active "all"; runs on different folders may proceed together. The
    in-process registry is authoritative within a worker; an enabled
    RedisLockService extends the guarantee across worker processes, and the
    lock is renewed for as long as the run is active.
    """

    def __init__(
        self,
        lock_service: Optional[RedisLockService] = None,
        lock_ttl: float = config.SYNC_LOCK_TTL_SECONDS,
    ):
        self.lock_service = lock_service
        self.lock_ttl = lock_ttl
        self._lock = threading.Lock()
        self._active: Dict[str, ActiveScope] = {}

    @staticmethod
    def _blocking_scope(scope: str, active_scopes: Iterable[str]) -> Optional[str]:
        for other in active_scopes:
            if scopes_overlap(scope, other):
                return other
        return None

    def acquire(self, scope: str, run_id: str) -> None:
        """
        Raises:
            AlreadyRunningError: naming the active scope that overlaps `scope`
        """
        with self._lock:
            blocking = self._blocking_scope(scope, self._active)
            if blocking is not None:
                raise AlreadyRunningError(blocking, self._active[blocking].run_id)

            lock = self.lock_service.acquire_lock(scope, ttl=self.lock_ttl) if self.lock_service else ""
            if lock is None:
                raise AlreadyRunningError(scope)
            if lock:
                # Own key first, then look for overlapping keys: two racing workers both back off
                blocking = self._blocking_scope(scope, set(self.lock_service.locked_scopes()) - {scope})
                if blocking is not None:
                    self.lock_service.release_lock(scope, lock)
                    raise AlreadyRunningError(blocking)

            active = ActiveScope(run_id=run_id, lock=lock)
            self._active[scope] = active

        if lock:
            active.renewer = threading.Thread(
                target=self._renew, args=(scope, active), name=f"drive-sync-lock-{scope}", daemon=True
            )
            active.renewer.start()

    def _renew(self, scope: str, active: ActiveScope) -> None:
        interval = max(self.lock_ttl / 3.0, 0.01)
        while not active.stop.wait(interval):
            if not self.lock_service.extend_lock(scope, active.lock, self.lock_ttl):
                logger.warning(
                    "Run lock lost; other workers may start this scope",
                    extra={"run_id": active.run_id, "scope": scope},
                )
                return

    def release(self, scope: str) -> None:
        with self._lock:
            active = self._active.pop(scope, None)
        if active is None:
            return
        active.stop.set()
        if active.renewer is not None:
            active.renewer.join(timeout=5)
        if self.lock_service and active.lock:
            self.lock_service.release_lock(scope, active.lock)

    def is_active(self, scope: str) -> bool:
        with self._lock:
            return scope in self._active


class SyncService:
    """
    Starts sync runs and exposes their progress.

    Usage:
        service = SyncService(build_catalog_client)
        subscription = service.subscribe()
        handle = service.start_run("<folder id>")
        for event in subscription.events(stop_on_terminal=True):
            ...
    """

    def __init__(
        self,
        catalog_factory: Callable[[], Any] = build_catalog_client,
        session_factory: Callable[[], Session] = SessionLocal,
        broadcaster: Optional[ProgressBroadcaster] = None,
        guard: Optional[SingleFlightGuard] = None,
        batch_size: int = config.SYNC_BATCH_SIZE,
    ):
        self.catalog_factory = catalog_factory
        self.session_factory = session_factory
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.guard = guard or SingleFlightGuard()
        self.batch_size = batch_size
        self._runs: Dict[str, RunHandle] = {}
        self._runs_lock = threading.Lock()

    def start_run(self, target_scope: Optional[str] = None, background: bool = True) -> RunHandle:
        """
        Start a run for a folder id, or the configured default scope.

        Raises:
            AlreadyRunningError: a run for an overlapping scope is still active
        """
        scope = target_scope or config.DRIVE_ROOT_FOLDER_ID or None
        key = scope_key(scope)
        run_id = uuid.uuid4().hex

        self.guard.acquire(key, run_id)
        try:
            orchestrator = SyncOrchestrator(
                catalog=self.catalog_factory(),
                session_factory=self.session_factory,
                broadcaster=self.broadcaster,
                scope=scope,
                batch_size=self.batch_size,
                run_id=run_id,
            )
        except Exception:
            self.guard.release(key)
            raise

        handle = RunHandle(orchestrator)
        with self._runs_lock:
            self._runs[key] = handle

        logger.info("Sync run started", extra={"run_id": run_id, "scope": key, "background": background})
        if background:
            handle.thread = threading.Thread(
                target=self._execute, args=(handle, key), name=f"drive-sync-{key}", daemon=True
            )
            handle.thread.start()
        else:
            self._execute(handle, key)
        return handle

    def _execute(self, handle: RunHandle, key: str) -> None:
        stats = None
        try:
            stats = handle.orchestrator.execute()
        finally:
            self.guard.release(key)
            handle._finish(stats)

    def subscribe(self, callback: Optional[Callable[[ProgressEvent], None]] = None) -> Subscriber:
        return self.broadcaster.subscribe(callback)

    def subscribe_async(self) -> AsyncSubscription:
        """Subscription for a consumer on the running event loop (SSE streams)."""
        return self.broadcaster.add(AsyncSubscription())

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self.broadcaster.unsubscribe(subscriber)

    def get_run(self, target_scope: Optional[str] = None) -> Optional[RunHandle]:
        """Latest run for a scope, active or finished."""
        with self._runs_lock:
            return self._runs.get(scope_key(target_scope or config.DRIVE_ROOT_FOLDER_ID))

    def runs(self) -> List[RunHandle]:
        with self._runs_lock:
            return list(self._runs.values())
