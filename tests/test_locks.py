import time
from unittest.mock import MagicMock

import redis
from redis.exceptions import LockNotOwnedError

from locks import RedisLockService
from services.sync_service import SingleFlightGuard


class ExpiringLock:
    """Behaves like redis.lock.Lock: the key lapses `timeout` seconds after the last acquire or extend."""

    def __init__(self, store, name, timeout):
        self.store = store
        self.name = name
        self.timeout = timeout
        self.extensions = 0

    def acquire(self):
        if self.store.is_held(self.name):
            return False
        self.store.expiry[self.name] = time.monotonic() + self.timeout
        self.store.owner[self.name] = self
        return True

    def extend(self, additional_time, replace_ttl=False):
        if self.store.owner.get(self.name) is not self or not self.store.is_held(self.name):
            raise LockNotOwnedError("Cannot extend a lock that's no longer owned")
        self.store.expiry[self.name] = time.monotonic() + additional_time
        self.extensions += 1
        return True

    def release(self):
        if self.store.owner.get(self.name) is not self or not self.store.is_held(self.name):
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        del self.store.expiry[self.name]


class FakeLockClient:
    def __init__(self):
        self.expiry = {}
        self.owner = {}

    def is_held(self, name):
        return name in self.expiry and time.monotonic() < self.expiry[name]

    def lock(self, name, timeout=None, blocking=True, thread_local=True):
        return ExpiringLock(self, name, timeout)

    def scan_iter(self, match=None):
        prefix = match.rstrip("*")
        return [name for name in list(self.expiry) if name.startswith(prefix) and self.is_held(name)]


def make_service(client=None):
    return RedisLockService(client=client or MagicMock(), enabled=True)


def test_disabled_service_grants_empty_token():
    service = RedisLockService(enabled=False)

    assert service.acquire_lock("all") == ""
    assert service.release_lock("all", "") is False
    assert service.locked_scopes() == set()


def test_acquire_takes_non_blocking_lock_with_ttl():
    client = MagicMock()
    client.lock.return_value.acquire.return_value = True
    service = make_service(client)

    lock = service.acquire_lock("folder-1", ttl=60)

    assert lock is client.lock.return_value
    client.lock.assert_called_once_with(
        "drive_mirror:sync_lock:folder-1", timeout=60, blocking=False, thread_local=False
    )


def test_acquire_returns_none_when_held_elsewhere():
    client = FakeLockClient()
    first, second = make_service(client), make_service(client)

    assert first.acquire_lock("all", ttl=30)
    assert second.acquire_lock("all", ttl=30) is None


def test_redis_outage_falls_back_to_process_lock():
    client = MagicMock()
    client.lock.return_value.acquire.side_effect = redis.ConnectionError("connection refused")

    assert make_service(client).acquire_lock("all") == ""


def test_release_only_deletes_own_lock():
    client = FakeLockClient()
    service = make_service(client)
    lock = service.acquire_lock("all", ttl=0.05)

    time.sleep(0.1)
    taken_over = make_service(client).acquire_lock("all", ttl=30)

    assert taken_over
    assert service.release_lock("all", lock) is False
    assert client.is_held("drive_mirror:sync_lock:all")


def test_extend_reports_lost_lock():
    client = FakeLockClient()
    service = make_service(client)
    lock = service.acquire_lock("all", ttl=0.05)

    assert service.extend_lock("all", lock, ttl=0.05) is True
    time.sleep(0.1)
    assert service.extend_lock("all", lock, ttl=0.05) is False


def test_locked_scopes_lists_held_keys():
    client = FakeLockClient()
    service = make_service(client)
    service.acquire_lock("all", ttl=30)
    service.acquire_lock("folder-1", ttl=30)

    assert service.locked_scopes() == {"all", "folder-1"}


def test_active_run_keeps_lock_past_its_ttl():
    client = FakeLockClient()
    guard = SingleFlightGuard(make_service(client), lock_ttl=0.2)

    guard.acquire("all", "run-1")
    try:
        time.sleep(0.7)
        assert client.is_held("drive_mirror:sync_lock:all")
        assert make_service(client).acquire_lock("all", ttl=0.2) is None
    finally:
        guard.release("all")

    assert not client.is_held("drive_mirror:sync_lock:all")
    assert make_service(client).acquire_lock("all", ttl=0.2)
