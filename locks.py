import logging
import time
from typing import Optional, Set, Union

import redis
from redis.exceptions import LockError
from redis.lock import Lock

from config import config

_KEY_PREFIX = "drive_mirror:sync_lock:"


class RedisLockService:
    """Cross-process run locks backed by redis-py's Lock (SET NX PX with a token)."""

    def __init__(self, client: Optional["redis.Redis"] = None, enabled: Optional[bool] = None):
        self.enabled = config.REDIS_CACHE_ENABLED if enabled is None else enabled
        self.client = client
        self._logger = logging.getLogger("drive_mirror.locks")
        self._last_failure_logged_at: Optional[float] = None

        if self.enabled and self.client is None:
            try:
                self.client = redis.from_url(
                    config.REDIS_URL,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    health_check_interval=30,
                    retry_on_timeout=True,
                    client_name="drive-mirror",
                )
                # Test connection
                self.client.ping()
                self._logger.info("Redis run locks enabled", extra={"redis_url": config.REDIS_URL})
            except redis.RedisError as e:
                self._log_failure("Redis connection failed, run locks are process-local", e)
                self.enabled = False
                self.client = None
        elif not self.enabled:
            self._logger.info("Redis run locks disabled", extra={"reason": "REDIS_CACHE_ENABLED=false"})

    @staticmethod
    def key_for(scope: str) -> str:
        return f"{_KEY_PREFIX}{scope}"

    def acquire_lock(self, scope: str, ttl: Optional[float] = None) -> Union[Lock, str, None]:
        """
        Try to take the run lock for a scope without blocking.

        Returns:
            The held Lock to pass to extend_lock/release_lock, "" when locking
            is disabled or Redis is unreachable, or None when another process
            holds the lock.
        """
        if not self.enabled or not self.client:
            return ""

        lock = self.client.lock(
            self.key_for(scope),
            timeout=ttl or config.SYNC_LOCK_TTL_SECONDS,
            blocking=False,
            thread_local=False,
        )
        try:
            acquired = lock.acquire()
        except redis.RedisError as e:
            self._log_failure(f"Lock ACQUIRE error for scope '{scope}'", e)
            return ""
        return lock if acquired else None

    def extend_lock(self, scope: str, lock: Union[Lock, str, None], ttl: Optional[float] = None) -> bool:
        """Reset the lock's expiry to `ttl` seconds. False once the lock is lost."""
        if not lock or not self.enabled:
            return False

        try:
            return bool(lock.extend(ttl or config.SYNC_LOCK_TTL_SECONDS, replace_ttl=True))
        except LockError as e:
            self._logger.warning(f"Run lock for scope '{scope}' expired or was taken over", extra={"error": str(e)})
            return False
        except redis.RedisError as e:
            self._log_failure(f"Lock EXTEND error for scope '{scope}'", e)
            return False

    def release_lock(self, scope: str, lock: Union[Lock, str, None]) -> bool:
        if not lock or not self.enabled:
            return False

        try:
            lock.release()
            return True
        except LockError:
            # Expired and possibly re-acquired elsewhere; not ours to delete
            return False
        except redis.RedisError as e:
            self._log_failure(f"Lock RELEASE error for scope '{scope}'", e)
            return False

    def locked_scopes(self) -> Set[str]:
        """Scopes whose run lock is currently held by any process."""
        if not self.enabled or not self.client:
            return set()

        try:
            keys = self.client.scan_iter(match=f"{_KEY_PREFIX}*")
            return {(key.decode() if isinstance(key, bytes) else key)[len(_KEY_PREFIX):] for key in keys}
        except redis.RedisError as e:
            self._log_failure("Lock SCAN error", e)
            return set()

    def _log_failure(self, message: str, exception: Exception) -> None:
        """Log failures without flooding logs."""

        now = time.time()
        if self._last_failure_logged_at is None or now - self._last_failure_logged_at > 60:
            self._last_failure_logged_at = now
            self._logger.warning(message, extra={"error": str(exception)})


# Global lock instance
lock_service = RedisLockService()
