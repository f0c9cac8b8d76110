"""
Keyed locking for the x402 distributor.

Two resources are guarded by named locks:
- ``distribution:<stream>:<funding reference>`` so a duplicate in-flight
  payment cannot pay holders twice before the first record is visible
- ``signer:<pubkey>`` so concurrent batches never race on the funding
  signer's recent blockhash

Lock managers:
- LocalLockManager: thread locks for single-instance deployments
- RedisLockManager: SET NX PX locks shared by every instance

Usage:
    from scaling import build_lock_manager

    lock_manager = build_lock_manager(settings.redis_url)

    with lock_manager.lock("signer:5Fq...", timeout=30):
        submit_batch()
"""

import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass

from monitoring.metrics import metrics


def lock_scope(name: str) -> str:
    """Metrics label for a lock name: the part before the first colon."""
    return name.split(":", 1)[0]


@dataclass
class LockInfo:
    """Information about a held lock."""

    name: str
    holder_id: str
    acquired_at: float
    ttl: float | None = None
    expires_at: float | None = None


class LockManager(ABC):
    """
    Named mutual exclusion.

    ``acquire`` waits up to ``timeout`` seconds and returns False instead of
    raising; callers turn that into their own error. ``ttl`` only matters
    for shared locks, where it bounds how long a crashed holder blocks.
    """

    @abstractmethod
    def acquire(self, name: str, timeout: float = 30.0, ttl: float = 60.0) -> bool:
        pass

    @abstractmethod
    def release(self, name: str) -> bool:
        """Release a lock held by this caller; False if it was not held."""
        pass

    @abstractmethod
    def is_locked(self, name: str) -> bool:
        pass

    @contextmanager
    def lock(self, name: str, timeout: float = 30.0, ttl: float = 60.0):
        """
        Hold ``name`` for the duration of the block.

        Raises:
            TimeoutError: If lock cannot be acquired within timeout
        """
        if not self.acquire(name, timeout=timeout, ttl=ttl):
            raise TimeoutError(f"Could not acquire lock '{name}' within {timeout}s")
        try:
            yield
        finally:
            self.release(name)

    def get_info(self, name: str) -> LockInfo | None:
        """Get information about a lock (if held)."""
        return None

    def close(self) -> None:
        pass


class _LocalLock:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.RLock()
        self.refs = 0


class LocalLockManager(LockManager):
    """
    Thread-based lock manager for single-instance deployments.

    Locks are created on first use and dropped once nobody holds or waits
    on them, so per-payment lock names do not accumulate.
    """

    def __init__(self):
        self._locks: dict[str, _LocalLock] = {}
        self._lock_info: dict[str, LockInfo] = {}
        self._meta_lock = threading.Lock()
        self._instance_id = str(uuid.uuid4())[:8]

    def _checkout(self, name: str) -> _LocalLock:
        with self._meta_lock:
            entry = self._locks.get(name)
            if entry is None:
                entry = self._locks[name] = _LocalLock()
            entry.refs += 1
            return entry

    def _checkin(self, name: str, entry: _LocalLock) -> None:
        with self._meta_lock:
            entry.refs -= 1
            if entry.refs == 0 and self._locks.get(name) is entry:
                del self._locks[name]
                self._lock_info.pop(name, None)

    def acquire(
        self,
        name: str,
        timeout: float = 30.0,
        ttl: float = 60.0,
    ) -> bool:
        """Acquire a named lock."""
        entry = self._checkout(name)
        if not entry.lock.acquire(timeout=timeout):
            self._checkin(name, entry)
            metrics.increment("lock_timeouts_total", labels={"scope": lock_scope(name)})
            return False

        now = time.time()
        self._lock_info[name] = LockInfo(
            name=name,
            holder_id=f"{self._instance_id}:{threading.current_thread().name}",
            acquired_at=now,
            ttl=ttl,
            expires_at=now + ttl if ttl else None,
        )
        return True

    def release(self, name: str) -> bool:
        """Release a named lock."""
        with self._meta_lock:
            entry = self._locks.get(name)
        if entry is None:
            return False
        try:
            entry.lock.release()
        except RuntimeError:
            # Lock not held by this thread
            return False
        self._checkin(name, entry)
        return True

    def is_locked(self, name: str) -> bool:
        """Check if a lock is currently held."""
        with self._meta_lock:
            return name in self._lock_info

    def get_info(self, name: str) -> LockInfo | None:
        """Get information about a lock."""
        return self._lock_info.get(name)

    def active_lock_count(self) -> int:
        with self._meta_lock:
            return len(self._locks)


class RedisLockManager(LockManager):
    """
    Distributed lock manager using Redis.

    SET NX PX acquires atomically; a Lua script releases only a lock this
    instance still owns. The TTL bounds how long a crashed holder can block
    others, so callers pass a TTL longer than the guarded work.
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "x402:lock:",
        client=None,
    ):
        """
        Initialize Redis lock manager.

        Args:
            redis_url: Redis connection URL
            key_prefix: Prefix for lock keys in Redis
            client: Pre-built redis client (tests inject a fake)
        """
        if client is None:
            import redis

            client = redis.from_url(redis_url)

        self._redis = client
        self._key_prefix = key_prefix
        self._instance_id = str(uuid.uuid4())
        self._held_locks: dict[str, str] = {}  # name -> lock_value
        self._held_lock = threading.Lock()

    def _key(self, name: str) -> str:
        """Get Redis key for a lock."""
        return f"{self._key_prefix}{name}"

    def acquire(
        self,
        name: str,
        timeout: float = 30.0,
        ttl: float = 60.0,
    ) -> bool:
        """Acquire a distributed lock, polling with backoff until timeout."""
        key = self._key(name)
        lock_value = f"{self._instance_id}:{threading.get_ident()}:{time.time()}"
        ttl_ms = int(ttl * 1000)

        deadline = time.monotonic() + timeout
        retry_delay = 0.05

        while True:
            if self._redis.set(key, lock_value, nx=True, px=ttl_ms):
                with self._held_lock:
                    self._held_locks[name] = lock_value
                return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                metrics.increment("lock_timeouts_total", labels={"scope": lock_scope(name)})
                return False
            time.sleep(min(retry_delay, remaining))
            retry_delay = min(retry_delay * 1.5, 1.0)

    def release(self, name: str) -> bool:
        """Release a distributed lock if this instance still holds it."""
        with self._held_lock:
            lock_value = self._held_locks.pop(name, None)

        if not lock_value:
            return False

        result = self._redis.eval(self.RELEASE_SCRIPT, 1, self._key(name), lock_value)
        return bool(result)

    def is_locked(self, name: str) -> bool:
        """Check if a lock is currently held by any instance."""
        return self._redis.exists(self._key(name)) > 0

    def close(self):
        """Close the Redis connection."""
        self._redis.close()
