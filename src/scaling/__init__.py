"""
Horizontal scaling support for the x402 distributor.

Distribution attempts take keyed locks (per funding reference, per
signer). With a Redis URL configured the locks are shared by every API
instance; otherwise they are process-local.

Usage:
    from scaling import build_lock_manager

    lock_manager = build_lock_manager(settings.redis_url)
    with lock_manager.lock("distribution:<mint>:<signature>"):
        ...
"""

from scaling.locking import LocalLockManager, LockInfo, LockManager, RedisLockManager

__all__ = [
    "LockInfo",
    "LockManager",
    "LocalLockManager",
    "RedisLockManager",
    "build_lock_manager",
]


def build_lock_manager(redis_url: str | None = None) -> LockManager:
    """
    Build the lock manager for this process.

    Uses Redis for distributed locking if a URL is given,
    otherwise local threading locks.
    """
    if redis_url:
        return RedisLockManager(redis_url)
    return LocalLockManager()
