"""
Per-user stack sync lock.

The remote stack is not safe against interleaved clear/add sequences, so
at most one synchronization per user may run at a time, across API
processes and Celery workers. Redis SET NX EX; fails open if Redis is down.
"""
import logging
import uuid
from contextlib import contextmanager
from typing import Iterator

from core.cache import get_redis_client
from core.config import settings

logger = logging.getLogger(__name__)

# Compare-and-delete so an expired lock re-acquired by another worker is not released by us.
_RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


def _lock_key(user_id) -> str:
    return f"lock:stack_sync:{user_id}"


def acquire_stack_sync_lock(user_id, ttl_s: int = None) -> str:
    """
    Try to take the lock. Returns an owner token, or "" if another sync holds it.
    """
    owner = uuid.uuid4().hex
    r = get_redis_client()
    if not r:
        return owner  # fail open
    try:
        acquired = r.set(_lock_key(user_id), owner, nx=True, ex=ttl_s or settings.STACK_SYNC_LOCK_TTL_S)
        return owner if acquired else ""
    except Exception as e:
        logger.warning(f"Stack sync lock unavailable for user {user_id}: {e}")
        return owner  # fail open


def release_stack_sync_lock(user_id, owner: str) -> None:
    r = get_redis_client()
    if not r or not owner:
        return
    try:
        r.eval(_RELEASE_LUA, 1, _lock_key(user_id), owner)
    except Exception as e:
        logger.warning(f"Failed to release stack sync lock for user {user_id}: {e}")


@contextmanager
def stack_sync_lock(user_id) -> Iterator[bool]:
    """
    Usage:
        with stack_sync_lock(user_id) as acquired:
            if not acquired:
                ...  # another sync is running
    """
    owner = acquire_stack_sync_lock(user_id)
    try:
        yield bool(owner)
    finally:
        if owner:
            release_stack_sync_lock(user_id, owner)
