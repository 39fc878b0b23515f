"""
Process-wide sync state in Redis.

The queue, the drain-schedule flag and the last-webhook timestamp are shared
by the API, every worker and beat, so they live in Redis rather than in any
one process. Components receive a SyncStateStore instead of reaching for
globals; tests hand them one wrapped around an in-memory fake.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from redis.exceptions import ConnectionError, LockError, RedisError, TimeoutError

from core.cache import get_redis_client

logger = logging.getLogger(__name__)

QUEUE_KEY = "sync:queue"
QUEUE_LOCK_KEY = "sync:queue:lock"
DRAIN_ARMED_KEY = "sync:queue:armed"
LAST_WEBHOOK_KEY = "sync:webhook:last_received"
COMMUNITY_LOCK_KEY = "challenges:community:lock"

# A crashed holder releases the lock after this long.
LOCK_TTL_S = 15 * 60

# What a Redis outage looks like to callers of the state store.
STATE_ERRORS = (ConnectionError, TimeoutError, RedisError)


class LockNotAcquired(RuntimeError):
    """The named lock was busy for the whole wait window."""

    def __init__(self, name: str, waited_s: float):
        super().__init__(f"could not acquire lock {name} within {waited_s}s")
        self.name = name
        self.waited_s = waited_s


class SyncStateStore:
    """get / set / delete plus a bounded-wait lock, over a redis-py client."""

    def __init__(self, client):
        self.client = client

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def set(self, key: str, value: str) -> None:
        self.client.set(key, value)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    @contextmanager
    def lock(self, name: str, wait_s: float, ttl_s: int = LOCK_TTL_S) -> Iterator[None]:
        """
        Hold `name` for the duration of the block.

        wait_s <= 0 means a single non-blocking attempt. Raises LockNotAcquired
        if the lock stays busy.
        """
        lock = self.client.lock(name, timeout=ttl_s)
        if wait_s > 0:
            acquired = lock.acquire(blocking=True, blocking_timeout=wait_s)
        else:
            acquired = lock.acquire(blocking=False)
        if not acquired:
            raise LockNotAcquired(name, wait_s)
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError:
                # TTL ran out while we held it; someone else may own it now.
                logger.warning(f"Lock {name} expired before release")


def get_state_store() -> Optional[SyncStateStore]:
    """State store on the shared Redis, or None when Redis is down."""
    client = get_redis_client()
    if client is None:
        return None
    return SyncStateStore(client)

