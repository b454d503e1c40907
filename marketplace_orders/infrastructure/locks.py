"""Per-order mutual exclusion for read-modify-write sequences."""

import threading
from contextlib import contextmanager

import redis
from redis.exceptions import LockError

from marketplace_orders.application.errors import ConcurrentModification
from shared.core import get_logger

logger = get_logger(__name__)


class OrderLocks:
    """In-process locks keyed by order id.

    Entries are reference counted and dropped once nobody holds or waits on
    them, so the registry only grows with concurrently touched orders.
    """

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks = {}

    @contextmanager
    def hold(self, order_id):
        with self._guard:
            entry = self._locks.setdefault(order_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            if not entry[0].acquire(timeout=self.timeout):
                raise ConcurrentModification(f"Order {order_id} is being modified, retry later")
            try:
                yield
            finally:
                entry[0].release()
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[order_id]

    def __len__(self):
        with self._guard:
            return len(self._locks)


class RedisOrderLocks:
    """Locks shared by every process talking to the same redis."""

    def __init__(self, client: redis.Redis, timeout: float = 10.0, lease_seconds: float = 30.0,
                 prefix: str = "orders:lock:"):
        self.client = client
        self.timeout = timeout
        self.lease_seconds = lease_seconds
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, timeout: float = 10.0) -> "RedisOrderLocks":
        return cls(redis.from_url(url), timeout=timeout)

    @contextmanager
    def hold(self, order_id):
        lock = self.client.lock(
            f"{self.prefix}{order_id}",
            timeout=self.lease_seconds,
            blocking_timeout=self.timeout,
        )
        if not lock.acquire():
            raise ConcurrentModification(f"Order {order_id} is being modified, retry later")
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError as e:
                # Lease expired while held; another writer may already own the key
                logger.warning(f"Lock for order {order_id} was lost before release: {e}")


def build_order_locks(settings):
    if settings.REDIS_URL:
        return RedisOrderLocks.from_url(settings.REDIS_URL, timeout=settings.ORDER_LOCK_TIMEOUT_SECONDS)
    return OrderLocks(timeout=settings.ORDER_LOCK_TIMEOUT_SECONDS)
