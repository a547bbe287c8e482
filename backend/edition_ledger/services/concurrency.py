# Overview: Locking and retry primitives for ledger writes.

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import LockTimeout

logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The in-process ProductLockRegistry covers SQLite.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1, on_retry=None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). `on_retry` runs before each new attempt
    (the SQL store rolls its session back there).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            if on_retry is not None:
                on_retry()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            logger.info("Retrying after %s (attempt %s/%s)", type(exc).__name__, attempt + 1, attempts)
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


class ProductLockRegistry:
    """
    Per-product mutual exclusion within one process.

    Locks are keyed by product id, so different products never block each other.
    A product's lock lives only while some thread holds or waits on it; the
    last user drops it, so the registry stays as small as the contention.

    timeout semantics for hold():
    - None or negative: wait until the lock is free
    - 0: fail fast
    - > 0: bounded wait, then LockTimeout
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    def tracked_products(self) -> list[str]:
        with self._guard:
            return sorted(self._locks)

    def _check_out(self, product_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(product_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[product_id] = lock
            self._users[product_id] = self._users.get(product_id, 0) + 1
            return lock

    def _check_in(self, product_id: str) -> None:
        with self._guard:
            self._users[product_id] -= 1
            if not self._users[product_id]:
                del self._users[product_id]
                del self._locks[product_id]

    def acquire(self, product_id: str, timeout: float | None) -> None:
        lock = self._check_out(product_id)
        if timeout is None or timeout < 0:
            acquired = lock.acquire()
        elif timeout == 0:
            acquired = lock.acquire(blocking=False)
        else:
            acquired = lock.acquire(timeout=timeout)
        if not acquired:
            self._check_in(product_id)
            logger.warning("Lock timeout on product %s after %ss", product_id, timeout)
            raise LockTimeout(product_id, timeout)

    def release(self, product_id: str) -> None:
        with self._guard:
            lock = self._locks.get(product_id)
        if lock is None:
            raise RuntimeError(f"Lock for product {product_id} is not held")
        lock.release()
        self._check_in(product_id)

    def is_locked(self, product_id: str) -> bool:
        with self._guard:
            lock = self._locks.get(product_id)
        return lock is not None and lock.locked()

    @contextmanager
    def hold(self, product_id: str, timeout: float | None):
        self.acquire(product_id, timeout)
        try:
            yield
        finally:
            self.release(product_id)
