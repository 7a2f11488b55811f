"""
Key/value cache, property store and advisory lock contracts.

Each contract comes with an in-memory implementation usable in tests and in
single-process deployments. The PostgreSQL implementations live in
``sheetstore.storage.postgres``.
"""

import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Iterator

from sheetstore.observability.logger import get_logger
from sheetstore.observability.metrics import increment_counter, lock_acquisitions_total

logger = get_logger(__name__)


class KeyValueCache(ABC):
    """
    Best-effort string cache. Entries may be dropped at any time.
    """

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the cached value or None."""

    @abstractmethod
    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store a value for at most ``ttl_seconds``."""


class PropertyStore(ABC):
    """
    Durable small string properties.

    Read-your-writes within one process, last-write-wins across processes.
    """

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the property value or None."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Set a property value."""


class AdvisoryLock(ABC):
    """
    Advisory lock guarding writes to a workbook.

    Failing to acquire is never an error for callers: they proceed without it.
    """

    @abstractmethod
    def try_acquire(self, timeout_seconds: float) -> bool:
        """Wait up to ``timeout_seconds`` for the lock. True when held."""

    @abstractmethod
    def release(self) -> None:
        """Release a held lock."""


class InMemoryKeyValueCache(KeyValueCache):
    """
    TTL cache held in a dict.

    Args:
        max_entries: Oldest entries are evicted beyond this size
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(self, max_entries: int = 10000, clock: Callable[[], float] = time.monotonic):
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()
        self.max_entries = max_entries
        self._clock = clock

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (value, self._clock() + ttl_seconds)
            while len(self._entries) > self.max_entries:
                self._entries.pop(next(iter(self._entries)))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class InMemoryPropertyStore(PropertyStore):
    """Dict-backed property store."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._values: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._values)


class InProcessLock(AdvisoryLock):
    """Advisory lock shared by the threads of one process."""

    def __init__(self):
        self._lock = threading.Lock()

    def try_acquire(self, timeout_seconds: float) -> bool:
        if timeout_seconds <= 0:
            return self._lock.acquire(blocking=False)
        return self._lock.acquire(timeout=timeout_seconds)

    def release(self) -> None:
        if self._lock.locked():
            self._lock.release()


@contextmanager
def best_effort_lock(lock: AdvisoryLock | None, timeout_seconds: float) -> Iterator[bool]:
    """
    Hold ``lock`` for the duration of the block when it can be acquired in time.

    Not getting the lock never aborts the block; it runs unlocked and the
    optimistic version check keeps concurrent writers safe.

    Yields:
        True when the lock is held
    """
    held = False
    if lock is not None:
        try:
            held = lock.try_acquire(timeout_seconds)
        except Exception as e:
            logger.warning("Lock acquisition failed, continuing without lock", extra={"error": str(e)})
            increment_counter(lock_acquisitions_total, status="error")
        else:
            if held:
                increment_counter(lock_acquisitions_total, status="acquired")
            else:
                logger.warning(
                    "Lock not acquired within timeout, continuing without lock",
                    extra={"timeout_seconds": timeout_seconds},
                )
                increment_counter(lock_acquisitions_total, status="timeout")
    try:
        yield held
    finally:
        if held:
            try:
                lock.release()
            except Exception as e:
                logger.warning("Lock release failed", extra={"error": str(e)})
