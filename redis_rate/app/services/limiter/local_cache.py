"""Process-local acceleration cache for limiter decisions.

The cache maps an effective limiter key to the monotonic instant until
which the key is known to be (possibly) blocked. It is advisory and only
ever used to deny: an allow always requires a Redis round trip.

Locking is best-effort. When a lock cannot be taken immediately the
operation is skipped instead of blocking the request path.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Optional


class _NonBlockingRWLock:
    """Reader/writer lock whose acquire methods never wait."""

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._readers = 0
        self._writer = False

    def try_acquire_read(self) -> bool:
        if not self._mutex.acquire(blocking=False):
            return False
        try:
            if self._writer:
                return False
            self._readers += 1
            return True
        finally:
            self._mutex.release()

    def release_read(self) -> None:
        with self._mutex:
            self._readers -= 1

    def try_acquire_write(self) -> bool:
        if not self._mutex.acquire(blocking=False):
            return False
        try:
            if self._writer or self._readers:
                return False
            self._writer = True
            return True
        finally:
            self._mutex.release()

    def release_write(self) -> None:
        with self._mutex:
            self._writer = False


class LocalCache(ABC):
    """Strategy interface for the local acceleration cache."""

    enabled: bool = True

    def now(self) -> float:
        """Current instant on the cache's clock."""
        return time.monotonic()

    @abstractmethod
    def get(self, key: str) -> Optional[float]:
        """Return the cached monotonic expiry for key.

        Returns None when the key is absent, expired, or the cache could
        not be read without blocking.
        """

    @abstractmethod
    def set(self, key: str, expires_at: float) -> bool:
        """Record a horizon for key. Returns False if the write was skipped."""

    @abstractmethod
    def evict(self, key: str) -> bool:
        """Remove key. Returns False if the eviction was skipped."""

    @abstractmethod
    def clear(self) -> None:
        """Drop every entry."""

    @abstractmethod
    def __len__(self) -> int:
        pass


class NullLocalCache(LocalCache):
    """Cache strategy used when local acceleration is disabled."""

    enabled = False

    def get(self, key: str) -> Optional[float]:
        return None

    def set(self, key: str, expires_at: float) -> bool:
        return False

    def evict(self, key: str) -> bool:
        return False

    def clear(self) -> None:
        pass

    def __len__(self) -> int:
        return 0


class LocalBlockCache(LocalCache):
    """In-memory key -> blocked-until map guarded by a reader/writer lock.

    Safe to share between tasks of one event loop and between threads.
    An expired entry is removed by the read that finds it, when the write
    lock is free. Writes also sweep the whole map once every
    ``sweep_interval`` seconds, so keys that are never read again do not
    accumulate.
    """

    DEFAULT_SWEEP_INTERVAL = 60.0

    def __init__(self, clock=time.monotonic, sweep_interval: float = DEFAULT_SWEEP_INTERVAL) -> None:
        if sweep_interval <= 0:
            raise ValueError("sweep_interval must be greater than 0")
        self._data: dict[str, float] = {}
        self._lock = _NonBlockingRWLock()
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._last_sweep = clock()

    def now(self) -> float:
        return self._clock()

    def get(self, key: str) -> Optional[float]:
        if not self._lock.try_acquire_read():
            return None
        try:
            expires_at = self._data.get(key)
        finally:
            self._lock.release_read()
        if expires_at is None:
            return None
        if expires_at <= self._clock():
            self._drop_expired(key, expires_at)
            return None
        return expires_at

    def _drop_expired(self, key: str, expires_at: float) -> None:
        if not self._lock.try_acquire_write():
            return
        try:
            # Leave the entry alone if a writer refreshed it in between
            if self._data.get(key) == expires_at:
                del self._data[key]
        finally:
            self._lock.release_write()

    def set(self, key: str, expires_at: float) -> bool:
        if not self._lock.try_acquire_write():
            return False
        try:
            now = self._clock()
            if expires_at <= now:
                self._data.pop(key, None)
            else:
                self._data[key] = expires_at
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep(now)
            return True
        finally:
            self._lock.release_write()

    def _sweep(self, now: float) -> None:
        # Caller holds the write lock
        expired = [key for key, expires_at in self._data.items() if expires_at <= now]
        for key in expired:
            del self._data[key]
        self._last_sweep = now

    def evict(self, key: str) -> bool:
        if not self._lock.try_acquire_write():
            return False
        try:
            self._data.pop(key, None)
            return True
        finally:
            self._lock.release_write()

    def clear(self) -> None:
        # Explicit clears are rare and must not be lost, so wait here
        while not self._lock.try_acquire_write():
            time.sleep(0)
        try:
            self._data.clear()
        finally:
            self._lock.release_write()

    def __len__(self) -> int:
        return len(self._data)
