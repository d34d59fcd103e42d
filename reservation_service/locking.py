"""
Per-key serialization of reservation mutations inside one process.

Each stock key gets its own asyncio.Lock so operations on the same
product/variant are totally ordered while other keys proceed in parallel.
Across processes the database row lock on the stock record provides the
same guarantee.
"""

import asyncio
import logging
import time
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator

from .errors import LockTimeout
from .metrics import RESERVATION_LOCK_WAIT_SECONDS

logger = logging.getLogger(__name__)


class KeyedLock:
    """Registry of per-key locks. Locks nobody holds or waits on are dropped."""

    def __init__(self, timeout: float = 3.0):
        self.timeout = timeout
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str, operation: str = "unknown") -> AsyncIterator[None]:
        lock = self._lock_for(key)
        start_time = time.monotonic()
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Lock wait timeout on {key} during {operation}")
            raise LockTimeout(key, self.timeout)
        finally:
            RESERVATION_LOCK_WAIT_SECONDS.labels(operation=operation).observe(
                time.monotonic() - start_time
            )
        try:
            yield
        finally:
            lock.release()
