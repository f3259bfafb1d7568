"""
In-process keyed locks - serialize work on one key while other keys run freely.
Used to serialize dispatch per idempotency key and registry mutations per identity/room.
Cross-process exclusion is the database's job (conditional updates), not this module's.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Hashable, Optional

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout."""
    pass


class KeyedLock:
    """
    A family of asyncio.Locks, one per key, created on demand and
    discarded once nobody holds or waits on them.

    Usage:
        locks = KeyedLock()
        async with locks.hold(("payment-provider", "evt_123")):
            # exclusive for this key
    """

    def __init__(self, name: str = "keyed"):
        self.name = name
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._refcounts: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable, timeout: Optional[float] = None):
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._refcounts[key] = self._refcounts.get(key, 0) + 1

        acquired = False
        try:
            if timeout is None:
                await lock.acquire()
            else:
                try:
                    await asyncio.wait_for(lock.acquire(), timeout)
                except asyncio.TimeoutError:
                    raise LockTimeoutError(
                        f"Could not acquire {self.name} lock for {key!r} within {timeout}s"
                    )
            acquired = True
            yield
        finally:
            if acquired:
                lock.release()
            self._refcounts[key] -= 1
            if self._refcounts[key] == 0:
                del self._refcounts[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)
