"""
In-process keyed locks for wallet mutations.

Row locks (SELECT ... FOR UPDATE) serialise wallet writers across processes on
PostgreSQL. Inside one process the same keys are also guarded by asyncio locks,
which gives the guarantee on SQLite and keeps contended writers from piling up
on DB connections.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable, Iterable

from app.core.exceptions import LockTimeoutError
from app.core.logging import get_logger

logger = get_logger(__name__)


class KeyedLockRegistry:
    """
    Registry of asyncio locks keyed by an arbitrary hashable.

    Keys are always acquired in sorted order so two callers locking the same
    pair in opposite directions cannot deadlock. Callers on disjoint keys never
    share a lock. Entries are dropped once no holder or waiter references them.
    """

    def __init__(self, name: str):
        self.name = name
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._refs: dict[Hashable, int] = {}

    def _checkout(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._refs[key] = self._refs.get(key, 0) + 1
        return lock

    def _release_ref(self, key: Hashable) -> None:
        remaining = self._refs.get(key, 0) - 1
        if remaining <= 0:
            self._refs.pop(key, None)
            self._locks.pop(key, None)
        else:
            self._refs[key] = remaining

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, keys: Iterable[Hashable], timeout: float) -> AsyncIterator[None]:
        """
        Acquire every key (deduplicated, sorted) within `timeout` seconds.

        Raises:
            LockTimeoutError: the deadline passed before all keys were held
        """
        ordered = sorted(set(keys))
        acquired: list[asyncio.Lock] = []
        locks = [self._checkout(key) for key in ordered]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            for key, lock in zip(ordered, locks):
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise LockTimeoutError(f"{self.name}:{key}", timeout)
                try:
                    await asyncio.wait_for(lock.acquire(), remaining)
                except asyncio.TimeoutError:
                    logger.warning(
                        "Lock acquisition timed out",
                        extra_data={"registry": self.name, "key": str(key), "timeout_seconds": timeout},
                    )
                    raise LockTimeoutError(f"{self.name}:{key}", timeout) from None
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in ordered:
                self._release_ref(key)


# נעילות ארנק משותפות לכל השירותים בתהליך
wallet_locks = KeyedLockRegistry("wallet")
