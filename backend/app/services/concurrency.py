"""
Exposure Backend — Per-Place Concurrency Guard
================================================

What:  A table of asyncio locks, one per place id, serializing photo mutations.
Why:   Uploads compute max(photo_num)+1, deletions renumber, reorders permute.
       Two of these running on the same place at once would break the
       contiguity of photo numbers. Different places never interfere.
How:   Locks are created lazily on first use. `lock(place_id)` is an async
       context manager; `with_place_lock(place_id, operation)` runs an
       awaitable factory inside it. Release happens on every exit path,
       including cancellation of the waiting or running task.
Who:   PhotoService (every mutation) via the module-level `place_guard`.

Bounding:
    With `max_locks` set, the table is kept as an LRU. Only locks that are
    neither held nor awaited are evicted, so eviction never splits the
    waiters of one place across two lock objects.

Deployment constraint:
    Locks live in process memory. Running several worker processes against
    one database needs a distributed lock instead.
"""

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from app.config import settings
from app.exceptions import TransientLockError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _PlaceLock:
    """An asyncio.Lock plus the number of tasks currently using it."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class ConcurrencyGuard:
    """Exclusive, place-scoped locking for photo mutations."""

    def __init__(
        self,
        acquire_timeout: Optional[float] = None,
        max_locks: Optional[int] = None,
    ):
        self.acquire_timeout = acquire_timeout
        self.max_locks = max_locks
        self._locks: "OrderedDict[int, _PlaceLock]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, place_id: int) -> bool:
        entry = self._locks.get(place_id)
        return entry is not None and entry.lock.locked()

    def _entry(self, place_id: int) -> _PlaceLock:
        entry = self._locks.get(place_id)
        if entry is None:
            entry = _PlaceLock()
            self._locks[place_id] = entry
        else:
            self._locks.move_to_end(place_id)
        return entry

    def _evict_idle(self) -> None:
        if self.max_locks is None:
            return
        for place_id in list(self._locks):
            if len(self._locks) <= self.max_locks:
                break
            if self._locks[place_id].users == 0:
                del self._locks[place_id]
                logger.debug("Evicted idle lock for place %s", place_id)

    @asynccontextmanager
    async def lock(self, place_id: int) -> AsyncIterator[None]:
        """
        Hold the lock of `place_id` for the duration of the block.

        Raises:
            TransientLockError: acquisition exceeded `acquire_timeout`
        """
        entry = self._entry(place_id)
        entry.users += 1
        try:
            if self.acquire_timeout is None:
                await entry.lock.acquire()
            else:
                try:
                    await asyncio.wait_for(entry.lock.acquire(), self.acquire_timeout)
                except asyncio.TimeoutError:
                    logger.warning(
                        "Timed out after %.1fs waiting for place %s lock",
                        self.acquire_timeout,
                        place_id,
                    )
                    raise TransientLockError(
                        place_id=place_id,
                        retry_after=max(1, int(self.acquire_timeout)),
                    )
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.users -= 1
            self._evict_idle()

    async def with_place_lock(
        self, place_id: int, operation: Callable[[], Awaitable[T]]
    ) -> T:
        """Run `operation()` while holding the lock of `place_id`."""
        async with self.lock(place_id):
            return await operation()


# ── Singleton Instance ────────────────────────────────────────────────────
# One lock table per process; every PhotoService shares it
place_guard = ConcurrencyGuard(
    acquire_timeout=settings.place_lock_timeout,
    max_locks=settings.place_lock_max_entries,
)
