"""
Exposure Backend — ConcurrencyGuard Tests
===========================================

What we test:
    ✅ Same place: critical sections never overlap
    ✅ Different places: run concurrently
    ✅ Lock released on error and on cancellation
    ✅ Acquisition timeout raises TransientLockError
    ✅ LRU bound evicts only idle locks
"""

import asyncio

import pytest

from app.exceptions import TransientLockError
from app.services.concurrency import ConcurrencyGuard


class TestMutualExclusion:
    """Critical sections of one place are serialized."""

    def setup_method(self):
        self.guard = ConcurrencyGuard()

    @pytest.mark.asyncio
    async def test_same_place_never_overlaps(self):
        """At most one task is ever inside the lock of a place."""
        inside = 0
        peak = 0

        async def critical():
            nonlocal inside, peak
            async with self.guard.lock(1):
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0.01)
                inside -= 1

        await asyncio.gather(*(critical() for _ in range(5)))
        assert peak == 1

    @pytest.mark.asyncio
    async def test_different_places_run_concurrently(self):
        """A held lock on place 1 does not block place 2."""
        entered_two = asyncio.Event()

        async def hold_one():
            async with self.guard.lock(1):
                await asyncio.wait_for(entered_two.wait(), timeout=1)

        async def enter_two():
            async with self.guard.lock(2):
                entered_two.set()

        await asyncio.gather(hold_one(), enter_two())
        assert entered_two.is_set()

    @pytest.mark.asyncio
    async def test_with_place_lock_returns_operation_result(self):
        async def operation():
            assert self.guard.is_locked(7)
            return "done"

        assert await self.guard.with_place_lock(7, operation) == "done"
        assert not self.guard.is_locked(7)

    @pytest.mark.asyncio
    async def test_released_after_exception(self):
        with pytest.raises(RuntimeError):
            async with self.guard.lock(3):
                raise RuntimeError("boom")
        assert not self.guard.is_locked(3)

    @pytest.mark.asyncio
    async def test_released_after_cancellation(self):
        started = asyncio.Event()

        async def holder():
            async with self.guard.lock(4):
                started.set()
                await asyncio.sleep(10)

        task = asyncio.create_task(holder())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not self.guard.is_locked(4)


class TestTimeoutAndEviction:
    """Optional acquisition timeout and LRU bound."""

    @pytest.mark.asyncio
    async def test_timeout_raises_transient_lock_error(self):
        guard = ConcurrencyGuard(acquire_timeout=0.05)
        async with guard.lock(1):
            with pytest.raises(TransientLockError) as exc_info:
                async with guard.lock(1):
                    pass
        assert exc_info.value.context["place_id"] == 1
        assert exc_info.value.retry_after >= 1
        assert not guard.is_locked(1)

    @pytest.mark.asyncio
    async def test_lru_bound_evicts_idle_locks(self):
        guard = ConcurrencyGuard(max_locks=2)
        for place_id in (1, 2, 3):
            async with guard.lock(place_id):
                pass
        assert len(guard) == 2

    @pytest.mark.asyncio
    async def test_lru_bound_keeps_held_locks(self):
        """A held lock survives eviction even when the table is over its bound."""
        guard = ConcurrencyGuard(max_locks=1)
        async with guard.lock(1):
            async with guard.lock(2):
                pass
            assert guard.is_locked(1)
        assert len(guard) == 1
