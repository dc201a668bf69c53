"""Unit tests for carelog_etl.limiter."""

from __future__ import annotations

import asyncio

import pytest

from carelog_etl.limiter import ConcurrencyLimiter


class TestConcurrencyLimiter:
    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            ConcurrencyLimiter(0)

    @pytest.mark.asyncio
    async def test_never_exceeds_capacity(self):
        limiter = ConcurrencyLimiter(2)
        running = 0
        peak = 0

        async def work(_):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        for i in range(6):
            limiter.submit(work, i)
        await limiter.drain()
        assert peak == 2
        assert limiter.in_flight == 0
        assert limiter.pending == 0

    @pytest.mark.asyncio
    async def test_admits_in_submission_order(self):
        limiter = ConcurrencyLimiter(1)
        started: list[int] = []

        async def work(i):
            started.append(i)
            await asyncio.sleep(0)

        for i in range(5):
            limiter.submit(work, i)
        await limiter.drain()
        assert started == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_pending_and_in_flight_observable(self):
        limiter = ConcurrencyLimiter(1)
        gate = asyncio.Event()

        async def work():
            await gate.wait()

        limiter.submit(work)
        limiter.submit(work)
        limiter.submit(work)
        await asyncio.sleep(0)
        assert limiter.in_flight == 1
        assert limiter.pending == 2
        gate.set()
        await limiter.drain()
        assert limiter.in_flight == 0

    @pytest.mark.asyncio
    async def test_drain_returns_results(self):
        limiter = ConcurrencyLimiter(3)

        async def double(x):
            return x * 2

        for i in range(4):
            limiter.submit(double, i)
        assert sorted(await limiter.drain()) == [0, 2, 4, 6]

    @pytest.mark.asyncio
    async def test_failure_releases_permit_and_surfaces_on_drain(self):
        limiter = ConcurrencyLimiter(1)
        done: list[str] = []

        async def boom():
            raise RuntimeError("boom")

        async def ok():
            done.append("ok")

        limiter.submit(boom)
        limiter.submit(ok)
        with pytest.raises(RuntimeError, match="boom"):
            await limiter.drain()
        assert done == ["ok"]

    @pytest.mark.asyncio
    async def test_wait_pending_below(self):
        limiter = ConcurrencyLimiter(1)
        gate = asyncio.Event()

        async def work():
            await gate.wait()

        limiter.submit(work)
        limiter.submit(work)
        waiter = asyncio.ensure_future(limiter.wait_pending_below(1))
        await asyncio.sleep(0)
        assert limiter.pending == 1
        assert not waiter.done()
        gate.set()
        await asyncio.wait_for(waiter, timeout=1)
        assert limiter.pending == 0
        await limiter.drain()

    @pytest.mark.asyncio
    async def test_manual_acquire_release(self):
        limiter = ConcurrencyLimiter(1)
        await limiter.acquire()
        second = asyncio.ensure_future(limiter.acquire())
        await asyncio.sleep(0)
        assert not second.done()
        limiter.release()
        await asyncio.wait_for(second, timeout=1)
        limiter.release()
