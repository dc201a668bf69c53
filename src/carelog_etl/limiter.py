"""carelog_etl.limiter

Counting admission gate for concurrent batch (and file) writes.

Built on asyncio.Semaphore, which hands a released permit to the
longest-waiting acquirer. Tasks created by submit() call acquire() in
creation order, so work is admitted in submission order even though
admitted work may finish in any order.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


class ConcurrencyLimiter:
    """Cap the number of coroutines running at once; queue the rest FIFO."""

    def __init__(self, max_concurrency: int) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self._capacity = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._pending = 0
        self._in_flight = 0
        self._admitted = asyncio.Event()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def pending(self) -> int:
        """Submitted work still waiting for a permit."""
        return self._pending

    @property
    def in_flight(self) -> int:
        """Submitted work currently holding a permit."""
        return self._in_flight

    async def acquire(self) -> None:
        await self._semaphore.acquire()

    def release(self) -> None:
        self._semaphore.release()

    def submit(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> asyncio.Task[T]:
        """Schedule fn(*args) to run once a permit is free.

        Returns the task; its exception (if any) is kept on the task and is
        re-raised by drain().
        """
        self._pending += 1
        task = asyncio.ensure_future(self._run(fn, args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, fn: Callable[..., Awaitable[T]], args: tuple[Any, ...]) -> T:
        try:
            await self.acquire()
        finally:
            self._pending -= 1
            self._admitted.set()
        self._in_flight += 1
        try:
            return await fn(*args)
        finally:
            self._in_flight -= 1
            self.release()

    async def wait_pending_below(self, limit: int) -> None:
        """Block until fewer than `limit` submitted tasks are waiting for a permit."""
        while self._pending >= limit:
            self._admitted.clear()
            await self._admitted.wait()

    async def drain(self) -> list[Any]:
        """Wait until every submitted task has finished; return their results.

        Results are in no particular order. The first task exception is
        raised after all tasks complete.
        """
        results: list[Any] = []
        first_error: BaseException | None = None
        while self._tasks:
            batch = list(self._tasks)
            outcomes = await asyncio.gather(*batch, return_exceptions=True)
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    if first_error is None:
                        first_error = outcome
                else:
                    results.append(outcome)
            for task in batch:
                self._tasks.discard(task)
        if first_error is not None:
            raise first_error
        return results
