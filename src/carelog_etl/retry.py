"""carelog_etl.retry

Deadlock-aware retry for batch write steps, built on tenacity.

A write step is attempted up to max_retries times. A deadlock-class failure
before the last attempt sleeps min(base * 2**(n-1), max) milliseconds and
reruns the whole step, since existence checks made before the rollback may
be stale. Any other failure, or a deadlock on the last attempt, ends the
loop and re-raises so the caller can decide between aborting the batch and
splitting it.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from carelog_etl.errors import describe, is_deadlock

T = TypeVar("T")

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000

    def wait(self) -> wait_exponential:
        """tenacity wait: base after the first failure, doubling, capped at max."""
        return wait_exponential(
            multiplier=self.base_delay_ms / 1000,
            max=self.max_delay_ms / 1000,
        )


class RetryState(enum.Enum):
    ATTEMPTING = "attempting"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


@dataclass
class DeadlockRetry:
    """One retry loop; inspect attempts / state / delays after run()."""

    policy: RetryPolicy
    label: str = "write"
    logger: logging.Logger = field(default=log, repr=False)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)
    state: RetryState = field(default=RetryState.ATTEMPTING, init=False)
    attempts: int = field(default=0, init=False)
    delays_ms: list[int] = field(default_factory=list, init=False)

    @property
    def total_delay_ms(self) -> int:
        return sum(self.delays_ms)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        delay = round(retry_state.next_action.sleep * 1000)
        self.delays_ms.append(delay)
        self.logger.warning(
            "%s: deadlock on attempt %d/%d, retrying in %dms",
            self.label, retry_state.attempt_number, self._max_attempts(), delay,
        )

    def _max_attempts(self) -> int:
        return max(1, self.policy.max_retries)

    async def run(self, step: Callable[[], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts()),
            wait=self.policy.wait(),
            retry=retry_if_exception(is_deadlock),
            before_sleep=self._before_sleep,
            sleep=self.sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    self.state = RetryState.ATTEMPTING
                    self.attempts = attempt.retry_state.attempt_number
                    result = await step()
        except Exception as exc:
            self.state = RetryState.EXHAUSTED
            self.logger.error(
                "%s: giving up after attempt %d/%d: %s",
                self.label, self.attempts, self._max_attempts(), describe(exc),
            )
            raise
        self.state = RetryState.SUCCESS
        return result
