"""Bounded exponential backoff with jitter for login and fetch calls.

Built on tenacity the same way the HTTP connectors elsewhere retry transient
failures, with two additions: waits are clamped so the last attempt never
starts after the tick deadline, and a provider-supplied Retry-After is
honoured (up to the configured ceiling).
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from glucosync.cgm.config_loader import RetryConfig
from glucosync.cgm.errors import RateLimited

logger = logging.getLogger("glucosync.cgm.sync.retry")

T = TypeVar("T")


class _DeadlineAwareWait:
    """Exponential+jitter wait that honours Retry-After and the tick deadline."""

    def __init__(
        self,
        policy: RetryConfig,
        deadline: float | None,
        clock: Callable[[], float],
    ) -> None:
        self._base = wait_exponential(
            multiplier=policy.base_delay_seconds, max=policy.max_delay_seconds
        ) + wait_random(0, policy.jitter_seconds)
        self._max_delay = policy.max_delay_seconds
        self._deadline = deadline
        self._clock = clock

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self._base(retry_state)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimited) and exc.retry_after:
            delay = max(delay, min(exc.retry_after, self._max_delay))
        if self._deadline is not None:
            delay = min(delay, max(0.0, self._deadline - self._clock()))
        return delay


class _StopAtDeadline:
    def __init__(self, deadline: float | None, clock: Callable[[], float]) -> None:
        self._deadline = deadline
        self._clock = clock

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline


def build_retrying(
    policy: RetryConfig,
    retry_on: tuple[type[BaseException], ...],
    deadline: float | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncRetrying:
    """Return a tenacity AsyncRetrying for the given policy.

    Args:
        policy:   Attempt count and delay bounds.
        retry_on: Exception types worth another attempt.  Anything else
                  propagates on the first failure.
        deadline: Monotonic time after which no further attempt starts.
        clock:    Monotonic clock (injectable for tests).
        sleep:    Async sleep (injectable for tests).
    """
    return AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts) | _StopAtDeadline(deadline, clock),
        wait=_DeadlineAwareWait(policy, deadline, clock),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=sleep,
        reraise=True,
    )


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryConfig,
    retry_on: tuple[type[BaseException], ...],
    deadline: float | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Await ``fn()`` under the retry policy and return its result.

    The last exception is re-raised unchanged once attempts (or time) run out.
    """
    retrying = build_retrying(policy, retry_on, deadline=deadline, clock=clock, sleep=sleep)
    async for attempt in retrying:
        with attempt:
            return await fn()
    raise AssertionError("unreachable: tenacity reraises on exhaustion")
