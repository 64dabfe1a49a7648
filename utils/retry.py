"""Retry and bounded-wait helpers.

`retry_call` / `retry_async_call` wrap single GCS, BigQuery, GDELT and Livy
requests. `poll_until` drives the long waits of the cluster workflow
(cluster ready, session idle, statement done): every wait has a deadline
and stops early when the workflow's cancellation token is set.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")


class PollTimeoutError(TimeoutError):
    """Raised when a bounded wait runs past its deadline."""


class WorkflowCancelledError(Exception):
    """Raised when a cancellation token is set during a wait."""


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Attempts and exponential backoff between them."""

    max_attempts: int = 5
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 10.0
    jitter_fraction: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")


def _backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay after failed attempt number `attempt` (1-based), with +/- jitter."""
    delay = min(policy.base_delay_seconds * (2 ** (attempt - 1)), policy.max_delay_seconds)
    jitter = delay * policy.jitter_fraction * (2 * random.random() - 1)
    return max(0.0, delay + jitter)


def retry_call(
    func: Callable[[], T],
    *,
    policy: RetryPolicy = RetryPolicy(),
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """Call `func`, retrying `retry_on` errors; the last error propagates."""
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return func()
        except retry_on as exc:  # noqa: PERF203
            if attempt == policy.max_attempts:
                raise
            if on_retry is not None:
                on_retry(attempt, exc)
            time.sleep(_backoff_delay(policy, attempt))
    raise AssertionError("unreachable")


async def retry_async_call(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy = RetryPolicy(),
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """Async twin of `retry_call`; `func` is called afresh for each attempt."""
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await func()
        except retry_on as exc:  # noqa: PERF203
            if attempt == policy.max_attempts:
                raise
            if on_retry is not None:
                on_retry(attempt, exc)
            await asyncio.sleep(_backoff_delay(policy, attempt))
    raise AssertionError("unreachable")


async def poll_until(
    check: Callable[[], Awaitable[Optional[T]]],
    *,
    timeout_seconds: float,
    interval_seconds: float,
    cancel_event: Optional[asyncio.Event] = None,
    description: str = "condition",
) -> T:
    """Await `check` until it returns a truthy value, bounded by a deadline.

    Errors raised by `check` propagate immediately; a check that can fail
    transiently should retry internally.

    Args:
        check: Coroutine factory; a truthy result ends the wait and is returned.
        timeout_seconds: Total wait budget, measured from the first call.
        interval_seconds: Pause between checks.
        cancel_event: Optional token; when set the wait stops at the next pause.
        description: Used in error messages.

    Raises:
        PollTimeoutError: The deadline passed before `check` succeeded.
        WorkflowCancelledError: `cancel_event` was set.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_seconds

    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise WorkflowCancelledError(f"Cancelled while waiting for {description}")

        result = await check()
        if result:
            return result

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise PollTimeoutError(
                f"Timed out after {timeout_seconds:.0f}s waiting for {description}"
            )

        pause = min(interval_seconds, remaining)
        if cancel_event is None:
            await asyncio.sleep(pause)
            continue
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=pause)
        except asyncio.TimeoutError:
            pass
