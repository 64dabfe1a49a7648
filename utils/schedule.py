"""Fixed-interval scheduling for long-running workers.

The extractor and the cluster workflow each run on their own interval.
They never call each other; the staging bucket is the only handoff.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


async def run_every(
    func: Callable[[], Awaitable[Any]],
    *,
    interval_seconds: float,
    stop_event: asyncio.Event,
    name: str = "job",
    max_ticks: Optional[int] = None,
) -> int:
    """Run `func` every `interval_seconds` until `stop_event` is set.

    Ticks are aligned to the start time, so a slow tick shortens the
    following pause instead of drifting the schedule. A tick that raises is
    logged and the loop continues.

    Returns:
        Number of ticks that raised.
    """
    loop = asyncio.get_running_loop()
    next_start = loop.time()
    ticks = 0
    failures = 0

    while not stop_event.is_set():
        ticks += 1
        logger.info(f"[Schedule] {name}: tick {ticks}")
        try:
            await func()
        except Exception as e:
            failures += 1
            logger.error(f"[Schedule] {name}: tick {ticks} failed: {e}", exc_info=True)

        if max_ticks is not None and ticks >= max_ticks:
            break

        next_start += interval_seconds
        pause = max(0.0, next_start - loop.time())
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=pause)
        except asyncio.TimeoutError:
            pass

    logger.info(f"[Schedule] {name}: stopped after {ticks} ticks ({failures} failed)")
    return failures
