"""Bounded retry and timeout wrappers shared by every stage call."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from decomposer.engine.errors import StageError, StageExhaustedError, StageTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures a stage retry absorbs. Anything else (programming errors) propagates.
RETRYABLE = (StageError, OSError)


async def with_timeout(awaitable: Awaitable[T], seconds: float, stage: str) -> T:
    """Await ``awaitable`` for at most ``seconds``.

    On timeout the pending call is cancelled and StageTimeoutError raised.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise StageTimeoutError(f"{stage} timed out after {seconds:.0f}s") from e


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    retries: int,
    backoff_s: float,
    stage: str,
    retry_on: tuple[type[BaseException], ...] = RETRYABLE,
) -> T:
    """Run ``operation`` up to ``retries + 1`` times with a fixed backoff.

    ``operation`` is a zero-argument factory so each attempt gets a fresh
    coroutine. Raises StageExhaustedError carrying the last failure.
    """
    last_error: BaseException | None = None
    total = retries + 1
    for i in range(total):
        try:
            return await operation()
        except retry_on as e:
            last_error = e
            logger.warning("%s attempt %d/%d failed: %s", stage, i + 1, total, e)
            if i < retries:
                await asyncio.sleep(backoff_s)
    raise StageExhaustedError(stage, total, last_error)
