"""Async retry helpers used by the storage layer and bootstrap."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")
AsyncFactory = Callable[[], Awaitable[T]]
Sleeper = Callable[[float], Awaitable[None]]


async def retry_async(
    operation: AsyncFactory[T],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    logger=None,
    operation_name: str = "operation",
    sleep: Sleeper | None = None,
) -> T:
    """Retry an async operation with linear backoff.

    Only exceptions listed in ``retry_on`` trigger another attempt; anything
    else, and the last failure, propagates. Waiting uses ``asyncio.sleep`` so a
    cancelled caller stops retrying immediately.
    """

    pause = sleep or asyncio.sleep
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= max_attempts:
                raise
            delay = base_delay * attempt
            if logger is not None:
                logger.warning(
                    "retrying_operation",
                    operation=operation_name,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay=delay,
                    error=str(exc),
                )
            await pause(delay)

    raise RuntimeError(f"{operation_name} failed after {max_attempts} attempts")


__all__ = ["retry_async"]
