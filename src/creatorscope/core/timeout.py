"""
Timeout composer.

`with_timeout` races a unit of work against a deadline. The losing work is
cancelled, so a timed-out actor poll does not keep running in the background.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import OperationTimeoutError
from .retry import RetryOptions, RetryOutcome, run_with_retry

T = TypeVar("T")


async def with_timeout(
    work: Awaitable[T] | Callable[[], Awaitable[T]],
    duration: float,
    message: str | None = None,
) -> T:
    """Await `work` for at most `duration` seconds.

    Only an expired deadline becomes `OperationTimeoutError`; a `TimeoutError`
    raised by the work itself passes through unchanged.
    """
    if duration <= 0:
        if inspect.iscoroutine(work):
            work.close()
        raise ValueError("duration must be positive")

    awaitable = work if inspect.isawaitable(work) else work()
    deadline = asyncio.timeout(duration)
    try:
        async with deadline:
            return await awaitable
    except TimeoutError as e:
        # Nested work that timed out on its own deadline keeps its message
        if not deadline.expired() or isinstance(e, OperationTimeoutError):
            raise
        raise OperationTimeoutError(
            message or f"Operation timed out after {duration:g}s", timeout=duration
        ) from None


async def retry_with_timeout(
    work: Callable[[], Awaitable[T]],
    duration: float,
    options: RetryOptions | None = None,
    message: str | None = None,
) -> RetryOutcome[T]:
    """Retry `work`, bounding every individual attempt by `duration`."""
    return await run_with_retry(lambda: with_timeout(work, duration, message), options)
