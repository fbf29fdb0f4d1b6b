"""
Bounded waiting on queue state.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import PollTimeoutError


logger = logging.getLogger(__name__)

T = TypeVar("T")


async def await_terminal_state(
    fetch: Callable[[], Awaitable[Optional[T]]],
    is_terminal: Callable[[Optional[T]], bool],
    *,
    timeout: float = 30.0,
    poll_interval: float = 0.5,
    label: str = "item",
) -> Optional[T]:
    """
    Poll ``fetch`` until ``is_terminal`` accepts its result.

    The last fetched value is returned as soon as it is terminal. Raises
    PollTimeoutError (carrying the last value seen) once ``timeout``
    seconds have passed.
    """
    deadline = time.monotonic() + timeout
    value = await fetch()
    while not is_terminal(value):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise PollTimeoutError(f"Timed out after {timeout}s waiting for {label}", last_value=value)
        await asyncio.sleep(min(poll_interval, remaining))
        value = await fetch()
    logger.debug("%s reached terminal state", label)
    return value
