"""Bounded retry with exponential backoff for external calls."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from evidentia.lib.errors import ExternalServiceError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


async def with_timeout(awaitable: Awaitable[Any], timeout: float | None, service: str) -> Any:
    """Await ``awaitable`` with a deadline, converting expiry to ExternalServiceError."""
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise ExternalServiceError(service, f"{service} call timed out after {timeout}s") from e


def backoff_delay(attempt: int, base_seconds: float = 1.0) -> float:
    """Delay before the next attempt: base * 2^attempt (0-based attempt)."""
    return base_seconds * (2**attempt)


@dataclass
class RetryPolicy:
    """How many times to try a call and how long to wait in between.

    ``sleep`` is awaited between attempts so the wait is a scheduled
    resumption and is cancelled together with the surrounding task.
    """

    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    retry_on: tuple[type[BaseException], ...] = (ExternalServiceError,)
    sleep: Sleep = field(default=asyncio.sleep)

    async def wait(self, attempt: int) -> None:
        delay = backoff_delay(attempt, self.backoff_base_seconds)
        if delay > 0:
            await self.sleep(delay)


async def retry_async(fn: Callable[..., Awaitable[Any]], policy: RetryPolicy, *args, **kwargs) -> Any:
    """Call ``fn`` until it succeeds or ``policy.max_attempts`` is exhausted.

    Args:
        fn: Coroutine function to call
        policy: Retry policy
        *args: Positional arguments for ``fn``
        **kwargs: Keyword arguments for ``fn``

    Returns:
        Result of the first successful call

    Raises:
        The last retryable error once attempts are exhausted. Errors not
        listed in ``policy.retry_on`` propagate immediately.
    """
    attempts = max(1, policy.max_attempts)
    last_error: BaseException | None = None

    for attempt in range(attempts):
        try:
            result = await fn(*args, **kwargs)
            if attempt > 0:
                logger.info(f"Retry succeeded on attempt {attempt + 1}")
            return result
        except policy.retry_on as e:
            last_error = e
            logger.warning(f"Attempt {attempt + 1}/{attempts} failed: {e}")

            if attempt < attempts - 1:
                await policy.wait(attempt)

    logger.error(f"All {attempts} attempts failed: {last_error}")
    raise last_error
