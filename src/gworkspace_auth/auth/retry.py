"""Retry with exponential backoff for token refresh.

Only ``RefreshTransientError`` is retried, and only while its status code is
retriable under the policy. ``ReauthorizationRequiredError`` and anything else
propagate on the first occurrence.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from gworkspace_auth.auth.models import RetryPolicy
from gworkspace_auth.errors import RefreshTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(
    attempt: int,
    policy: RetryPolicy,
    rand: Callable[[], float] = random.random,
) -> int:
    """Delay before the next attempt, in milliseconds.

    ``base * 2 ** (attempt - 1)`` plus up to ``jitter_fraction`` of that,
    never more than ``max_delay_ms``.

    Args:
        attempt: The attempt that just failed (1-based).
        policy: Retry policy.
        rand: Source of uniform values in ``[0, 1)``.
    """
    exponential = policy.base_delay_ms * 2 ** (attempt - 1)
    capped = min(exponential, policy.max_delay_ms)
    jitter = capped * policy.jitter_fraction * rand()
    return int(min(capped + jitter, policy.max_delay_ms))


async def retry_refresh(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rand: Callable[[], float] = random.random,
) -> tuple[T, int]:
    """Run a refresh operation under a retry policy.

    Each attempt is bounded by ``request_timeout_ms`` and the whole run,
    including backoff sleeps, by ``total_timeout_ms``. Timeouts count as
    transient failures.

    Args:
        operation: Coroutine factory performing one refresh attempt.
        policy: Retry policy.
        sleep: Awaitable sleep taking seconds.
        rand: Jitter source.

    Returns:
        The operation's result and the number of attempts used.

    Raises:
        RefreshTransientError: Attempts or time ran out. ``attempts`` holds
            the number of attempts made.
        ReauthorizationRequiredError: The refresh token was rejected.
    """
    attempts = 0

    async def run() -> T:
        nonlocal attempts
        while True:
            attempts += 1
            try:
                return await asyncio.wait_for(operation(), policy.request_timeout_ms / 1000)
            except asyncio.TimeoutError:
                error = RefreshTransientError("request_timeout")
            except RefreshTransientError as e:
                error = e

            error.attempts = attempts
            if attempts >= policy.max_attempts or not policy.is_retriable_status(
                error.status_code
            ):
                raise error

            delay = backoff_delay(attempts, policy, rand)
            logger.debug(
                f"Token refresh attempt {attempts}/{policy.max_attempts} failed "
                f"({error.reason}), retrying in {delay}ms"
            )
            await sleep(delay / 1000)

    try:
        result = await asyncio.wait_for(run(), policy.total_timeout_ms / 1000)
    except asyncio.TimeoutError as e:
        raise RefreshTransientError("total_timeout", attempts=attempts) from e
    return result, attempts
