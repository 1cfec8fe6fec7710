"""Timing helpers for proactive token refresh.

A token is refreshed once its remaining lifetime drops below a threshold. A
random jitter spreads refreshes of many processes sharing one account; it only
ever moves the refresh earlier, never past the threshold.
"""

import random
from collections.abc import Callable
from dataclasses import dataclass

from gworkspace_auth.auth.models import now_ms

DEFAULT_REFRESH_THRESHOLD_MS = 5 * 60 * 1000
DEFAULT_REFRESH_JITTER_MS = 30 * 1000


@dataclass(frozen=True)
class RefreshWindow:
    """When and whether a token should be refreshed.

    Attributes:
        should_refresh: Refresh before handing out the token.
        refresh_at_ms: Epoch milliseconds at which the refresh is due.
        time_until_refresh_ms: Zero when the refresh is due now.
        expiry_ms: Token expiry in epoch milliseconds.
        threshold_ms: Effective threshold including jitter.
    """

    should_refresh: bool
    refresh_at_ms: int
    time_until_refresh_ms: int
    expiry_ms: int
    threshold_ms: int


def _effective_threshold(
    threshold_ms: int, jitter_ms: int, rand: Callable[[], float]
) -> int:
    if threshold_ms < 0:
        raise ValueError("Refresh threshold cannot be negative")
    if jitter_ms < 0:
        raise ValueError("Refresh jitter cannot be negative")
    if threshold_ms == 0:
        return 0
    return threshold_ms + (round(rand() * jitter_ms) if jitter_ms else 0)


def calculate_refresh_window(
    expiry_ms: int,
    threshold_ms: int = DEFAULT_REFRESH_THRESHOLD_MS,
    jitter_ms: int = DEFAULT_REFRESH_JITTER_MS,
    now: int | None = None,
    rand: Callable[[], float] = random.random,
) -> RefreshWindow:
    """Calculate the refresh window for a token.

    Args:
        expiry_ms: Token expiry in epoch milliseconds.
        threshold_ms: Refresh when less than this much lifetime remains.
            Zero refreshes only expired tokens.
        jitter_ms: Upper bound of the random amount added to the threshold.
        now: Current time in epoch milliseconds. Defaults to the wall clock.
        rand: Source of uniform values in ``[0, 1)``.

    Returns:
        The refresh window.

    Raises:
        ValueError: If the threshold or jitter is negative.
    """
    now = now if now is not None else now_ms()
    effective = _effective_threshold(threshold_ms, jitter_ms, rand)
    refresh_at = expiry_ms - effective
    remaining = expiry_ms - now

    should_refresh = remaining <= 0 or remaining < effective
    return RefreshWindow(
        should_refresh=should_refresh,
        refresh_at_ms=now if should_refresh and refresh_at < now else refresh_at,
        time_until_refresh_ms=max(0, refresh_at - now) if should_refresh else refresh_at - now,
        expiry_ms=expiry_ms,
        threshold_ms=effective,
    )


def is_expiring_soon(
    expiry_ms: int | None,
    threshold_ms: int = DEFAULT_REFRESH_THRESHOLD_MS,
    jitter_ms: int = DEFAULT_REFRESH_JITTER_MS,
    now: int | None = None,
    rand: Callable[[], float] = random.random,
) -> bool:
    """Check whether a token should be refreshed proactively.

    A token without a known expiry is never considered expiring.
    """
    if expiry_ms is None:
        return False
    return calculate_refresh_window(expiry_ms, threshold_ms, jitter_ms, now, rand).should_refresh
