"""
Retry policy and cancellable waiting for bounded polling loops.

Every wait in the orchestrator is bounded by an attempt count and can be
interrupted by a cancellation event within one poll interval:
- RetryPolicy: fixed backoff, capped attempts
- attempts_for: converts a timeout into a poll count
- pause: sleep that wakes early and raises when cancellation is signalled
"""

import asyncio
import math
from dataclasses import dataclass

from operator_cluster.exceptions import OrchestrationCancelled


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for retrying administrative calls.

    Uses a fixed backoff rather than exponential growth: join steps wait on
    gossip propagation, which converges at a steady rate.

    Attributes:
        max_attempts: Maximum number of attempts (default 10)
        backoff_seconds: Wait between attempts (default 1.0)

    Example:
        policy = RetryPolicy(max_attempts=5, backoff_seconds=0.5)
        for attempt in policy.attempts():
            ...
    """

    max_attempts: int = 10
    backoff_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_seconds < 0:
            raise ValueError(
                f"backoff_seconds must be >= 0, got {self.backoff_seconds}"
            )

    def attempts(self) -> range:
        """Attempt numbers, starting at 1."""
        return range(1, self.max_attempts + 1)

    def should_retry(self, attempt: int) -> bool:
        """
        Check if another attempt may follow the given one.

        Args:
            attempt: The attempt just made (1-based)

        Returns:
            True if attempt < max_attempts, False otherwise
        """
        return attempt < self.max_attempts


def attempts_for(timeout: float, interval: float) -> int:
    """Number of polls that fit in timeout at the given interval (at least 1)."""
    if interval <= 0:
        raise ValueError(f"interval must be > 0, got {interval}")
    return max(1, math.ceil(timeout / interval))


def check_cancelled(cancel_event: asyncio.Event | None) -> None:
    """Raise OrchestrationCancelled if the event is set."""
    if cancel_event is not None and cancel_event.is_set():
        raise OrchestrationCancelled("Cancelled by external signal")


async def pause(seconds: float, cancel_event: asyncio.Event | None = None) -> None:
    """
    Sleep for the given interval, waking early on cancellation.

    Uses Event.wait() with a timeout rather than asyncio.sleep so that a
    cancellation raised mid-interval is observed immediately.

    Raises:
        OrchestrationCancelled: If cancel_event is set before or during the wait
    """
    check_cancelled(cancel_event)
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return

    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return  # Interval elapsed without cancellation
    check_cancelled(cancel_event)
