"""Backoff calculation and rate limiting shared by steps, providers and the queue."""
from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class BackoffStrategy(Enum):
    """Delay growth between consecutive retry attempts."""

    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


def calculate_backoff(delay: float, attempt: int, strategy: BackoffStrategy | str) -> float:
    """Calculate the wait before retry number ``attempt``.

    Args:
        delay: Base delay in seconds
        attempt: Retry number, 1-based (the first retry is attempt 1)
        strategy: ``linear`` (delay*attempt), ``exponential`` (delay*2^(attempt-1))
            or ``fixed`` (delay)

    Returns:
        Delay in seconds, never negative
    """
    if attempt < 1 or delay <= 0:
        return 0.0

    strategy = BackoffStrategy(strategy)
    if strategy == BackoffStrategy.EXPONENTIAL:
        return delay * (2 ** (attempt - 1))
    if strategy == BackoffStrategy.LINEAR:
        return delay * attempt
    return delay


@dataclass
class RetryConfig:
    """Configuration for queue-level retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (including the initial attempt)
        base_delay: Base delay in seconds before the first retry
        max_delay: Ceiling for any single delay
        backoff: Growth strategy between attempts
        jitter: Whether to add random jitter to delays
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 300.0
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    jitter: bool = False

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        self.backoff = BackoffStrategy(self.backoff)
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")

    def calculate_backoff_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (1-based), capped at ``max_delay``."""
        delay = min(calculate_backoff(self.base_delay, attempt, self.backoff), self.max_delay)

        if self.jitter and delay > 0:
            # ±25% random jitter
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, min(delay, self.max_delay))

    def has_attempts_left(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts


class RateLimiter:
    """Sliding-window limiter: at most ``max_requests`` per ``window_seconds``.

    Used by the provider registry to protect external rate limits. ``acquire``
    either rejects immediately or waits for a free slot.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self.attempts: List[float] = []
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        self.attempts = [t for t in self.attempts if now - t < self.window_seconds]

    def try_acquire(self) -> bool:
        """Take a slot if one is free.

        Returns:
            True if the call is allowed within the window, False otherwise
        """
        with self._lock:
            now = self._clock()
            self._prune(now)

            if len(self.attempts) < self.max_requests:
                self.attempts.append(now)
                return True
            return False

    def time_until_available(self) -> float:
        """Seconds until the oldest call leaves the window."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self.attempts) < self.max_requests:
                return 0.0
            return max(0.0, self.window_seconds - (now - self.attempts[0]))

    async def acquire(self) -> None:
        """Wait until a slot is free, then take it."""
        while not self.try_acquire():
            wait = self.time_until_available()
            logger.debug(f"Rate limit reached, waiting {wait:.3f}s for a free slot")
            await asyncio.sleep(max(wait, 0.001))

    def get_status(self) -> Dict[str, Any]:
        """Get current window usage."""
        with self._lock:
            self._prune(self._clock())
            return {
                "used": len(self.attempts),
                "max_requests": self.max_requests,
                "remaining": self.max_requests - len(self.attempts),
                "window_seconds": self.window_seconds,
            }
