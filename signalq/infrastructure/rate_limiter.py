"""
Outbound call rate limiting for the Gemini analysis client.

Two bounds apply to every call:
- Sliding 60 second window (default 15 calls)
- Calendar-day counter (default 1000 calls), reset lazily at local midnight

The limiter is shared by every conversation in the process, so all state is
guarded by a single lock. Refused calls raise RateLimitedError carrying a
retry-after hint; callers schedule their own retry.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import NamedTuple

from signalq.config import LLM_MAX_REQUESTS_PER_DAY, LLM_MAX_REQUESTS_PER_MINUTE
from signalq.errors import RateLimitedError
from signalq.observability.logging import get_logger
from signalq.observability.telemetry import counter

logger = get_logger(__name__)

WINDOW_SECONDS = 60.0
MIN_RETRY_AFTER_SECONDS = 1.0


class RateLimitStatus(NamedTuple):
    """Current limiter usage."""

    per_minute_count: int
    per_minute_limit: int
    daily_count: int
    daily_limit: int
    is_allowed: bool
    retry_after_seconds: float


def next_local_midnight(now: float) -> float:
    """Epoch seconds of the next local midnight after `now`."""
    tomorrow = datetime.fromtimestamp(now).date() + timedelta(days=1)
    return datetime.combine(tomorrow, datetime.min.time()).timestamp()


class RateLimiter:
    """
    Sliding-window plus daily-counter limiter.

    Args:
        max_per_minute: Calls permitted within any 60 second interval
        max_per_day: Calls permitted per local calendar day
        clock: Epoch-seconds time source (injectable for tests)
    """

    def __init__(
        self,
        max_per_minute: int = LLM_MAX_REQUESTS_PER_MINUTE,
        max_per_day: int = LLM_MAX_REQUESTS_PER_DAY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_per_minute < 1 or max_per_day < 1:
            raise ValueError("rate limits must be positive")

        self.max_per_minute = max_per_minute
        self.max_per_day = max_per_day
        self._clock = clock
        self._lock = threading.Lock()
        self._timestamps: deque[float] = deque()
        self._daily_count = 0
        self._daily_reset_at = next_local_midnight(clock())

    def _reset_day_if_due(self, now: float) -> None:
        if now >= self._daily_reset_at:
            self._daily_count = 0
            self._daily_reset_at = next_local_midnight(now)
            logger.info("Daily rate limit counter reset")

    def _evict_expired(self, now: float) -> None:
        cutoff = now - WINDOW_SECONDS
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def _status(self, now: float) -> RateLimitStatus:
        self._reset_day_if_due(now)
        self._evict_expired(now)

        retry_after = 0.0
        if len(self._timestamps) >= self.max_per_minute:
            retry_after = max(self._timestamps[0] + WINDOW_SECONDS - now, MIN_RETRY_AFTER_SECONDS)
        elif self._daily_count >= self.max_per_day:
            retry_after = max(self._daily_reset_at - now, MIN_RETRY_AFTER_SECONDS)

        return RateLimitStatus(
            per_minute_count=len(self._timestamps),
            per_minute_limit=self.max_per_minute,
            daily_count=self._daily_count,
            daily_limit=self.max_per_day,
            is_allowed=retry_after == 0.0,
            retry_after_seconds=retry_after,
        )

    def attempt(self) -> None:
        """
        Record a permitted call or refuse it.

        Raises:
            RateLimitedError: Per-minute or daily bound reached

        Side Effects:
            - Appends a timestamp and increments the daily counter on success
            - Increments telemetry counter on refusal
        """
        with self._lock:
            now = self._clock()
            status = self._status(now)
            if status.is_allowed:
                self._timestamps.append(now)
                self._daily_count += 1
                return

        counter("llm.rate_limited")
        logger.warning(
            "Rate limit hit (minute=%d/%d, day=%d/%d), retry after %.1fs",
            status.per_minute_count,
            status.per_minute_limit,
            status.daily_count,
            status.daily_limit,
            status.retry_after_seconds,
        )
        raise RateLimitedError(
            f"Gemini rate limit exceeded, retry after {status.retry_after_seconds:.0f}s",
            retry_after_seconds=status.retry_after_seconds,
        )

    def get_stats(self) -> RateLimitStatus:
        with self._lock:
            return self._status(self._clock())
