"""Unit tests for the sliding-window + daily rate limiter."""

from __future__ import annotations

from datetime import datetime

import pytest

from signalq.errors import RateLimitedError
from signalq.infrastructure.rate_limiter import RateLimiter, next_local_midnight
from signalq.observability.telemetry import get_counter


class FakeClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    # Local noon so the day boundary is far away
    noon = datetime(2025, 3, 3, 12, 0).timestamp()
    return FakeClock(noon)


def test_allows_up_to_per_minute_limit(clock):
    limiter = RateLimiter(max_per_minute=3, max_per_day=100, clock=clock)
    for _ in range(3):
        limiter.attempt()

    stats = limiter.get_stats()
    assert stats.per_minute_count == 3
    assert stats.daily_count == 3
    assert stats.is_allowed is False


def test_fourth_call_in_window_is_refused_with_retry_after(clock):
    limiter = RateLimiter(max_per_minute=3, max_per_day=100, clock=clock)
    for _ in range(3):
        limiter.attempt()
        clock.now += 10

    with pytest.raises(RateLimitedError) as exc_info:
        limiter.attempt()

    # Oldest call was 30s ago, so the window frees up in 30s
    assert exc_info.value.retry_after_seconds == pytest.approx(30.0)
    assert get_counter("llm.rate_limited") == 1


def test_refused_call_is_not_counted(clock):
    limiter = RateLimiter(max_per_minute=1, max_per_day=100, clock=clock)
    limiter.attempt()
    with pytest.raises(RateLimitedError):
        limiter.attempt()

    assert limiter.get_stats().daily_count == 1


def test_window_slides(clock):
    limiter = RateLimiter(max_per_minute=2, max_per_day=100, clock=clock)
    limiter.attempt()
    limiter.attempt()

    clock.now += 60
    limiter.attempt()
    assert limiter.get_stats().per_minute_count == 1


def test_window_never_holds_more_than_limit(clock):
    limiter = RateLimiter(max_per_minute=5, max_per_day=1000, clock=clock)
    admitted = 0
    for _ in range(200):
        try:
            limiter.attempt()
            admitted += 1
        except RateLimitedError:
            pass
        assert limiter.get_stats().per_minute_count <= 5
        clock.now += 1.5

    # 300 seconds at 5 per 60s
    assert admitted == 25


def test_daily_limit_refuses_until_midnight(clock):
    limiter = RateLimiter(max_per_minute=100, max_per_day=2, clock=clock)
    limiter.attempt()
    clock.now += 120
    limiter.attempt()
    clock.now += 120

    with pytest.raises(RateLimitedError) as exc_info:
        limiter.attempt()

    expected = next_local_midnight(clock.now) - clock.now
    assert exc_info.value.retry_after_seconds == pytest.approx(expected)


def test_daily_counter_resets_at_local_midnight(clock):
    limiter = RateLimiter(max_per_minute=100, max_per_day=1, clock=clock)
    limiter.attempt()
    with pytest.raises(RateLimitedError):
        limiter.attempt()

    clock.now = next_local_midnight(clock.now) + 1
    limiter.attempt()
    assert limiter.get_stats().daily_count == 1


def test_retry_after_has_a_floor(clock):
    limiter = RateLimiter(max_per_minute=1, max_per_day=100, clock=clock)
    limiter.attempt()
    clock.now += 59.9

    with pytest.raises(RateLimitedError) as exc_info:
        limiter.attempt()
    assert exc_info.value.retry_after_seconds == 1.0


def test_rejects_non_positive_limits():
    with pytest.raises(ValueError):
        RateLimiter(max_per_minute=0, max_per_day=10)
    with pytest.raises(ValueError):
        RateLimiter(max_per_minute=10, max_per_day=0)
