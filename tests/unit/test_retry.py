"""Tests for backoff calculation and rate limiting."""

import pytest

from conductor.utils.retry import BackoffStrategy, RateLimiter, RetryConfig, calculate_backoff
from tests.conftest import ManualClock


class TestCalculateBackoff:
    """Tests for calculate_backoff()."""

    @pytest.mark.parametrize(
        "strategy,expected",
        [
            ("linear", [2, 4, 6, 8]),
            ("exponential", [2, 4, 8, 16]),
            ("fixed", [2, 2, 2, 2]),
        ],
    )
    def test_strategies(self, strategy, expected):
        assert [calculate_backoff(2, n, strategy) for n in range(1, 5)] == expected

    def test_accepts_enum(self):
        assert calculate_backoff(1.5, 3, BackoffStrategy.EXPONENTIAL) == 6.0

    @pytest.mark.parametrize("delay,attempt", [(0, 3), (-1, 1), (2, 0)])
    def test_never_negative(self, delay, attempt):
        assert calculate_backoff(delay, attempt, "linear") == 0.0


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_caps_at_max_delay(self):
        config = RetryConfig(max_attempts=10, base_delay=10, max_delay=50)
        assert [config.calculate_backoff_delay(n) for n in (1, 2, 3, 4)] == [10, 20, 40, 50]

    def test_jitter_stays_within_bounds(self):
        config = RetryConfig(base_delay=4, max_delay=100, jitter=True)
        for _ in range(20):
            assert 3.0 <= config.calculate_backoff_delay(1) <= 5.0

    def test_has_attempts_left(self):
        config = RetryConfig(max_attempts=3)
        assert config.has_attempts_left(2)
        assert not config.has_attempts_left(3)

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_attempts": 0}, {"base_delay": -1}, {"base_delay": 10, "max_delay": 5}],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)


class TestRateLimiter:
    """Tests for the sliding-window RateLimiter."""

    def test_window(self):
        clock = ManualClock()
        limiter = RateLimiter(2, 10, clock=clock)

        assert limiter.try_acquire()
        clock.advance(1)
        assert limiter.try_acquire()
        assert not limiter.try_acquire()
        assert limiter.time_until_available() == pytest.approx(9)

        clock.advance(9)
        assert limiter.try_acquire()
        assert limiter.get_status()["remaining"] == 0

    @pytest.mark.asyncio
    async def test_acquire_waits_for_slot(self):
        limiter = RateLimiter(1, 0.01)
        await limiter.acquire()
        await limiter.acquire()
        assert limiter.get_status()["used"] <= 1

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            RateLimiter(0, 1)
        with pytest.raises(ValueError):
            RateLimiter(1, 0)
