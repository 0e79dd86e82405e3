"""
Unit tests for retry utilities.
"""

import pytest

from ledgertier.retry import (
    RetriesExhausted,
    RetryConfig,
    RetryStats,
    calculate_backoff,
    retry_async,
)

NO_DELAY = RetryConfig(max_attempts=3, initial_delay=0.0, max_delay=0.0, jitter=0.0)


class TestRetryConfig:
    def test_defaults(self):
        config = RetryConfig()

        assert config.max_attempts == 3
        assert config.exponential_base == 2.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"initial_delay": -1.0},
            {"initial_delay": 2.0, "max_delay": 1.0},
            {"exponential_base": 0.5},
            {"jitter": 1.5},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)

    def test_dict_round_trip(self):
        config = RetryConfig(max_attempts=5, initial_delay=0.2, max_delay=4.0)

        assert RetryConfig.from_dict(config.to_dict()) == config


class TestCalculateBackoff:
    def test_exponential_growth_without_jitter(self):
        config = RetryConfig(initial_delay=1.0, max_delay=60.0, jitter=0.0)

        assert calculate_backoff(0, config) == 1.0
        assert calculate_backoff(3, config) == 8.0

    def test_capped_at_max_delay(self):
        config = RetryConfig(initial_delay=1.0, max_delay=5.0, jitter=0.0)

        assert calculate_backoff(10, config) == 5.0

    def test_jitter_stays_in_range(self):
        config = RetryConfig(initial_delay=1.0, max_delay=10.0, jitter=0.5)

        for _ in range(50):
            assert 0.5 <= calculate_backoff(0, config) <= 1.5


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_succeeds_first_time(self):
        stats = RetryStats()

        async def op():
            return "ok"

        assert await retry_async(op, NO_DELAY, (ValueError,), stats=stats) == "ok"
        assert stats.attempts == 1
        assert stats.failures == 0

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        calls = []

        async def op():
            calls.append(1)
            if len(calls) < 3:
                raise ValueError("not yet")
            return len(calls)

        assert await retry_async(op, NO_DELAY, (ValueError,)) == 3

    @pytest.mark.asyncio
    async def test_exhausted(self):
        stats = RetryStats()

        async def op():
            raise ValueError("always")

        with pytest.raises(RetriesExhausted) as exc_info:
            await retry_async(op, NO_DELAY, (ValueError,), stats=stats)

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, ValueError)
        assert stats.failures == 3
        assert stats.last_error == "always"

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self):
        stats = RetryStats()

        async def op():
            raise KeyError("nope")

        with pytest.raises(KeyError):
            await retry_async(op, NO_DELAY, (ValueError,), stats=stats)

        assert stats.attempts == 1

    @pytest.mark.asyncio
    async def test_on_retry_called_before_each_retry(self):
        seen = []

        async def op():
            if len(seen) < 2:
                raise ValueError(f"fail {len(seen)}")
            return "ok"

        result = await retry_async(
            op,
            NO_DELAY,
            (ValueError,),
            on_retry=lambda n, e: seen.append((n, str(e))),
        )

        assert result == "ok"
        assert seen == [(1, "fail 0"), (2, "fail 1")]

    @pytest.mark.asyncio
    async def test_on_retry_not_called_after_last_attempt(self):
        seen = []

        async def op():
            raise ValueError("always")

        with pytest.raises(RetriesExhausted):
            await retry_async(op, NO_DELAY, (ValueError,), on_retry=lambda n, e: seen.append(n))

        assert seen == [1, 2]
