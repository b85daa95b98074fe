"""Unit tests for exponential backoff."""

import random

import pytest

from sis_resilience.reliability.backoff import BackoffConfig, BackoffState, ExponentialBackoff
from sis_resilience.reliability.errors import ConfigurationError


def make_backoff(clock=None, **overrides):
    config = {"base_delay_ms": 1000, "max_delay_ms": 30000, "max_attempts": 3, "multiplier": 2, "jitter": False}
    config.update(overrides)
    return ExponentialBackoff(BackoffConfig(**config), clock=clock, rng=random.Random(7))


class TestDelayCalculation:

    def test_exponential_sequence_without_jitter(self):
        backoff = make_backoff()

        assert [backoff.calculate_delay(n) for n in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]

    def test_delay_is_capped(self):
        backoff = make_backoff(base_delay_ms=1000, max_delay_ms=5000, max_attempts=10)

        assert backoff.calculate_delay(4) == 5000
        assert backoff.calculate_delay(10) == 5000

    def test_huge_attempt_does_not_overflow(self):
        backoff = make_backoff(multiplier=10, max_attempts=10)

        assert backoff.calculate_delay(10_000) == 30000

    def test_deterministic_without_jitter(self):
        first = make_backoff()
        second = make_backoff()

        assert [first.calculate_delay(n) for n in range(1, 6)] == [second.calculate_delay(n) for n in range(1, 6)]

    def test_multiplier_of_one_is_constant(self):
        backoff = make_backoff(multiplier=1)

        assert {backoff.calculate_delay(n) for n in range(1, 5)} == {1000}

    def test_jitter_stays_within_band(self):
        backoff = make_backoff(jitter=True, max_delay_ms=4000)

        for attempt in range(1, 8):
            capped = min(1000 * 2 ** (attempt - 1), 4000)
            for _ in range(50):
                delay = backoff.calculate_delay(attempt)
                assert capped * 0.5 <= delay <= capped * 1.5

    def test_jitter_varies(self):
        backoff = make_backoff(jitter=True)

        delays = {backoff.calculate_delay(2) for _ in range(20)}

        assert len(delays) > 1


class TestShouldRetry:

    def test_should_retry_boundary(self):
        backoff = make_backoff(max_attempts=3)

        assert backoff.should_retry(1) is True
        assert backoff.should_retry(3) is True
        assert backoff.should_retry(4) is False


class TestValidation:

    @pytest.mark.parametrize("overrides,message", [
        ({"base_delay_ms": 0}, "Base delay must be positive"),
        ({"base_delay_ms": -5}, "Base delay must be positive"),
        ({"base_delay_ms": 2000, "max_delay_ms": 1000}, "Max delay must be greater than or equal to base delay"),
        ({"max_attempts": 0}, "Max attempts must be positive"),
        ({"multiplier": 0.5}, "Multiplier must be at least 1"),
    ])
    def test_invalid_config(self, overrides, message):
        with pytest.raises(ConfigurationError, match=message):
            make_backoff(**overrides)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            make_backoff(max_attempts=-1)

    def test_update_config_validates(self):
        backoff = make_backoff()

        with pytest.raises(ConfigurationError):
            backoff.update_config(multiplier=0)
        assert backoff.config.multiplier == 2

        backoff.update_config(base_delay_ms=500)
        assert backoff.calculate_delay(1) == 500


class TestAttemptCursor:

    def test_next_delay_consumes_attempts(self):
        backoff = make_backoff()

        delays = [backoff.next_delay() for _ in range(3)]

        assert delays == [1000, 2000, 4000]
        assert backoff.is_exhausted
        assert backoff.next_delay() == 0
        assert backoff.current_attempt == 3

    def test_progress_and_status(self):
        backoff = make_backoff(max_attempts=4)
        assert backoff.get_status() == "Ready for first attempt"

        backoff.next_delay()

        assert backoff.progress == 25
        assert backoff.get_status() == "Attempt 2 of 4"

        for _ in range(3):
            backoff.next_delay()
        assert backoff.get_status() == "Max attempts reached"
        assert backoff.can_retry() is False

    def test_reset_keeps_total_attempts(self):
        backoff = make_backoff()
        backoff.next_delay()
        backoff.next_delay()

        backoff.reset()

        assert backoff.current_attempt == 0
        assert backoff.total_attempts == 2
        assert backoff.can_retry()

    def test_state_round_trip_is_clamped(self):
        backoff = make_backoff()

        backoff.set_state(BackoffState(current_attempt=10, total_attempts=12, start_time=1.0))

        assert backoff.current_attempt == 3
        assert backoff.get_state().to_dict() == {"current_attempt": 3, "total_attempts": 12, "start_time": 1.0}
        assert BackoffState.from_dict(backoff.get_state().to_dict()) == backoff.get_state()

    def test_statistics(self, clock):
        backoff = make_backoff(clock=clock)
        backoff.next_delay()
        backoff.next_delay()
        clock.tick(3)

        stats = backoff.get_statistics()

        assert stats.current_attempt == 2
        assert stats.remaining_attempts == 1
        assert stats.estimated_total_time_ms == 7000
        assert stats.average_delay_per_attempt_ms == 1500
        assert stats.elapsed_time_ms == pytest.approx(3000)


class TestExecution:

    @pytest.mark.asyncio
    async def test_wait_sleeps_on_clock(self, clock):
        backoff = make_backoff(clock=clock)

        delay = await backoff.wait(2)

        assert delay == 2000
        assert clock.sleeps == [2.0]

    @pytest.mark.asyncio
    async def test_execute_with_backoff_retries_until_success(self, clock):
        backoff = make_backoff(clock=clock)
        calls = []
        retries = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise RuntimeError("temporary")
            return "ok"

        result = await backoff.execute_with_backoff(flaky, on_retry=lambda n, e, d: retries.append((n, d)))

        assert result == "ok"
        assert len(calls) == 3
        assert retries == [(1, 1000), (2, 2000)]
        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_execute_with_backoff_raises_last_error(self, clock):
        backoff = make_backoff(clock=clock)
        calls = []

        async def always_fails():
            calls.append(1)
            raise RuntimeError(f"failure {len(calls)}")

        with pytest.raises(RuntimeError, match="failure 3"):
            await backoff.execute_with_backoff(always_fails)

        assert len(calls) == 3
        assert len(clock.sleeps) == 2
