"""Shared pytest fixtures for SIS Resilience tests."""

import random

import pytest

from sis_resilience.reliability.backoff import BackoffConfig, ExponentialBackoff
from sis_resilience.reliability.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from sis_resilience.reliability.dead_letter_queue import (
    DeadLetterQueue,
    DeadLetterQueueConfig,
    ErrorSummary,
    FailedOperation,
)
from sis_resilience.reliability.resilient_client import ResilientClient
from sis_resilience.reliability.storage import InMemoryStorage
from tests.helpers.fake_clock import FakeClock


@pytest.fixture
def clock():
    """Clock whose sleeps advance time immediately."""
    return FakeClock()


@pytest.fixture
def timer_clock():
    """Clock whose sleepers wait for an explicit advance()."""
    return FakeClock(auto_advance=False)


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def no_jitter_backoff(clock):
    """Deterministic backoff: 1000, 2000, 4000ms for three attempts."""
    return ExponentialBackoff(
        BackoffConfig(base_delay_ms=1000, max_delay_ms=30000, max_attempts=3, multiplier=2, jitter=False),
        clock=clock
    )


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(
        "sis-test",
        CircuitBreakerConfig(failure_threshold=3, recovery_timeout_ms=5000, half_open_max_requests=1),
        clock=clock
    )


@pytest.fixture
def memory_storage():
    return InMemoryStorage()


@pytest.fixture
def dlq(clock, memory_storage):
    return DeadLetterQueue(
        DeadLetterQueueConfig(max_retries=3, retry_delay_ms=5000, max_queue_size=1000),
        storage=memory_storage,
        clock=clock
    )


@pytest.fixture
def client(breaker, no_jitter_backoff, dlq, clock):
    return ResilientClient(
        circuit_breaker=breaker,
        backoff=no_jitter_backoff,
        dead_letter_queue=dlq,
        clock=clock
    )


@pytest.fixture
def make_failed_operation(clock):
    """Factory for FailedOperation records stamped with the fake clock."""
    def factory(operation_id="sync-123", retry_count=0, operation_type="ATTENDANCE_SYNC", **overrides):
        fields = {
            "operation_id": operation_id,
            "type": operation_type,
            "error": ErrorSummary(name="HTTPStatusError", message="Server error '500'"),
            "timestamp": clock.now(),
            "retry_count": retry_count,
            "payload": {"start_date": "2024-08-15", "end_date": "2024-08-16", "school_code": "RHS"},
        }
        fields.update(overrides)
        return FailedOperation(**fields)

    return factory
