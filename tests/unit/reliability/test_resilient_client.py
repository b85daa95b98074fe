"""Unit tests for the resilient execution path."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from sis_resilience.reliability.backoff import BackoffConfig, ExponentialBackoff
from sis_resilience.reliability.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from sis_resilience.reliability.dead_letter_queue import DeadLetterQueue, DeadLetterQueueConfig
from sis_resilience.reliability.error_classifier import ErrorType
from sis_resilience.reliability.errors import (
    CircuitOpenError,
    ConfigurationError,
    MaxRetriesExceededError,
    NonRetryableError,
)
from sis_resilience.reliability.resilient_client import (
    OperationContext,
    ResilientClient,
    ResilientClientConfig,
)
from sis_resilience.reliability.storage import InMemoryStorage
from tests.helpers.mock_exceptions import make_connect_error, make_http_status_error


def failing_then(result, *errors):
    """Async operation raising each error in turn, then returning result."""
    remaining = list(errors)
    operation = AsyncMock()

    async def run():
        if remaining:
            raise remaining.pop(0)
        return result

    operation.side_effect = run
    return operation


class TestExecute:

    @pytest.mark.asyncio
    async def test_first_attempt_success(self, client, clock):
        operation = AsyncMock(return_value={"students": 12})

        assert await client.execute(operation) == {"students": 12}
        assert operation.await_count == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_transient_failures_retried_with_backoff(self, client, clock):
        operation = failing_then("synced", make_http_status_error(503), make_connect_error())

        assert await client.execute(operation) == "synced"
        assert operation.await_count == 3
        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_dead_letters_and_raises(self, client, dlq, clock):
        error = make_http_status_error(500)
        operation = AsyncMock(side_effect=error)
        context = OperationContext(
            operation_type="ATTENDANCE_SYNC",
            operation_id="sync-2024-08-15",
            payload={"school_code": "RHS"}
        )

        with pytest.raises(MaxRetriesExceededError, match="Max retry attempts exceeded") as exc_info:
            await client.execute(operation, context)

        raised = exc_info.value
        assert raised.attempts == 3
        assert raised.dead_lettered is True
        assert raised.operation_id == "sync-2024-08-15"
        assert raised.classification.type == ErrorType.SERVER_ERROR
        assert raised.__cause__ is error
        assert operation.await_count == 3
        assert len(clock.sleeps) == 2

        items = dlq.get_all_operations()
        assert len(items) == 1
        assert items[0].operation_id == "sync-2024-08-15"
        assert items[0].type == "ATTENDANCE_SYNC"
        assert items[0].retry_count == 3
        assert items[0].payload == {"school_code": "RHS"}
        assert items[0].error.error_type == ErrorType.SERVER_ERROR

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self, client, dlq, clock):
        error = make_http_status_error(404)
        operation = AsyncMock(side_effect=error)

        with pytest.raises(NonRetryableError) as exc_info:
            await client.execute(operation)

        assert str(exc_info.value) == "The requested resource was not found."
        assert exc_info.value.classification.type == ErrorType.RESOURCE_NOT_FOUND
        assert exc_info.value.__cause__ is error
        assert operation.await_count == 1
        assert clock.sleeps == []
        assert dlq.size == 0

    @pytest.mark.asyncio
    async def test_non_retryable_persisted_when_requested(self, client, dlq):
        operation = AsyncMock(side_effect=make_http_status_error(400, json_body={"details": ["bad date"]}))
        context = OperationContext(operation_id="bad-import", persist_permanent_failure=True)

        with pytest.raises(NonRetryableError):
            await client.execute(operation, context)

        assert dlq.get_stats().permanently_failed_items == 1
        assert dlq.get_operation("bad-import").error.error_type == ErrorType.DATA_VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_non_retryable_persisted_by_config(self, breaker, no_jitter_backoff, dlq, clock):
        client = ResilientClient(
            breaker, no_jitter_backoff, dlq,
            config=ResilientClientConfig(dead_letter_permanent_errors=True),
            clock=clock
        )

        with pytest.raises(NonRetryableError):
            await client.execute(AsyncMock(side_effect=make_http_status_error(401)))

        assert dlq.size == 1

    @pytest.mark.asyncio
    async def test_open_circuit_rejected_without_attempt(self, client, breaker, dlq, clock):
        breaker.force_state(CircuitState.OPEN)
        operation = AsyncMock(return_value="never")

        with pytest.raises(CircuitOpenError):
            await client.execute(operation)

        operation.assert_not_called()
        assert clock.sleeps == []
        assert dlq.size == 0

    @pytest.mark.asyncio
    async def test_breaker_opening_mid_sequence_fails_fast(self, clock):
        client = ResilientClient(
            circuit_breaker=CircuitBreaker(config=CircuitBreakerConfig(failure_threshold=2), clock=clock),
            backoff=ExponentialBackoff(BackoffConfig(max_attempts=5, jitter=False), clock=clock),
            dead_letter_queue=DeadLetterQueue(storage=InMemoryStorage(), clock=clock),
            clock=clock
        )
        operation = AsyncMock(side_effect=make_http_status_error(503))

        with pytest.raises(CircuitOpenError):
            await client.execute(operation)

        assert operation.await_count == 2
        assert client.dead_letter_queue.size == 0

    @pytest.mark.asyncio
    async def test_retry_after_used_for_delay(self, client, clock):
        operation = failing_then("ok", make_http_status_error(429, headers={"Retry-After": "7"}))

        await client.execute(operation)

        assert clock.sleeps == [7.0]

    @pytest.mark.asyncio
    async def test_retry_after_capped_at_max_delay(self, client, clock):
        operation = failing_then("ok", make_http_status_error(429, headers={"Retry-After": "3600"}))

        await client.execute(operation)

        assert clock.sleeps == [30.0]

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, client, clock):
        calls = []

        async def slow_then_fast():
            calls.append(1)
            if len(calls) == 1:
                await asyncio.sleep(1)
            return "ok"

        assert await client.execute(slow_then_fast, timeout_ms=10) == "ok"
        assert len(calls) == 2
        assert clock.sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_full_queue_does_not_hide_terminal_error(self, breaker, no_jitter_backoff, clock,
                                                           make_failed_operation):
        queue = DeadLetterQueue(DeadLetterQueueConfig(max_queue_size=1), storage=InMemoryStorage(), clock=clock)
        await queue.add(make_failed_operation("occupant"))
        client = ResilientClient(breaker, no_jitter_backoff, queue, clock=clock)

        with pytest.raises(MaxRetriesExceededError) as exc_info:
            await client.execute(AsyncMock(side_effect=make_connect_error()))

        assert exc_info.value.dead_lettered is False
        assert queue.size == 1

    @pytest.mark.asyncio
    async def test_errors_recorded_in_statistics(self, client):
        operation = failing_then("ok", make_http_status_error(503), make_http_status_error(500))

        await client.execute(operation)

        stats = client.statistics.get_error_statistics()
        assert stats["total_errors"] == 2
        assert stats["errors_by_type"] == {"SERVICE_UNAVAILABLE": 1, "SERVER_ERROR": 1}
        assert stats["retryable_errors"] == 2

    def test_invalid_timeout(self):
        with pytest.raises(ConfigurationError):
            ResilientClient(config=ResilientClientConfig(operation_timeout_ms=0))


class TestDeadLetterProcessing:

    @pytest.mark.asyncio
    async def test_successful_redelivery(self, client, dlq, make_failed_operation, clock):
        await dlq.add(make_failed_operation("a", next_retry_at=clock.now()))
        await dlq.add(make_failed_operation("b", next_retry_at=clock.now()))
        handler = AsyncMock(return_value=None)

        result = await client.process_dead_letter_queue(handler)

        assert (result.attempted, result.succeeded, result.failed) == (2, 2, 0)
        assert handler.await_count == 2
        assert dlq.get_stats().processed_items == 2
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_failed_redelivery_is_rescheduled(self, client, dlq, make_failed_operation, clock):
        await dlq.add(make_failed_operation("a", next_retry_at=clock.now()))
        handler = AsyncMock(side_effect=make_http_status_error(503))

        result = await client.process_dead_letter_queue(handler)

        assert (result.attempted, result.failed, result.permanently_failed) == (1, 1, 0)
        item = dlq.get_operation("a")
        assert item.retry_count == 1
        assert item.next_retry_at > clock.now()
        assert item.error.error_type == ErrorType.SERVICE_UNAVAILABLE
        assert not dlq.is_claimed("a")

    @pytest.mark.asyncio
    async def test_redelivery_at_limit_fails_permanently(self, client, dlq, make_failed_operation, clock):
        await dlq.add(make_failed_operation("a", retry_count=2, next_retry_at=clock.now()))

        result = await client.process_dead_letter_queue(AsyncMock(side_effect=make_connect_error()))

        assert result.permanently_failed == 1
        assert dlq.get_stats().permanently_failed_items == 1

    @pytest.mark.asyncio
    async def test_open_breaker_stops_sweep(self, client, breaker, dlq, make_failed_operation, clock):
        await dlq.add(make_failed_operation("a", next_retry_at=clock.now()))
        breaker.force_state(CircuitState.OPEN)
        handler = AsyncMock()

        result = await client.process_dead_letter_queue(handler)

        assert result.stopped_by_circuit_breaker is True
        assert result.attempted == 0
        handler.assert_not_called()
        assert not dlq.is_claimed("a")
        assert dlq.get_stats().pending_items == 1

    @pytest.mark.asyncio
    async def test_max_items(self, client, dlq, make_failed_operation, clock):
        for name in ("a", "b", "c"):
            await dlq.add(make_failed_operation(name, next_retry_at=clock.now()))

        result = await client.process_dead_letter_queue(AsyncMock(), max_items=2)

        assert result.attempted == 2
        assert dlq.get_stats().pending_items == 1

    @pytest.mark.asyncio
    async def test_handler_receives_item(self, client, dlq, make_failed_operation, clock):
        await dlq.add(make_failed_operation("a", next_retry_at=clock.now()))
        handler = AsyncMock()

        await client.process_dead_letter_queue(handler)

        delivered = handler.await_args.args[0]
        assert delivered.operation_id == "a"
        assert delivered.payload["school_code"] == "RHS"

    @pytest.mark.asyncio
    async def test_periodic_processing(self, timer_clock, make_failed_operation):
        queue = DeadLetterQueue(storage=InMemoryStorage(), clock=timer_clock)
        client = ResilientClient(dead_letter_queue=queue, clock=timer_clock)
        await queue.add(make_failed_operation("a", next_retry_at=timer_clock.now()))
        handler = AsyncMock()

        client.start_dead_letter_processing(handler, interval_ms=1000)
        await timer_clock.advance(1)

        handler.assert_awaited_once()
        assert queue.get_stats().processed_items == 1
        await client.close()


class TestStatus:

    @pytest.mark.asyncio
    async def test_status_snapshot(self, client):
        with pytest.raises(MaxRetriesExceededError):
            await client.execute(AsyncMock(side_effect=make_http_status_error(502)))

        status = client.get_status()

        assert status["circuit_breaker"]["state"] == "OPEN"
        assert status["dead_letter_queue"]["total_items"] == 1
        assert status["errors"]["errors_by_type"] == {"SERVER_ERROR": 3}
