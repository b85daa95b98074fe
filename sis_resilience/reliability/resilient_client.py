"""
Resilient execution of SIS operations.

Composes the circuit breaker, error classifier, exponential backoff and
dead-letter queue into one call path:

    caller -> ResilientClient.execute -> CircuitBreaker.execute -> operation
           -> on failure: classify -> retry with backoff, or surface
           -> on exhaustion: dead-letter queue -> MaxRetriesExceededError

A second, independent path (process_dead_letter_queue) re-delivers
dead-lettered operations on the queue's own schedule.
"""

import asyncio
import functools
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from ..observability.logging import ResilienceLogger
from ..observability.metrics import ErrorStatistics
from .backoff import ExponentialBackoff
from .circuit_breaker import CircuitBreaker
from .clock import Clock, SystemClock
from .dead_letter_queue import DeadLetterQueue, ErrorSummary, FailedOperation
from .error_classifier import ErrorClassification, ErrorClassifier
from .errors import (
    CircuitBreakerError,
    ConfigurationError,
    MaxRetriesExceededError,
    NonRetryableError,
    QueueFullError,
)

logger = ResilienceLogger("client")

T = TypeVar('T')

DeadLetterHandler = Callable[[FailedOperation], Awaitable[Any]]


@dataclass
class ResilientClientConfig:
    """Client configuration. Durations are milliseconds."""
    operation_timeout_ms: Optional[float] = None      # Per-attempt timeout, None for no limit
    dead_letter_permanent_errors: bool = False        # Record non-retryable failures in the DLQ


@dataclass
class OperationContext:
    """Caller-supplied description of an operation, copied into its DLQ record."""
    operation_type: str = "MANUAL_SYNC"
    operation_id: Optional[str] = None
    payload: Any = None
    correlation_id: Optional[str] = None
    persist_permanent_failure: bool = False


@dataclass
class DLQProcessingResult:
    """Outcome of one dead-letter sweep."""
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    permanently_failed: int = 0
    stopped_by_circuit_breaker: bool = False


class ResilientClient:
    """
    Execute caller-supplied operations against an unreliable SIS.

    Transient failures are retried with backoff through the circuit breaker,
    permanent failures surface immediately with a sanitized message, and
    operations that exhaust their attempts are handed to the dead-letter queue.
    """

    def __init__(
        self,
        circuit_breaker: Optional[CircuitBreaker] = None,
        backoff: Optional[ExponentialBackoff] = None,
        dead_letter_queue: Optional[DeadLetterQueue] = None,
        config: Optional[ResilientClientConfig] = None,
        clock: Optional[Clock] = None,
        statistics: Optional[ErrorStatistics] = None
    ):
        self.config = config or ResilientClientConfig()
        if self.config.operation_timeout_ms is not None and self.config.operation_timeout_ms <= 0:
            raise ConfigurationError("Operation timeout must be positive", "operation_timeout_ms")

        self._clock = clock or SystemClock()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(clock=self._clock)
        self.backoff = backoff or ExponentialBackoff(clock=self._clock)
        self.dead_letter_queue = dead_letter_queue or DeadLetterQueue(clock=self._clock)
        self.statistics = statistics or ErrorStatistics(clock=self._clock)
        self._processing_task: Optional[asyncio.Task] = None

    def _classify(self, error: BaseException) -> ErrorClassification:
        classification = ErrorClassifier.classify(error)
        self.statistics.record(classification)
        return classification

    def _retry_delay_ms(self, attempt: int, classification: ErrorClassification) -> float:
        if classification.retry_delay_ms is not None:
            # Server-suggested delay, bounded like every other wait
            return min(float(classification.retry_delay_ms), self.backoff.config.max_delay_ms)
        return self.backoff.calculate_delay(attempt)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        context: Optional[OperationContext] = None,
        timeout_ms: Optional[float] = None
    ) -> T:
        """
        Execute an operation with classification, retry and dead-lettering.

        Args:
            operation: Async callable performing one SIS call
            context: Optional description used for logs and the DLQ record
            timeout_ms: Per-attempt timeout, overriding the configured one

        Returns:
            Result from the first successful attempt

        Raises:
            CircuitBreakerError: Breaker rejected the call; no attempt consumed
            NonRetryableError: Permanent failure, with the sanitized user message
            MaxRetriesExceededError: Every attempt failed; operation dead-lettered
        """
        context = context or OperationContext()
        operation_id = context.operation_id or str(uuid.uuid4())
        if timeout_ms is None:
            timeout_ms = self.config.operation_timeout_ms

        attempt = 1
        while True:
            try:
                result = await self.circuit_breaker.execute(operation, timeout_ms=timeout_ms)
            except CircuitBreakerError as error:
                self._classify(error)
                logger.warning(
                    "Circuit breaker rejected operation",
                    operation_id=operation_id,
                    correlation_id=context.correlation_id,
                    attempt=attempt,
                    error=error
                )
                raise
            except Exception as error:
                classification = self._classify(error)

                if not classification.is_retryable:
                    logger.warning(
                        "Operation failed with non-retryable error",
                        operation_id=operation_id,
                        correlation_id=context.correlation_id,
                        error_type=classification.type.value,
                        attempt=attempt
                    )
                    if self.config.dead_letter_permanent_errors or context.persist_permanent_failure:
                        await self._dead_letter(
                            operation_id, context, error, classification,
                            retry_count=self.dead_letter_queue.config.max_retries
                        )
                    raise NonRetryableError(classification, operation_id) from error

                if not self.backoff.should_retry(attempt + 1):
                    logger.error(
                        "Operation exhausted retry attempts",
                        operation_id=operation_id,
                        correlation_id=context.correlation_id,
                        error_type=classification.type.value,
                        attempts=attempt
                    )
                    dead_lettered = await self._dead_letter(
                        operation_id, context, error, classification, retry_count=attempt
                    )
                    raise MaxRetriesExceededError(
                        attempt, classification, operation_id, dead_lettered
                    ) from error

                delay_ms = self._retry_delay_ms(attempt, classification)
                logger.warning(
                    "Retrying operation",
                    operation_id=operation_id,
                    correlation_id=context.correlation_id,
                    error_type=classification.type.value,
                    attempt=attempt,
                    delay_ms=int(delay_ms)
                )
                await self._clock.sleep(delay_ms / 1000)
                attempt += 1
            else:
                if attempt > 1:
                    logger.info(
                        f"Operation succeeded after {attempt} attempts",
                        operation_id=operation_id,
                        correlation_id=context.correlation_id
                    )
                return result

    async def _dead_letter(
        self,
        operation_id: str,
        context: OperationContext,
        error: BaseException,
        classification: ErrorClassification,
        retry_count: int
    ) -> bool:
        item = FailedOperation(
            operation_id=operation_id,
            type=context.operation_type,
            error=ErrorSummary.from_exception(error, classification),
            timestamp=self._clock.now(),
            retry_count=retry_count,
            payload=context.payload
        )
        try:
            await self.dead_letter_queue.add(item)
        except QueueFullError as full_error:
            logger.error(
                "Dead-letter queue is full, operation not recorded",
                operation_id=operation_id,
                correlation_id=context.correlation_id,
                error=full_error
            )
            return False
        return True

    # Dead-letter processing

    async def process_dead_letter_queue(
        self,
        handler: DeadLetterHandler,
        max_items: Optional[int] = None
    ) -> DLQProcessingResult:
        """
        Re-deliver ready dead-letter items once each.

        Each item is passed to ``handler`` through the circuit breaker with no
        in-call retries. Success marks the item processed; failure reschedules
        it, or marks it permanently failed at the retry limit. A breaker
        rejection returns the item to the queue and ends the sweep.
        """
        result = DLQProcessingResult()
        queue = self.dead_letter_queue

        with logger.track_operation("dlq_sweep"):
            while max_items is None or result.attempted < max_items:
                item = await queue.get_next_item()
                if item is None:
                    break

                try:
                    await self.circuit_breaker.execute(
                        functools.partial(handler, item),
                        timeout_ms=self.config.operation_timeout_ms
                    )
                except CircuitBreakerError:
                    await queue.release(item.operation_id)
                    result.stopped_by_circuit_breaker = True
                    logger.info(
                        "Circuit breaker open, stopping dead-letter sweep",
                        operation_id=item.operation_id
                    )
                    break
                except asyncio.CancelledError:
                    await queue.release(item.operation_id)
                    raise
                except Exception as error:
                    result.attempted += 1
                    classification = self._classify(error)
                    updated = queue.increment_retry_count(item)
                    updated.error = ErrorSummary.from_exception(error, classification)
                    await queue.add(updated)
                    if queue.is_permanently_failed(updated):
                        result.permanently_failed += 1
                    else:
                        result.failed += 1
                else:
                    result.attempted += 1
                    result.succeeded += 1
                    await queue.mark_as_processed(item.operation_id)

        return result

    def start_dead_letter_processing(
        self,
        handler: DeadLetterHandler,
        interval_ms: float = 60000.0
    ) -> None:
        """Sweep the dead-letter queue periodically. Must be called from a running loop."""
        if interval_ms <= 0:
            raise ConfigurationError("Processing interval must be positive", "interval_ms")
        self.stop_dead_letter_processing()
        self._processing_task = asyncio.get_running_loop().create_task(
            self._processing_loop(handler, interval_ms / 1000)
        )

    async def _processing_loop(self, handler: DeadLetterHandler, interval_seconds: float) -> None:
        while True:
            await self._clock.sleep(interval_seconds)
            try:
                await self.process_dead_letter_queue(handler)
            except Exception as e:
                logger.error("Dead-letter sweep failed", error=e)

    def stop_dead_letter_processing(self) -> None:
        if self._processing_task is not None:
            self._processing_task.cancel()
            self._processing_task = None

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of breaker, queue and error statistics."""
        breaker_stats = self.circuit_breaker.get_statistics()
        queue_stats = self.dead_letter_queue.get_stats()
        return {
            "circuit_breaker": {
                "state": breaker_stats.state.value,
                "failure_count": self.circuit_breaker.failure_count,
                "total_requests": breaker_stats.total_requests,
                "failure_rate": breaker_stats.failure_rate,
            },
            "dead_letter_queue": {
                "total_items": queue_stats.total_items,
                "pending_items": queue_stats.pending_items,
                "permanently_failed_items": queue_stats.permanently_failed_items,
                "queue_utilization": queue_stats.queue_utilization,
            },
            "errors": self.statistics.get_error_statistics(),
        }

    async def close(self) -> None:
        """Stop background processing, health checks and queue cleanup."""
        task, self._processing_task = self._processing_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.circuit_breaker.close()
        await self.dead_letter_queue.close()
