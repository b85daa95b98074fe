"""
Circuit breaker pattern implementation for SIS resilience.

This module implements the circuit breaker pattern to prevent
cascading failures and provide fast failure detection.
"""

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, List, Optional, Set, TypeVar

from .clock import Clock, SystemClock
from .errors import (
    CircuitOpenError,
    ConfigurationError,
    HalfOpenLimitExceededError,
    HealthCheckNotConfiguredError,
    OperationTimeoutError,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

HealthCheck = Callable[[], Awaitable[bool]]
StateChangeListener = Callable[['StateChangeEvent'], Any]

MAX_STATE_HISTORY = 100


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"        # Normal operation
    OPEN = "OPEN"            # Failing, reject requests
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


class TransitionReason:
    INITIAL_STATE = "INITIAL_STATE"
    FAILURE_THRESHOLD_EXCEEDED = "FAILURE_THRESHOLD_EXCEEDED"
    RECOVERY_TIMEOUT_ELAPSED = "RECOVERY_TIMEOUT_ELAPSED"
    RECOVERY_SUCCESSFUL = "RECOVERY_SUCCESSFUL"
    HALF_OPEN_PROBE_FAILED = "HALF_OPEN_PROBE_FAILED"
    HEALTH_CHECK_FAILED = "HEALTH_CHECK_FAILED"
    FORCED_STATE_CHANGE = "FORCED_STATE_CHANGE"
    RESET = "RESET"


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration. Durations are milliseconds."""
    failure_threshold: int = 5                 # Consecutive failures before opening
    recovery_timeout_ms: float = 60000.0       # Time in OPEN before probing
    monitoring_period_ms: float = 300000.0     # Retention window for request statistics
    half_open_max_requests: int = 1            # Probes admitted (and successes needed) in HALF_OPEN
    health_check_failure_threshold: int = 3    # Consecutive unhealthy probes that force OPEN


@dataclass(frozen=True)
class StateChangeEvent:
    """Emitted to listeners on every transition."""
    from_state: CircuitState
    to_state: CircuitState
    reason: str
    timestamp: datetime


@dataclass
class StateHistoryEntry:
    state: CircuitState
    timestamp: datetime
    reason: str
    duration_ms: Optional[float] = None


@dataclass
class CircuitStats:
    """Circuit breaker statistics for a time window."""
    total_requests: int
    successful_requests: int
    failed_requests: int
    success_rate: float
    failure_rate: float
    average_response_time_ms: float
    state: CircuitState
    consecutive_failures: int
    time_in_current_state_ms: float


@dataclass
class _RequestRecord:
    timestamp: float
    success: bool
    response_time_ms: float


@dataclass
class _Admission:
    generation: int
    probe: bool


class CircuitBreaker:
    """
    Circuit breaker for calls to the student information system.

    Prevents cascading failures by failing fast while the SIS is
    unhealthy and probing recovery with a limited number of requests.

    Admission and outcome recording run under a single asyncio.Lock so
    concurrent callers cannot double-count failures or take more
    HALF_OPEN probe slots than configured. Outcomes from calls admitted
    before the latest transition update statistics only.
    """

    def __init__(
        self,
        name: str = "sis",
        config: Optional[CircuitBreakerConfig] = None,
        clock: Optional[Clock] = None,
        listeners: Optional[List[StateChangeListener]] = None
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._validate(self.config)
        self._clock = clock or SystemClock()
        self._lock = asyncio.Lock()
        self._listeners: List[StateChangeListener] = list(listeners or [])
        self._listener_tasks: Set[asyncio.Task] = set()

        self._state = CircuitState.CLOSED
        self._generation = 0
        self._failure_count = 0
        self._success_count = 0
        self._half_open_requests = 0
        self._opened_at: Optional[float] = None
        self._state_changed_at = self._clock.time()

        self._requests: Deque[_RequestRecord] = deque()
        self._history: Deque[StateHistoryEntry] = deque(maxlen=MAX_STATE_HISTORY)
        self._history.append(StateHistoryEntry(
            state=self._state,
            timestamp=self._clock.now(),
            reason=TransitionReason.INITIAL_STATE
        ))

        self._health_check: Optional[HealthCheck] = None
        self._health_task: Optional[asyncio.Task] = None
        self._health_check_failures = 0

    @staticmethod
    def _validate(config: CircuitBreakerConfig) -> None:
        if config.failure_threshold <= 0:
            raise ConfigurationError("Failure threshold must be greater than 0", "failure_threshold")
        if config.recovery_timeout_ms <= 0:
            raise ConfigurationError("Recovery timeout must be positive", "recovery_timeout_ms")
        if config.monitoring_period_ms <= 0:
            raise ConfigurationError("Monitoring period must be positive", "monitoring_period_ms")
        if config.half_open_max_requests <= 0:
            raise ConfigurationError(
                "Half-open max requests must be greater than 0", "half_open_max_requests"
            )
        if config.health_check_failure_threshold <= 0:
            raise ConfigurationError(
                "Health check failure threshold must be greater than 0",
                "health_check_failure_threshold"
            )

    # State

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN period reads as HALF_OPEN."""
        self._refresh_state()
        return self._state

    def get_state(self) -> CircuitState:
        return self.state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    def is_half_open(self) -> bool:
        return self.state == CircuitState.HALF_OPEN

    def _refresh_state(self) -> None:
        # Synchronous, so it cannot interleave with other tasks on the loop
        if self._state == CircuitState.OPEN and self._recovery_timeout_elapsed():
            self._transition(CircuitState.HALF_OPEN, TransitionReason.RECOVERY_TIMEOUT_ELAPSED)

    def _recovery_timeout_elapsed(self) -> bool:
        if self._opened_at is None:
            return True
        return (self._clock.time() - self._opened_at) * 1000 >= self.config.recovery_timeout_ms

    def _transition(self, new_state: CircuitState, reason: str) -> None:
        previous_state = self._state
        now = self._clock.time()
        timestamp = self._clock.now()

        self._state = new_state
        self._generation += 1
        self._state_changed_at = now
        self._half_open_requests = 0

        if new_state == CircuitState.OPEN:
            self._opened_at = now
            self._success_count = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
        else:
            self._opened_at = None
            self._failure_count = 0
            self._success_count = 0
            self._health_check_failures = 0

        if self._history:
            last = self._history[-1]
            last.duration_ms = (timestamp - last.timestamp).total_seconds() * 1000
        self._history.append(StateHistoryEntry(state=new_state, timestamp=timestamp, reason=reason))

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit breaker {self.name} {previous_state.value} -> {new_state.value}",
            extra={
                "circuit_breaker": self.name,
                "previous_state": previous_state.value,
                "state": new_state.value,
                "reason": reason,
                "failure_count": self._failure_count
            }
        )

        self._notify(StateChangeEvent(
            from_state=previous_state,
            to_state=new_state,
            reason=reason,
            timestamp=timestamp
        ))

    # Listeners

    def add_listener(self, listener: StateChangeListener) -> None:
        """Register a state-change callback (sync, or async when a loop is running)."""
        self._listeners.append(listener)

    def remove_listener(self, listener: StateChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, event: StateChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                if inspect.iscoroutinefunction(listener):
                    task = asyncio.get_running_loop().create_task(listener(event))
                    self._listener_tasks.add(task)
                    task.add_done_callback(self._listener_tasks.discard)
                else:
                    listener(event)
            except Exception as e:
                logger.error(
                    f"Error in state change listener for {self.name}: {type(e).__name__}",
                    extra={"circuit_breaker": self.name}
                )

    # Execution

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        timeout_ms: Optional[float] = None
    ) -> T:
        """
        Execute operation through the circuit breaker.

        Args:
            operation: Async callable to execute
            timeout_ms: Optional per-call timeout; expiry counts as a failure

        Returns:
            Result from successful operation

        Raises:
            CircuitOpenError: If circuit is open (operation is not invoked)
            HalfOpenLimitExceededError: If all half-open probe slots are taken
            OperationTimeoutError: If timeout_ms elapsed first
            Original exception: If operation fails
        """
        admission = await self._admit()
        start = self._clock.time()

        try:
            if timeout_ms is not None:
                result = await asyncio.wait_for(operation(), timeout=timeout_ms / 1000)
            else:
                result = await operation()
        except asyncio.CancelledError:
            self._release(admission)
            raise
        except asyncio.TimeoutError:
            await self._record_failure(admission, self._elapsed_ms(start))
            if timeout_ms is None:
                raise
            raise OperationTimeoutError(timeout_ms) from None
        except Exception:
            await self._record_failure(admission, self._elapsed_ms(start))
            raise

        await self._record_success(admission, self._elapsed_ms(start))
        return result

    async def execute_with_fallback(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]],
        timeout_ms: Optional[float] = None
    ) -> T:
        """
        Execute operation, falling back when the circuit rejects it or it fails.

        The fallback's own exception propagates to the caller.
        """
        try:
            return await self.execute(operation, timeout_ms=timeout_ms)
        except Exception as error:
            logger.info(
                f"Circuit breaker {self.name} using fallback after {type(error).__name__}",
                extra={"circuit_breaker": self.name, "state": self._state.value}
            )
            return await fallback()

    def _elapsed_ms(self, start: float) -> float:
        return max(0.0, (self._clock.time() - start) * 1000)

    async def _admit(self) -> _Admission:
        async with self._lock:
            self._refresh_state()

            if self._state == CircuitState.OPEN:
                raise CircuitOpenError(self.name)

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_requests >= self.config.half_open_max_requests:
                    raise HalfOpenLimitExceededError(self.name)
                self._half_open_requests += 1
                return _Admission(generation=self._generation, probe=True)

            return _Admission(generation=self._generation, probe=False)

    def _release(self, admission: _Admission) -> None:
        """Return a probe slot taken by a call that was cancelled."""
        if admission.probe and admission.generation == self._generation and self._half_open_requests > 0:
            self._half_open_requests -= 1

    async def _record_success(self, admission: _Admission, response_time_ms: float) -> None:
        async with self._lock:
            self._record_request(True, response_time_ms)
            if admission.generation != self._generation:
                return

            if self._state == CircuitState.CLOSED:
                self._failure_count = 0
                self._success_count += 1
            elif self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                logger.info(
                    f"Circuit breaker {self.name} recorded probe success",
                    extra={
                        "circuit_breaker": self.name,
                        "state": self._state.value,
                        "success_count": self._success_count
                    }
                )
                if self._success_count >= self.config.half_open_max_requests:
                    self._transition(CircuitState.CLOSED, TransitionReason.RECOVERY_SUCCESSFUL)

    async def _record_failure(self, admission: _Admission, response_time_ms: float = 0.0) -> None:
        async with self._lock:
            self._record_request(False, response_time_ms)
            if admission.generation != self._generation:
                return

            self._failure_count += 1
            self._success_count = 0

            if self._state == CircuitState.CLOSED:
                if self._failure_count >= self.config.failure_threshold:
                    self._transition(CircuitState.OPEN, TransitionReason.FAILURE_THRESHOLD_EXCEEDED)
            elif self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, TransitionReason.HALF_OPEN_PROBE_FAILED)

            logger.debug(
                f"Circuit breaker {self.name} recorded failure",
                extra={
                    "circuit_breaker": self.name,
                    "state": self._state.value,
                    "failure_count": self._failure_count
                }
            )

    # Statistics

    def _record_request(self, success: bool, response_time_ms: float) -> None:
        now = self._clock.time()
        self._requests.append(_RequestRecord(now, success, response_time_ms))
        self._prune_requests(now)

    def _prune_requests(self, now: float) -> None:
        cutoff = now - self.config.monitoring_period_ms / 1000
        while self._requests and self._requests[0].timestamp <= cutoff:
            self._requests.popleft()

    def get_statistics(self, time_window_ms: Optional[float] = None) -> CircuitStats:
        """
        Get request statistics for a trailing window.

        Args:
            time_window_ms: Window length; defaults to the monitoring period

        Returns:
            CircuitStats with counts, rates (percent) and average response time
        """
        now = self._clock.time()
        self._prune_requests(now)
        window_ms = time_window_ms if time_window_ms is not None else self.config.monitoring_period_ms
        cutoff = now - window_ms / 1000
        relevant = [record for record in self._requests if record.timestamp > cutoff]

        total = len(relevant)
        successful = sum(1 for record in relevant if record.success)
        failed = total - successful
        average = sum(record.response_time_ms for record in relevant) / total if total else 0.0

        state = self.state
        return CircuitStats(
            total_requests=total,
            successful_requests=successful,
            failed_requests=failed,
            success_rate=successful / total * 100 if total else 0.0,
            failure_rate=failed / total * 100 if total else 0.0,
            average_response_time_ms=round(average, 2),
            state=state,
            consecutive_failures=self._failure_count,
            time_in_current_state_ms=(now - self._state_changed_at) * 1000
        )

    def reset_statistics(self) -> None:
        self._requests.clear()
        self._failure_count = 0
        self._success_count = 0

    def get_state_history(self) -> List[StateHistoryEntry]:
        return list(self._history)

    # Administration

    def get_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(**asdict(self.config))

    def update_config(self, **changes: Any) -> None:
        """Apply configuration changes after validating them."""
        updated = CircuitBreakerConfig(**{**asdict(self.config), **changes})
        self._validate(updated)
        self.config = updated

    def force_state(self, state: CircuitState) -> None:
        """Force a state (operational override and tests)."""
        self._transition(state, TransitionReason.FORCED_STATE_CHANGE)

    async def reset(self) -> None:
        """Reset circuit breaker to closed state with empty statistics."""
        async with self._lock:
            if self._state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED, TransitionReason.RESET)
            self.reset_statistics()
            logger.info(f"Circuit breaker {self.name} reset")

    # Health checks

    def set_health_check(self, health_check: HealthCheck) -> None:
        self._health_check = health_check

    def enable_health_checks(self, health_check: HealthCheck, interval_ms: float = 30000.0) -> None:
        """
        Start probing the dependency on an independent task.

        Must be called from a running event loop.
        """
        if interval_ms <= 0:
            raise ConfigurationError("Health check interval must be positive", "interval_ms")
        self._health_check = health_check
        self._cancel_health_task()
        self._health_task = asyncio.get_running_loop().create_task(
            self._health_check_loop(interval_ms / 1000)
        )

    def disable_health_checks(self) -> None:
        self._cancel_health_task()
        self._health_check = None

    def _cancel_health_task(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            self._health_task = None

    async def _health_check_loop(self, interval_seconds: float) -> None:
        while True:
            await self._clock.sleep(interval_seconds)
            await self._run_health_check(timeout_seconds=interval_seconds)

    async def perform_health_check(self) -> bool:
        """Run the registered probe once and apply its outcome."""
        if self._health_check is None:
            raise HealthCheckNotConfiguredError()
        return await self._run_health_check()

    async def _run_health_check(self, timeout_seconds: Optional[float] = None) -> bool:
        health_check = self._health_check
        if health_check is None:
            return False

        try:
            healthy = bool(await asyncio.wait_for(health_check(), timeout_seconds))
        except asyncio.TimeoutError:
            logger.warning(
                f"Health check for {self.name} timed out after {timeout_seconds}s",
                extra={"circuit_breaker": self.name}
            )
            healthy = False
        except Exception as e:
            logger.warning(
                f"Health check for {self.name} raised {type(e).__name__}",
                extra={"circuit_breaker": self.name}
            )
            healthy = False

        async with self._lock:
            if healthy:
                self._health_check_failures = 0
                self._refresh_state()
            else:
                self._health_check_failures += 1
                if self._health_check_failures >= self.config.health_check_failure_threshold:
                    if self._state == CircuitState.OPEN:
                        # Still unhealthy: restart the recovery timeout
                        self._opened_at = self._clock.time()
                    else:
                        self._transition(CircuitState.OPEN, TransitionReason.HEALTH_CHECK_FAILED)

        return healthy

    async def close(self) -> None:
        """Stop background health checks."""
        task = self._health_task
        self.disable_health_checks()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
