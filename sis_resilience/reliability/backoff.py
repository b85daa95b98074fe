"""
Exponential backoff calculator.

Computes geometrically growing, capped retry delays with optional jitter and
tracks attempt state so a retry sequence can be inspected, persisted and
restored.
"""

import logging
import random
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .clock import Clock, SystemClock
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar('T')

JITTER_LOWER_BOUND = 0.5
JITTER_UPPER_BOUND = 1.5


@dataclass
class BackoffConfig:
    """Backoff configuration. All delays are milliseconds."""
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 30000.0
    max_attempts: int = 3
    multiplier: float = 2.0
    jitter: bool = True


@dataclass
class BackoffState:
    """Tracks attempt state for a retry sequence."""
    current_attempt: int = 0
    total_attempts: int = 0
    start_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackoffState':
        return cls(**data)


@dataclass
class BackoffStatistics:
    """Snapshot of a backoff sequence."""
    config: BackoffConfig
    current_attempt: int
    total_attempts: int
    remaining_attempts: int
    estimated_total_time_ms: float
    elapsed_time_ms: float
    average_delay_per_attempt_ms: float


class ExponentialBackoff:
    """
    Exponential backoff with optional jitter.

    ``calculate_delay(attempt)`` is ``min(max_delay, base * multiplier ** (attempt - 1))``
    for 1-based attempt numbers; with jitter enabled the capped value is scaled by a
    uniform factor in ``[0.5, 1.5)``.
    """

    def __init__(
        self,
        config: Optional[BackoffConfig] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None
    ):
        self.config = config or BackoffConfig()
        self._validate(self.config)
        self._clock = clock or SystemClock()
        self._rng = rng or random.Random()
        self._state = BackoffState(start_time=self._clock.time())

    @staticmethod
    def _validate(config: BackoffConfig) -> None:
        if config.base_delay_ms <= 0:
            raise ConfigurationError("Base delay must be positive", "base_delay_ms")
        if config.max_delay_ms < config.base_delay_ms:
            raise ConfigurationError(
                "Max delay must be greater than or equal to base delay", "max_delay_ms"
            )
        if config.max_attempts <= 0:
            raise ConfigurationError("Max attempts must be positive", "max_attempts")
        if config.multiplier < 1:
            raise ConfigurationError("Multiplier must be at least 1", "multiplier")

    def _raw_delay(self, attempt: int) -> float:
        exponent = max(attempt, 1) - 1
        try:
            raw = self.config.base_delay_ms * (self.config.multiplier ** exponent)
        except OverflowError:
            return self.config.max_delay_ms
        return min(raw, self.config.max_delay_ms)

    def calculate_delay(self, attempt: int) -> float:
        """
        Delay in milliseconds to wait after the given 1-based attempt.

        Args:
            attempt: Attempt number that just failed (values below 1 act as 1)

        Returns:
            Delay in milliseconds, capped at max_delay_ms before jitter
        """
        delay = self._raw_delay(attempt)
        if self.config.jitter:
            delay = delay * self._rng.uniform(JITTER_LOWER_BOUND, JITTER_UPPER_BOUND)
        return delay

    def should_retry(self, attempt: int) -> bool:
        """Whether the given 1-based attempt is within the attempt budget."""
        return attempt <= self.config.max_attempts

    def reset(self) -> None:
        """Reset the attempt cursor (total_attempts is kept across resets)."""
        self._state.current_attempt = 0
        self._state.start_time = self._clock.time()

    # Stateful cursor

    @property
    def current_attempt(self) -> int:
        return self._state.current_attempt

    @property
    def total_attempts(self) -> int:
        return self._state.total_attempts

    @property
    def is_exhausted(self) -> bool:
        return self._state.current_attempt >= self.config.max_attempts

    @property
    def progress(self) -> int:
        """Percentage of the attempt budget consumed."""
        return round(self._state.current_attempt / self.config.max_attempts * 100)

    def can_retry(self) -> bool:
        """Whether the cursor has attempts left."""
        return not self.is_exhausted

    def next_delay(self) -> float:
        """Consume one attempt and return its delay; 0 once exhausted."""
        if self.is_exhausted:
            return 0
        self._state.current_attempt += 1
        self._state.total_attempts += 1
        return self.calculate_delay(self._state.current_attempt)

    def get_state(self) -> BackoffState:
        return BackoffState(**asdict(self._state))

    def set_state(self, state: BackoffState) -> None:
        """Restore a previously captured state."""
        self._state = BackoffState(
            current_attempt=min(max(state.current_attempt, 0), self.config.max_attempts),
            total_attempts=max(state.total_attempts, 0),
            start_time=state.start_time
        )

    def update_config(self, **changes: Any) -> None:
        """Apply configuration changes after validating them."""
        updated = BackoffConfig(**{**asdict(self.config), **changes})
        self._validate(updated)
        self.config = updated

    def total_backoff_time_ms(self) -> float:
        """Sum of unjittered delays across the whole attempt budget."""
        return sum(self._raw_delay(attempt) for attempt in range(1, self.config.max_attempts + 1))

    def get_statistics(self) -> BackoffStatistics:
        consumed = sum(self._raw_delay(attempt) for attempt in range(1, self._state.current_attempt + 1))
        average = consumed / self._state.current_attempt if self._state.current_attempt else 0.0
        return BackoffStatistics(
            config=BackoffConfig(**asdict(self.config)),
            current_attempt=self._state.current_attempt,
            total_attempts=self._state.total_attempts,
            remaining_attempts=max(0, self.config.max_attempts - self._state.current_attempt),
            estimated_total_time_ms=self.total_backoff_time_ms(),
            elapsed_time_ms=(self._clock.time() - self._state.start_time) * 1000,
            average_delay_per_attempt_ms=round(average, 2)
        )

    def get_status(self) -> str:
        if self._state.current_attempt == 0:
            return "Ready for first attempt"
        if self.can_retry():
            return f"Attempt {self._state.current_attempt + 1} of {self.config.max_attempts}"
        return "Max attempts reached"

    async def wait(self, attempt: int) -> float:
        """Sleep on the clock for the delay of ``attempt``; returns the delay used."""
        delay_ms = self.calculate_delay(attempt)
        await self._clock.sleep(delay_ms / 1000)
        return delay_ms

    async def execute_with_backoff(
        self,
        operation: Callable[[], Awaitable[T]],
        on_retry: Optional[Callable[[int, Exception, float], None]] = None
    ) -> T:
        """
        Execute an operation, retrying every failure until the budget is spent.

        No classification happens here; use ResilientClient for that.

        Args:
            operation: Async callable to execute
            on_retry: Optional callback(attempt, error, delay_ms) before each wait

        Returns:
            Result from the first successful attempt

        Raises:
            The last exception once max_attempts attempts have failed
        """
        self.reset()
        attempt = 1
        while True:
            self._state.current_attempt = attempt
            self._state.total_attempts += 1
            try:
                return await operation()
            except Exception as error:
                if not self.should_retry(attempt + 1):
                    raise
                delay_ms = self.calculate_delay(attempt)
                if on_retry:
                    on_retry(attempt, error, delay_ms)
                logger.debug(
                    f"Backing off {delay_ms:.0f}ms after attempt {attempt}",
                    extra={"attempt": attempt, "delay_ms": delay_ms}
                )
                await self._clock.sleep(delay_ms / 1000)
                attempt += 1
