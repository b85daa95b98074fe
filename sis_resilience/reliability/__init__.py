"""Reliability layer for calls to the student information system.

This layer handles:
- Error classification with a fixed precedence
- Exponential backoff with optional jitter
- Circuit breaker pattern with health checks
- Dead-letter queue with persistence
- Resilient execution composing all of the above
"""

from .errors import (
    ResilienceError, ConfigurationError, CircuitBreakerError, CircuitOpenError,
    HalfOpenLimitExceededError, OperationTimeoutError, HealthCheckNotConfiguredError,
    NonRetryableError, MaxRetriesExceededError, QueueFullError
)
from .clock import Clock, SystemClock
from .error_classifier import (
    ErrorClassifier, ErrorClassification, ErrorType, ErrorSeverity, ErrorCategory
)
from .backoff import BackoffConfig, BackoffState, BackoffStatistics, ExponentialBackoff
from .circuit_breaker import (
    CircuitBreaker, CircuitBreakerConfig, CircuitState, CircuitStats,
    StateChangeEvent, StateHistoryEntry, TransitionReason
)
from .storage import DLQStorage, InMemoryStorage, JsonFileStorage
from .dead_letter_queue import (
    DeadLetterQueue, DeadLetterQueueConfig, ErrorSummary, FailedOperation, QueueStats
)
from .resilient_client import (
    ResilientClient, ResilientClientConfig, OperationContext, DLQProcessingResult
)

__all__ = [
    # Errors
    "ResilienceError",
    "ConfigurationError",
    "CircuitBreakerError",
    "CircuitOpenError",
    "HalfOpenLimitExceededError",
    "OperationTimeoutError",
    "HealthCheckNotConfiguredError",
    "NonRetryableError",
    "MaxRetriesExceededError",
    "QueueFullError",

    # Time
    "Clock",
    "SystemClock",

    # Classification
    "ErrorClassifier",
    "ErrorClassification",
    "ErrorType",
    "ErrorSeverity",
    "ErrorCategory",

    # Backoff
    "BackoffConfig",
    "BackoffState",
    "BackoffStatistics",
    "ExponentialBackoff",

    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "CircuitStats",
    "StateChangeEvent",
    "StateHistoryEntry",
    "TransitionReason",

    # Dead-letter queue
    "DLQStorage",
    "InMemoryStorage",
    "JsonFileStorage",
    "DeadLetterQueue",
    "DeadLetterQueueConfig",
    "ErrorSummary",
    "FailedOperation",
    "QueueStats",

    # Composition
    "ResilientClient",
    "ResilientClientConfig",
    "OperationContext",
    "DLQProcessingResult",
]
