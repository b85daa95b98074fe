"""
SIS Resilience - fault tolerance for calls to a student information system.

This package decides whether, when and how many times to attempt a
caller-supplied SIS operation, and what to do once attempts run out:

- Error classification (transient vs permanent, PII-free user messages)
- Exponential backoff with jitter
- Circuit breaker with timed recovery probes and health checks
- Persistent dead-letter queue with prioritized re-delivery
"""

__version__ = "0.1.0"

from .reliability import (
    BackoffConfig,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerError,
    CircuitOpenError,
    CircuitState,
    DeadLetterQueue,
    DeadLetterQueueConfig,
    ErrorClassification,
    ErrorClassifier,
    ErrorType,
    ExponentialBackoff,
    FailedOperation,
    InMemoryStorage,
    JsonFileStorage,
    MaxRetriesExceededError,
    NonRetryableError,
    OperationContext,
    QueueFullError,
    ResilienceError,
    ResilientClient,
    ResilientClientConfig,
)
from .observability import ErrorStatistics, ResilienceLogger
from .config import ResilienceSettings

__all__ = [
    # Main client
    "ResilientClient",
    "ResilientClientConfig",
    "OperationContext",

    # Components
    "ErrorClassifier",
    "ErrorClassification",
    "ErrorType",
    "ExponentialBackoff",
    "BackoffConfig",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "DeadLetterQueue",
    "DeadLetterQueueConfig",
    "FailedOperation",
    "InMemoryStorage",
    "JsonFileStorage",

    # Errors
    "ResilienceError",
    "CircuitBreakerError",
    "CircuitOpenError",
    "NonRetryableError",
    "MaxRetriesExceededError",
    "QueueFullError",

    # Observability and configuration
    "ErrorStatistics",
    "ResilienceLogger",
    "ResilienceSettings",
]
