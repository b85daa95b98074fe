"""
Exception hierarchy for the resilience layer.

Breaker rejections, permanent failures and retry exhaustion are distinct
types so callers can present different outcomes ("try again shortly" versus
"fix your input").
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .error_classifier import ErrorClassification


class ResilienceError(Exception):
    """
    Base exception for all resilience-layer errors.

    Attributes:
        message: Error message (never contains raw downstream error text)
        classification: Classification of the underlying failure, if any
    """

    def __init__(
        self,
        message: str,
        classification: Optional["ErrorClassification"] = None
    ):
        super().__init__(message)
        self.message = message
        self.classification = classification


class ConfigurationError(ResilienceError, ValueError):
    """Raised when a component is constructed with invalid parameters."""

    def __init__(self, message: str, parameter: Optional[str] = None):
        super().__init__(message)
        self.parameter = parameter


class CircuitBreakerError(ResilienceError):
    """Base class for calls rejected by the circuit breaker."""

    def __init__(self, message: str, breaker_name: str = "default"):
        super().__init__(message)
        self.breaker_name = breaker_name


class CircuitOpenError(CircuitBreakerError):
    """The circuit is OPEN and the operation was not invoked."""

    def __init__(self, breaker_name: str = "default"):
        super().__init__("Circuit breaker is OPEN", breaker_name)


class HalfOpenLimitExceededError(CircuitBreakerError):
    """All HALF_OPEN probe slots are taken."""

    def __init__(self, breaker_name: str = "default"):
        super().__init__("Circuit breaker HALF_OPEN request limit exceeded", breaker_name)


class OperationTimeoutError(ResilienceError, TimeoutError):
    """An attempt ran longer than the caller-supplied timeout."""

    def __init__(self, timeout_ms: float):
        super().__init__(f"Operation timed out after {timeout_ms:g}ms")
        self.timeout_ms = timeout_ms


class HealthCheckNotConfiguredError(ResilienceError):
    """A manual health check was requested but no probe is registered."""

    def __init__(self):
        super().__init__("No health check function configured")


class NonRetryableError(ResilienceError):
    """A permanent failure surfaced with its sanitized user message."""

    def __init__(self, classification: "ErrorClassification", operation_id: Optional[str] = None):
        super().__init__(classification.user_message, classification)
        self.operation_id = operation_id


class MaxRetriesExceededError(ResilienceError):
    """Every in-call attempt failed; the operation was handed to the DLQ."""

    def __init__(
        self,
        attempts: int,
        classification: Optional["ErrorClassification"] = None,
        operation_id: Optional[str] = None,
        dead_lettered: bool = True
    ):
        super().__init__("Max retry attempts exceeded", classification)
        self.attempts = attempts
        self.operation_id = operation_id
        self.dead_lettered = dead_lettered


class QueueFullError(ResilienceError):
    """The dead-letter queue is at capacity."""

    def __init__(self, max_queue_size: int):
        super().__init__("Queue is full")
        self.max_queue_size = max_queue_size
