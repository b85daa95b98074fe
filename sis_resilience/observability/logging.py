"""
Structured, redacting logger for the resilience layer.

This module provides a consistent logging interface for the breaker, queue and
client, ensuring structured logging with standard fields like operation_id and
correlation_id. Raw downstream error text is routed through the redaction
helpers before it reaches any handler, because SIS errors routinely echo
student names, identifiers and internal hostnames.
"""

import logging
import re
import time
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

MAX_LOGGED_MESSAGE_LENGTH = 500

_REDACTION_RULES = (
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "***-**-****"),  # SSN
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "****@****.***"),
    (re.compile(r"(?:\(\d{3}\)\s*|\b\d{3}[-.])\d{3}[-.]\d{4}\b"), "***-***-****"),
    (re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"), "***.***.***.***"),
    (
        re.compile(
            r"\b(?:[A-Za-z0-9-]+\.)+(?:local|internal|corp|lan|intranet)\b",
            re.IGNORECASE
        ),
        "[internal-host]"
    ),
    (re.compile(r"\b[A-Z][a-z]+ [A-Z][a-z]+\b"), "**** ****"),  # First Last
)

_PATH_PATTERN = re.compile(r"/[^\s\"',)]+")

SENSITIVE_KEYS = frozenset({
    "password", "token", "api_key", "apikey", "secret", "authorization",
    "ssn", "email", "phone", "student_name", "first_name", "last_name",
    "date_of_birth", "dob", "address",
})


def safe_str(value: Any) -> str:
    """str() that never raises and never returns unbounded text."""
    try:
        text = str(value)
    except Exception:
        text = f"<unprintable {type(value).__name__}>"
    if len(text) > MAX_LOGGED_MESSAGE_LENGTH:
        text = text[:MAX_LOGGED_MESSAGE_LENGTH] + "...[truncated]"
    return text


def redact_sensitive(text: Optional[str]) -> str:
    """Mask SSNs, emails, phone numbers, IPs, internal hosts and names."""
    if not text:
        return ""
    for pattern, replacement in _REDACTION_RULES:
        text = pattern.sub(replacement, text)
    return text


def redact_stack_trace(stack: Optional[str]) -> str:
    """Strip file system paths from a formatted traceback."""
    if not stack:
        return ""
    return redact_sensitive(_PATH_PATTERN.sub("/***", stack))


def redact_context(context: Any, _depth: int = 0) -> Any:
    """Return a copy of a context mapping with sensitive fields masked."""
    if _depth > 5:
        return "[nested]"
    if isinstance(context, dict):
        sanitized = {}
        for key, value in context.items():
            if str(key).lower() in SENSITIVE_KEYS:
                sanitized[key] = "****"
            else:
                sanitized[key] = redact_context(value, _depth + 1)
        return sanitized
    if isinstance(context, (list, tuple)):
        return [redact_context(item, _depth + 1) for item in context]
    if isinstance(context, str):
        return redact_sensitive(context)
    return context


class ResilienceLogger:
    """Structured logger for resilience components."""

    def __init__(self, component: str):
        """
        Initialize logger for a specific component.

        Args:
            component: Name of the component (e.g., "circuit_breaker", "dlq")
        """
        self.component = component
        self.logger = logging.getLogger(f"sis_resilience.{component}")

    def _format_message(self, message: str, **kwargs) -> str:
        """Format message with structured fields."""
        fields = [f"component={self.component}"]

        for key, value in kwargs.items():
            if value is not None:
                fields.append(f"{key}={value}")

        return f"[{' '.join(fields)}] {message}"

    def debug(self, message: str, operation_id: Optional[str] = None,
              correlation_id: Optional[str] = None, **kwargs):
        """Log debug message with structured fields."""
        self.logger.debug(
            self._format_message(message, operation_id=operation_id,
                                 correlation_id=correlation_id, **kwargs)
        )

    def info(self, message: str, operation_id: Optional[str] = None,
             correlation_id: Optional[str] = None, **kwargs):
        """Log info message with structured fields."""
        self.logger.info(
            self._format_message(message, operation_id=operation_id,
                                 correlation_id=correlation_id, **kwargs)
        )

    def warning(self, message: str, operation_id: Optional[str] = None,
                correlation_id: Optional[str] = None,
                error: Optional[BaseException] = None, **kwargs):
        """Log warning message with structured fields."""
        if error is not None:
            kwargs['error_type'] = type(error).__name__
            kwargs['error_msg'] = redact_sensitive(safe_str(error))

        self.logger.warning(
            self._format_message(message, operation_id=operation_id,
                                 correlation_id=correlation_id, **kwargs)
        )

    def error(self, message: str, operation_id: Optional[str] = None,
              correlation_id: Optional[str] = None,
              error: Optional[BaseException] = None, **kwargs):
        """Log error message with structured fields; raw error text is redacted."""
        if error is not None:
            kwargs['error_type'] = type(error).__name__
            kwargs['error_msg'] = redact_sensitive(safe_str(error))

        self.logger.error(
            self._format_message(message, operation_id=operation_id,
                                 correlation_id=correlation_id, **kwargs)
        )

    @contextmanager
    def track_operation(self, method: str, operation_id: Optional[str] = None,
                        correlation_id: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        """
        Context manager to track operation timing and log key events.

        Args:
            method: The method being called (e.g., "execute", "dlq_sweep")
            operation_id: Optional operation ID (generated if not provided)
            correlation_id: Optional correlation ID for cross-service tracing

        Yields:
            Dict with operation metadata including operation_id
        """
        if operation_id is None:
            operation_id = str(uuid.uuid4())[:8]

        start_time = time.time()

        self.debug(
            f"Starting {method}",
            operation_id=operation_id,
            correlation_id=correlation_id,
            method=method
        )

        metadata = {
            'operation_id': operation_id,
            'correlation_id': correlation_id,
            'method': method,
            'start_time': start_time
        }

        try:
            yield metadata

            duration = time.time() - start_time
            self.info(
                f"Completed {method}",
                operation_id=operation_id,
                correlation_id=correlation_id,
                method=method,
                duration_ms=int(duration * 1000)
            )

        except Exception as e:
            duration = time.time() - start_time
            self.error(
                f"Failed {method}",
                operation_id=operation_id,
                correlation_id=correlation_id,
                method=method,
                duration_ms=int(duration * 1000),
                error=e
            )
            raise
