"""Observability layer for logging and error statistics.

This layer handles:
- Structured logging with PII redaction
- Windowed error statistics
"""

from .logging import (
    ResilienceLogger, redact_sensitive, redact_stack_trace, redact_context, safe_str
)
from .metrics import ErrorStatistics

__all__ = [
    "ResilienceLogger",
    "redact_sensitive",
    "redact_stack_trace",
    "redact_context",
    "safe_str",
    "ErrorStatistics",
]
