"""
Error classification for calls to the student information system.

This module maps an arbitrary failure (transport fault, HTTP status, thrown
exception, or a bare mapping) to an ErrorClassification carrying retry
information, severity and a fixed user-facing message.
"""

import asyncio
import math
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from ..observability.logging import redact_sensitive, safe_str
from .errors import CircuitBreakerError


class ErrorType(str, Enum):
    """Failure types recognised by the classifier."""
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    AUTHORIZATION_ERROR = "AUTHORIZATION_ERROR"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    DATA_VALIDATION_ERROR = "DATA_VALIDATION_ERROR"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ErrorSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ErrorCategory(str, Enum):
    """Transient errors resolve on their own; permanent ones never do."""
    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"


@dataclass(frozen=True)
class ErrorClassification:
    """Detailed error classification."""
    type: ErrorType
    is_retryable: bool
    severity: ErrorSeverity
    category: ErrorCategory
    user_message: str
    retry_delay_ms: Optional[int] = None
    validation_errors: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging and serialization."""
        return {
            "type": self.type.value,
            "is_retryable": self.is_retryable,
            "severity": self.severity.value,
            "category": self.category.value,
            "user_message": self.user_message,
            "retry_delay_ms": self.retry_delay_ms,
            "validation_errors": list(self.validation_errors),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ErrorClassification':
        """Create from dictionary."""
        return cls(
            type=ErrorType(data["type"]),
            is_retryable=bool(data["is_retryable"]),
            severity=ErrorSeverity(data["severity"]),
            category=ErrorCategory(data["category"]),
            user_message=data["user_message"],
            retry_delay_ms=data.get("retry_delay_ms"),
            validation_errors=tuple(data.get("validation_errors") or ()),
        )


class ErrorClassifier:
    """Rule-based error classification with a fixed precedence."""

    ERROR_MAPPINGS: Dict[ErrorType, Dict[str, Any]] = {
        ErrorType.NETWORK_ERROR: {
            'retryable': True,
            'severity': ErrorSeverity.HIGH,
            'category': ErrorCategory.TRANSIENT,
            'message': 'Network connection failed. Please check your internet connection.'
        },
        ErrorType.TIMEOUT_ERROR: {
            'retryable': True,
            'severity': ErrorSeverity.MEDIUM,
            'category': ErrorCategory.TRANSIENT,
            'message': 'Request timed out. Please try again.'
        },
        ErrorType.AUTHENTICATION_ERROR: {
            'retryable': False,
            'severity': ErrorSeverity.CRITICAL,
            'category': ErrorCategory.PERMANENT,
            'message': 'Authentication failed. Please check your credentials.'
        },
        ErrorType.AUTHORIZATION_ERROR: {
            'retryable': False,
            'severity': ErrorSeverity.CRITICAL,
            'category': ErrorCategory.PERMANENT,
            'message': 'Access denied. You do not have permission to access this resource.'
        },
        ErrorType.RESOURCE_NOT_FOUND: {
            'retryable': False,
            'severity': ErrorSeverity.LOW,
            'category': ErrorCategory.PERMANENT,
            'message': 'The requested resource was not found.'
        },
        ErrorType.RATE_LIMIT_ERROR: {
            'retryable': True,
            'severity': ErrorSeverity.MEDIUM,
            'category': ErrorCategory.TRANSIENT,
            'message': 'Rate limit exceeded. Please wait and try again.'
        },
        ErrorType.SERVER_ERROR: {
            'retryable': True,
            'severity': ErrorSeverity.HIGH,
            'category': ErrorCategory.TRANSIENT,
            'message': 'A server error occurred. Please try again later.'
        },
        ErrorType.SERVICE_UNAVAILABLE: {
            'retryable': True,
            'severity': ErrorSeverity.HIGH,
            'category': ErrorCategory.TRANSIENT,
            'message': 'The service is temporarily unavailable. Please try again later.'
        },
        ErrorType.DATA_VALIDATION_ERROR: {
            'retryable': False,
            'severity': ErrorSeverity.MEDIUM,
            'category': ErrorCategory.PERMANENT,
            'message': 'The provided data is invalid. Please check your input.'
        },
        # Rejected before reaching the SIS; retrying in-call would only hit the breaker again
        ErrorType.CIRCUIT_BREAKER_OPEN: {
            'retryable': False,
            'severity': ErrorSeverity.MEDIUM,
            'category': ErrorCategory.TRANSIENT,
            'message': 'The student information system is temporarily unavailable. Please try again shortly.'
        },
        ErrorType.UNKNOWN_ERROR: {
            'retryable': False,
            'severity': ErrorSeverity.MEDIUM,
            'category': ErrorCategory.PERMANENT,
            'message': 'An unexpected error occurred. Please try again.'
        },
    }

    NETWORK_ERROR_CODES = frozenset({
        'ECONNREFUSED', 'ENOTFOUND', 'ECONNRESET', 'EAI_AGAIN', 'EHOSTUNREACH', 'ENETUNREACH'
    })
    TIMEOUT_ERROR_CODES = frozenset({'ETIMEDOUT', 'ESOCKETTIMEDOUT', 'ECONNABORTED'})

    NETWORK_PATTERNS = (
        'connection refused', 'econnrefused', 'enotfound', 'dns resolution',
        'name or service not known', 'getaddrinfo failed', 'connection reset',
        'nodename nor servname',
    )
    TIMEOUT_PATTERNS = ('timeout', 'timed out')

    # Scanning is bounded so oversized payloads cannot stall classification
    MAX_SCANNED_MESSAGE_LENGTH = 2000

    @classmethod
    def classify(cls, error: Any) -> ErrorClassification:
        """
        Classify a failure. Never raises.

        Args:
            error: Exception, mapping or any other failure description

        Returns:
            ErrorClassification with type, retry info and messaging
        """
        try:
            return cls._classify(error)
        except Exception:
            return cls._build(ErrorType.UNKNOWN_ERROR)

    @classmethod
    def _classify(cls, error: Any) -> ErrorClassification:
        if error is None:
            return cls._build(ErrorType.UNKNOWN_ERROR)

        if isinstance(error, CircuitBreakerError):
            return cls._build(ErrorType.CIRCUIT_BREAKER_OPEN)

        status_code = cls._get_status_code(error)
        code = cls._get_code(error)
        # Message sniffing applies only when no response status exists
        message = '' if status_code is not None else cls._get_message(error)

        if cls._is_network_error(error, code, message):
            return cls._build(ErrorType.NETWORK_ERROR)

        if cls._is_timeout_error(error, code, message):
            return cls._build(ErrorType.TIMEOUT_ERROR)

        if status_code is None:
            return cls._build(ErrorType.UNKNOWN_ERROR)

        if status_code == 401:
            return cls._build(ErrorType.AUTHENTICATION_ERROR)
        elif status_code == 403:
            return cls._build(ErrorType.AUTHORIZATION_ERROR)
        elif status_code == 404:
            return cls._build(ErrorType.RESOURCE_NOT_FOUND)
        elif status_code == 429:
            return cls._build(
                ErrorType.RATE_LIMIT_ERROR,
                retry_delay_ms=cls._get_retry_after_ms(error)
            )
        elif status_code == 503:
            return cls._build(ErrorType.SERVICE_UNAVAILABLE)
        elif 500 <= status_code < 600:
            return cls._build(ErrorType.SERVER_ERROR)
        elif 400 <= status_code < 500:
            return cls._build(
                ErrorType.DATA_VALIDATION_ERROR,
                validation_errors=cls._extract_validation_errors(cls._get_body(error))
            )

        return cls._build(ErrorType.UNKNOWN_ERROR)

    @classmethod
    def _build(cls, error_type: ErrorType, retry_delay_ms: Optional[int] = None,
               validation_errors: Tuple[str, ...] = ()) -> ErrorClassification:
        mapping = cls.ERROR_MAPPINGS[error_type]
        return ErrorClassification(
            type=error_type,
            is_retryable=mapping['retryable'],
            severity=mapping['severity'],
            category=mapping['category'],
            user_message=mapping['message'],
            retry_delay_ms=retry_delay_ms,
            validation_errors=validation_errors
        )

    @classmethod
    def _is_network_error(cls, error: Any, code: Optional[str], message: str) -> bool:
        if isinstance(error, (httpx.ConnectError, ConnectionRefusedError,
                              ConnectionResetError, socket.gaierror)):
            return True
        if code in cls.NETWORK_ERROR_CODES:
            return True
        return any(pattern in message for pattern in cls.NETWORK_PATTERNS)

    @classmethod
    def _is_timeout_error(cls, error: Any, code: Optional[str], message: str) -> bool:
        if isinstance(error, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
            return True
        if code in cls.TIMEOUT_ERROR_CODES:
            return True
        return any(pattern in message for pattern in cls.TIMEOUT_PATTERNS)

    @staticmethod
    def _lookup(source: Any, name: str) -> Any:
        """Read an attribute or mapping key without ever raising."""
        if source is None:
            return None
        try:
            if isinstance(source, Mapping):
                return source.get(name)
            return getattr(source, name, None)
        except Exception:
            return None

    @classmethod
    def _get_code(cls, error: Any) -> Optional[str]:
        code = cls._lookup(error, 'code')
        if isinstance(code, str):
            return code.upper()
        return None

    @classmethod
    def _get_message(cls, error: Any) -> str:
        if isinstance(error, BaseException):
            text = safe_str(error)
        else:
            text = cls._lookup(error, 'message')
            if not isinstance(text, str):
                text = safe_str(error) if isinstance(error, str) else ''
        return text[:cls.MAX_SCANNED_MESSAGE_LENGTH].lower()

    @staticmethod
    def _as_status(value: Any) -> Optional[int]:
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
        return None

    @classmethod
    def _get_response(cls, error: Any) -> Any:
        if isinstance(error, httpx.HTTPStatusError):
            return error.response
        return cls._lookup(error, 'response')

    @classmethod
    def _get_status_code(cls, error: Any) -> Optional[int]:
        """Extract HTTP status from the error or its response."""
        response = cls._get_response(error)
        candidates = (
            cls._lookup(error, 'status_code'),
            cls._lookup(error, 'status'),
            cls._lookup(response, 'status_code'),
            cls._lookup(response, 'status'),
        )
        for candidate in candidates:
            status = cls._as_status(candidate)
            if status is not None:
                return status
        return None

    @classmethod
    def _get_header(cls, error: Any, name: str) -> Optional[str]:
        response = cls._get_response(error)
        for headers in (cls._lookup(response, 'headers'), cls._lookup(error, 'headers')):
            if isinstance(headers, httpx.Headers):
                value = headers.get(name)
                if value is not None:
                    return value
            elif isinstance(headers, Mapping):
                for key, value in headers.items():
                    if isinstance(key, str) and key.lower() == name.lower():
                        return str(value)
        return None

    @classmethod
    def _get_retry_after_ms(cls, error: Any) -> Optional[int]:
        """Extract the Retry-After hint (seconds or HTTP date) in milliseconds."""
        retry_after = cls._get_header(error, 'Retry-After')
        if retry_after is None:
            return None
        retry_after = retry_after.strip()
        try:
            seconds = float(retry_after)
            if not math.isfinite(seconds):
                return None
        except ValueError:
            try:
                retry_at = parsedate_to_datetime(retry_after)
            except (TypeError, ValueError, IndexError):
                return None
            if retry_at is None:
                return None
            if retry_at.tzinfo is None:
                retry_at = retry_at.replace(tzinfo=timezone.utc)
            seconds = (retry_at - datetime.now(timezone.utc)).total_seconds()
        if seconds < 0:
            return 0
        return int(round(seconds * 1000))

    @classmethod
    def _get_body(cls, error: Any) -> Any:
        response = cls._get_response(error)
        if isinstance(response, httpx.Response):
            try:
                return response.json()
            except Exception:
                return None
        for source in (response, error):
            for name in ('data', 'body', 'json'):
                body = cls._lookup(source, name)
                if isinstance(body, (Mapping, list)):
                    return body
        return None

    @classmethod
    def _extract_validation_errors(cls, body: Any) -> Tuple[str, ...]:
        """Extract validation messages from a structured error body."""
        if not isinstance(body, Mapping):
            return ()

        messages: List[str] = []
        details = body.get('details')
        errors = body.get('errors')
        validation_errors = body.get('validationErrors') or body.get('validation_errors')

        if isinstance(details, list):
            messages = [safe_str(item) for item in details]
        elif isinstance(errors, list):
            for item in errors:
                if isinstance(item, Mapping) and item.get('message') is not None:
                    messages.append(safe_str(item['message']))
                else:
                    messages.append(safe_str(item))
        elif isinstance(validation_errors, list):
            messages = [safe_str(item) for item in validation_errors]

        return tuple(redact_sensitive(message) for message in messages)

    @classmethod
    def describe(cls, error: Any) -> Dict[str, Any]:
        """Redacted diagnostics for logging the raw error."""
        try:
            return {
                "error_name": type(error).__name__,
                "message": redact_sensitive(safe_str(error)) if error is not None else "",
                "status_code": cls._get_status_code(error),
            }
        except Exception:
            return {"error_name": "unknown", "message": "", "status_code": None}
