"""
Environment-driven settings for the resilience layer.

Every field can be overridden with an ``SIS_RESILIENCE_<FIELD>`` environment
variable (for example ``SIS_RESILIENCE_MAX_ATTEMPTS=5``); values from a
``.env`` file are loaded first.
"""

import os
from typing import Mapping, Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..reliability.backoff import BackoffConfig
from ..reliability.circuit_breaker import CircuitBreakerConfig
from ..reliability.dead_letter_queue import DeadLetterQueueConfig
from ..reliability.resilient_client import ResilientClientConfig

ENV_PREFIX = "SIS_RESILIENCE_"


class ResilienceSettings(BaseModel):
    """Validated settings for every resilience component. Durations are milliseconds."""

    model_config = ConfigDict(extra="forbid")

    # Backoff
    base_delay_ms: float = Field(1000.0, gt=0, description="First retry delay")
    max_delay_ms: float = Field(30000.0, gt=0, description="Upper bound for a single retry delay")
    max_attempts: int = Field(3, ge=1, description="Attempts per call, including the first")
    multiplier: float = Field(2.0, ge=1, description="Growth factor between delays")
    jitter: bool = Field(True, description="Randomize retry delays")

    # Circuit breaker
    failure_threshold: int = Field(5, ge=1)
    recovery_timeout_ms: float = Field(60000.0, gt=0)
    monitoring_period_ms: float = Field(300000.0, gt=0)
    half_open_max_requests: int = Field(1, ge=1)
    health_check_failure_threshold: int = Field(3, ge=1)

    # Dead-letter queue
    dlq_max_retries: int = Field(3, ge=1)
    dlq_retry_delay_ms: float = Field(5000.0, gt=0)
    dlq_retry_multiplier: float = Field(2.0, ge=1)
    dlq_max_retry_delay_ms: float = Field(1800000.0, gt=0)
    dlq_max_queue_size: int = Field(1000, ge=1)
    dlq_jitter: bool = False
    dlq_persistence_path: str = "./dlq-storage.json"
    dlq_auto_cleanup_interval_ms: float = Field(3600000.0, ge=0)
    dlq_auto_cleanup_max_age_ms: float = Field(86400000.0, gt=0)

    # Client
    operation_timeout_ms: Optional[float] = Field(None, gt=0)
    dead_letter_permanent_errors: bool = False

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> 'ResilienceSettings':
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be greater than or equal to base_delay_ms")
        if self.dlq_max_retry_delay_ms < self.dlq_retry_delay_ms:
            raise ValueError("dlq_max_retry_delay_ms must be greater than or equal to dlq_retry_delay_ms")
        return self

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        prefix: str = ENV_PREFIX,
        dotenv: bool = True
    ) -> 'ResilienceSettings':
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read instead of os.environ
            prefix: Variable name prefix
            dotenv: Load a .env file into os.environ first

        Raises:
            pydantic.ValidationError: If a value is malformed or out of range
        """
        if dotenv:
            load_dotenv(find_dotenv(usecwd=True))
        source = os.environ if environ is None else environ

        values = {}
        for name in cls.model_fields:
            raw = source.get(f"{prefix}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        return cls.model_validate(values)

    def backoff_config(self) -> BackoffConfig:
        return BackoffConfig(
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            max_attempts=self.max_attempts,
            multiplier=self.multiplier,
            jitter=self.jitter
        )

    def circuit_breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            recovery_timeout_ms=self.recovery_timeout_ms,
            monitoring_period_ms=self.monitoring_period_ms,
            half_open_max_requests=self.half_open_max_requests,
            health_check_failure_threshold=self.health_check_failure_threshold
        )

    def dead_letter_queue_config(self) -> DeadLetterQueueConfig:
        return DeadLetterQueueConfig(
            max_retries=self.dlq_max_retries,
            retry_delay_ms=self.dlq_retry_delay_ms,
            retry_multiplier=self.dlq_retry_multiplier,
            max_retry_delay_ms=self.dlq_max_retry_delay_ms,
            max_queue_size=self.dlq_max_queue_size,
            jitter=self.dlq_jitter,
            persistence_path=self.dlq_persistence_path,
            auto_cleanup_interval_ms=self.dlq_auto_cleanup_interval_ms,
            auto_cleanup_max_age_ms=self.dlq_auto_cleanup_max_age_ms
        )

    def client_config(self) -> ResilientClientConfig:
        return ResilientClientConfig(
            operation_timeout_ms=self.operation_timeout_ms,
            dead_letter_permanent_errors=self.dead_letter_permanent_errors
        )
