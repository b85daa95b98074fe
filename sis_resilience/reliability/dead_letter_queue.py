"""
Dead-letter queue for operations that exhausted their in-call retries.

Items are re-delivered lowest retry count first once their scheduled retry
time has passed. Each delivery claims the item so concurrent workers never
process the same operation twice. The queue can be snapshotted to a durable
store and restored by a fresh instance.
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field, field_validator

from ..observability.logging import ResilienceLogger, redact_sensitive, safe_str
from .backoff import BackoffConfig, ExponentialBackoff
from .clock import Clock, SystemClock
from .error_classifier import ErrorClassification, ErrorSeverity, ErrorType
from .errors import ConfigurationError, QueueFullError
from .storage import DLQStorage, JsonFileStorage

logger = ResilienceLogger("dlq")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ErrorSummary(BaseModel):
    """Serializable, redacted summary of the failure that dead-lettered an operation."""

    name: str = Field(..., description="Exception class name")
    message: str = Field("", description="Redacted error message")
    error_type: Optional[ErrorType] = None
    severity: Optional[ErrorSeverity] = None
    is_retryable: Optional[bool] = None

    @classmethod
    def from_exception(
        cls,
        error: BaseException,
        classification: Optional[ErrorClassification] = None
    ) -> 'ErrorSummary':
        return cls(
            name=type(error).__name__,
            message=redact_sensitive(safe_str(error)),
            error_type=classification.type if classification else None,
            severity=classification.severity if classification else None,
            is_retryable=classification.is_retryable if classification else None
        )


class FailedOperation(BaseModel):
    """An operation owned by the dead-letter queue. The payload is never interpreted."""

    operation_id: str = Field(..., min_length=1, description="Unique operation identifier")
    type: str = Field("MANUAL_SYNC", description="Operation kind, e.g. ATTENDANCE_SYNC")
    error: ErrorSummary
    timestamp: datetime = Field(default_factory=_utc_now, description="Last failure time")
    retry_count: int = Field(0, ge=0)
    next_retry_at: Optional[datetime] = None
    payload: Any = None
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = Field(None, description="When the item became permanently failed")

    @field_validator("timestamp", "next_retry_at", "processed_at", "failed_at")
    @classmethod
    def _ensure_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None


@dataclass
class QueueStats:
    """Derived queue statistics; never persisted."""
    total_items: int
    pending_items: int
    processed_items: int
    permanently_failed_items: int
    average_retry_count: float
    oldest_item: Optional[datetime]
    queue_utilization: float


@dataclass
class DeadLetterQueueConfig:
    """Dead-letter queue configuration. Durations are milliseconds."""
    max_retries: int = 3
    retry_delay_ms: float = 5000.0
    retry_multiplier: float = 2.0
    max_retry_delay_ms: float = 1800000.0       # 30 minutes
    max_queue_size: int = 1000
    jitter: bool = False
    persistence_path: str = "./dlq-storage.json"
    auto_cleanup_interval_ms: float = 3600000.0  # 1 hour
    auto_cleanup_max_age_ms: float = 86400000.0  # 24 hours


class DeadLetterQueue:
    """
    Bounded, persistable store of failed operations.

    All mutations run under one asyncio.Lock. ``persist()`` copies the queue
    under that lock and writes the copy outside it; concurrent persists are
    serialized by a second lock so the newest snapshot is written last.
    """

    def __init__(
        self,
        config: Optional[DeadLetterQueueConfig] = None,
        storage: Optional[DLQStorage] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None
    ):
        self.config = config or DeadLetterQueueConfig()
        if self.config.max_retries <= 0:
            raise ConfigurationError("Max retries must be positive", "max_retries")
        if self.config.max_queue_size <= 0:
            raise ConfigurationError("Max queue size must be positive", "max_queue_size")

        self._clock = clock or SystemClock()
        self._backoff = ExponentialBackoff(
            BackoffConfig(
                base_delay_ms=self.config.retry_delay_ms,
                max_delay_ms=self.config.max_retry_delay_ms,
                max_attempts=self.config.max_retries,
                multiplier=self.config.retry_multiplier,
                jitter=self.config.jitter
            ),
            clock=self._clock,
            rng=rng
        )
        self.storage: DLQStorage = storage or JsonFileStorage(self.config.persistence_path)

        self._lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()
        self._items: Dict[str, FailedOperation] = {}
        self._claimed: Set[str] = set()
        self._cleanup_task: Optional[asyncio.Task] = None

    # Classification of items

    def is_permanently_failed(self, item: FailedOperation) -> bool:
        return item.processed_at is None and item.retry_count >= self.config.max_retries

    def is_pending(self, item: FailedOperation) -> bool:
        return item.processed_at is None and item.retry_count < self.config.max_retries

    # Core operations

    async def add(self, item: FailedOperation) -> None:
        """
        Add or replace a failed operation.

        Raises:
            QueueFullError: If the id is new and the queue is at capacity
        """
        async with self._lock:
            if item.operation_id not in self._items and len(self._items) >= self.config.max_queue_size:
                raise QueueFullError(self.config.max_queue_size)

            stored = item.model_copy(deep=True)
            now = self._clock.now()
            if self.is_permanently_failed(stored):
                if stored.failed_at is None:
                    stored.failed_at = now
            elif stored.processed_at is None and stored.next_retry_at is None:
                stored.next_retry_at = now + timedelta(milliseconds=self.calculate_retry_delay(stored))

            self._items[stored.operation_id] = stored
            self._claimed.discard(stored.operation_id)

        logger.info(
            "Added operation to dead-letter queue",
            operation_id=stored.operation_id,
            retry=f"{stored.retry_count}/{self.config.max_retries}",
            status="permanently_failed" if stored.failed_at is not None else "pending"
        )

    async def get_next_item(self) -> Optional[FailedOperation]:
        """
        Claim the ready pending item with the lowest retry count.

        Ties go to the oldest failure. Returns None when nothing is ready.
        """
        async with self._lock:
            now = self._clock.now()
            candidates = [
                item for item in self._items.values()
                if self.is_pending(item)
                and item.operation_id not in self._claimed
                and (item.next_retry_at is None or item.next_retry_at <= now)
            ]
            if not candidates:
                return None

            chosen = min(candidates, key=lambda item: (item.retry_count, item.timestamp))
            self._claimed.add(chosen.operation_id)
            return chosen.model_copy(deep=True)

    async def mark_as_processed(self, operation_id: str) -> bool:
        """Stamp processed_at and release the claim. Returns whether the id exists."""
        async with self._lock:
            item = self._items.get(operation_id)
            self._claimed.discard(operation_id)
            if item is None:
                return False
            item.processed_at = self._clock.now()

        logger.info("Marked operation as processed", operation_id=operation_id)
        return True

    async def release(self, operation_id: str) -> bool:
        """Drop a claim without changing the item."""
        async with self._lock:
            if operation_id not in self._claimed:
                return False
            self._claimed.discard(operation_id)
            return True

    def increment_retry_count(self, item: FailedOperation) -> FailedOperation:
        """Return a copy with retry_count + 1, a fresh timestamp and a new schedule."""
        now = self._clock.now()
        updated = item.model_copy(
            update={"retry_count": item.retry_count + 1, "timestamp": now, "next_retry_at": None},
            deep=True
        )
        updated.next_retry_at = now + timedelta(milliseconds=self.calculate_retry_delay(updated))
        return updated

    def calculate_retry_delay(self, item: FailedOperation) -> float:
        """retry_delay_ms * retry_multiplier ** retry_count, capped at max_retry_delay_ms."""
        return self._backoff.calculate_delay(item.retry_count + 1)

    async def cleanup(self, max_age_ms: float) -> int:
        """
        Purge processed and permanently failed items older than max_age_ms.

        Returns:
            Number of items removed
        """
        async with self._lock:
            cutoff = self._clock.now() - timedelta(milliseconds=max_age_ms)
            expired = []
            for operation_id, item in self._items.items():
                if item.processed_at is not None:
                    if item.processed_at < cutoff:
                        expired.append(operation_id)
                elif self.is_permanently_failed(item):
                    if (item.failed_at or item.timestamp) < cutoff:
                        expired.append(operation_id)

            for operation_id in expired:
                del self._items[operation_id]
                self._claimed.discard(operation_id)

        if expired:
            logger.info("Cleaned up dead-letter items", removed=len(expired))
        return len(expired)

    async def persist(self) -> int:
        """Write a snapshot of the queue to storage. Returns the item count."""
        async with self._persist_lock:
            async with self._lock:
                snapshot = [
                    {"id": operation_id, "operation": item.model_dump(mode="json")}
                    for operation_id, item in self._items.items()
                ]

            await self.storage.save(snapshot)
        logger.info("Persisted dead-letter queue", items=len(snapshot))
        return len(snapshot)

    async def restore(self) -> int:
        """
        Replace the queue contents with the stored snapshot.

        A store with no snapshot leaves an empty queue. Returns the item count.
        """
        snapshot = await self.storage.load()
        if snapshot is None:
            logger.info("No dead-letter snapshot found, starting with empty queue")
            async with self._lock:
                self._items.clear()
                self._claimed.clear()
            return 0

        restored = {}
        for entry in snapshot:
            item = FailedOperation.model_validate(entry.get("operation", entry))
            restored[entry.get("id", item.operation_id)] = item

        async with self._lock:
            self._items = restored
            self._claimed.clear()

        logger.info("Restored dead-letter queue", items=len(restored))
        return len(restored)

    def get_stats(self) -> QueueStats:
        items = list(self._items.values())
        total = len(items)
        pending = sum(1 for item in items if self.is_pending(item))
        processed = sum(1 for item in items if item.processed_at is not None)
        failed = sum(1 for item in items if self.is_permanently_failed(item))
        average = sum(item.retry_count for item in items) / total if total else 0.0

        return QueueStats(
            total_items=total,
            pending_items=pending,
            processed_items=processed,
            permanently_failed_items=failed,
            average_retry_count=round(average, 2),
            oldest_item=min((item.timestamp for item in items), default=None),
            queue_utilization=round(total / self.config.max_queue_size * 100, 2)
        )

    # Inspection and maintenance

    @property
    def size(self) -> int:
        return len(self._items)

    def get_all_operations(self) -> List[FailedOperation]:
        return [item.model_copy(deep=True) for item in self._items.values()]

    def get_operation(self, operation_id: str) -> Optional[FailedOperation]:
        item = self._items.get(operation_id)
        return item.model_copy(deep=True) if item else None

    def get_operations_by_type(self, operation_type: str) -> List[FailedOperation]:
        return [item.model_copy(deep=True) for item in self._items.values() if item.type == operation_type]

    def get_operations_by_retry_count(self, retry_count: int) -> List[FailedOperation]:
        return [
            item.model_copy(deep=True) for item in self._items.values()
            if item.retry_count == retry_count
        ]

    def is_claimed(self, operation_id: str) -> bool:
        return operation_id in self._claimed

    def has_capacity(self) -> bool:
        return len(self._items) < self.config.max_queue_size

    def remaining_capacity(self) -> int:
        return self.config.max_queue_size - len(self._items)

    async def remove_operation(self, operation_id: str) -> bool:
        async with self._lock:
            self._claimed.discard(operation_id)
            return self._items.pop(operation_id, None) is not None

    async def clear(self) -> None:
        """Remove every item (use with caution)."""
        async with self._lock:
            self._items.clear()
            self._claimed.clear()
        logger.warning("Dead-letter queue cleared")

    # Background cleanup

    def start_auto_cleanup(self) -> None:
        """Start periodic cleanup. Must be called from a running event loop."""
        if self.config.auto_cleanup_interval_ms <= 0 or self._cleanup_task is not None:
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(self._auto_cleanup_loop())

    async def _auto_cleanup_loop(self) -> None:
        interval = self.config.auto_cleanup_interval_ms / 1000
        while True:
            await self._clock.sleep(interval)
            try:
                await self.cleanup(self.config.auto_cleanup_max_age_ms)
            except Exception as e:
                logger.error("Automatic dead-letter cleanup failed", error=e)

    async def close(self) -> None:
        """Stop the automatic cleanup task."""
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
