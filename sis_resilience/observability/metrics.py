"""
In-memory error statistics.

Keeps a bounded, time-windowed record of classified failures so operators
can see which kinds of SIS errors dominate recently.
"""

from collections import Counter, deque
from typing import TYPE_CHECKING, Any, Deque, Dict, Optional, Tuple

from ..reliability.clock import Clock, SystemClock

if TYPE_CHECKING:
    from ..reliability.error_classifier import ErrorClassification


class ErrorStatistics:
    """
    Windowed counter of classified errors.

    Features:
    - Fixed-size circular buffer for memory efficiency
    - Time-based windowing
    - Breakdown by type and severity
    """

    def __init__(
        self,
        max_size: int = 10000,
        retention_ms: float = 86400000.0,
        clock: Optional[Clock] = None
    ):
        """
        Initialize the statistics store.

        Args:
            max_size: Maximum number of records kept
            retention_ms: Records older than this are discarded
            clock: Time source
        """
        self.max_size = max_size
        self.retention_ms = retention_ms
        self._clock = clock or SystemClock()
        self._records: Deque[Tuple[float, "ErrorClassification"]] = deque(maxlen=max_size)

    def record(self, classification: "ErrorClassification") -> None:
        now = self._clock.time()
        self._records.append((now, classification))
        self._prune(now)

    def _prune(self, now: float) -> None:
        cutoff = now - self.retention_ms / 1000
        while self._records and self._records[0][0] < cutoff:
            self._records.popleft()

    def get_error_statistics(self, time_window_ms: float = 3600000.0) -> Dict[str, Any]:
        """Summarize errors recorded within the trailing window."""
        now = self._clock.time()
        self._prune(now)
        cutoff = now - time_window_ms / 1000
        recent = [classification for timestamp, classification in self._records if timestamp >= cutoff]

        by_type = Counter(classification.type.value for classification in recent)
        by_severity = Counter(classification.severity.value for classification in recent)
        retryable = sum(1 for classification in recent if classification.is_retryable)

        return {
            "total_errors": len(recent),
            "errors_by_type": dict(by_type),
            "errors_by_severity": dict(by_severity),
            "retryable_errors": retryable,
            "non_retryable_errors": len(recent) - retryable,
        }

    def reset(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
