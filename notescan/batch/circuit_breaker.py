"""
Circuit breaker for per-note matcher failures.
"""
import threading
from typing import Optional


class CircuitBreaker:
    """
    Opens after `threshold` consecutive note failures across all workers.

    A single successful note closes it again. Thread-safe.
    """
    def __init__(self, threshold: Optional[int] = None):
        """
        Args:
            threshold: Consecutive failures before opening (defaults to settings)
        """
        if threshold is None:
            from notescan.config import settings
            threshold = settings.MATCH_FAILURE_THRESHOLD
        self.threshold = max(1, threshold)
        self.failure_count = 0
        self.last_error: Optional[str] = None
        self._is_open = False
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._is_open

    def record_failure(self, error: Exception) -> bool:
        """Record a failed note. Returns True when this failure opened the circuit."""
        with self._lock:
            self.failure_count += 1
            self.last_error = f"{type(error).__name__}: {error}"
            if not self._is_open and self.failure_count >= self.threshold:
                self._is_open = True
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            self.failure_count = 0

    def reset(self) -> None:
        with self._lock:
            self.failure_count = 0
            self.last_error = None
            self._is_open = False
