"""Cooperative cancellation for one job's provider calls and waits.

Provider calls cannot be interrupted mid-flight. Every wait in the pipeline
watches the job's token instead (pass fan-in between short slices). Results
that come back after cancellation are dropped unmerged.
"""

import threading
from typing import Optional


class CancellationToken:
    """Thread-safe cancellation flag with an optional reason."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if not self._event.is_set():
                self.reason = reason
                self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to ``timeout`` seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)
