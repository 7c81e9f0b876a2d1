import logging
import threading
import time
from typing import Optional

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Per-provider rate limiter shared by every job in the process.

    Tokens refill at ``rate`` per second up to ``burst``. A call takes one
    token before it starts and holds one in-flight slot until it finishes, so a
    saturated provider makes callers wait instead of hammering it.
    """

    def __init__(self, rate: float, burst: int = 1, max_in_flight: Optional[int] = None):
        self.rate = max(0.01, float(rate))
        self.burst = max(1, int(burst))
        self._tokens = float(self.burst)
        self._updated = time.monotonic()
        self._lock = threading.Lock()
        self._in_flight = threading.BoundedSemaphore(max_in_flight) if max_in_flight else None

    def _refill(self, now: float) -> None:
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
            self._updated = now

    def try_acquire(self) -> float:
        """Take a token if one is available; otherwise return seconds to wait."""
        with self._lock:
            now = time.monotonic()
            self._refill(now)
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return 0.0
            return (1.0 - self._tokens) / self.rate

    def acquire(self, cancel=None, timeout: Optional[float] = None) -> bool:
        """
        Block until a token is taken. Returns False on cancellation or timeout.

        ``cancel`` is anything with ``wait(seconds)`` returning True once
        cancelled (a CancellationToken or threading.Event).
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        while True:
            wait_s = self.try_acquire()
            if wait_s <= 0:
                break
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                wait_s = min(wait_s, remaining)
            if cancel is not None:
                if cancel.wait(wait_s):
                    return False
            else:
                time.sleep(wait_s)

        if self._in_flight is not None:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not self._in_flight.acquire(timeout=remaining):
                return False
        return True

    def release(self) -> None:
        if self._in_flight is not None:
            self._in_flight.release()
