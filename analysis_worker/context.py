import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from .cancellation import CancellationToken
from .models import Job
from .section_schema import SectionSchema

logger = logging.getLogger(__name__)


class ProviderHealth:
    """
    Per-job view of provider reliability.

    Tracks consecutive quota errors (the circuit breaker), providers that
    rejected their configuration, the last backoff delay per provider and
    which providers already failed each gap.
    """

    def __init__(self, breaker_threshold: int = 3):
        self.breaker_threshold = breaker_threshold
        self.consecutive_quota: Dict[str, int] = {}
        self.broken: Set[str] = set()
        self.last_backoff: Dict[str, float] = {}
        self.backoff_history: Dict[str, List[float]] = {}
        self.gap_failures: Dict[Tuple[str, str], Dict[str, int]] = {}
        self._rotation = 0
        self._lock = threading.Lock()

    def record(self, provider_id: str, error_kind: Optional[str]) -> None:
        with self._lock:
            if error_kind == "quota":
                count = self.consecutive_quota.get(provider_id, 0) + 1
                self.consecutive_quota[provider_id] = count
                if count >= self.breaker_threshold and provider_id not in self.broken:
                    self.broken.add(provider_id)
                    logger.warning(
                        "provider_circuit_open provider=%s consecutive_quota=%d",
                        provider_id, count,
                    )
            elif error_kind == "config":
                if provider_id not in self.broken:
                    self.broken.add(provider_id)
                    logger.warning("provider_excluded provider=%s reason=config", provider_id)
            elif error_kind != "cancelled":
                self.consecutive_quota[provider_id] = 0

    def is_available(self, provider_id: str) -> bool:
        return provider_id not in self.broken

    def record_gap_failure(self, key: Tuple[str, str], provider_id: str, pass_index: int) -> None:
        with self._lock:
            self.gap_failures.setdefault(key, {})[provider_id] = pass_index

    def failures_for(self, key: Tuple[str, str]) -> Dict[str, int]:
        return dict(self.gap_failures.get(key, {}))

    def next_rotation(self) -> int:
        with self._lock:
            value = self._rotation
            self._rotation += 1
            return value


@dataclass
class JobContext:
    """Everything one worker needs while it holds a job."""
    job: Job
    transcript: str
    schema: SectionSchema
    deadline: float
    cancel: CancellationToken = field(default_factory=CancellationToken)
    health: ProviderHealth = field(default_factory=ProviderHealth)
    session_context: str = ""
    passes_run: int = 0
    gap_attempts: Dict[Tuple[str, str], int] = field(default_factory=dict)
    timeout_retries: Dict[Tuple[str, str], int] = field(default_factory=dict)

    def next_pass(self) -> int:
        self.passes_run += 1
        return self.passes_run

    def remaining(self) -> float:
        return self.deadline - time.monotonic()

    def expired(self) -> bool:
        return self.remaining() <= 0

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_cancelled()
