import copy
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidTransitionError
from .section_schema import SectionSchema

FULL_PASS_SECTION = "full"


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    AWAITING_GAP_FILL = "awaiting_gap_fill"
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATES


ACTIVE_STATES = frozenset({JobState.QUEUED, JobState.RUNNING, JobState.AWAITING_GAP_FILL})
TERMINAL_STATES = frozenset({JobState.COMPLETE, JobState.PARTIAL, JobState.FAILED})

_ALLOWED_TRANSITIONS = {
    JobState.QUEUED: {JobState.RUNNING, JobState.FAILED},
    JobState.RUNNING: {JobState.AWAITING_GAP_FILL, JobState.COMPLETE, JobState.PARTIAL, JobState.FAILED},
    JobState.AWAITING_GAP_FILL: {JobState.AWAITING_GAP_FILL, JobState.COMPLETE, JobState.PARTIAL, JobState.FAILED},
}


class GapCause(str, Enum):
    TOKEN_LIMIT = "token_limit"
    PARSE_FAILURE = "parse_failure"
    TIMEOUT = "timeout"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNKNOWN = "unknown"


# When attempts disagree, the first matching cause wins.
CAUSE_PRECEDENCE = (
    GapCause.TIMEOUT,
    GapCause.QUOTA_EXCEEDED,
    GapCause.TOKEN_LIMIT,
    GapCause.PARSE_FAILURE,
    GapCause.UNKNOWN,
)


class _Missing:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


@dataclass
class Gap:
    """One missing or schema-invalid report field."""
    section_id: str
    field_id: str
    cause: GapCause = GapCause.UNKNOWN
    attempts_made: int = 0
    terminal: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        return (self.section_id, self.field_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "section_id": self.section_id,
            "field_id": self.field_id,
            "cause": self.cause.value,
            "attempts_made": self.attempts_made,
            "terminal": self.terminal,
        }


@dataclass
class FieldAttempt:
    """Compact outcome of one provider call, as seen by one field."""
    provider_id: str
    pass_index: int
    error_kind: Optional[str] = None
    latency: float = 0.0
    timeout: float = 0.0
    output_chars: int = 0
    output_ceiling_chars: int = 0
    truncated: bool = False
    parse_status: str = "ok"  # ok | partial | error | none
    violation: Optional[str] = None


@dataclass
class FieldValue:
    value: Any
    confidence: float
    provider_id: str
    pass_index: int


@dataclass
class ProviderResult:
    provider_id: str
    section_id: str
    raw_output: str = ""
    parsed_fields: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    field_confidence: Dict[Tuple[str, str], float] = field(default_factory=dict)
    violations: Dict[Tuple[str, str], str] = field(default_factory=dict)
    confidence: float = 0.0
    latency: float = 0.0
    timeout: float = 0.0
    error: Optional[Exception] = None
    error_kind: Optional[str] = None
    truncated: bool = False
    parse_status: str = "none"
    output_ceiling_chars: int = 0
    field_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def attempt_for(self, pass_index: int, violation: Optional[str] = None) -> FieldAttempt:
        return FieldAttempt(
            provider_id=self.provider_id,
            pass_index=pass_index,
            error_kind=self.error_kind,
            latency=self.latency,
            timeout=self.timeout,
            output_chars=len(self.raw_output or ""),
            output_ceiling_chars=self.output_ceiling_chars,
            truncated=self.truncated,
            parse_status=self.parse_status,
            violation=violation,
        )


class Report:
    """
    Accumulating multi-section report for one job.

    Fields only ever move forward: a schema-valid value can be replaced by a
    higher-confidence valid value, never by nothing.
    """

    def __init__(self, schema: SectionSchema, job_id: Optional[str] = None):
        self.schema = schema
        self.job_id = job_id
        self._values: Dict[Tuple[str, str], FieldValue] = {}
        self._attempts: Dict[Tuple[str, str], List[FieldAttempt]] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    def get(self, section_id: str, field_id: str) -> Any:
        entry = self._values.get((section_id, field_id))
        return entry.value if entry is not None else MISSING

    def entry(self, section_id: str, field_id: str) -> Optional[FieldValue]:
        return self._values.get((section_id, field_id))

    def is_filled(self, section_id: str, field_id: str) -> bool:
        return (section_id, field_id) in self._values

    def filled_count(self) -> int:
        return len(self._values)

    def offer(self, section_id: str, field_id: str, value: Any, confidence: float,
              provider_id: str, pass_index: int) -> bool:
        """
        Offer a candidate value; returns True if it was merged.

        A frozen report (job already finalized) takes nothing and returns False.

        Raises:
            SchemaViolationError: the candidate fails schema validation.
        """
        normalized = self.schema.normalize(section_id, field_id, value)
        with self._lock:
            if self._frozen:
                return False
            current = self._values.get((section_id, field_id))
            if current is not None and confidence <= current.confidence:
                return False
            self._values[(section_id, field_id)] = FieldValue(
                value=normalized, confidence=confidence,
                provider_id=provider_id, pass_index=pass_index,
            )
            return True

    def record_attempts(self, section_id: str, field_id: str, attempts: List[FieldAttempt]) -> None:
        """Keep only the attempts from the most recent pass that targeted the field."""
        if not attempts:
            return
        latest = max(a.pass_index for a in attempts)
        with self._lock:
            if self._frozen:
                return
            existing = self._attempts.get((section_id, field_id), [])
            if existing and existing[0].pass_index == latest:
                existing = existing + [a for a in attempts if a.pass_index == latest]
            elif not existing or existing[0].pass_index < latest:
                existing = [a for a in attempts if a.pass_index == latest]
            self._attempts[(section_id, field_id)] = existing

    def attempts(self, section_id: str, field_id: str) -> List[FieldAttempt]:
        return list(self._attempts.get((section_id, field_id), []))

    def to_dict(self, include_confidence: bool = False) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            out: Dict[str, Dict[str, Any]] = {}
            for section in self.schema.sections:
                sec_out: Dict[str, Any] = {}
                for f in section.fields:
                    entry = self._values.get((section.section_id, f.field_id))
                    if entry is None:
                        sec_out[f.field_id] = "missing"
                    elif include_confidence:
                        sec_out[f.field_id] = {
                            "value": copy.deepcopy(entry.value),
                            "confidence": round(entry.confidence, 4),
                            "provider_id": entry.provider_id,
                        }
                    else:
                        sec_out[f.field_id] = copy.deepcopy(entry.value)
                out[section.section_id] = sec_out
            return out


@dataclass
class Job:
    media_ref: str
    priority: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: JobState = JobState.QUEUED
    attempts_used: int = 0
    created_at: float = field(default_factory=time.time)
    seq: int = 0
    superseded_by: Optional[str] = None
    completeness_score: float = 0.0
    gaps: List[Gap] = field(default_factory=list)
    report: Optional[Report] = None
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    history: List[JobState] = field(default_factory=list)

    def __post_init__(self):
        if not self.history:
            self.history.append(self.state)

    def transition(self, new_state: JobState) -> None:
        if self.state.is_terminal:
            raise InvalidTransitionError(
                f"job {self.id} is {self.state.value}; terminal states are immutable"
            )
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"job {self.id}: {self.state.value} -> {new_state.value} not allowed"
            )
        self.state = new_state
        self.history.append(new_state)
        if new_state == JobState.RUNNING:
            self.started_at = time.time()
        if new_state.is_terminal:
            self.finished_at = time.time()

    def status_dict(self, include_report: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "job_id": self.id,
            "media_ref": self.media_ref,
            "state": self.state.value,
            "priority": self.priority,
            "attempts_used": self.attempts_used,
            "completeness_score": round(self.completeness_score, 4),
            "gaps": [g.to_dict() for g in self.gaps],
            "superseded_by": self.superseded_by,
            "error": self.error,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
        if include_report:
            out["report"] = self.report.to_dict() if self.report is not None else None
        return out
