"""Fixed shape of the coaching session report.

The report has nine sections, each with a set of required fields. A field
counts as filled only when its value passes :meth:`SectionSchema.normalize`:
non-empty, the right shape for its kind, and not a known placeholder string.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .errors import SchemaViolationError


class FieldKind(str, Enum):
    TEXT = "text"
    SCORE = "score"        # 0-10 rating
    COUNT = "count"        # non-negative integer
    NUMBER = "number"      # non-negative real
    LIST = "list"          # non-empty list of items
    MAPPING = "mapping"    # non-empty object


# Exact (normalized) values that carry no information.
PLACEHOLDER_VALUES = {
    "", "n/a", "na", "none", "null", "nil", "unknown", "tbd", "todo", "pending",
    "not available", "not provided", "not specified", "not applicable",
    "no data", "missing", "placeholder", "-", "--", "...", "?",
}

# Substrings that mark generic filler text.
PLACEHOLDER_MARKERS = (
    "[insert", "<insert", "<placeholder", "{placeholder", "lorem ipsum",
    "analysis not available", "analysis unavailable", "to be determined",
    "data unavailable", "content unavailable", "will be provided",
)

# Markers of boilerplate in a raw provider answer; they lower confidence.
BOILERPLATE_MARKERS = (
    "as an ai language model", "as an ai model", "i cannot analyze",
    "i'm sorry", "i am sorry", "i can't provide", "lorem ipsum", "[insert",
)

_SCORE_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*(?:/\s*10|out of 10)?\s*$", re.IGNORECASE)
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_LIST_SPLIT_RE = re.compile(r"\s*(?:\n|;|•)\s*")
_BULLET_RE = re.compile(r"^\s*(?:[-*]|\d+[.)])\s+")


def is_placeholder(value: Any) -> bool:
    """True when ``value`` is a string that only stands in for real content."""
    if not isinstance(value, str):
        return False
    norm = value.strip().lower().strip(".!:;")
    if norm in PLACEHOLDER_VALUES:
        return True
    return any(marker in norm for marker in PLACEHOLDER_MARKERS)


def has_boilerplate(text: str) -> bool:
    low = (text or "").lower()
    return any(marker in low for marker in BOILERPLATE_MARKERS)


@dataclass(frozen=True)
class FieldSpec:
    field_id: str
    kind: FieldKind
    description: str
    keywords: Tuple[str, ...] = ()
    min_chars: int = 20

    def label(self) -> str:
        return self.field_id.replace("_", " ")


@dataclass(frozen=True)
class SectionSpec:
    section_id: str
    title: str
    fields: Tuple[FieldSpec, ...] = field(default_factory=tuple)

    def field_ids(self) -> List[str]:
        return [f.field_id for f in self.fields]


class SectionSchema:
    def __init__(self, sections: List[SectionSpec]):
        if not sections:
            raise ValueError("schema needs at least one section")
        self.sections: Tuple[SectionSpec, ...] = tuple(sections)
        self._by_id: Dict[str, SectionSpec] = {s.section_id: s for s in self.sections}
        if len(self._by_id) != len(self.sections):
            raise ValueError("duplicate section ids in schema")

    def section_ids(self) -> List[str]:
        return [s.section_id for s in self.sections]

    def section(self, section_id: str) -> SectionSpec:
        return self._by_id[section_id]

    def field_spec(self, section_id: str, field_id: str) -> Optional[FieldSpec]:
        sec = self._by_id.get(section_id)
        if sec is None:
            return None
        for f in sec.fields:
            if f.field_id == field_id:
                return f
        return None

    def iter_fields(self) -> Iterator[Tuple[str, FieldSpec]]:
        for sec in self.sections:
            for f in sec.fields:
                yield sec.section_id, f

    @property
    def total_fields(self) -> int:
        return sum(len(s.fields) for s in self.sections)

    def normalize(self, section_id: str, field_id: str, value: Any) -> Any:
        """
        Validate ``value`` for the field and return its normalized form.

        Raises:
            SchemaViolationError: value missing, wrong shape, or placeholder.
        """
        spec = self.field_spec(section_id, field_id)
        if spec is None:
            raise SchemaViolationError(section_id, field_id, "field not in schema")
        if value is None:
            raise SchemaViolationError(section_id, field_id, "missing")
        if is_placeholder(value):
            raise SchemaViolationError(section_id, field_id, "placeholder value")

        kind = spec.kind
        if kind == FieldKind.TEXT:
            return self._normalize_text(spec, section_id, value)
        if kind == FieldKind.SCORE:
            return self._normalize_score(section_id, field_id, value)
        if kind in (FieldKind.COUNT, FieldKind.NUMBER):
            return self._normalize_number(spec, section_id, value)
        if kind == FieldKind.LIST:
            return self._normalize_list(section_id, field_id, value)
        if kind == FieldKind.MAPPING:
            return self._normalize_mapping(section_id, field_id, value)
        raise SchemaViolationError(section_id, field_id, f"unsupported kind {kind}")

    def is_valid(self, section_id: str, field_id: str, value: Any) -> bool:
        try:
            self.normalize(section_id, field_id, value)
        except SchemaViolationError:
            return False
        return True

    def _normalize_text(self, spec: FieldSpec, section_id: str, value: Any) -> str:
        if not isinstance(value, str):
            raise SchemaViolationError(section_id, spec.field_id, "expected text")
        text = value.strip()
        if len(text) < spec.min_chars:
            raise SchemaViolationError(section_id, spec.field_id, f"text shorter than {spec.min_chars} chars")
        return text

    def _normalize_score(self, section_id: str, field_id: str, value: Any) -> float:
        if isinstance(value, bool):
            raise SchemaViolationError(section_id, field_id, "expected score")
        if isinstance(value, (int, float)):
            score = float(value)
        elif isinstance(value, str):
            m = _SCORE_RE.match(value)
            if not m:
                raise SchemaViolationError(section_id, field_id, f"unparseable score {value!r}")
            score = float(m.group(1))
        else:
            raise SchemaViolationError(section_id, field_id, "expected score")
        if not 0.0 <= score <= 10.0:
            raise SchemaViolationError(section_id, field_id, f"score {score} outside 0-10")
        return score

    def _normalize_number(self, spec: FieldSpec, section_id: str, value: Any):
        if isinstance(value, bool):
            raise SchemaViolationError(section_id, spec.field_id, "expected number")
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            m = _NUMBER_RE.search(value)
            if not m:
                raise SchemaViolationError(section_id, spec.field_id, f"unparseable number {value!r}")
            number = float(m.group(0))
        else:
            raise SchemaViolationError(section_id, spec.field_id, "expected number")
        if number < 0:
            raise SchemaViolationError(section_id, spec.field_id, "negative value")
        if spec.kind == FieldKind.COUNT:
            if number != int(number):
                raise SchemaViolationError(section_id, spec.field_id, "count must be whole")
            return int(number)
        return number

    def _normalize_list(self, section_id: str, field_id: str, value: Any) -> list:
        if isinstance(value, str):
            items = [_BULLET_RE.sub("", part).strip() for part in _LIST_SPLIT_RE.split(value)]
            if len(items) == 1 and "," in items[0]:
                items = [p.strip() for p in items[0].split(",")]
        elif isinstance(value, (list, tuple)):
            items = list(value)
        else:
            raise SchemaViolationError(section_id, field_id, "expected list")

        kept = []
        for item in items:
            if item is None or is_placeholder(item):
                continue
            if isinstance(item, str):
                item = item.strip()
                if not item:
                    continue
            elif isinstance(item, (dict, list)) and not item:
                continue
            kept.append(item)
        if not kept:
            raise SchemaViolationError(section_id, field_id, "empty list")
        return kept

    def _normalize_mapping(self, section_id: str, field_id: str, value: Any) -> dict:
        if not isinstance(value, dict):
            raise SchemaViolationError(section_id, field_id, "expected object")
        kept = {k: v for k, v in value.items()
                if v is not None and not is_placeholder(v) and v != {} and v != []}
        if not kept:
            raise SchemaViolationError(section_id, field_id, "empty object")
        return kept


def _f(field_id: str, kind: FieldKind, description: str, *keywords: str, min_chars: int = 20) -> FieldSpec:
    return FieldSpec(field_id=field_id, kind=kind, description=description,
                     keywords=tuple(keywords), min_chars=min_chars)


T, S, C, N, L, M = (FieldKind.TEXT, FieldKind.SCORE, FieldKind.COUNT,
                    FieldKind.NUMBER, FieldKind.LIST, FieldKind.MAPPING)

COACHING_SECTIONS: List[SectionSpec] = [
    SectionSpec("key_info", "Key Information", (
        _f("session_duration", N, "Session length in minutes", "minute", "time"),
        _f("words_per_minute", N, "Average coach speaking rate", "talk", "speak"),
        _f("player_names", L, "Players addressed by name", "name", "well done"),
        _f("question_count", C, "Number of questions the coach asked", "?", "why", "how", "what"),
        _f("coaching_styles", L, "Coaching styles observed (command, guided discovery, ...)", "try", "show", "let's"),
    )),
    SectionSpec("questioning", "Questioning", (
        _f("total_questions", C, "Total questions asked", "?"),
        _f("question_types", M, "Counts per question type (open, closed, rhetorical)", "?", "why", "how"),
        _f("examples", L, "Verbatim example questions from the transcript", "?"),
        _f("effectiveness", S, "Effectiveness of questioning, 0-10", "?", "think"),
        _f("analysis", T, "Narrative analysis of the coach's questioning", "?", "why", "how"),
    )),
    SectionSpec("language", "Language", (
        _f("clarity_score", S, "Clarity of instructions, 0-10", "listen", "make sure"),
        _f("specificity_score", S, "Specificity of feedback, 0-10", "because", "when you"),
        _f("age_appropriateness_score", S, "Age appropriateness of language, 0-10", "guys", "lads", "team"),
        _f("analysis", T, "Narrative analysis of language use", "listen", "because"),
    )),
    SectionSpec("coach_behaviours", "Coach Behaviours", (
        _f("communication_patterns", L, "Recurring communication patterns", "good", "again"),
        _f("effectiveness_metrics", M, "Scores for instruction, feedback, demonstration", "good", "show"),
        _f("tone_analysis", T, "Tone and energy of delivery", "come on", "well done", "!"),
        _f("analysis", T, "Narrative analysis of coach behaviours", "good", "again"),
    )),
    SectionSpec("player_engagement", "Player Engagement", (
        _f("engagement_metrics", M, "Engagement indicators and scores", "everyone", "together"),
        _f("interaction_analysis", T, "How the coach interacts with individual players", "name", "you"),
        _f("analysis", T, "Narrative analysis of player engagement", "everyone", "team"),
    )),
    SectionSpec("intended_outcomes", "Intended Outcomes", (
        _f("session_objectives", L, "Objectives the coach set for the session", "today", "focus", "goal"),
        _f("achievement_level", S, "How far objectives were achieved, 0-10", "well done", "better"),
        _f("analysis", T, "Narrative analysis of outcomes", "today", "focus"),
    )),
    SectionSpec("coach_specific", "Coach Specific", (
        _f("unique_strengths", L, "Strengths particular to this coach", "good", "great"),
        _f("development_priorities", L, "Priorities for the coach's development", "again", "try"),
        _f("analysis", T, "Narrative analysis specific to this coach", "good", "try"),
    )),
    SectionSpec("neuroscience", "Neuroscience", (
        _f("cognitive_load", T, "Cognitive load placed on players", "remember", "think"),
        _f("brain_engagement", T, "Learning and attention cues", "focus", "look"),
        _f("analysis", T, "Neuroscience-informed analysis of the session", "remember", "focus"),
    )),
    SectionSpec("comments", "Comments", (
        _f("overall_assessment", T, "Overall assessment of the session", "today", "good"),
        _f("key_highlights", L, "Key highlights of the session", "great", "well done"),
        _f("future_recommendations", L, "Recommendations for future sessions", "next", "try"),
    )),
]

DEFAULT_SCHEMA = SectionSchema(COACHING_SECTIONS)
