import json
from typing import Any

from .section_schema import FieldKind, FieldSpec

# Weights are tunable; the only contract is "higher means more trustworthy".
BASE_CONFIDENCE = 0.4
LENGTH_WEIGHT = 0.35
STRICT_PARSE_BONUS = 0.2
FALLBACK_PARSE_BONUS = 0.05
BOILERPLATE_PENALTY = 0.15
COLLECTION_RICH_CHARS = 120


def value_length(value: Any) -> int:
    if isinstance(value, str):
        return len(value.strip())
    if isinstance(value, (list, tuple)):
        return sum(value_length(v) for v in value)
    if isinstance(value, dict):
        return len(json.dumps(value, ensure_ascii=False, default=str))
    return len(str(value))


def field_confidence(spec: FieldSpec, value: Any, via: str = "strict",
                     boilerplate: bool = False, rich_text_chars: int = 400) -> float:
    """
    Heuristic confidence for a schema-valid value.

    Derived only from what we can observe (length, parse path, boilerplate in
    the answer); providers never grade themselves.
    """
    if spec.kind == FieldKind.TEXT:
        length_score = min(1.0, value_length(value) / max(1, rich_text_chars))
    elif spec.kind in (FieldKind.LIST, FieldKind.MAPPING):
        length_score = min(1.0, value_length(value) / COLLECTION_RICH_CHARS)
    else:
        length_score = 1.0

    confidence = BASE_CONFIDENCE + LENGTH_WEIGHT * length_score
    confidence += STRICT_PARSE_BONUS if via == "strict" else FALLBACK_PARSE_BONUS
    if boilerplate:
        confidence -= BOILERPLATE_PENALTY
    return round(max(0.05, min(1.0, confidence)), 4)
