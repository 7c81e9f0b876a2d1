"""
Parsing of provider answers into report fields.

Every answer ends up as one of three tagged results so the merge step never
has to guess at shape:

* :class:`ParseOk` - every expected field was found.
* :class:`ParsePartial` - some fields found, the rest listed in ``missing``.
* :class:`ParseError` - nothing usable; the raw text is kept for audit.

Strict JSON parsing is tried first. When it fails (truncated JSON, prose
around the object, markdown), heuristic extraction pulls individual
``"field": value`` fragments and ``Field: value`` lines out of the text so a
malformed answer still contributes whatever it got right.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from .section_schema import FieldKind, SectionSchema

FieldKey = Tuple[str, str]

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)
_decoder = json.JSONDecoder()


@dataclass
class ParseOk:
    fields: Dict[str, Dict[str, Any]]
    via: str = "strict"

    @property
    def status(self) -> str:
        return "ok"


@dataclass
class ParsePartial:
    fields: Dict[str, Dict[str, Any]]
    missing: List[FieldKey] = field(default_factory=list)
    via: str = "strict"

    @property
    def status(self) -> str:
        return "partial"


@dataclass
class ParseError:
    raw: str
    reason: str = "unparseable"

    @property
    def status(self) -> str:
        return "error"

    @property
    def fields(self) -> Dict[str, Dict[str, Any]]:
        return {}


ParseResult = Union[ParseOk, ParsePartial, ParseError]


def _norm_key(key: str) -> str:
    return re.sub(r"[^a-z0-9]", "", str(key).lower())


def _camel(snake: str) -> str:
    head, *rest = snake.split("_")
    return head + "".join(p.title() for p in rest)


def _aliases(identifier: str) -> List[str]:
    return [identifier, _camel(identifier), identifier.replace("_", " ")]


def load_json_object(raw: str) -> Optional[Dict[str, Any]]:
    """Return the JSON object in ``raw`` (tolerating fences and chatter), or None."""
    text = _FENCE_RE.sub("", (raw or "").strip())
    if not text:
        return None
    try:
        data = json.loads(text)
        return data if isinstance(data, dict) else None
    except json.JSONDecodeError:
        pass
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _lookup(mapping: Dict[str, Any], identifier: str) -> Any:
    if identifier in mapping:
        return mapping[identifier]
    wanted = _norm_key(identifier)
    for key, value in mapping.items():
        if _norm_key(key) == wanted:
            return value
    return None


def _from_object(data: Dict[str, Any], expected: List[FieldKey]) -> Dict[str, Dict[str, Any]]:
    found: Dict[str, Dict[str, Any]] = {}
    single = len(expected) == 1
    for section_id, field_id in expected:
        value = None
        section_data = _lookup(data, section_id)
        if isinstance(section_data, dict):
            value = _lookup(section_data, field_id)
        if value is None and single:
            value = data.get("value")
            if value is None:
                value = _lookup(data, field_id)
        if value is not None:
            found.setdefault(section_id, {})[field_id] = value
    return found


def _section_spans(text: str, schema: SectionSchema, section_ids: List[str]) -> Dict[str, Tuple[int, int]]:
    """Locate each section's region of ``text`` by the position of its key or title."""
    starts: List[Tuple[int, str]] = []
    for section_id in section_ids:
        names = _aliases(section_id) + [schema.section(section_id).title]
        pattern = "|".join(re.escape(n) for n in names)
        m = re.search(rf"\"(?:{pattern})\"\s*:", text, re.IGNORECASE)
        if m is None:
            m = re.search(rf"^[ \t#*]*(?:{pattern})\b", text, re.IGNORECASE | re.MULTILINE)
        if m:
            starts.append((m.start(), section_id))
    starts.sort()
    spans: Dict[str, Tuple[int, int]] = {}
    for i, (pos, section_id) in enumerate(starts):
        end = starts[i + 1][0] if i + 1 < len(starts) else len(text)
        spans[section_id] = (pos, end)
    return spans


def _extract_fragment(region: str, field_id: str) -> Any:
    for alias in _aliases(field_id):
        # JSON-ish fragment: "field": <value>
        m = re.search(rf"\"{re.escape(alias)}\"\s*:\s*", region, re.IGNORECASE)
        if m:
            try:
                value, _ = _decoder.raw_decode(region, m.end())
                return value
            except json.JSONDecodeError:
                # Truncated string: keep what was written up to the cut.
                tail = region[m.end():]
                if tail.startswith("\""):
                    salvaged = tail[1:].split("\"", 1)[0].strip()
                    if salvaged:
                        return salvaged
        # Prose line: "Field name: value" (optionally bulleted / bold)
        label = re.escape(alias).replace(r"\ ", r"[\s_]+")
        m = re.search(rf"^[ \t]*(?:[-*#]+[ \t]*)?\**{label}\**[ \t]*[:\-–][ \t]*(.+)$",
                      region, re.IGNORECASE | re.MULTILINE)
        if m:
            return m.group(1).strip().strip("*").strip()
    return None


def extract_fields_from_text(raw: str, schema: SectionSchema,
                             expected: List[FieldKey]) -> Dict[str, Dict[str, Any]]:
    """Heuristic field extraction used when the answer is not valid JSON."""
    text = _FENCE_RE.sub("", raw or "")
    if not text.strip():
        return {}
    section_ids = list(dict.fromkeys(s for s, _ in expected))
    spans = _section_spans(text, schema, section_ids) if len(section_ids) > 1 else {}
    found: Dict[str, Dict[str, Any]] = {}
    for section_id, field_id in expected:
        if len(section_ids) > 1:
            if section_id not in spans:
                continue
            start, end = spans[section_id]
            region = text[start:end]
        else:
            region = text
        value = _extract_fragment(region, field_id)
        if value is None and len(expected) == 1:
            spec = schema.field_spec(section_id, field_id)
            # A bare prose answer to a single text/list question is the answer itself.
            if spec is not None and spec.kind in (FieldKind.TEXT, FieldKind.LIST) and "{" not in text:
                value = text.strip()
        if value is not None:
            found.setdefault(section_id, {})[field_id] = value
    return found


def _missing(found: Dict[str, Dict[str, Any]], expected: List[FieldKey]) -> List[FieldKey]:
    return [(s, f) for s, f in expected if f not in found.get(s, {})]


def parse_output(raw: str, schema: SectionSchema, expected: List[FieldKey]) -> ParseResult:
    """Parse a provider answer for the ``expected`` (section, field) pairs."""
    if not raw or not raw.strip():
        return ParseError(raw=raw or "", reason="empty output")

    data = load_json_object(raw)
    if data is not None:
        found = _from_object(data, expected)
        missing = _missing(found, expected)
        if not missing:
            return ParseOk(fields=found, via="strict")
        return ParsePartial(fields=found, missing=missing, via="strict")

    found = extract_fields_from_text(raw, schema, expected)
    if not found:
        return ParseError(raw=raw, reason="no JSON object and no extractable fields")
    missing = _missing(found, expected)
    if not missing:
        return ParseOk(fields=found, via="fallback")
    return ParsePartial(fields=found, missing=missing, via="fallback")
