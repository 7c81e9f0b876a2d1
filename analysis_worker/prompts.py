import json
from typing import Dict, List, Optional

from .providers import Prompt
from .section_schema import FieldKind, FieldSpec, SectionSchema


def build_system_prompt(instruction: str="", example: str="", json_schema: str="") -> str:
    delimiter = "\n\n---\n\n"
    schema = f"Your answer should be in JSON and strictly follow this schema, filling in the fields in the order they are given:\n```\n{json_schema}\n```" if json_schema else ""
    if example:
        example = delimiter + example.strip()
    if schema:
        schema = delimiter + schema.strip()

    system_prompt = instruction.strip() + schema + example
    return system_prompt


_KIND_HINTS = {
    FieldKind.TEXT: "string, at least two full sentences",
    FieldKind.SCORE: "number between 0 and 10",
    FieldKind.COUNT: "whole number",
    FieldKind.NUMBER: "number",
    FieldKind.LIST: "array of strings",
    FieldKind.MAPPING: "object of label -> number or string",
}


def field_hint(spec: FieldSpec) -> str:
    return f"<{_KIND_HINTS[spec.kind]}: {spec.description}>"


def render_json_schema(schema: SectionSchema, section_ids: Optional[List[str]] = None) -> str:
    """Render the expected answer shape as an annotated JSON skeleton."""
    skeleton: Dict[str, Dict[str, str]] = {}
    for section in schema.sections:
        if section_ids is not None and section.section_id not in section_ids:
            continue
        skeleton[section.section_id] = {f.field_id: field_hint(f) for f in section.fields}
    return json.dumps(skeleton, indent=2)


class SessionAnalysisPrompt:
    instruction = """
You are an expert football coach educator analysing the transcript of a coaching session.
Evaluate the coach's questioning, language, behaviours, player engagement, intended outcomes and
coaching style, grounding every statement in what was actually said in the transcript.
Fill every field of every section. Use concrete evidence and quotes from the transcript.
Never write placeholder text such as "N/A", "not available" or "[insert ...]": if the transcript
does not allow an answer, give your best evidence-based estimate and say what it rests on.
"""

    example = r"""
Example (one section shown):
{
  "questioning": {
    "total_questions": 14,
    "question_types": {"open": 9, "closed": 4, "rhetorical": 1},
    "examples": ["What could you do differently when the defender steps up?", "Where is the space?"],
    "effectiveness": 7,
    "analysis": "The coach mostly used open questions to prompt reflection after each rep. Closed questions were used to check understanding of the rules."
  }
}
"""


class TargetedFieldPrompt:
    instruction = """
You are an expert football coach educator. You will receive an excerpt of a coaching session
transcript and must answer exactly one field of an analysis report, grounded in the excerpt.
Never write placeholder text such as "N/A", "not available" or "[insert ...]".
"""

    strict_format = """
OUTPUT FORMAT IS MANDATORY: reply with a single JSON object and nothing else.
No markdown, no code fences, no commentary before or after the JSON.
The object must have exactly one key, "value", holding the answer in the required type.
"""


def build_full_pass_prompt(schema: SectionSchema, transcript: str, session_context: str = "") -> Prompt:
    system = build_system_prompt(
        instruction=SessionAnalysisPrompt.instruction,
        example=SessionAnalysisPrompt.example,
        json_schema=render_json_schema(schema),
    )
    context = f"Session context: {session_context}\n\n" if session_context else ""
    user = f"{context}Transcript:\n\"\"\"\n{transcript.strip()}\n\"\"\""
    return Prompt(system=system, user=user)


def build_targeted_prompt(schema: SectionSchema, section_id: str, field_id: str,
                          excerpt: str, strict: bool = False,
                          session_context: str = "") -> Prompt:
    section = schema.section(section_id)
    spec = schema.field_spec(section_id, field_id)
    if spec is None:
        raise KeyError(f"{section_id}.{field_id} is not part of the schema")
    instruction = TargetedFieldPrompt.instruction
    if strict:
        instruction = instruction + TargetedFieldPrompt.strict_format
    system = build_system_prompt(
        instruction=instruction,
        json_schema=json.dumps({"value": field_hint(spec)}, indent=2),
    )
    context = f"Session context: {session_context}\n" if session_context else ""
    user = (
        f"{context}Report section: {section.title} ({section_id})\n"
        f"Field: {field_id} - {spec.description}\n\n"
        f"Transcript excerpt:\n\"\"\"\n{excerpt.strip()}\n\"\"\""
    )
    return Prompt(system=system, user=user)
