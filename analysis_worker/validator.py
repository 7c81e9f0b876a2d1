import logging
from typing import Any, Dict, List, Optional, Tuple

from .models import CAUSE_PRECEDENCE, FieldAttempt, Gap, GapCause, Report
from .settings import WorkerSettings, settings as default_settings

logger = logging.getLogger(__name__)


def attempt_cause(attempt: FieldAttempt, token_limit_ratio: float = 0.95) -> GapCause:
    """Probable reason a single provider call did not fill a field."""
    if attempt.error_kind == "timeout" or (attempt.timeout > 0 and attempt.latency > attempt.timeout):
        return GapCause.TIMEOUT
    if attempt.error_kind == "quota":
        return GapCause.QUOTA_EXCEEDED
    near_ceiling = (
        attempt.output_ceiling_chars > 0
        and attempt.output_chars >= token_limit_ratio * attempt.output_ceiling_chars
    )
    if attempt.error_kind == "token_limit" or attempt.truncated or near_ceiling:
        return GapCause.TOKEN_LIMIT
    if attempt.error_kind == "parse":
        return GapCause.PARSE_FAILURE
    if attempt.output_chars > 0 and (attempt.parse_status == "error" or attempt.violation):
        return GapCause.PARSE_FAILURE
    return GapCause.UNKNOWN


def infer_cause(attempts: List[FieldAttempt], token_limit_ratio: float = 0.95) -> GapCause:
    if not attempts:
        return GapCause.UNKNOWN
    causes = {attempt_cause(a, token_limit_ratio) for a in attempts}
    for cause in CAUSE_PRECEDENCE:
        if cause in causes:
            return cause
    return GapCause.UNKNOWN


class CompletenessValidator:
    """
    Scores a report against its section schema.

    ``validate`` is a pure function of the report: it reads values and the
    recorded attempts, and never mutates anything.
    """

    def __init__(self, config: Optional[WorkerSettings] = None):
        self.config = config or default_settings

    def validate(self, report: Report) -> Tuple[float, List[Gap]]:
        schema = report.schema
        total = schema.total_fields
        filled = 0
        gaps: List[Gap] = []
        for section_id, spec in schema.iter_fields():
            value = report.get(section_id, spec.field_id)
            if report.is_filled(section_id, spec.field_id) and schema.is_valid(section_id, spec.field_id, value):
                filled += 1
                continue
            cause = infer_cause(report.attempts(section_id, spec.field_id), self.config.token_limit_ratio)
            gaps.append(Gap(section_id=section_id, field_id=spec.field_id, cause=cause))
        score = filled / total if total else 1.0
        return score, gaps

    def section_breakdown(self, report: Report) -> Dict[str, Any]:
        """Per-section quality metrics: sections completed and fields missing."""
        schema = report.schema
        sections: Dict[str, Dict[str, Any]] = {}
        sections_completed = 0
        for section in schema.sections:
            missing = [
                f.field_id for f in section.fields
                if not (report.is_filled(section.section_id, f.field_id)
                        and schema.is_valid(section.section_id, f.field_id,
                                            report.get(section.section_id, f.field_id)))
            ]
            if not missing:
                sections_completed += 1
            sections[section.section_id] = {
                "filled": len(section.fields) - len(missing),
                "total": len(section.fields),
                "missing_fields": missing,
                # more than half of the section gone is treated as critical
                "severity": ("complete" if not missing
                             else "critical" if len(missing) > len(section.fields) / 2
                             else "moderate"),
            }
        return {
            "sections_completed": sections_completed,
            "total_sections": len(schema.sections),
            "sections": sections,
        }
