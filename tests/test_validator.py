import unittest

from analysis_worker.confidence import field_confidence
from analysis_worker.models import FieldAttempt, GapCause, Report
from analysis_worker.section_schema import FieldKind, FieldSpec
from analysis_worker.validator import CompletenessValidator, attempt_cause, infer_cause

from tests.fakes import VALUE, make_settings, small_schema


def _attempt(**kwargs) -> FieldAttempt:
    values = dict(provider_id="alpha", pass_index=1, timeout=60.0, output_ceiling_chars=16000)
    values.update(kwargs)
    return FieldAttempt(**values)


class CauseInferenceUnitTests(unittest.TestCase):
    def test_single_attempt_causes(self):
        self.assertEqual(attempt_cause(_attempt(error_kind="timeout")), GapCause.TIMEOUT)
        self.assertEqual(attempt_cause(_attempt(latency=61.0, output_chars=500)), GapCause.TIMEOUT)
        self.assertEqual(attempt_cause(_attempt(error_kind="quota")), GapCause.QUOTA_EXCEEDED)
        self.assertEqual(attempt_cause(_attempt(error_kind="token_limit")), GapCause.TOKEN_LIMIT)
        self.assertEqual(attempt_cause(_attempt(truncated=True, output_chars=900)), GapCause.TOKEN_LIMIT)
        self.assertEqual(attempt_cause(_attempt(output_chars=15500, parse_status="partial")), GapCause.TOKEN_LIMIT)
        self.assertEqual(attempt_cause(_attempt(error_kind="parse", output_chars=50)), GapCause.PARSE_FAILURE)
        self.assertEqual(attempt_cause(_attempt(output_chars=50, parse_status="ok", violation="placeholder value")),
                         GapCause.PARSE_FAILURE)
        self.assertEqual(attempt_cause(_attempt(output_chars=200, parse_status="partial")), GapCause.UNKNOWN)
        self.assertEqual(attempt_cause(_attempt(error_kind="transient")), GapCause.UNKNOWN)

    def test_precedence_when_attempts_disagree(self):
        attempts = [
            _attempt(error_kind="parse", output_chars=20),
            _attempt(provider_id="beta", error_kind="quota"),
            _attempt(provider_id="gamma", truncated=True, output_chars=100),
        ]
        self.assertEqual(infer_cause(attempts), GapCause.QUOTA_EXCEEDED)
        attempts.append(_attempt(provider_id="delta", error_kind="timeout"))
        self.assertEqual(infer_cause(attempts), GapCause.TIMEOUT)
        self.assertEqual(infer_cause([]), GapCause.UNKNOWN)


class CompletenessValidatorUnitTests(unittest.TestCase):
    def setUp(self):
        self.schema = small_schema(4)
        self.validator = CompletenessValidator(make_settings())

    def test_score_and_gaps(self):
        report = Report(self.schema, job_id="j1")
        report.offer("s1", "summary", VALUE, 0.8, "alpha", 1)
        report.offer("s3", "summary", VALUE, 0.8, "alpha", 1)
        report.record_attempts("s2", "summary", [_attempt(error_kind="timeout")])

        score, gaps = self.validator.validate(report)
        self.assertAlmostEqual(score, 0.5)
        self.assertEqual([g.key for g in gaps], [("s2", "summary"), ("s4", "summary")])
        self.assertEqual(gaps[0].cause, GapCause.TIMEOUT)
        self.assertEqual(gaps[1].cause, GapCause.UNKNOWN)

    def test_validate_is_pure(self):
        report = Report(self.schema)
        report.offer("s1", "summary", VALUE, 0.8, "alpha", 1)
        first = self.validator.validate(report)
        second = self.validator.validate(report)
        self.assertEqual(first[0], second[0])
        self.assertEqual([g.to_dict() for g in first[1]], [g.to_dict() for g in second[1]])
        self.assertEqual(report.filled_count(), 1)

    def test_section_breakdown(self):
        report = Report(self.schema)
        report.offer("s1", "summary", VALUE, 0.8, "alpha", 1)
        breakdown = self.validator.section_breakdown(report)
        self.assertEqual(breakdown["sections_completed"], 1)
        self.assertEqual(breakdown["total_sections"], 4)
        self.assertEqual(breakdown["sections"]["s2"]["missing_fields"], ["summary"])
        self.assertEqual(breakdown["sections"]["s2"]["severity"], "critical")


class ReportMergeUnitTests(unittest.TestCase):
    def test_higher_confidence_wins_and_never_downgrades(self):
        report = Report(small_schema(1))
        self.assertTrue(report.offer("s1", "summary", VALUE, 0.6, "alpha", 1))
        self.assertFalse(report.offer("s1", "summary", "A shorter but valid summary text.", 0.5, "beta", 1))
        self.assertFalse(report.offer("s1", "summary", "An equally confident replacement.", 0.6, "beta", 1))
        self.assertEqual(report.get("s1", "summary"), VALUE)
        better = VALUE + " Sessions ended with a clear recap of the objectives."
        self.assertTrue(report.offer("s1", "summary", better, 0.9, "beta", 2))
        self.assertEqual(report.entry("s1", "summary").provider_id, "beta")

    def test_frozen_report_rejects_offers(self):
        report = Report(small_schema(1), job_id="j1")
        report.freeze()
        self.assertFalse(report.offer("s1", "summary", VALUE, 0.9, "alpha", 1))
        self.assertFalse(report.is_filled("s1", "summary"))

    def test_missing_fields_render_as_missing(self):
        report = Report(small_schema(2))
        report.offer("s1", "summary", VALUE, 0.7, "alpha", 1)
        self.assertEqual(report.to_dict(), {"s1": {"summary": VALUE}, "s2": {"summary": "missing"}})
        with_conf = report.to_dict(include_confidence=True)
        self.assertEqual(with_conf["s1"]["summary"]["provider_id"], "alpha")

    def test_attempts_keep_latest_pass_only(self):
        report = Report(small_schema(1))
        report.record_attempts("s1", "summary", [_attempt(pass_index=1, error_kind="timeout")])
        report.record_attempts("s1", "summary", [_attempt(pass_index=2, error_kind="parse", output_chars=10)])
        self.assertEqual([a.error_kind for a in report.attempts("s1", "summary")], ["parse"])


class ConfidenceUnitTests(unittest.TestCase):
    def test_ordering(self):
        spec = FieldSpec("analysis", FieldKind.TEXT, "Narrative")
        short = field_confidence(spec, "A" * 40)
        rich = field_confidence(spec, "A" * 400)
        fallback = field_confidence(spec, "A" * 400, via="fallback")
        boiler = field_confidence(spec, "A" * 400, boilerplate=True)
        self.assertLess(short, rich)
        self.assertLess(fallback, rich)
        self.assertLess(boiler, rich)
        self.assertLessEqual(rich, 1.0)


if __name__ == "__main__":
    unittest.main()
