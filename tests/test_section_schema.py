import unittest

from analysis_worker.errors import SchemaViolationError
from analysis_worker.section_schema import DEFAULT_SCHEMA, has_boilerplate, is_placeholder


class SectionSchemaUnitTests(unittest.TestCase):
    def test_default_schema_has_nine_sections(self):
        self.assertEqual(len(DEFAULT_SCHEMA.sections), 9)
        self.assertEqual(DEFAULT_SCHEMA.section_ids()[0], "key_info")
        self.assertEqual(DEFAULT_SCHEMA.total_fields, sum(len(s.fields) for s in DEFAULT_SCHEMA.sections))

    def test_placeholders_are_rejected(self):
        for value in ("N/A", "  not available. ", "[Insert analysis here]", "TBD", ""):
            self.assertTrue(is_placeholder(value), value)
            with self.assertRaises(SchemaViolationError):
                DEFAULT_SCHEMA.normalize("questioning", "analysis", value)
        self.assertFalse(is_placeholder("The coach used open questions throughout."))

    def test_text_needs_minimum_length(self):
        with self.assertRaises(SchemaViolationError) as ctx:
            DEFAULT_SCHEMA.normalize("language", "analysis", "Good.")
        self.assertEqual(ctx.exception.field_id, "analysis")
        text = "  Clear, short instructions with frequent checks for understanding.  "
        self.assertEqual(DEFAULT_SCHEMA.normalize("language", "analysis", text), text.strip())

    def test_score_accepts_numbers_and_strings(self):
        self.assertEqual(DEFAULT_SCHEMA.normalize("language", "clarity_score", 7), 7.0)
        self.assertEqual(DEFAULT_SCHEMA.normalize("language", "clarity_score", "8/10"), 8.0)
        self.assertEqual(DEFAULT_SCHEMA.normalize("language", "clarity_score", "6.5 out of 10"), 6.5)
        for bad in (11, -1, "great", True, [7]):
            self.assertFalse(DEFAULT_SCHEMA.is_valid("language", "clarity_score", bad), bad)

    def test_count_must_be_whole(self):
        self.assertEqual(DEFAULT_SCHEMA.normalize("questioning", "total_questions", "14 questions"), 14)
        self.assertFalse(DEFAULT_SCHEMA.is_valid("questioning", "total_questions", 2.5))

    def test_list_from_string_and_placeholder_items(self):
        value = "- Use names more often\n- Shorter demos\n- N/A"
        self.assertEqual(
            DEFAULT_SCHEMA.normalize("coach_specific", "development_priorities", value),
            ["Use names more often", "Shorter demos"],
        )
        self.assertEqual(
            DEFAULT_SCHEMA.normalize("comments", "key_highlights", "energy, praise, clear demo"),
            ["energy", "praise", "clear demo"],
        )
        self.assertFalse(DEFAULT_SCHEMA.is_valid("comments", "key_highlights", ["n/a", None, ""]))

    def test_mapping_drops_empty_entries(self):
        value = {"open": 9, "closed": 4, "rhetorical": None}
        self.assertEqual(DEFAULT_SCHEMA.normalize("questioning", "question_types", value), {"open": 9, "closed": 4})
        self.assertFalse(DEFAULT_SCHEMA.is_valid("questioning", "question_types", {}))
        self.assertFalse(DEFAULT_SCHEMA.is_valid("questioning", "question_types", "open: 9"))

    def test_unknown_field_is_a_violation(self):
        with self.assertRaises(SchemaViolationError):
            DEFAULT_SCHEMA.normalize("questioning", "nonexistent", "value")
        self.assertIsNone(DEFAULT_SCHEMA.field_spec("nope", "analysis"))

    def test_boilerplate_detection(self):
        self.assertTrue(has_boilerplate("As an AI language model I cannot watch the session."))
        self.assertFalse(has_boilerplate('{"analysis": "Clear instructions."}'))


if __name__ == "__main__":
    unittest.main()
