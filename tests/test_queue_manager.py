import threading
import time
import unittest

from analysis_worker.api import analyze, job
from analysis_worker.errors import (
    AlreadyActiveError,
    FatalConfigurationError,
    JobNotFoundError,
    ProviderTimeoutError,
)
from analysis_worker.models import JobState
from analysis_worker.orchestrator import AnalysisOrchestrator
from analysis_worker.queue_manager import JobQueueManager
from analysis_worker.report_store import InMemoryReportStore
from analysis_worker.schemas import AnalysisRequest
from analysis_worker.transcripts import StaticTranscriptSource

from tests.fakes import (
    TRANSCRIPT,
    VALUE,
    RecordingCallback,
    ScriptedProvider,
    answer_sections,
    answer_value,
    make_settings,
    small_schema,
    wait_until,
)


class _RecordingSource(StaticTranscriptSource):
    def __init__(self, transcripts):
        super().__init__(transcripts)
        self.order = []

    def get_transcript(self, media_ref):
        self.order.append(media_ref)
        return super().get_transcript(media_ref)


class JobQueueManagerUnitTests(unittest.TestCase):
    def setUp(self):
        self.schema = small_schema(9)
        self.sections = self.schema.section_ids()
        self.managers = []

    def tearDown(self):
        for manager in self.managers:
            manager.stop(wait=True, cancel_active=True)

    def _manager(self, providers=None, media=("m1",), source=None, **overrides):
        config = make_settings(**overrides)
        providers = providers or [ScriptedProvider("alpha"), ScriptedProvider("beta")]
        orch = AnalysisOrchestrator(providers, schema=self.schema, config=config)
        self.callback = RecordingCallback()
        self.store = InMemoryReportStore()
        manager = JobQueueManager(
            orch,
            source or StaticTranscriptSource({m: TRANSCRIPT for m in media}),
            report_store=self.store,
            config=config,
            callbacks=[self.callback],
        )
        self.managers.append(manager)
        return manager

    # ── Enqueue semantics (no workers running) ──────────────────────────────

    def test_enqueue_is_idempotent_while_active(self):
        manager = self._manager()
        first = manager.enqueue("m1")
        second = manager.enqueue("m1", priority=5)
        self.assertEqual(first, second)
        self.assertEqual(manager.queue_status()["queued"], 1)
        self.assertEqual(manager.get_status(first).state, JobState.QUEUED)

    def test_reject_if_active_raises_conflict(self):
        manager = self._manager()
        first = manager.enqueue("m1")
        with self.assertRaises(AlreadyActiveError) as ctx:
            manager.enqueue("m1", reject_if_active=True)
        self.assertEqual(ctx.exception.job_id, first)

        response = analyze(manager, AnalysisRequest(media_ref="m1"))
        self.assertTrue(response.conflict)
        self.assertEqual(response.job_id, first)

    def test_force_supersedes_active_job(self):
        manager = self._manager()
        first = manager.enqueue("m1")
        response = analyze(manager, AnalysisRequest(media_ref="m1", force_reanalysis=True))
        second = response.job_id

        self.assertFalse(response.conflict)
        self.assertNotEqual(first, second)
        prior = manager.get_status(first)
        self.assertEqual(prior.state, JobState.FAILED)
        self.assertEqual(prior.superseded_by, second)
        self.assertEqual(manager.active_job_for("m1"), second)
        self.assertEqual([p.job_id for p in self.callback.payloads], [first])
        self.assertEqual(self.store.get(first).superseded_by, second)

    def test_cancel_queued_job(self):
        manager = self._manager()
        job_id = manager.enqueue("m1")
        self.assertTrue(manager.cancel(job_id))
        self.assertFalse(manager.cancel(job_id))
        self.assertEqual(manager.get_status(job_id).state, JobState.FAILED)
        self.assertIsNone(manager.active_job_for("m1"))
        self.assertEqual(len(self.callback.payloads), 1)
        self.assertEqual(self.callback.payloads[0].final_state, "failed")
        # a new request for the same media is accepted once nothing is active
        self.assertNotEqual(manager.enqueue("m1"), job_id)

    def test_unknown_job(self):
        manager = self._manager()
        with self.assertRaises(JobNotFoundError):
            manager.get_status("nope")
        with self.assertRaises(JobNotFoundError):
            manager.cancel("nope")

    def test_terminal_state_is_immutable(self):
        from analysis_worker.errors import InvalidTransitionError
        manager = self._manager()
        job_id = manager.enqueue("m1")
        manager.cancel(job_id)
        with self.assertRaises(InvalidTransitionError):
            manager.get_status(job_id).transition(JobState.RUNNING)

    # ── Running jobs ────────────────────────────────────────────────────────

    def test_all_providers_complete(self):
        manager = self._manager()
        manager.start()
        job_id = manager.enqueue("m1")

        finished = manager.wait(job_id, timeout=10)

        self.assertEqual(finished.state, JobState.COMPLETE)
        self.assertEqual(finished.history, [JobState.QUEUED, JobState.RUNNING, JobState.COMPLETE])
        self.assertEqual(finished.gaps, [])
        self.assertEqual(finished.completeness_score, 1.0)
        self.assertTrue(finished.report.frozen)
        payload = self.store.get(job_id)
        self.assertEqual(payload.final_state, "complete")
        self.assertEqual(payload.report["s1"]["summary"], VALUE)
        self.assertEqual(payload.quality["sections_completed"], 9)
        self.assertEqual(len(self.callback.payloads), 1)
        self.assertIsNone(manager.active_job_for("m1"))

    def test_timeout_gaps_filled_by_targeted_retry(self):
        def too_slow(prompt):
            raise ProviderTimeoutError("no answer in time", "beta")

        alpha = ScriptedProvider("alpha", full=lambda p: answer_sections(self.sections[:7]))
        beta = ScriptedProvider("beta", full=too_slow)
        manager = self._manager([alpha, beta], provider_call_timeout_s=2.0, timeout_retry_multiplier=2.0)
        manager.start()
        job_id = manager.enqueue("m1")

        finished = manager.wait(job_id, timeout=10)

        self.assertEqual(finished.state, JobState.COMPLETE)
        self.assertIn(JobState.AWAITING_GAP_FILL, finished.history)
        self.assertEqual(finished.attempts_used, 1)
        targeted = alpha.calls_of("targeted") + beta.calls_of("targeted")
        self.assertEqual(sorted(c["section_id"] for c in targeted), ["s8", "s9"])
        self.assertTrue(all(c["timeout"] == 4.0 for c in targeted))

    def test_budget_exhausted_is_partial_with_single_gap(self):
        alpha = ScriptedProvider(
            "alpha",
            full=lambda p: answer_sections(self.sections[:8]),
            targeted=lambda s, f, p: answer_value("N/A"),
        )
        manager = self._manager([alpha], retry_budget_passes=5, max_attempts_per_gap=10)
        manager.start()
        job_id = manager.enqueue("m1")

        finished = manager.wait(job_id, timeout=10)

        self.assertEqual(finished.state, JobState.PARTIAL)
        self.assertEqual(finished.attempts_used, 5)
        self.assertEqual([g.key for g in finished.gaps], [("s9", "summary")])
        self.assertAlmostEqual(finished.completeness_score, 8 / 9)
        payload = self.callback.payloads[0]
        self.assertEqual(payload.final_state, "partial")
        self.assertEqual(payload.report["s9"]["summary"], "missing")
        self.assertEqual(payload.gaps[0].cause, "parse_failure")

    def test_missing_transcript_fails(self):
        manager = self._manager(media=())
        manager.start()
        job_id = manager.enqueue("ghost")

        finished = manager.wait(job_id, timeout=10)

        self.assertEqual(finished.state, JobState.FAILED)
        self.assertIn("ghost", finished.error)
        self.assertEqual(self.store.get(job_id).final_state, "failed")

    def test_priority_order_then_fifo(self):
        source = _RecordingSource({m: TRANSCRIPT for m in ("a", "b", "c", "d")})
        manager = self._manager(source=source)
        ids = [manager.enqueue("a"), manager.enqueue("b", priority=5),
               manager.enqueue("c", priority=5), manager.enqueue("d")]
        manager.start()
        for job_id in ids:
            manager.wait(job_id, timeout=10)

        self.assertEqual(source.order, ["b", "c", "a", "d"])

    def test_status_shows_gaps_mid_run_and_cancel_discards(self):
        release = threading.Event()

        def held(section_id, field_id, prompt):
            release.wait(5)
            return answer_value(VALUE)

        alpha = ScriptedProvider("alpha", full=lambda p: answer_sections(self.sections[:8]), targeted=held)
        manager = self._manager([alpha])
        manager.start()
        job_id = manager.enqueue("m1")
        try:
            self.assertTrue(wait_until(lambda: len(alpha.calls_of("targeted")) == 1))
            view = job(manager, job_id)
            self.assertEqual(view.state, "awaiting_gap_fill")
            self.assertEqual([(g.section_id, g.field_id) for g in view.gaps], [("s9", "summary")])
            self.assertAlmostEqual(view.completeness_score, round(8 / 9, 4))
            self.assertEqual(view.report["s1"]["summary"], VALUE)

            self.assertTrue(manager.cancel(job_id))
        finally:
            release.set()

        finished = manager.wait(job_id, timeout=10)
        self.assertEqual(finished.state, JobState.FAILED)
        self.assertFalse(finished.report.is_filled("s9", "summary"))
        self.assertTrue(wait_until(lambda: manager.queue_status()["in_progress"] == 0))
        self.assertEqual(len(self.callback.payloads), 1)
        self.assertEqual(self.callback.payloads[0].error, "cancelled")

    def test_superseding_mid_pass_frees_the_worker(self):
        first_call = threading.Event()
        release = threading.Event()
        calls = []

        def full(prompt):
            calls.append(prompt)
            if len(calls) == 1:
                first_call.set()
                release.wait(10)
            return answer_sections(self.sections)

        manager = self._manager([ScriptedProvider("alpha", full=full)], worker_concurrency=1, pass_timeout_s=8.0)
        manager.start()
        first = manager.enqueue("m1")
        try:
            self.assertTrue(first_call.wait(5))
            began = time.monotonic()
            second = manager.enqueue("m1", force_reanalysis=True)
            finished = manager.wait(second, timeout=5)
            elapsed = time.monotonic() - began
        finally:
            release.set()

        self.assertLess(elapsed, 2.0)
        self.assertEqual(finished.state, JobState.COMPLETE)
        self.assertEqual(manager.get_status(first).state, JobState.FAILED)
        self.assertEqual(manager.get_status(first).superseded_by, second)

    def test_job_deadline_finalizes_partial(self):
        def slow(section_id, field_id, prompt):
            time.sleep(1.0)
            return answer_value(VALUE)

        alpha = ScriptedProvider("alpha", full=lambda p: answer_sections(self.sections[:7]), targeted=slow)
        manager = self._manager([alpha], job_deadline_s=0.5)
        manager.start()
        began = time.monotonic()
        job_id = manager.enqueue("m1")

        finished = manager.wait(job_id, timeout=10)

        self.assertLess(time.monotonic() - began, 2.0)
        self.assertEqual(finished.state, JobState.PARTIAL)
        self.assertEqual(sorted(g.key for g in finished.gaps), [("s8", "summary"), ("s9", "summary")])
        self.assertAlmostEqual(finished.completeness_score, 7 / 9)
        self.assertEqual(self.store.get(job_id).final_state, "partial")

    def test_rejected_configuration_fails_job(self):
        def bad_key(prompt):
            raise FatalConfigurationError("alpha rejected credentials: 401")

        manager = self._manager([ScriptedProvider("alpha", full=bad_key)])
        manager.start()
        job_id = manager.enqueue("m1")

        finished = manager.wait(job_id, timeout=10)

        self.assertEqual(finished.state, JobState.FAILED)
        self.assertIn("rejected credentials", finished.error)
        self.assertIsNone(finished.report)
        self.assertEqual(self.callback.payloads[0].final_state, "failed")

    def test_finished_jobs_beyond_retention_are_served_from_store(self):
        manager = self._manager(media=("m1", "m2", "m3"), finished_job_retention=2)
        manager.start()
        ids = []
        for media in ("m1", "m2", "m3"):
            job_id = manager.enqueue(media)
            manager.wait(job_id, timeout=10)
            ids.append(job_id)

        with self.assertRaises(JobNotFoundError):
            manager.get_status(ids[0])
        self.assertEqual(manager.get_status(ids[2]).state, JobState.COMPLETE)
        self.assertEqual(sum(manager.queue_status()["states"].values()), 2)
        self.assertEqual(manager._tokens, {})

        view = job(manager, ids[0])
        self.assertEqual(view.state, "complete")
        self.assertEqual(view.report["s1"]["summary"], VALUE)
        with self.assertRaises(JobNotFoundError):
            job(manager, "nope")

    def test_at_most_one_active_job_per_media(self):
        manager = self._manager(media=("m1",))
        ids = set()

        def hammer():
            for _ in range(20):
                ids.add(manager.enqueue("m1"))

        threads = [threading.Thread(target=hammer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(ids), 1)
        self.assertEqual(manager.queue_status()["active_media"], 1)


if __name__ == "__main__":
    unittest.main()
