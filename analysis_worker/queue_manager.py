import heapq
import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Deque, Dict, List, Optional, Sequence, Set, Tuple

from .callbacks import FinalizationCallback
from .cancellation import CancellationToken
from .context import JobContext, ProviderHealth
from .errors import AlreadyActiveError, FatalConfigurationError, JobNotFoundError, TranscriptUnavailableError
from .models import Gap, Job, JobState, Report
from .orchestrator import AnalysisOrchestrator
from .report_store import InMemoryReportStore, ReportStore
from .retry_engine import GapRetryEngine
from .schemas import FinalizationPayload, GapView
from .settings import WorkerSettings, settings as default_settings
from .transcripts import TranscriptSource
from .validator import CompletenessValidator

logger = logging.getLogger(__name__)


class JobQueueManager:
    """
    Owns the job lifecycle: enqueue, prioritised dispatch to a fixed pool of
    worker threads, cancellation/supersession and finalization.

    A worker holds one job from Running until a terminal state. The
    media_ref -> active job index, the priority heap and every job state
    transition are guarded by one lock; provider calls never run under it.
    Only the newest finished jobs (finished_job_retention) stay in memory;
    older ones are answered from the report store.
    """

    def __init__(
        self,
        orchestrator: AnalysisOrchestrator,
        transcript_source: TranscriptSource,
        report_store: Optional[ReportStore] = None,
        retry_engine: Optional[GapRetryEngine] = None,
        validator: Optional[CompletenessValidator] = None,
        config: Optional[WorkerSettings] = None,
        callbacks: Optional[Sequence[FinalizationCallback]] = None,
    ):
        self.config = config or default_settings
        self.orchestrator = orchestrator
        self.schema = orchestrator.schema
        self.transcript_source = transcript_source
        self.report_store = report_store or InMemoryReportStore()
        self.retry_engine = retry_engine or GapRetryEngine(orchestrator, self.config)
        self.validator = validator or orchestrator.validator
        self.callbacks: List[FinalizationCallback] = list(callbacks or [])

        self._cond = threading.Condition(threading.Lock())
        self._jobs: Dict[str, Job] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._session_context: Dict[str, str] = {}
        self._active_by_media: Dict[str, str] = {}
        self._heap: List[Tuple[int, int, str]] = []
        self._delivered: Set[str] = set()
        self._finished: Deque[str] = deque()
        self._seq = 0
        self._running = False
        self._executor: Optional[ThreadPoolExecutor] = None

    def add_callback(self, callback: FinalizationCallback) -> None:
        self.callbacks.append(callback)

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def start(self) -> None:
        with self._cond:
            if self._running:
                return
            self._running = True
        workers = self.config.worker_concurrency
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="analysis-worker")
        for _ in range(workers):
            self._executor.submit(self._worker_loop)
        logger.info("queue_started workers=%d", workers)

    def stop(self, wait: bool = True, cancel_active: bool = False) -> None:
        """Stop taking jobs; optionally cancel whatever is still active."""
        with self._cond:
            self._running = False
            active = [job_id for job_id in self._active_by_media.values()]
            self._cond.notify_all()
        if cancel_active:
            for job_id in active:
                self.cancel(job_id, reason="worker shutdown")
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        self.orchestrator.shutdown(wait_for_calls=False)
        logger.info("queue_stopped cancelled_active=%s", cancel_active)

    # ── Public operations ───────────────────────────────────────────────────

    def enqueue(self, media_ref: str, priority: int = 0, force_reanalysis: bool = False,
                reject_if_active: bool = False, session_context: Optional[str] = None) -> str:
        if not media_ref:
            raise ValueError("media_ref must not be empty")
        superseded: Optional[FinalizationPayload] = None
        with self._cond:
            active_id = self._active_by_media.get(media_ref)
            if active_id is not None and not force_reanalysis:
                if reject_if_active:
                    raise AlreadyActiveError(media_ref, active_id)
                logger.info("enqueue_existing media=%s job=%s", media_ref, active_id)
                return active_id

            self._seq += 1
            job = Job(media_ref=media_ref, priority=priority, seq=self._seq)
            self._jobs[job.id] = job
            self._tokens[job.id] = CancellationToken()
            if session_context:
                self._session_context[job.id] = session_context

            if active_id is not None:
                prior = self._jobs[active_id]
                prior.superseded_by = job.id
                superseded = self._finalize_locked(prior, JobState.FAILED,
                                                   error=f"superseded by {job.id}")
                logger.info("job_superseded job=%s by=%s media=%s", active_id, job.id, media_ref)

            self._active_by_media[media_ref] = job.id
            heapq.heappush(self._heap, (-priority, job.seq, job.id))
            self._cond.notify()
        logger.info("job_enqueued job=%s media=%s priority=%d forced=%s",
                    job.id, media_ref, priority, force_reanalysis)
        if superseded is not None:
            self._deliver(superseded)
        return job.id

    def cancel(self, job_id: str, reason: str = "cancelled") -> bool:
        """Move a non-terminal job to Failed; False if it had already finished."""
        with self._cond:
            job = self._get_locked(job_id)
            if job.state.is_terminal:
                return False
            payload = self._finalize_locked(job, JobState.FAILED, error=reason)
        logger.info("job_cancelled job=%s reason=%s", job_id, reason)
        self._deliver(payload)
        return True

    def get_status(self, job_id: str) -> Job:
        with self._cond:
            return self._get_locked(job_id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """Block until the job is finalized (persisted and announced) or ``timeout`` elapses."""
        with self._cond:
            job = self._get_locked(job_id)
            self._cond.wait_for(lambda: job_id in self._delivered or job_id not in self._jobs, timeout)
            return job

    def queue_status(self) -> Dict[str, Any]:
        with self._cond:
            states: Dict[str, int] = {}
            for job in self._jobs.values():
                states[job.state.value] = states.get(job.state.value, 0) + 1
            return {
                "running": self._running,
                "workers": self.config.worker_concurrency,
                "queued": states.get(JobState.QUEUED.value, 0),
                "in_progress": (states.get(JobState.RUNNING.value, 0)
                                + states.get(JobState.AWAITING_GAP_FILL.value, 0)),
                "active_media": len(self._active_by_media),
                "states": states,
            }

    def active_job_for(self, media_ref: str) -> Optional[str]:
        with self._cond:
            return self._active_by_media.get(media_ref)

    # ── Worker side ─────────────────────────────────────────────────────────

    def _worker_loop(self) -> None:
        while True:
            claimed = self._next_job()
            if claimed is None:
                return
            job, token = claimed
            try:
                self._run_job(job, token)
            except Exception as e:
                logger.exception(f"Worker crashed on job {job.id}: {e}")

    def _next_job(self) -> Optional[Tuple[Job, CancellationToken]]:
        with self._cond:
            while True:
                while self._running and not self._heap:
                    self._cond.wait()
                if not self._running:
                    return None
                _, _, job_id = heapq.heappop(self._heap)
                job = self._jobs.get(job_id)
                # cancelled or superseded while still queued
                if job is None or job.state != JobState.QUEUED:
                    continue
                job.transition(JobState.RUNNING)
                return job, self._tokens[job_id]

    def _run_job(self, job: Job, token: CancellationToken) -> None:
        started = time.monotonic()
        logger.info("job_start job=%s media=%s priority=%d", job.id, job.media_ref, job.priority)
        try:
            transcript = self.transcript_source.get_transcript(job.media_ref)
        except TranscriptUnavailableError as e:
            logger.error("job_no_transcript job=%s media=%s: %s", job.id, job.media_ref, e)
            self._finish(job, JobState.FAILED, error=str(e))
            return

        ctx = JobContext(
            job=job,
            transcript=transcript,
            schema=self.schema,
            deadline=started + self.config.job_deadline_s,
            cancel=token,
            health=ProviderHealth(self.config.circuit_breaker_threshold),
            session_context=self._session_context.get(job.id, ""),
        )
        try:
            report, gaps = self.orchestrator.run_full_pass(ctx)
            if not self._progress(job, report, gaps):
                return
            exhausted = False
            if gaps:
                if not self._transition(job, JobState.AWAITING_GAP_FILL):
                    return
                report, gaps, exhausted = self.retry_engine.resolve_gaps(
                    ctx, report, gaps, on_pass=lambda r, g: self._progress(job, r, g)
                )
            if ctx.cancelled:
                return
            final_state = JobState.PARTIAL if gaps else JobState.COMPLETE
            self._finish(job, final_state, report=report, gaps=gaps)
            logger.info(
                "job_done job=%s state=%s score=%.3f gaps=%d passes=%d exhausted=%s elapsed=%.2fs",
                job.id, final_state.value, job.completeness_score, len(gaps), ctx.passes_run,
                exhausted, time.monotonic() - started,
            )
        except FatalConfigurationError as e:
            logger.error("job_config_error job=%s: %s", job.id, e)
            self._finish(job, JobState.FAILED, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error in job {job.id}: {e}")
            state = JobState.PARTIAL if job.report is not None else JobState.FAILED
            self._finish(job, state, error=f"internal error: {e}")

    def _progress(self, job: Job, report: Report, gaps: List[Gap]) -> bool:
        """Publish the best report so far; False once the job is terminal."""
        with self._cond:
            if job.state.is_terminal:
                return False
            self._apply_locked(job, report, gaps)
            return True

    def _transition(self, job: Job, state: JobState) -> bool:
        with self._cond:
            if job.state.is_terminal:
                return False
            job.transition(state)
            return True

    def _finish(self, job: Job, state: JobState, report: Optional[Report] = None,
                gaps: Optional[List[Gap]] = None, error: Optional[str] = None) -> None:
        with self._cond:
            if job.state.is_terminal:
                return
            if report is not None:
                self._apply_locked(job, report, gaps or [])
            payload = self._finalize_locked(job, state, error=error)
        self._deliver(payload)

    # ── Internals (lock held) ───────────────────────────────────────────────

    def _get_locked(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"job {job_id} not found")
        return job

    def _apply_locked(self, job: Job, report: Report, gaps: List[Gap]) -> None:
        total = self.schema.total_fields
        job.report = report
        job.gaps = list(gaps)
        job.completeness_score = (total - len(gaps)) / total if total else 1.0

    def _finalize_locked(self, job: Job, state: JobState, error: Optional[str] = None) -> FinalizationPayload:
        token = self._tokens.pop(job.id, None)
        if state == JobState.FAILED and token is not None:
            token.cancel(error or "failed")
        job.error = error
        job.transition(state)
        if job.report is not None:
            job.report.freeze()
        if self._active_by_media.get(job.media_ref) == job.id:
            del self._active_by_media[job.media_ref]
        self._session_context.pop(job.id, None)
        self._cond.notify_all()
        return self._payload(job)

    def _payload(self, job: Job) -> FinalizationPayload:
        report = job.report
        return FinalizationPayload(
            job_id=job.id,
            media_ref=job.media_ref,
            final_state=job.state.value,
            completeness_score=round(job.completeness_score, 4),
            report=report.to_dict() if report is not None else None,
            gaps=[GapView(**g.to_dict()) for g in job.gaps],
            superseded_by=job.superseded_by,
            error=job.error,
            quality=self.validator.section_breakdown(report) if report is not None else None,
            finished_at=job.finished_at,
        )

    # ── Finalization delivery (lock not held) ───────────────────────────────

    def _deliver(self, payload: FinalizationPayload) -> None:
        try:
            self.report_store.save(payload)
        except Exception as e:
            logger.error(f"Failed to persist report for job {payload.job_id}: {e}")
        for callback in self.callbacks:
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Finalization callback failed for job {payload.job_id}: {e}")
        with self._cond:
            self._delivered.add(payload.job_id)
            self._finished.append(payload.job_id)
            self._evict_locked()
            self._cond.notify_all()

    def _evict_locked(self) -> None:
        while len(self._finished) > self.config.finished_job_retention:
            job_id = self._finished.popleft()
            self._jobs.pop(job_id, None)
            self._delivered.discard(job_id)
            logger.debug("job_evicted job=%s", job_id)
