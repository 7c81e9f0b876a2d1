import logging
import random
from typing import Callable, List, Optional, Tuple

from .context import JobContext
from .models import Gap, GapCause, Report
from .orchestrator import AnalysisOrchestrator, TargetedRequest
from .settings import WorkerSettings, settings as default_settings
from .transcripts import relevant_excerpt

logger = logging.getLogger(__name__)

PassCallback = Callable[[Report, List[Gap]], None]


class GapRetryEngine:
    """
    Closes report gaps with bounded, cause-aware targeted passes.

    Per-cause policy:
      TokenLimit    -> shorter transcript excerpt, halved on every attempt
      QuotaExceeded -> exponential backoff before the retry; the orchestrator's
                       provider health opens the circuit after N in a row
      ParseFailure  -> stricter output-format instruction
      Timeout       -> a single retry with a longer call timeout
      Unknown       -> plain targeted retry
    Every pass is followed by re-validation; the job-level pass budget and the
    job deadline bound the loop.
    """

    def __init__(self, orchestrator: AnalysisOrchestrator, config: Optional[WorkerSettings] = None,
                 rng: Optional[random.Random] = None):
        self.orchestrator = orchestrator
        self.config = config or default_settings
        self.rng = rng or random.Random()

    def backoff_delay(self, ctx: JobContext, provider_id: str, attempt: int) -> float:
        """base * 2^attempt, capped, plus jitter; never below the provider's previous delay."""
        cfg = self.config
        delay = min(cfg.quota_backoff_base_s * (2 ** attempt), cfg.quota_backoff_cap_s)
        delay += self.rng.uniform(0, cfg.quota_backoff_jitter_s) if cfg.quota_backoff_jitter_s > 0 else 0.0
        delay = max(delay, ctx.health.last_backoff.get(provider_id, 0.0))
        ctx.health.last_backoff[provider_id] = delay
        ctx.health.backoff_history.setdefault(provider_id, []).append(delay)
        return delay

    def _stamp(self, ctx: JobContext, gaps: List[Gap]) -> None:
        # no provider left for this job means nothing can be retried
        unroutable = not self.orchestrator.available_providers(ctx)
        for gap in gaps:
            gap.attempts_made = ctx.gap_attempts.get(gap.key, 0)
            timed_out_before = ctx.timeout_retries.get(gap.key, 0) >= 1
            gap.terminal = (
                unroutable
                or gap.attempts_made >= self.config.max_attempts_per_gap
                or (gap.cause == GapCause.TIMEOUT and timed_out_before)
            )

    def _plan(self, ctx: JobContext, gaps: List[Gap]) -> Tuple[List[TargetedRequest], float]:
        cfg = self.config
        requests: List[TargetedRequest] = []
        wait_s = 0.0
        for gap in gaps:
            provider_id = self.orchestrator.select_provider(ctx, gap.key)
            if provider_id is None:
                logger.warning("gap_fill_no_provider job=%s gap=%s.%s",
                               ctx.job.id, gap.section_id, gap.field_id)
                break
            spec = ctx.schema.field_spec(gap.section_id, gap.field_id)
            keywords = spec.keywords if spec else ()
            context_chars = cfg.targeted_context_chars
            strict = False
            timeout = None

            if gap.cause == GapCause.TOKEN_LIMIT:
                context_chars = max(cfg.min_context_chars, cfg.targeted_context_chars // (2 ** (gap.attempts_made + 1)))
            elif gap.cause == GapCause.PARSE_FAILURE:
                strict = True
            elif gap.cause == GapCause.TIMEOUT:
                timeout = cfg.provider_call_timeout_s * cfg.timeout_retry_multiplier
                ctx.timeout_retries[gap.key] = ctx.timeout_retries.get(gap.key, 0) + 1
            elif gap.cause == GapCause.QUOTA_EXCEEDED:
                if ctx.health.consecutive_quota.get(provider_id, 0) > 0:
                    wait_s = max(wait_s, self.backoff_delay(ctx, provider_id, gap.attempts_made))

            requests.append(TargetedRequest(
                gap=gap,
                provider_id=provider_id,
                excerpt=relevant_excerpt(ctx.transcript, keywords, context_chars),
                strict=strict,
                timeout=timeout,
            ))
        return requests, wait_s

    def resolve_gaps(self, ctx: JobContext, report: Report, gaps: List[Gap],
                     on_pass: Optional[PassCallback] = None) -> Tuple[Report, List[Gap], bool]:
        """
        Run targeted passes until no gaps remain or the budget runs out.

        Returns the report, the remaining gaps and whether the budget (pass
        budget, per-gap attempts, providers or deadline) was exhausted.
        """
        budget = self.config.retry_budget_passes
        while True:
            self._stamp(ctx, gaps)
            if not gaps:
                return report, [], False
            if ctx.cancelled:
                return report, gaps, False
            if ctx.expired():
                logger.warning("gap_fill_deadline job=%s gaps=%d", ctx.job.id, len(gaps))
                return report, gaps, True
            if ctx.job.attempts_used >= budget:
                logger.info("gap_fill_budget_exhausted job=%s passes=%d gaps=%d",
                            ctx.job.id, ctx.job.attempts_used, len(gaps))
                return report, gaps, True

            retryable = [g for g in gaps if not g.terminal]
            if not retryable:
                logger.info("gap_fill_all_terminal job=%s gaps=%d", ctx.job.id, len(gaps))
                return report, gaps, True

            requests, wait_s = self._plan(ctx, retryable)
            if not requests:
                return report, gaps, True
            if wait_s > 0:
                wait_s = min(wait_s, max(0.0, ctx.remaining()))
                logger.info("gap_fill_backoff job=%s delay=%.2fs", ctx.job.id, wait_s)
                if ctx.cancel.wait(wait_s):
                    return report, gaps, False

            ctx.job.attempts_used += 1
            for req in requests:
                ctx.gap_attempts[req.gap.key] = ctx.gap_attempts.get(req.gap.key, 0) + 1
            logger.info(
                "gap_fill_pass job=%s pass=%d/%d requests=%d causes=%s",
                ctx.job.id, ctx.job.attempts_used, budget, len(requests),
                ",".join(sorted({r.gap.cause.value for r in requests})),
            )
            report, gaps = self.orchestrator.run_targeted_pass(ctx, report, requests)
            if on_pass is not None:
                self._stamp(ctx, gaps)
                on_pass(report, gaps)
