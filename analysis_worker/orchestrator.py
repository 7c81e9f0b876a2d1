import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .confidence import field_confidence
from .context import JobContext
from .errors import (
    FatalConfigurationError,
    MalformedResponseError,
    ProviderError,
    ProviderTimeoutError,
    SchemaViolationError,
)
from .models import FULL_PASS_SECTION, FieldAttempt, Gap, ProviderResult, Report
from .parsing import ParseError, parse_output
from .prompts import build_full_pass_prompt, build_targeted_prompt
from .providers import Prompt, ProviderClient
from .section_schema import DEFAULT_SCHEMA, SectionSchema, has_boilerplate
from .settings import WorkerSettings, settings as default_settings
from .validator import CompletenessValidator

logger = logging.getLogger(__name__)

FieldKey = Tuple[str, str]

# Fan-in wakes up at least this often to notice a cancelled job.
CANCEL_POLL_S = 0.1


@dataclass
class TargetedRequest:
    """One narrow call aimed at a single gap."""
    gap: Gap
    provider_id: str
    excerpt: str
    strict: bool = False
    timeout: Optional[float] = None


@dataclass
class _Call:
    provider: ProviderClient
    prompt: Prompt
    section_id: str
    expected: List[FieldKey]
    timeout: float
    field_id: Optional[str] = None


@dataclass
class PassSummary:
    pass_index: int
    kind: str
    calls: int = 0
    errors: Dict[str, int] = field(default_factory=dict)
    merged: int = 0
    discarded: bool = False


class AnalysisOrchestrator:
    """
    Drives the provider calls of one pass and merges their answers.

    A full pass sends the whole transcript to every available provider in
    parallel; a targeted pass sends one narrow request per gap. Either way
    the worker blocks until every call returned or the pass deadline hit,
    merges the surviving answers (highest confidence wins, never
    downgrading a filled field) and re-validates the report.
    """

    def __init__(
        self,
        providers: Sequence[ProviderClient],
        schema: SectionSchema = DEFAULT_SCHEMA,
        config: Optional[WorkerSettings] = None,
        validator: Optional[CompletenessValidator] = None,
        max_workers: Optional[int] = None,
    ):
        if not providers:
            raise FatalConfigurationError("no analysis providers configured")
        self.config = config or default_settings
        self.schema = schema
        self.providers: Dict[str, ProviderClient] = {}
        for provider in providers:
            if provider.provider_id in self.providers:
                raise FatalConfigurationError(f"duplicate provider id {provider.provider_id}")
            self.providers[provider.provider_id] = provider
        self.provider_order: List[str] = [p.provider_id for p in providers]
        self.validator = validator or CompletenessValidator(self.config)
        workers = max_workers or max(len(providers), self.config.max_parallel_calls) * self.config.worker_concurrency
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="provider-call")
        self.last_summary: Optional[PassSummary] = None

    def shutdown(self, wait_for_calls: bool = False) -> None:
        self._executor.shutdown(wait=wait_for_calls, cancel_futures=True)

    # ── Provider selection ──────────────────────────────────────────────────

    def available_providers(self, ctx: JobContext) -> List[str]:
        return [pid for pid in self.provider_order if ctx.health.is_available(pid)]

    def select_provider(self, ctx: JobContext, key: FieldKey) -> Optional[str]:
        """
        Pick a provider for a gap: round-robin over providers that have not
        failed it yet, otherwise the one whose failure on it is oldest.
        """
        available = self.available_providers(ctx)
        if not available:
            return None
        failures = ctx.health.failures_for(key)
        fresh = [pid for pid in available if pid not in failures]
        if fresh:
            return fresh[ctx.health.next_rotation() % len(fresh)]
        return min(available, key=lambda pid: (failures[pid], self.provider_order.index(pid)))

    # ── Passes ──────────────────────────────────────────────────────────────

    def run_full_pass(self, ctx: JobContext) -> Tuple[Report, List[Gap]]:
        report = Report(self.schema, job_id=ctx.job.id)
        available = self.available_providers(ctx)
        if not available:
            raise FatalConfigurationError("no analysis providers available for full pass")

        pass_index = ctx.next_pass()
        expected = [(section_id, spec.field_id) for section_id, spec in self.schema.iter_fields()]
        prompt = build_full_pass_prompt(self.schema, ctx.transcript, ctx.session_context)
        calls = [
            _Call(
                provider=self.providers[pid],
                prompt=prompt,
                section_id=FULL_PASS_SECTION,
                expected=expected,
                timeout=self.config.provider_call_timeout_s,
            )
            for pid in available
        ]
        logger.info("pass_start job=%s pass=%d kind=full providers=%s",
                    ctx.job.id, pass_index, ",".join(available))
        results = self._dispatch(ctx, calls)
        rejected = [r for r in results if r.error_kind == "config"]
        if rejected and len(rejected) == len(results) and not ctx.cancelled:
            raise FatalConfigurationError(f"every provider rejected its configuration: {rejected[0].error}")
        summary = self._merge(ctx, report, calls, results, pass_index, kind="full")
        return self._finish_pass(ctx, report, summary)

    def run_targeted_pass(self, ctx: JobContext, report: Report,
                          requests: List[TargetedRequest]) -> Tuple[Report, List[Gap]]:
        pass_index = ctx.next_pass()
        calls: List[_Call] = []
        for req in requests:
            provider = self.providers.get(req.provider_id)
            if provider is None or not ctx.health.is_available(req.provider_id):
                continue
            calls.append(_Call(
                provider=provider,
                prompt=build_targeted_prompt(self.schema, req.gap.section_id, req.gap.field_id,
                                             req.excerpt, strict=req.strict,
                                             session_context=ctx.session_context),
                section_id=req.gap.section_id,
                field_id=req.gap.field_id,
                expected=[req.gap.key],
                timeout=req.timeout or self.config.provider_call_timeout_s,
            ))
        logger.info("pass_start job=%s pass=%d kind=targeted calls=%d",
                    ctx.job.id, pass_index, len(calls))
        results = self._dispatch(ctx, calls) if calls else []
        summary = self._merge(ctx, report, calls, results, pass_index, kind="targeted")
        return self._finish_pass(ctx, report, summary)

    def _finish_pass(self, ctx: JobContext, report: Report, summary: PassSummary) -> Tuple[Report, List[Gap]]:
        score, gaps = self.validator.validate(report)
        self.last_summary = summary
        logger.info(
            "pass_done job=%s pass=%d kind=%s calls=%d errors=%s merged=%d score=%.3f gaps=%d discarded=%s",
            ctx.job.id, summary.pass_index, summary.kind, summary.calls, summary.errors or "{}",
            summary.merged, score, len(gaps), summary.discarded,
        )
        return report, gaps

    # ── Fan-out / fan-in ────────────────────────────────────────────────────

    def _dispatch(self, ctx: JobContext, calls: List[_Call]) -> List[ProviderResult]:
        pass_timeout = min(self.config.pass_timeout_s, max(0.0, ctx.remaining()))
        futures: List[Optional[Future]] = [None] * len(calls)
        pending: Set[Future] = set()
        if pass_timeout > 0:
            futures = [self._executor.submit(self._invoke, ctx, call) for call in calls]
            pending = set(futures)
            pass_deadline = time.monotonic() + pass_timeout
            while pending and not ctx.cancelled:
                remaining = pass_deadline - time.monotonic()
                if remaining <= 0:
                    break
                _, pending = wait(pending, timeout=min(remaining, CANCEL_POLL_S))

        results: List[ProviderResult] = []
        for call, future in zip(calls, futures):
            if future is not None and future not in pending:
                results.append(future.result())
                continue
            # Still running at the pass deadline or on cancel: ignored on return.
            if future is not None:
                future.cancel()
            result = ProviderResult(
                provider_id=call.provider.provider_id,
                section_id=call.section_id,
                field_id=call.field_id,
                timeout=call.timeout,
                latency=pass_timeout,
                output_ceiling_chars=call.provider.output_ceiling_chars,
            )
            if ctx.cancelled:
                result.error_kind = "cancelled"
            else:
                result.error = ProviderTimeoutError("pass deadline reached", call.provider.provider_id)
                result.error_kind = "timeout"
            results.append(result)
        return results

    def _invoke(self, ctx: JobContext, call: _Call) -> ProviderResult:
        provider = call.provider
        result = ProviderResult(
            provider_id=provider.provider_id,
            section_id=call.section_id,
            field_id=call.field_id,
            timeout=call.timeout,
            output_ceiling_chars=provider.output_ceiling_chars,
        )
        if ctx.cancelled:
            result.error_kind = "cancelled"
            return result

        acquired = True
        if provider.bucket is not None:
            acquired = provider.bucket.acquire(cancel=ctx.cancel, timeout=max(0.0, ctx.remaining()))
        if not acquired:
            result.error_kind = "cancelled" if ctx.cancelled else "timeout"
            result.error = ProviderTimeoutError("rate limiter wait exceeded job deadline", provider.provider_id)
            return result

        start = time.perf_counter()
        try:
            response = provider.call(call.prompt, call.timeout)
        except FatalConfigurationError as e:
            result.latency = time.perf_counter() - start
            result.error = e
            result.error_kind = "config"
            logger.error("provider_misconfigured provider=%s error=%s", provider.provider_id, e)
            return result
        except ProviderError as e:
            result.latency = time.perf_counter() - start
            result.error = e
            result.error_kind = e.kind
            logger.warning("provider_call_failed provider=%s section=%s kind=%s latency=%.2fs error=%s",
                           provider.provider_id, call.section_id, e.kind, result.latency, e)
            return result
        except Exception as e:
            result.latency = time.perf_counter() - start
            result.error = e
            result.error_kind = "unknown"
            logger.exception("provider_call_crashed provider=%s section=%s", provider.provider_id, call.section_id)
            return result
        finally:
            if provider.bucket is not None:
                provider.bucket.release()

        result.latency = time.perf_counter() - start
        result.raw_output = response.raw_output or ""
        result.truncated = response.truncated
        if result.latency > call.timeout:
            result.error = ProviderTimeoutError(
                f"answered after {result.latency:.1f}s (limit {call.timeout:.1f}s)", provider.provider_id)
            result.error_kind = "timeout"
            return result

        parsed = parse_output(result.raw_output, self.schema, call.expected)
        result.parse_status = parsed.status
        if isinstance(parsed, ParseError):
            if result.raw_output.strip():
                result.error = MalformedResponseError(parsed.reason, provider.provider_id)
                result.error_kind = "parse"
            return result

        result.parsed_fields = parsed.fields
        boilerplate = has_boilerplate(result.raw_output)
        for section_id, values in parsed.fields.items():
            for field_id, value in values.items():
                spec = self.schema.field_spec(section_id, field_id)
                try:
                    normalized = self.schema.normalize(section_id, field_id, value)
                except SchemaViolationError as e:
                    result.violations[(section_id, field_id)] = e.reason
                    continue
                result.field_confidence[(section_id, field_id)] = field_confidence(
                    spec, normalized, via=parsed.via, boilerplate=boilerplate,
                    rich_text_chars=self.config.rich_text_chars,
                )
        if result.field_confidence:
            result.confidence = round(sum(result.field_confidence.values()) / len(result.field_confidence), 4)
        return result

    def _merge(self, ctx: JobContext, report: Report, calls: List[_Call],
               results: List[ProviderResult], pass_index: int, kind: str) -> PassSummary:
        summary = PassSummary(pass_index=pass_index, kind=kind, calls=len(calls))
        for result in results:
            if result.error_kind:
                summary.errors[result.error_kind] = summary.errors.get(result.error_kind, 0) + 1

        if ctx.cancelled:
            summary.discarded = True
            logger.info("pass_discarded job=%s pass=%d reason=%s results=%d",
                        ctx.job.id, pass_index, ctx.cancel.reason, len(results))
            return summary

        for result in results:
            ctx.health.record(result.provider_id, result.error_kind)

        attempts: Dict[FieldKey, List[FieldAttempt]] = {}
        for call, result in zip(calls, results):
            for key in call.expected:
                confidence = result.field_confidence.get(key)
                if confidence is not None:
                    value = result.parsed_fields[key[0]][key[1]]
                    if report.offer(key[0], key[1], value, confidence, result.provider_id, pass_index):
                        summary.merged += 1
                    continue
                attempts.setdefault(key, []).append(
                    result.attempt_for(pass_index, violation=result.violations.get(key)))
                if kind == "targeted":
                    ctx.health.record_gap_failure(key, result.provider_id, pass_index)
            logger.debug("provider_result job=%s pass=%d provider=%s section=%s chars=%d confidence=%.3f status=%s",
                         ctx.job.id, pass_index, result.provider_id, result.section_id,
                         len(result.raw_output), result.confidence, result.parse_status)

        for (section_id, field_id), field_attempts in attempts.items():
            if not report.is_filled(section_id, field_id):
                report.record_attempts(section_id, field_id, field_attempts)
        return summary
