"""Bounded job execution: thread pool, provider call and result booking."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures

from research_orchestrator.orchestrator.backend.base import (
    ProviderError,
    ProviderRequest,
    ProviderResult,
    ReasoningProvider,
)
from research_orchestrator.orchestrator.budget import BudgetGatekeeper
from research_orchestrator.orchestrator.contracts import build_research_prompt
from research_orchestrator.orchestrator.events import ActivitySink
from research_orchestrator.orchestrator.failure_classifier import (
    FailureClassification,
    classify_error,
)
from research_orchestrator.orchestrator.models import (
    FailureClass,
    JobResultSummary,
    ResearchJobView,
    Severity,
)
from research_orchestrator.orchestrator.repository import OrchestratorRepository
from research_orchestrator.orchestrator.resilience import (
    CircuitBreaker,
    JobCancelledError,
    PersistenceGuard,
    RetryOutcome,
    RetryPolicy,
    call_with_retry,
    cancellable_sleep,
)
from research_orchestrator.orchestrator.scoring import CandidatePostProcessor
from research_orchestrator.orchestrator.state import OrchestratorState

logger = logging.getLogger(__name__)


class ConcurrencyController:
    """Runs admitted jobs on a pool sized to the concurrency limit.

    The queue only submits after claiming a slot in ``OrchestratorState``,
    so the pool never holds more work than it has threads.
    """

    def __init__(
        self,
        *,
        max_workers: int,
        run_job: Callable[[ResearchJobView, threading.Event], None],
        state: OrchestratorState,
    ) -> None:
        self.max_workers = max_workers
        self._run_job = run_job
        self._state = state
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="research-job",
        )
        self._futures: set[Future[None]] = set()
        self._futures_lock = threading.Lock()
        self._closed = False

    def submit(self, job: ResearchJobView, cancel_event: threading.Event) -> Future[None]:
        """Schedule ``job``; raises ``RuntimeError`` once shut down."""

        if self._closed:
            raise RuntimeError("Concurrency controller is shut down")
        future = self._executor.submit(self._run_job, job, cancel_event)
        with self._futures_lock:
            self._futures.add(future)
        future.add_done_callback(self._discard)
        return future

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every submitted job has finished."""

        with self._futures_lock:
            pending = list(self._futures)
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, *, wait: bool = True) -> None:
        """Cancel running jobs and stop the pool."""

        self._closed = True
        cancelled = self._state.cancel_all()
        if cancelled:
            logger.info("Cancelling %d running job(s)", cancelled)
        self._executor.shutdown(wait=wait)

    def _discard(self, future: Future[None]) -> None:
        with self._futures_lock:
            self._futures.discard(future)


class ResearchJobExecutor:
    """Executes one claimed job from provider call to terminal status."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        state: OrchestratorState,
        provider: ReasoningProvider,
        breaker: CircuitBreaker,
        budget: BudgetGatekeeper,
        post_processor: CandidatePostProcessor,
        persistence: PersistenceGuard,
        sink: ActivitySink,
        retry_policy: RetryPolicy,
    ) -> None:
        self.repository = repository
        self.state = state
        self.provider = provider
        self.breaker = breaker
        self.budget = budget
        self.post_processor = post_processor
        self.persistence = persistence
        self.sink = sink
        self.retry_policy = retry_policy

    def run(self, job: ResearchJobView, cancel_event: threading.Event) -> None:
        try:
            self._execute(job, cancel_event)
        except JobCancelledError:
            self._release(job, reason="cancelled")
        except Exception as error:  # noqa: BLE001
            logger.exception("Job %s crashed", job.job_id)
            self._fail_unexpected(job, error)
        finally:
            self.state.finish(job.job_id)

    def _execute(self, job: ResearchJobView, cancel_event: threading.Event) -> None:
        if cancel_event.is_set():
            raise JobCancelledError("Job cancelled before start")

        system_prompt, user_prompt = build_research_prompt(job.mode, job.context)
        request = ProviderRequest(
            mode=job.mode,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            trace_id=job.trace_id,
            context=job.context,
        )
        failed_cost = 0.0

        def _generate() -> ProviderResult:
            nonlocal failed_cost
            try:
                return self.provider.generate(request)
            except ProviderError as error:
                failed_cost += error.cost_usd
                raise

        logger.info(
            "Job %s started: mode=%s retry=%d/%d trace_id=%s",
            job.job_id,
            job.mode.value,
            job.retry_count,
            job.max_retries,
            job.trace_id,
        )
        try:
            outcome = call_with_retry(
                _generate,
                policy=self.retry_policy,
                classify=self._classify,
                sleep=cancellable_sleep(cancel_event),
                breaker=self.breaker,
            )
        finally:
            self._book_spend(failed_cost)
        if not outcome.ok or outcome.value is None:
            self._handle_failure(job, outcome, cost_usd=failed_cost)
            return
        self._complete(job, outcome.value, attempts=outcome.attempts, failed_cost=failed_cost)

    def _complete(
        self,
        job: ResearchJobView,
        result: ProviderResult,
        *,
        attempts: int,
        failed_cost: float,
    ) -> None:
        self._book_spend(result.usage.cost_usd)
        processed = self.post_processor.process(
            result.artifacts,
            job_id=job.job_id,
            trace_id=job.trace_id,
        )
        summary = JobResultSummary(
            artifacts_total=len(result.artifacts),
            candidates_created=processed.created,
            duplicates_filtered=processed.duplicates,
            cost_usd=result.usage.cost_usd + failed_cost,
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
            wrapper_attempts=attempts,
            latency_ms=result.latency_ms,
        )
        completed = self.persistence.run(
            lambda: self.repository.complete_job(job_id=job.job_id, summary=summary),
            operation="complete_job",
        )
        if not completed:
            logger.warning("Job %s was no longer running; result discarded", job.job_id)
            return
        self.state.record_completion()
        self.sink.emit(
            "research_job_completed",
            (
                f"{job.mode.value} completed: {processed.created} new, "
                f"{processed.duplicates} duplicate(s)"
            ),
            trace_id=job.trace_id,
            payload={"job_id": job.job_id, "mode": job.mode.value, **summary.to_event_details()},
        )

    def _handle_failure(
        self,
        job: ResearchJobView,
        outcome: RetryOutcome[ProviderResult],
        *,
        cost_usd: float,
    ) -> None:
        classification = outcome.classification
        if not isinstance(classification, FailureClassification):
            classification = self._classify(outcome.error or RuntimeError("unknown failure"))
        error_message = str(outcome.error) if outcome.error is not None else "unknown failure"

        if classification.requeue:
            retry_count = job.retry_count + 1
            if retry_count < job.max_retries:
                requeued = self.persistence.run(
                    lambda: self.repository.schedule_retry(
                        job_id=job.job_id,
                        retry_count=retry_count,
                        failure_class=classification.failure_class,
                        error_message=error_message,
                    ),
                    operation="schedule_retry",
                )
                if requeued:
                    self.sink.emit(
                        "research_job_retry_scheduled",
                        f"{job.mode.value} requeued after {classification.failure_class.value}",
                        severity=Severity.WARN,
                        trace_id=job.trace_id,
                        payload={
                            "job_id": job.job_id,
                            "retry_count": retry_count,
                            "max_retries": job.max_retries,
                            **classification.to_event_details(),
                        },
                    )
                return
            self._fail(
                job,
                classification,
                error_message=f"Retry budget exhausted: {error_message}",
                retry_count=retry_count,
                cost_usd=cost_usd,
                attempts=outcome.attempts,
            )
            return

        self._fail(
            job,
            classification,
            error_message=error_message,
            retry_count=None,
            cost_usd=cost_usd,
            attempts=outcome.attempts,
        )

    def _fail(  # noqa: PLR0913
        self,
        job: ResearchJobView,
        classification: FailureClassification,
        *,
        error_message: str,
        retry_count: int | None,
        cost_usd: float,
        attempts: int,
    ) -> None:
        failed = self.persistence.run(
            lambda: self.repository.fail_job(
                job_id=job.job_id,
                failure_class=classification.failure_class,
                error_message=error_message,
                action_required=classification.action_required,
                retry_count=retry_count,
                cost_usd=cost_usd,
                wrapper_attempts=attempts,
            ),
            operation="fail_job",
        )
        if not failed:
            return
        hint = classification.action_hint
        self.sink.emit(
            "research_job_failed",
            f"{job.mode.value} failed: {classification.failure_class.value}"
            + (f" ({hint})" if hint else ""),
            severity=Severity.ERROR,
            trace_id=job.trace_id,
            payload={
                "job_id": job.job_id,
                "error_message": error_message,
                "action_required": classification.action_required,
                "action_hint": hint,
                **classification.to_event_details(),
            },
        )

    def _fail_unexpected(self, job: ResearchJobView, error: Exception) -> None:
        error_message = f"{type(error).__name__}: {error}"
        try:
            failed = self.repository.fail_job(
                job_id=job.job_id,
                failure_class=FailureClass.UNKNOWN,
                error_message=error_message,
                action_required=False,
            )
        except Exception:  # noqa: BLE001
            logger.exception("Could not mark job %s failed; left for orphan recovery", job.job_id)
            return
        if failed:
            self.sink.emit(
                "research_job_failed",
                f"{job.mode.value} failed: {FailureClass.UNKNOWN.value}",
                severity=Severity.ERROR,
                trace_id=job.trace_id,
                payload={
                    "job_id": job.job_id,
                    "error_message": error_message,
                    "action_required": False,
                    "failure_class": FailureClass.UNKNOWN.value,
                },
            )

    def _release(self, job: ResearchJobView, *, reason: str) -> None:
        released = self.repository.release_job(job_id=job.job_id, reason=reason)
        logger.info("Job %s %s: returned to queue=%s", job.job_id, reason, released)

    def _book_spend(self, cost_usd: float) -> None:
        if cost_usd <= 0:
            return
        self.state.add_cost(cost_usd)
        self.persistence.run(
            lambda: self.budget.record_spend(self.provider.name, cost_usd),
            operation="record_spend",
        )

    def _classify(self, error: BaseException) -> FailureClassification:
        return classify_error(error, provider=self.provider.name)
