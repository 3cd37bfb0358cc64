"""Use-case facade wiring scheduler, queue, workers and budgets together."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from research_orchestrator.config import Settings
from research_orchestrator.orchestrator.backend.base import ReasoningProvider
from research_orchestrator.orchestrator.budget import BudgetGatekeeper
from research_orchestrator.orchestrator.events import ActivitySink, RepositoryActivitySink
from research_orchestrator.orchestrator.failure_classifier import classify_error
from research_orchestrator.orchestrator.health import (
    HealthInputs,
    HealthMonitor,
    HealthSnapshot,
    evaluate_health,
)
from research_orchestrator.orchestrator.models import (
    ActivityEventView,
    CandidateView,
    JobStatus,
    OrchestratorStatus,
    ResearchJobDetails,
    ResearchJobView,
    ResearchMode,
    Severity,
    TriggerResult,
)
from research_orchestrator.orchestrator.queue import JobQueue
from research_orchestrator.orchestrator.repository import OrchestratorRepository
from research_orchestrator.orchestrator.resilience import (
    BreakerSnapshot,
    CircuitBreaker,
    CircuitState,
    PersistenceGuard,
    RetryPolicy,
)
from research_orchestrator.orchestrator.scheduler import ResearchScheduler, TickSummary
from research_orchestrator.orchestrator.scoring import CandidatePostProcessor
from research_orchestrator.orchestrator.state import OrchestratorState
from research_orchestrator.orchestrator.worker import ConcurrencyController, ResearchJobExecutor

logger = logging.getLogger(__name__)


class ResearchOrchestrator:
    """Owns one orchestrator instance and its in-memory state.

    Nothing here is module-global: two instances over two databases are
    fully independent. ``start`` restores persisted state and requeues
    jobs a crashed process left RUNNING; ``stop`` cancels running jobs
    (they go back to QUEUED) and persists state.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        repository: OrchestratorRepository,
        provider: ReasoningProvider,
        sink: ActivitySink | None = None,
        context_provider: Callable[[], dict[str, Any]] | None = None,
        persistence_sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.provider = provider
        self.sink = sink or RepositoryActivitySink(repository)
        self.context_provider = context_provider or self._default_context
        self.state = OrchestratorState()
        self.budget = BudgetGatekeeper(repository=repository, sink=self.sink)

        circuit = settings.circuit
        self.provider_breaker = CircuitBreaker(
            f"provider:{provider.name}",
            failure_threshold=circuit.failure_threshold,
            success_threshold=circuit.success_threshold,
            cooldown_seconds=circuit.cooldown_seconds,
            on_state_change=self._on_breaker_change,
        )
        persistence_breaker = CircuitBreaker(
            "persistence",
            failure_threshold=circuit.failure_threshold,
            success_threshold=circuit.success_threshold,
            cooldown_seconds=circuit.cooldown_seconds,
        )
        guard_kwargs: dict[str, Any] = {}
        if persistence_sleep is not None:
            guard_kwargs["sleep"] = persistence_sleep
        self.persistence = PersistenceGuard(
            classify=lambda error: classify_error(error, provider="sqlite"),
            breaker=persistence_breaker,
            **guard_kwargs,
        )

        self.executor = ResearchJobExecutor(
            repository=repository,
            state=self.state,
            provider=provider,
            breaker=self.provider_breaker,
            budget=self.budget,
            post_processor=CandidatePostProcessor(
                repository=repository,
                dedup_ttl=settings.dedup.ttl,
            ),
            persistence=self.persistence,
            sink=self.sink,
            retry_policy=RetryPolicy(
                max_attempts=settings.retry.max_attempts,
                initial_delay_seconds=settings.retry.initial_delay_seconds,
                max_delay_seconds=settings.retry.max_delay_seconds,
            ),
        )
        self.controller = ConcurrencyController(
            max_workers=settings.limits.max_concurrent_jobs,
            run_job=self.executor.run,
            state=self.state,
        )
        self.queue = JobQueue(
            repository=repository,
            state=self.state,
            budget=self.budget,
            controller=self.controller,
            persistence=self.persistence,
            sink=self.sink,
            provider_name=provider.name,
            max_concurrent_jobs=settings.limits.max_concurrent_jobs,
            max_daily_cost_usd=settings.limits.max_daily_cost_usd,
            max_retries=settings.limits.max_retries,
        )
        self.scheduler = ResearchScheduler(
            queue=self.queue,
            state=self.state,
            repository=repository,
            intervals=settings.scheduler.intervals,
            context_provider=self.context_provider,
            tick_seconds=settings.scheduler.tick_seconds,
        )
        self.health_monitor = HealthMonitor(sink=self.sink, clock=repository.now)
        self._started = False

    # -- lifecycle --------------------------------------------------------------

    def load(self) -> None:
        """Restore persisted state without touching jobs."""

        self.state.restore(self.repository.load_state())

    def start(self, *, recover_orphans: bool = True) -> list[str]:
        """Restore persisted state and requeue orphaned jobs."""

        self.load()
        recovered = self.repository.recover_orphaned_jobs() if recover_orphans else []
        if self.settings.scheduler.enabled_on_start and not self.state.enabled:
            self.enable()
        self.state.roll_daily_window(self.repository.now())
        self.repository.save_state(self.state.snapshot())
        self._started = True
        logger.info(
            "Orchestrator started: enabled=%s recovered=%d provider=%s",
            self.state.enabled,
            len(recovered),
            self.provider.name,
        )
        return recovered

    def run_forever(self, *, max_ticks: int | None = None) -> int:
        """Run the scheduler loop in the calling thread until stopped."""

        if not self._started:
            self.start()
        return self.scheduler.run_loop(max_ticks=max_ticks)

    def stop(self, *, wait: bool = True) -> None:
        self.scheduler.stop()
        self.controller.shutdown(wait=wait)
        self.repository.save_state(self.state.snapshot())
        logger.info("Orchestrator stopped")

    def close(self) -> None:
        """Release the worker pool of an instance that was never started."""

        self.controller.shutdown(wait=True)

    def tick(self, now: datetime | None = None) -> TickSummary:
        return self.scheduler.tick(now)

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self.controller.wait_idle(timeout)

    # -- operator commands --------------------------------------------------------

    def enable(self) -> bool:
        return self._set_enabled(True)

    def disable(self) -> bool:
        return self._set_enabled(False)

    def trigger_manual_run(
        self,
        mode: ResearchMode,
        context: dict[str, Any] | None = None,
    ) -> TriggerResult:
        """Admit one run of ``mode`` now, even while disabled."""

        decision = self.queue.enqueue(
            mode,
            context if context is not None else self.context_provider(),
            source="manual",
        )
        self.queue.drain()
        if not decision.allowed:
            return TriggerResult(job_id=None, status=None, reason=decision.reason)
        status = decision.status
        job = self.repository.get_job(job_id=decision.job_id) if decision.job_id else None
        if job is not None:
            status = job.status
        return TriggerResult(job_id=decision.job_id, status=status, reason=decision.reason)

    def gc_fingerprints(self) -> int:
        removed = self.repository.cleanup_expired_fingerprints()
        logger.info("Removed %d expired fingerprint(s)", removed)
        return removed

    # -- queries ------------------------------------------------------------------

    def status(self) -> OrchestratorStatus:
        now = self.repository.now()
        with self.state.lock:
            enabled = self.state.enabled
            active = len(self.state.active)
            daily_cost = self.state.daily_cost_usd
            daily_jobs = self.state.daily_job_count
        return OrchestratorStatus(
            enabled=enabled,
            loop_running=self.scheduler.running,
            active_jobs=active,
            max_concurrent_jobs=self.settings.limits.max_concurrent_jobs,
            daily_cost_usd=daily_cost,
            daily_job_count=daily_jobs,
            max_daily_cost_usd=self.settings.limits.max_daily_cost_usd,
            schedules=self.scheduler.schedules(now),
        )

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        mode: ResearchMode | None = None,
        limit: int = 20,
    ) -> list[ResearchJobView]:
        return self.repository.list_jobs(status=status, mode=mode, limit=limit)

    def inspect_job(self, job_id: str) -> ResearchJobDetails:
        details = self.repository.get_job_details(job_id=job_id)
        if details is None:
            raise RuntimeError(f"Job not found: {job_id}")
        return details

    def list_candidates(self, *, job_id: str | None = None, limit: int = 20) -> list[CandidateView]:
        return self.repository.list_candidates(job_id=job_id, limit=limit)

    def list_activity(
        self,
        *,
        event_type: str | None = None,
        limit: int = 20,
    ) -> list[ActivityEventView]:
        return self.repository.list_activity_events(event_type=event_type, limit=limit)

    def breakers(self) -> list[BreakerSnapshot]:
        return [self.provider_breaker.snapshot(), self.persistence.breaker.snapshot()]

    def health(self, *, publish: bool = True) -> HealthSnapshot:
        now = self.repository.now()
        status = self.status()
        counts = self.repository.count_jobs_by_status()
        finished = self.repository.count_finished_since(since=now - timedelta(hours=24))
        snapshot = evaluate_health(
            HealthInputs(
                enabled=status.enabled,
                loop_running=status.loop_running,
                active_jobs=status.active_jobs,
                queued_jobs=counts[JobStatus.QUEUED],
                deferred_jobs=counts[JobStatus.DEFERRED],
                completed_24h=finished[JobStatus.COMPLETED],
                failed_24h=finished[JobStatus.FAILED],
                daily_cost_usd=status.daily_cost_usd,
                max_daily_cost_usd=status.max_daily_cost_usd,
                ledgers=self.budget.list_ledgers(),
                schedules=status.schedules,
                intervals=self.settings.scheduler.intervals,
            ),
            now=now,
        )
        if publish:
            self.health_monitor.publish(snapshot)
        return snapshot

    # -- internals ----------------------------------------------------------------

    def _set_enabled(self, enabled: bool) -> bool:
        changed = self.state.set_enabled(enabled)
        self.repository.save_state(self.state.snapshot())
        if changed:
            self.sink.emit(
                "orchestrator_toggled",
                f"Orchestrator {'enabled' if enabled else 'disabled'}",
                payload={"enabled": enabled},
            )
        return changed

    def _default_context(self) -> dict[str, Any]:
        return {"current_regime": self.settings.scheduler.default_regime}

    def _on_breaker_change(self, name: str, previous: CircuitState, current: CircuitState) -> None:
        self.sink.emit(
            "circuit_state_changed",
            f"Circuit {name}: {previous.value} -> {current.value}",
            severity=Severity.WARN if current == CircuitState.OPEN else Severity.INFO,
            payload={"breaker": name, "from": previous.value, "to": current.value},
        )
