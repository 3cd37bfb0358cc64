"""Admission control and dispatch of research jobs."""

from __future__ import annotations

import logging
import threading
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from research_orchestrator.orchestrator.budget import BudgetGatekeeper
from research_orchestrator.orchestrator.events import ActivitySink
from research_orchestrator.orchestrator.models import (
    AdmissionDecision,
    JobStatus,
    ResearchJobCreate,
    ResearchMode,
    Severity,
)
from research_orchestrator.orchestrator.repository import OrchestratorRepository
from research_orchestrator.orchestrator.resilience import CircuitOpenError, PersistenceGuard
from research_orchestrator.orchestrator.state import OrchestratorState
from research_orchestrator.orchestrator.worker import ConcurrencyController

logger = logging.getLogger(__name__)

CAPACITY_REASON = "Max concurrent jobs reached"


class JobQueue:
    """Admits jobs against budgets and capacity, then dispatches them.

    ``enqueue`` never raises: every refusal comes back as a typed
    ``AdmissionDecision``. DEFERRED jobs are promoted only by a later
    ``enqueue`` of the same mode; ``drain`` looks at QUEUED jobs alone.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        state: OrchestratorState,
        budget: BudgetGatekeeper,
        controller: ConcurrencyController,
        persistence: PersistenceGuard,
        sink: ActivitySink,
        provider_name: str,
        max_concurrent_jobs: int,
        max_daily_cost_usd: float,
        max_retries: int = 3,
    ) -> None:
        self.repository = repository
        self.state = state
        self.budget = budget
        self.controller = controller
        self.persistence = persistence
        self.sink = sink
        self.provider_name = provider_name
        self.max_concurrent_jobs = max_concurrent_jobs
        self.max_daily_cost_usd = max_daily_cost_usd
        self.max_retries = max_retries

    def enqueue(
        self,
        mode: ResearchMode,
        context: dict[str, Any],
        *,
        source: str = "scheduler",
    ) -> AdmissionDecision:
        try:
            quota = self.budget.check_quota(self.provider_name)
        except (SQLAlchemyError, CircuitOpenError) as error:
            logger.exception("Budget check for %s failed on persistence", self.provider_name)
            return self._blocked(mode, source=source, reason=f"Persistence error: {error}")
        if not quota.allowed:
            return self._blocked(mode, source=source, reason=quota.reason or "Budget blocked")

        with self.state.lock:
            daily_cost = self.state.daily_cost_usd
            at_capacity = len(self.state.active) >= self.max_concurrent_jobs
        daily = self.budget.check_daily_ceiling(daily_cost, self.max_daily_cost_usd)
        if not daily.allowed:
            return self._blocked(mode, source=source, reason=daily.reason or "Daily limit")

        try:
            if at_capacity:
                job = self.persistence.run(
                    lambda: self.repository.create_job(
                        ResearchJobCreate(
                            mode=mode,
                            status=JobStatus.DEFERRED,
                            context=context,
                            source=source,
                            max_retries=self.max_retries,
                            deferred_reason=CAPACITY_REASON,
                        ),
                    ),
                    operation="create_job",
                )
                return self._admitted(
                    "job_deferred",
                    mode,
                    AdmissionDecision(
                        allowed=True,
                        job_id=job.job_id,
                        status=JobStatus.DEFERRED,
                        reason=CAPACITY_REASON,
                    ),
                    source=source,
                )

            promoted = self.persistence.run(
                lambda: self.repository.promote_oldest_deferred(mode=mode),
                operation="promote_oldest_deferred",
            )
            if promoted is not None:
                return self._admitted(
                    "job_promoted",
                    mode,
                    AdmissionDecision(
                        allowed=True,
                        job_id=promoted.job_id,
                        status=JobStatus.QUEUED,
                        promoted=True,
                    ),
                    source=source,
                )

            now = self.repository.now()
            job = self.persistence.run(
                lambda: self.repository.create_job(
                    ResearchJobCreate(
                        mode=mode,
                        status=JobStatus.QUEUED,
                        context=context,
                        source=source,
                        scheduled_for=now,
                        max_retries=self.max_retries,
                    ),
                ),
                operation="create_job",
            )
        except (SQLAlchemyError, CircuitOpenError) as error:
            logger.exception("Admission of %s failed on persistence", mode.value)
            return self._blocked(mode, source=source, reason=f"Persistence error: {error}")

        return self._admitted(
            "job_admitted",
            mode,
            AdmissionDecision(allowed=True, job_id=job.job_id, status=JobStatus.QUEUED),
            source=source,
        )

    def drain(self) -> list[str]:
        """Claim ready QUEUED jobs up to free capacity and submit them."""

        dispatched: list[str] = []
        with self.state.lock:
            free = self.max_concurrent_jobs - len(self.state.active)
            if free <= 0:
                return dispatched
            for job in self.repository.list_ready_jobs(limit=free):
                if not self.repository.claim_job(job_id=job.job_id):
                    continue
                cancel_event = threading.Event()
                self.state.active[job.job_id] = cancel_event
                try:
                    self.controller.submit(job, cancel_event)
                except RuntimeError:
                    del self.state.active[job.job_id]
                    self.repository.release_job(job_id=job.job_id, reason="executor_unavailable")
                    logger.warning("Executor unavailable; job %s returned to queue", job.job_id)
                    break
                dispatched.append(job.job_id)
        if dispatched:
            logger.info("Dispatched %d job(s)", len(dispatched))
        return dispatched

    def _blocked(self, mode: ResearchMode, *, source: str, reason: str) -> AdmissionDecision:
        self.sink.emit(
            "admission_blocked",
            f"{mode.value} not admitted: {reason}",
            severity=Severity.WARN,
            payload={"mode": mode.value, "source": source, "reason": reason},
        )
        return AdmissionDecision(allowed=False, reason=reason)

    def _admitted(
        self,
        event_type: str,
        mode: ResearchMode,
        decision: AdmissionDecision,
        *,
        source: str,
    ) -> AdmissionDecision:
        status = decision.status.value if decision.status else "-"
        logger.info(
            "Admitted %s job %s as %s (source=%s)",
            mode.value,
            decision.job_id,
            status,
            source,
        )
        self.sink.emit(
            event_type,
            f"{mode.value} job {decision.job_id} {status}",
            payload={
                "mode": mode.value,
                "source": source,
                "job_id": decision.job_id,
                "status": status,
                "reason": decision.reason,
            },
        )
        return decision
