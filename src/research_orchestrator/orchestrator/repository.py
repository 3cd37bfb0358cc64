"""Persistent job, state, dedup and budget repository for the orchestrator."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from research_orchestrator.orchestrator.models import (
    MODE_PROFILES,
    ActivityEventView,
    BudgetLedgerView,
    CandidateView,
    CandidateWrite,
    Disposition,
    FailureClass,
    FingerprintView,
    JobEventView,
    JobResultSummary,
    JobStatus,
    OrchestratorStateSnapshot,
    ResearchJobCreate,
    ResearchJobDetails,
    ResearchJobView,
    ResearchMode,
    Severity,
)
from research_orchestrator.storage.alembic_runner import upgrade_head
from research_orchestrator.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from research_orchestrator.storage.sqlmodel_models import (
    ORCHESTRATOR_SINGLETON_ID,
    ActivityEvent,
    CandidateFingerprintRow,
    OrchestratorStateRow,
    ProviderBudget,
    ResearchCandidate,
    ResearchJob,
    ResearchJobEvent,
    ResearchModeRun,
)

logger = logging.getLogger(__name__)

DEFAULT_MONTHLY_LIMIT_USD = 10.0


class OrchestratorRepository:
    """Persistence facade backed by SQLModel + SQLite.

    Every job status change is a compare-and-set on the expected previous
    status and appends one ``research_job_events`` row in the same
    transaction. Transition methods return ``False`` when the row was not in
    the expected state, so callers never overwrite a terminal job.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self._clock = clock
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and ensure the state singleton exists."""

        upgrade_head(self.db_path)
        self._ensure_state_row()

    def now(self) -> datetime:
        return self._clock()

    # -- jobs -----------------------------------------------------------------

    def create_job(self, payload: ResearchJobCreate) -> ResearchJobView:
        """Persist a new QUEUED or DEFERRED job."""

        if payload.status not in {JobStatus.QUEUED, JobStatus.DEFERRED}:
            raise ValueError(f"New jobs must be queued or deferred, got {payload.status}")

        now = self._clock()
        profile = MODE_PROFILES[payload.mode]
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = ResearchJob(
                job_id=job_id,
                mode=payload.mode.value,
                status=payload.status.value,
                priority=profile.priority,
                cost_class=profile.cost_class.value,
                source=payload.source,
                scheduled_for=(
                    to_db_datetime(payload.scheduled_for)
                    if payload.scheduled_for is not None
                    else None
                ),
                context_json=_dump_json(payload.context),
                trace_id=payload.trace_id or str(uuid4()),
                retry_count=0,
                max_retries=payload.max_retries,
                deferred_reason=payload.deferred_reason,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued" if payload.status == JobStatus.QUEUED else "deferred",
                status_from=None,
                status_to=payload.status,
                details={
                    "mode": payload.mode.value,
                    "source": payload.source,
                    "priority": profile.priority,
                    "deferred_reason": payload.deferred_reason,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def promote_oldest_deferred(self, *, mode: ResearchMode) -> ResearchJobView | None:
        """Flip the oldest DEFERRED job of ``mode`` to QUEUED."""

        while True:
            now = self._clock()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(ResearchJob)
                    .where(
                        ResearchJob.mode == mode.value,
                        ResearchJob.status == JobStatus.DEFERRED.value,
                    )
                    .order_by(col(ResearchJob.created_at).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(ResearchJob)
                    .where(
                        col(ResearchJob.job_id) == candidate.job_id,
                        col(ResearchJob.status) == JobStatus.DEFERRED.value,
                    )
                    .values(
                        status=JobStatus.QUEUED.value,
                        scheduled_for=to_db_datetime(now),
                        deferred_reason=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                self._add_event(
                    session=session,
                    job_id=candidate.job_id,
                    event_type="promoted",
                    status_from=JobStatus.DEFERRED,
                    status_to=JobStatus.QUEUED,
                    details={"deferred_reason": candidate.deferred_reason},
                )
                session.commit()
                promoted = session.exec(
                    select(ResearchJob).where(ResearchJob.job_id == candidate.job_id),
                ).one()
                return _to_job_view(promoted)

    def list_ready_jobs(self, *, limit: int) -> list[ResearchJobView]:
        """QUEUED jobs eligible now, highest priority then oldest first."""

        if limit <= 0:
            return []
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            rows = session.exec(
                select(ResearchJob)
                .where(
                    ResearchJob.status == JobStatus.QUEUED.value,
                    or_(
                        col(ResearchJob.scheduled_for).is_(None),
                        col(ResearchJob.scheduled_for) <= now,
                    ),
                )
                .order_by(
                    col(ResearchJob.priority).desc(),
                    col(ResearchJob.created_at).asc(),
                )
                .limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def claim_job(self, *, job_id: str) -> bool:
        """Atomically flip a QUEUED job to RUNNING."""

        now = self._clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ResearchJob)
                .where(
                    col(ResearchJob.job_id) == job_id,
                    col(ResearchJob.status) == JobStatus.QUEUED.value,
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    started_at=to_db_datetime(now),
                    completed_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="started",
                status_from=JobStatus.QUEUED,
                status_to=JobStatus.RUNNING,
                details={},
            )
            session.commit()
            return True

    def complete_job(self, *, job_id: str, summary: JobResultSummary) -> bool:
        """Mark a running job as completed with its result summary."""

        now = self._clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ResearchJob)
                .where(
                    col(ResearchJob.job_id) == job_id,
                    col(ResearchJob.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    artifacts_total=summary.artifacts_total,
                    candidates_created=summary.candidates_created,
                    duplicates_filtered=summary.duplicates_filtered,
                    cost_usd=summary.cost_usd,
                    input_tokens=summary.input_tokens,
                    output_tokens=summary.output_tokens,
                    wrapper_attempts=summary.wrapper_attempts,
                    latency_ms=summary.latency_ms,
                    failure_class=None,
                    error_message=None,
                    action_required=False,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.COMPLETED,
                details=summary.to_event_details(),
            )
            session.commit()
            return True

    def fail_job(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        failure_class: FailureClass,
        error_message: str,
        action_required: bool,
        retry_count: int | None = None,
        cost_usd: float | None = None,
        wrapper_attempts: int | None = None,
    ) -> bool:
        """Mark a running job as terminally failed."""

        now = self._clock()
        values: dict[str, Any] = {
            "status": JobStatus.FAILED.value,
            "failure_class": failure_class.value,
            "error_message": error_message,
            "action_required": action_required,
            "cost_usd": cost_usd,
            "wrapper_attempts": wrapper_attempts,
            "completed_at": to_db_datetime(now),
            "updated_at": to_db_datetime(now),
        }
        if retry_count is not None:
            values["retry_count"] = retry_count
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ResearchJob)
                .where(
                    col(ResearchJob.job_id) == job_id,
                    col(ResearchJob.status) == JobStatus.RUNNING.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="failed",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.FAILED,
                details={
                    "failure_class": failure_class.value,
                    "error_message": error_message,
                    "action_required": action_required,
                    "retry_count": retry_count,
                },
            )
            session.commit()
            return True

    def schedule_retry(
        self,
        *,
        job_id: str,
        retry_count: int,
        failure_class: FailureClass,
        error_message: str,
    ) -> bool:
        """Requeue a running job after a retryable failure."""

        now = self._clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ResearchJob)
                .where(
                    col(ResearchJob.job_id) == job_id,
                    col(ResearchJob.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    retry_count=retry_count,
                    failure_class=failure_class.value,
                    error_message=error_message,
                    scheduled_for=to_db_datetime(now),
                    started_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_scheduled",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.QUEUED,
                details={
                    "retry_count": retry_count,
                    "failure_class": failure_class.value,
                    "error_message": error_message,
                },
            )
            session.commit()
            return True

    def release_job(self, *, job_id: str, reason: str) -> bool:
        """Return a running job to QUEUED without touching its retry budget."""

        now = self._clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ResearchJob)
                .where(
                    col(ResearchJob.job_id) == job_id,
                    col(ResearchJob.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    scheduled_for=to_db_datetime(now),
                    started_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="released",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.QUEUED,
                details={"reason": reason},
            )
            session.commit()
            return True

    def recover_orphaned_jobs(self) -> list[str]:
        """Requeue RUNNING rows left behind by a crashed process."""

        with Session(self.engine) as session:
            job_ids = list(
                session.exec(
                    select(ResearchJob.job_id).where(
                        ResearchJob.status == JobStatus.RUNNING.value,
                    ),
                ).all(),
            )
        recovered = [
            job_id
            for job_id in job_ids
            if self.release_job(job_id=job_id, reason="orphaned_on_start")
        ]
        if recovered:
            logger.warning("Recovered %d orphaned running job(s)", len(recovered))
        return recovered

    def get_job(self, *, job_id: str) -> ResearchJobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ResearchJob).where(ResearchJob.job_id == job_id),
            ).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        mode: ResearchMode | None = None,
        limit: int = 50,
    ) -> list[ResearchJobView]:
        """List recent jobs, optionally filtered by status or mode."""

        with Session(self.engine) as session:
            statement = select(ResearchJob).order_by(col(ResearchJob.created_at).desc())
            if status is not None:
                statement = statement.where(ResearchJob.status == status.value)
            if mode is not None:
                statement = statement.where(ResearchJob.mode == mode.value)
            rows = session.exec(statement.limit(limit)).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> ResearchJobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.exec(
                select(ResearchJob).where(ResearchJob.job_id == job_id),
            ).one_or_none()
            if job is None:
                return None
            event_rows = session.exec(
                select(ResearchJobEvent)
                .where(ResearchJobEvent.job_id == job_id)
                .order_by(col(ResearchJobEvent.created_at).asc(), col(ResearchJobEvent.id).asc()),
            ).all()

        events = [
            JobEventView(
                event_id=row.id or 0,
                job_id=row.job_id,
                event_type=row.event_type,
                status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=_load_json_dict(row.details_json),
            )
            for row in event_rows
        ]
        return ResearchJobDetails(job=_to_job_view(job), events=events)

    def count_jobs_by_status(self) -> dict[JobStatus, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ResearchJob.status, func.count()).group_by(ResearchJob.status),
            ).all()
        counts = dict.fromkeys(JobStatus, 0)
        for status, total in rows:
            counts[JobStatus(status)] = int(total)
        return counts

    def count_finished_since(self, *, since: datetime) -> dict[JobStatus, int]:
        """Completed/failed job counts whose completion falls after ``since``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ResearchJob.status, func.count())
                .where(
                    col(ResearchJob.status).in_(
                        [JobStatus.COMPLETED.value, JobStatus.FAILED.value],
                    ),
                    col(ResearchJob.completed_at) >= to_db_datetime(since),
                )
                .group_by(ResearchJob.status),
            ).all()
        counts = {JobStatus.COMPLETED: 0, JobStatus.FAILED: 0}
        for status, total in rows:
            counts[JobStatus(status)] = int(total)
        return counts

    # -- orchestrator state ---------------------------------------------------

    def load_state(self) -> OrchestratorStateSnapshot:
        """Read persisted enabled flag, daily counters and per-mode last runs."""

        self._ensure_state_row()
        with Session(self.engine) as session:
            state = session.exec(
                select(OrchestratorStateRow).where(
                    OrchestratorStateRow.id == ORCHESTRATOR_SINGLETON_ID,
                ),
            ).one()
            run_rows = session.exec(select(ResearchModeRun)).all()

        last_runs: dict[ResearchMode, datetime | None] = dict.fromkeys(ResearchMode)
        for row in run_rows:
            try:
                mode = ResearchMode(row.mode)
            except ValueError:
                logger.warning("Ignoring last-run row for unknown mode %r", row.mode)
                continue
            last_runs[mode] = optional_utc(row.last_run_at)
        return OrchestratorStateSnapshot(
            enabled=state.enabled,
            daily_window=state.daily_window,
            daily_cost_usd=state.daily_cost_usd,
            daily_job_count=state.daily_job_count,
            last_runs=last_runs,
        )

    def save_state(self, snapshot: OrchestratorStateSnapshot) -> None:
        """Persist the in-memory orchestrator state."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            state = session.exec(
                select(OrchestratorStateRow).where(
                    OrchestratorStateRow.id == ORCHESTRATOR_SINGLETON_ID,
                ),
            ).one_or_none()
            if state is None:
                state = OrchestratorStateRow(id=ORCHESTRATOR_SINGLETON_ID, updated_at=now)
            state.enabled = snapshot.enabled
            state.daily_window = snapshot.daily_window
            state.daily_cost_usd = snapshot.daily_cost_usd
            state.daily_job_count = snapshot.daily_job_count
            state.updated_at = now
            session.add(state)

            for mode, last_run_at in snapshot.last_runs.items():
                run_row = session.exec(
                    select(ResearchModeRun).where(ResearchModeRun.mode == mode.value),
                ).one_or_none()
                if run_row is None:
                    run_row = ResearchModeRun(mode=mode.value, updated_at=now)
                run_row.last_run_at = (
                    to_db_datetime(last_run_at) if last_run_at is not None else None
                )
                run_row.updated_at = now
                session.add(run_row)
            session.commit()

    def _ensure_state_row(self) -> None:
        with Session(self.engine) as session:
            state = session.exec(
                select(OrchestratorStateRow).where(
                    OrchestratorStateRow.id == ORCHESTRATOR_SINGLETON_ID,
                ),
            ).one_or_none()
            if state is not None:
                return
            session.add(
                OrchestratorStateRow(
                    id=ORCHESTRATOR_SINGLETON_ID,
                    enabled=False,
                    updated_at=to_db_datetime(self._clock()),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()

    # -- fingerprints & candidates --------------------------------------------

    def find_live_fingerprint(self, *, fingerprint_hash: str) -> FingerprintView | None:
        """Return the fingerprint if registered and not expired."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            row = session.exec(
                select(CandidateFingerprintRow).where(
                    CandidateFingerprintRow.fingerprint_hash == fingerprint_hash,
                ),
            ).one_or_none()
        if row is None or not _is_live(row, now=now):
            return None
        return _to_fingerprint_view(row)

    def record_fingerprint_hit(self, *, fingerprint_hash: str) -> int:
        """Bump hit counter of a fingerprint; returns new count (0 if missing)."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(CandidateFingerprintRow)
                .where(col(CandidateFingerprintRow.fingerprint_hash) == fingerprint_hash)
                .values(
                    hit_count=col(CandidateFingerprintRow.hit_count) + 1,
                    last_seen_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return 0
            session.commit()
            row = session.exec(
                select(CandidateFingerprintRow).where(
                    CandidateFingerprintRow.fingerprint_hash == fingerprint_hash,
                ),
            ).one()
            return row.hit_count

    def insert_candidate(self, candidate: CandidateWrite, *, ttl: timedelta) -> bool:
        """Persist a candidate and claim its fingerprint in one transaction.

        Returns ``False`` without writing the candidate when a live
        fingerprint already exists (including one inserted concurrently by
        another job); an expired fingerprint row is replaced.
        """

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            existing = session.exec(
                select(CandidateFingerprintRow).where(
                    CandidateFingerprintRow.fingerprint_hash == candidate.fingerprint_hash,
                ),
            ).one_or_none()
            if existing is not None:
                if _is_live(existing, now=now):
                    return False
                session.exec(
                    sa_delete(CandidateFingerprintRow).where(
                        col(CandidateFingerprintRow.id) == existing.id,
                    ),
                )

            session.add(
                ResearchCandidate(
                    candidate_id=candidate.candidate_id,
                    job_id=candidate.job_id,
                    fingerprint_hash=candidate.fingerprint_hash,
                    name=candidate.name,
                    category=candidate.category,
                    thesis=candidate.thesis,
                    rules_json=_dump_json(candidate.rules) or "{}",
                    confidence_score=candidate.confidence_score,
                    score_breakdown_json=_dump_json(candidate.score_breakdown) or "{}",
                    disposition=candidate.disposition.value,
                    created_at=now,
                ),
            )
            session.add(
                CandidateFingerprintRow(
                    fingerprint_hash=candidate.fingerprint_hash,
                    candidate_id=candidate.candidate_id,
                    category=candidate.category,
                    hit_count=1,
                    first_seen_at=now,
                    last_seen_at=now,
                    expires_at=now + ttl,
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def cleanup_expired_fingerprints(self) -> int:
        """Delete fingerprints whose TTL has elapsed."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(CandidateFingerprintRow).where(
                    col(CandidateFingerprintRow.expires_at).is_not(None),
                    col(CandidateFingerprintRow.expires_at) < now,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def list_candidates(
        self,
        *,
        job_id: str | None = None,
        limit: int = 50,
    ) -> list[CandidateView]:
        with Session(self.engine) as session:
            statement = select(ResearchCandidate).order_by(
                col(ResearchCandidate.created_at).desc(),
            )
            if job_id is not None:
                statement = statement.where(ResearchCandidate.job_id == job_id)
            rows = session.exec(statement.limit(limit)).all()
        return [
            CandidateView(
                candidate_id=row.candidate_id,
                job_id=row.job_id,
                fingerprint_hash=row.fingerprint_hash,
                name=row.name,
                category=row.category,
                confidence_score=row.confidence_score,
                disposition=Disposition(row.disposition),
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    # -- provider budgets -----------------------------------------------------

    def get_ledger(self, *, provider: str) -> BudgetLedgerView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ProviderBudget).where(ProviderBudget.provider == provider),
            ).one_or_none()
        return _to_ledger_view(row) if row is not None else None

    def list_ledgers(self) -> list[BudgetLedgerView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ProviderBudget).order_by(col(ProviderBudget.provider).asc()),
            ).all()
        return [_to_ledger_view(row) for row in rows]

    def upsert_ledger(
        self,
        *,
        provider: str,
        monthly_limit_usd: float | None = None,
        is_enabled: bool | None = None,
        is_paused: bool | None = None,
    ) -> BudgetLedgerView:
        """Create the ledger if missing, then apply the given operator fields."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            row = session.exec(
                select(ProviderBudget).where(ProviderBudget.provider == provider),
            ).one_or_none()
            if row is None:
                row = ProviderBudget(
                    provider=provider,
                    monthly_limit_usd=DEFAULT_MONTHLY_LIMIT_USD,
                    current_month_spend_usd=0.0,
                    budget_month_start=now,
                    updated_at=now,
                )
            if monthly_limit_usd is not None:
                row.monthly_limit_usd = monthly_limit_usd
                if row.current_month_spend_usd < monthly_limit_usd:
                    row.is_auto_throttled = False
            if is_enabled is not None:
                row.is_enabled = is_enabled
            if is_paused is not None:
                row.is_paused = is_paused
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_ledger_view(row)

    def reset_budget_month(
        self,
        *,
        provider: str,
        month_start: datetime,
        expected_month_start: datetime,
    ) -> bool:
        """Zero the monthly spend and clear the throttle, restarting the month.

        Only applies while the ledger still starts at ``expected_month_start``,
        so concurrent rollovers reset once.
        """

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ProviderBudget)
                .where(
                    col(ProviderBudget.provider) == provider,
                    col(ProviderBudget.budget_month_start) == to_db_datetime(expected_month_start),
                )
                .values(
                    current_month_spend_usd=0.0,
                    is_auto_throttled=False,
                    budget_month_start=to_db_datetime(month_start),
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def add_spend(self, *, provider: str, cost_usd: float) -> BudgetLedgerView | None:
        """Atomically add spend to a provider ledger; ``None`` if no ledger."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ProviderBudget)
                .where(col(ProviderBudget.provider) == provider)
                .values(
                    current_month_spend_usd=col(ProviderBudget.current_month_spend_usd) + cost_usd,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.exec(
                select(ProviderBudget).where(ProviderBudget.provider == provider),
            ).one()
            return _to_ledger_view(row)

    def mark_throttled(self, *, provider: str) -> bool:
        """Set the auto-throttle flag; ``True`` only for the call that flipped it."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ProviderBudget)
                .where(
                    col(ProviderBudget.provider) == provider,
                    col(ProviderBudget.is_auto_throttled) == False,  # noqa: E712
                )
                .values(is_auto_throttled=True, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # -- activity feed --------------------------------------------------------

    def add_activity_event(
        self,
        *,
        event_type: str,
        title: str,
        severity: Severity,
        trace_id: str | None,
        payload: dict[str, object],
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                ActivityEvent(
                    event_type=event_type,
                    title=title,
                    severity=severity.value,
                    trace_id=trace_id,
                    payload_json=_dump_json(payload),
                    created_at=to_db_datetime(self._clock()),
                ),
            )
            session.commit()

    def list_activity_events(
        self,
        *,
        event_type: str | None = None,
        limit: int = 50,
    ) -> list[ActivityEventView]:
        with Session(self.engine) as session:
            statement = select(ActivityEvent).order_by(
                col(ActivityEvent.created_at).desc(),
                col(ActivityEvent.id).desc(),
            )
            if event_type is not None:
                statement = statement.where(ActivityEvent.event_type == event_type)
            rows = session.exec(statement.limit(limit)).all()
        return [
            ActivityEventView(
                event_id=row.id or 0,
                event_type=row.event_type,
                title=row.title,
                severity=Severity(row.severity),
                trace_id=row.trace_id,
                created_at=to_utc_aware_datetime(row.created_at),
                payload=_load_json_dict(row.payload_json),
            )
            for row in rows
        ]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            ResearchJobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=_dump_json(details),
                created_at=to_db_datetime(self._clock()),
            ),
        )


def _dump_json(payload: dict[str, Any] | None) -> str | None:
    if not payload:
        return None
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)


def _load_json_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    if isinstance(parsed, dict):
        return parsed
    return {}


def _is_live(row: CandidateFingerprintRow, *, now: datetime) -> bool:
    if row.expires_at is None:
        return True
    return to_db_datetime(row.expires_at) >= now


def _to_fingerprint_view(row: CandidateFingerprintRow) -> FingerprintView:
    return FingerprintView(
        fingerprint_hash=row.fingerprint_hash,
        candidate_id=row.candidate_id,
        category=row.category,
        hit_count=row.hit_count,
        first_seen_at=to_utc_aware_datetime(row.first_seen_at),
        last_seen_at=to_utc_aware_datetime(row.last_seen_at),
        expires_at=optional_utc(row.expires_at),
    )


def _to_ledger_view(row: ProviderBudget) -> BudgetLedgerView:
    return BudgetLedgerView(
        provider=row.provider,
        monthly_limit_usd=row.monthly_limit_usd,
        current_month_spend_usd=row.current_month_spend_usd,
        is_enabled=row.is_enabled,
        is_paused=row.is_paused,
        is_auto_throttled=row.is_auto_throttled,
        budget_month_start=to_utc_aware_datetime(row.budget_month_start),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_job_view(row: ResearchJob) -> ResearchJobView:
    result: JobResultSummary | None = None
    if row.status == JobStatus.COMPLETED.value:
        result = JobResultSummary(
            artifacts_total=row.artifacts_total,
            candidates_created=row.candidates_created,
            duplicates_filtered=row.duplicates_filtered,
            cost_usd=row.cost_usd or 0.0,
            input_tokens=row.input_tokens or 0,
            output_tokens=row.output_tokens or 0,
            wrapper_attempts=row.wrapper_attempts or 0,
            latency_ms=row.latency_ms or 0,
        )
    return ResearchJobView(
        job_id=row.job_id,
        mode=ResearchMode(row.mode),
        status=JobStatus(row.status),
        priority=row.priority,
        cost_class=MODE_PROFILES[ResearchMode(row.mode)].cost_class,
        source=row.source,
        scheduled_for=optional_utc(row.scheduled_for),
        context=_load_json_dict(row.context_json),
        trace_id=row.trace_id,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        deferred_reason=row.deferred_reason,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        action_required=row.action_required,
        error_message=row.error_message,
        result=result,
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
