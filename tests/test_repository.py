from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from research_orchestrator.orchestrator.models import (
    FailureClass,
    JobResultSummary,
    JobStatus,
    OrchestratorStateSnapshot,
    ResearchJobCreate,
    ResearchMode,
)
from research_orchestrator.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Durable Job State"),
]


def _queued(repository: OrchestratorRepository, mode: ResearchMode, **kwargs) -> str:
    job = repository.create_job(ResearchJobCreate(mode=mode, status=JobStatus.QUEUED, **kwargs))
    return job.job_id


def test_create_job_rejects_non_initial_status(repository: OrchestratorRepository) -> None:
    with pytest.raises(ValueError, match="must be queued or deferred"):
        repository.create_job(
            ResearchJobCreate(mode=ResearchMode.SENTIMENT_BURST, status=JobStatus.RUNNING),
        )


def test_create_job_copies_mode_profile(repository: OrchestratorRepository) -> None:
    job = repository.create_job(
        ResearchJobCreate(
            mode=ResearchMode.DEEP_REASONING,
            status=JobStatus.QUEUED,
            context={"current_regime": "RISK_ON"},
            source="manual",
        ),
    )

    assert job.priority == 40
    assert job.cost_class.value == "high"
    assert job.context == {"current_regime": "RISK_ON"}
    assert job.source == "manual"
    assert job.trace_id
    assert job.retry_count == 0


def test_ready_jobs_are_ordered_by_priority_then_age(
    repository: OrchestratorRepository,
    clock,
) -> None:
    deep = _queued(repository, ResearchMode.DEEP_REASONING)
    clock.advance(seconds=1)
    sentiment_old = _queued(repository, ResearchMode.SENTIMENT_BURST)
    clock.advance(seconds=1)
    sentiment_new = _queued(repository, ResearchMode.SENTIMENT_BURST)
    _queued(
        repository,
        ResearchMode.SENTIMENT_BURST,
        scheduled_for=clock() + timedelta(hours=1),
    )

    ready = repository.list_ready_jobs(limit=10)

    assert [job.job_id for job in ready] == [sentiment_old, sentiment_new, deep]
    assert repository.list_ready_jobs(limit=0) == []


def test_claim_is_compare_and_set(repository: OrchestratorRepository) -> None:
    job_id = _queued(repository, ResearchMode.CONTRARIAN_SCAN)

    assert repository.claim_job(job_id=job_id) is True
    assert repository.claim_job(job_id=job_id) is False

    job = repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status == JobStatus.RUNNING
    assert job.started_at is not None


def test_terminal_jobs_are_never_overwritten(repository: OrchestratorRepository) -> None:
    job_id = _queued(repository, ResearchMode.CONTRARIAN_SCAN)
    assert repository.complete_job(job_id=job_id, summary=JobResultSummary()) is False

    repository.claim_job(job_id=job_id)
    assert repository.complete_job(
        job_id=job_id,
        summary=JobResultSummary(candidates_created=2, cost_usd=0.5, wrapper_attempts=2),
    )
    assert (
        repository.fail_job(
            job_id=job_id,
            failure_class=FailureClass.UNKNOWN,
            error_message="late failure",
            action_required=False,
        )
        is False
    )
    assert repository.release_job(job_id=job_id, reason="late cancel") is False

    job = repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status == JobStatus.COMPLETED
    assert job.result is not None
    assert job.result.candidates_created == 2
    assert job.result.wrapper_attempts == 2


def test_every_transition_appends_an_event(repository: OrchestratorRepository) -> None:
    job_id = _queued(repository, ResearchMode.SENTIMENT_BURST)
    repository.claim_job(job_id=job_id)
    repository.schedule_retry(
        job_id=job_id,
        retry_count=1,
        failure_class=FailureClass.RATE_LIMITED,
        error_message="HTTP 429: slow down",
    )
    repository.claim_job(job_id=job_id)
    repository.fail_job(
        job_id=job_id,
        failure_class=FailureClass.ACCESS_OR_AUTH,
        error_message="HTTP 401: bad key",
        action_required=True,
    )

    details = repository.get_job_details(job_id=job_id)

    assert details is not None
    assert [event.event_type for event in details.events] == [
        "enqueued",
        "started",
        "retry_scheduled",
        "started",
        "failed",
    ]
    assert details.events[2].details["retry_count"] == 1
    assert details.job.retry_count == 1
    assert details.job.action_required is True
    assert details.job.failure_class == FailureClass.ACCESS_OR_AUTH


def test_promote_oldest_deferred_of_same_mode(
    repository: OrchestratorRepository,
    clock,
) -> None:
    oldest = repository.create_job(
        ResearchJobCreate(
            mode=ResearchMode.SENTIMENT_BURST,
            status=JobStatus.DEFERRED,
            deferred_reason="Max concurrent jobs reached",
        ),
    )
    clock.advance(seconds=1)
    repository.create_job(
        ResearchJobCreate(mode=ResearchMode.SENTIMENT_BURST, status=JobStatus.DEFERRED),
    )

    assert repository.promote_oldest_deferred(mode=ResearchMode.DEEP_REASONING) is None
    promoted = repository.promote_oldest_deferred(mode=ResearchMode.SENTIMENT_BURST)

    assert promoted is not None
    assert promoted.job_id == oldest.job_id
    assert promoted.status == JobStatus.QUEUED
    assert promoted.deferred_reason is None
    assert repository.count_jobs_by_status()[JobStatus.DEFERRED] == 1


def test_recover_orphaned_jobs_requeues_running(repository: OrchestratorRepository) -> None:
    job_id = _queued(repository, ResearchMode.DEEP_REASONING)
    repository.claim_job(job_id=job_id)

    assert repository.recover_orphaned_jobs() == [job_id]
    assert repository.recover_orphaned_jobs() == []

    details = repository.get_job_details(job_id=job_id)
    assert details is not None
    assert details.job.status == JobStatus.QUEUED
    assert details.events[-1].event_type == "released"
    assert details.events[-1].details == {"reason": "orphaned_on_start"}


def test_state_round_trip(repository: OrchestratorRepository, clock) -> None:
    initial = repository.load_state()
    assert initial.enabled is False
    assert initial.last_runs == dict.fromkeys(ResearchMode)

    repository.save_state(
        OrchestratorStateSnapshot(
            enabled=True,
            daily_window="2026-10-17",
            daily_cost_usd=1.25,
            daily_job_count=3,
            last_runs={**dict.fromkeys(ResearchMode), ResearchMode.SENTIMENT_BURST: clock()},
        ),
    )
    restored = repository.load_state()

    assert restored.enabled is True
    assert restored.daily_window == "2026-10-17"
    assert restored.daily_cost_usd == 1.25
    assert restored.daily_job_count == 3
    assert restored.last_runs[ResearchMode.SENTIMENT_BURST] == clock()
    assert restored.last_runs[ResearchMode.DEEP_REASONING] is None


def test_count_finished_since(repository: OrchestratorRepository, clock) -> None:
    done = _queued(repository, ResearchMode.SENTIMENT_BURST)
    failed = _queued(repository, ResearchMode.SENTIMENT_BURST)
    for job_id in (done, failed):
        repository.claim_job(job_id=job_id)
    repository.complete_job(job_id=done, summary=JobResultSummary())
    repository.fail_job(
        job_id=failed,
        failure_class=FailureClass.SERVER_ERROR,
        error_message="HTTP 503",
        action_required=False,
    )

    since = clock() - timedelta(hours=24)
    assert repository.count_finished_since(since=since) == {
        JobStatus.COMPLETED: 1,
        JobStatus.FAILED: 1,
    }
    clock.advance(hours=25)
    assert repository.count_finished_since(since=clock() - timedelta(hours=24)) == {
        JobStatus.COMPLETED: 0,
        JobStatus.FAILED: 0,
    }
