from __future__ import annotations

import allure
import pytest
from sqlalchemy.exc import OperationalError

from conftest import RecordingSink
from research_orchestrator.config import LimitSettings, RetrySettings
from research_orchestrator.orchestrator.backend import EchoProvider
from research_orchestrator.orchestrator.backend.base import ProviderError
from research_orchestrator.orchestrator.models import FailureClass, JobStatus, ResearchMode
from research_orchestrator.orchestrator.resilience import CircuitState

pytestmark = [
    allure.epic("Job Execution"),
    allure.feature("Worker Outcomes"),
]


def _run_one(orchestrator, mode: ResearchMode = ResearchMode.SENTIMENT_BURST):
    result = orchestrator.trigger_manual_run(mode)
    assert result.accepted
    assert orchestrator.wait_idle(timeout=10)
    job = orchestrator.repository.get_job(job_id=result.job_id)
    assert job is not None
    return job


def test_job_completes_with_candidates_and_events(make_orchestrator) -> None:
    provider = EchoProvider(cost_usd=0.25)
    orchestrator = make_orchestrator(provider)

    job = _run_one(orchestrator, ResearchMode.CONTRARIAN_SCAN)

    assert job.status == JobStatus.COMPLETED
    assert job.result is not None
    assert job.result.artifacts_total == 2
    assert job.result.candidates_created == 2
    assert job.result.duplicates_filtered == 0
    assert job.result.cost_usd == pytest.approx(0.25)
    assert job.result.wrapper_attempts == 1
    assert orchestrator.state.daily_job_count == 1
    assert len(orchestrator.list_candidates(job_id=job.job_id)) == 2
    assert "Research mode: CONTRARIAN_SCAN" in provider.requests[0].user_prompt
    assert provider.requests[0].trace_id == job.trace_id

    completed = orchestrator.list_activity(event_type="research_job_completed")
    assert len(completed) == 1
    assert completed[0].trace_id == job.trace_id
    assert completed[0].payload["candidates_created"] == 2


def test_identical_output_is_deduplicated_across_jobs(make_orchestrator) -> None:
    orchestrator = make_orchestrator()

    first = _run_one(orchestrator)
    second = _run_one(orchestrator)

    assert first.result is not None and second.result is not None
    assert first.result.candidates_created == 2
    assert second.result.candidates_created == 0
    assert second.result.duplicates_filtered == 2


def test_rate_limits_are_retried_inside_the_call(make_orchestrator) -> None:
    provider = EchoProvider(failures=[429, 429, 429])
    orchestrator = make_orchestrator(provider)

    job = _run_one(orchestrator)

    assert job.status == JobStatus.COMPLETED
    assert job.retry_count == 0
    assert job.result is not None
    assert job.result.wrapper_attempts == 4
    assert provider.calls == 4
    assert orchestrator.provider_breaker.state == CircuitState.CLOSED


def test_auth_failure_is_terminal_and_needs_action(make_orchestrator) -> None:
    provider = EchoProvider(failures=[401])
    orchestrator = make_orchestrator(provider)

    job = _run_one(orchestrator)

    assert job.status == JobStatus.FAILED
    assert job.failure_class == FailureClass.ACCESS_OR_AUTH
    assert job.action_required is True
    assert job.retry_count == 0
    assert provider.calls == 1
    failed = orchestrator.list_activity(event_type="research_job_failed")
    assert len(failed) == 1
    assert failed[0].payload["action_hint"]


def test_exhausted_retryable_call_requeues_job(make_orchestrator) -> None:
    provider = EchoProvider(failures=[503])
    orchestrator = make_orchestrator(
        provider,
        retry=RetrySettings(max_attempts=1, initial_delay_seconds=0.0, max_delay_seconds=0.0),
    )

    job = _run_one(orchestrator)

    assert job.status == JobStatus.QUEUED
    assert job.retry_count == 1
    assert job.failure_class == FailureClass.SERVER_ERROR
    assert len(orchestrator.list_activity(event_type="research_job_retry_scheduled")) == 1

    assert orchestrator.queue.drain() == [job.job_id]
    assert orchestrator.wait_idle(timeout=10)
    finished = orchestrator.repository.get_job(job_id=job.job_id)
    assert finished is not None
    assert finished.status == JobStatus.COMPLETED
    assert finished.retry_count == 1


def test_retry_budget_exhaustion_fails_job(make_orchestrator) -> None:
    provider = EchoProvider(failures=[503])
    orchestrator = make_orchestrator(
        provider,
        retry=RetrySettings(max_attempts=1, initial_delay_seconds=0.0, max_delay_seconds=0.0),
        limits=LimitSettings(max_retries=1),
    )

    job = _run_one(orchestrator)

    assert job.status == JobStatus.FAILED
    assert job.retry_count == 1
    assert job.action_required is False
    assert job.error_message is not None
    assert job.error_message.startswith("Retry budget exhausted")


def test_failed_call_cost_is_booked(make_orchestrator) -> None:
    provider = EchoProvider(
        failures=[ProviderError("bad request", status_code=400, cost_usd=0.1)],
    )
    orchestrator = make_orchestrator(provider)

    job = _run_one(orchestrator)

    assert job.status == JobStatus.FAILED
    assert job.failure_class == FailureClass.MALFORMED_REQUEST
    assert orchestrator.state.daily_cost_usd == pytest.approx(0.1)


def test_stop_cancels_backoff_and_requeues_job(make_orchestrator) -> None:
    provider = EchoProvider(failures=[503])
    orchestrator = make_orchestrator(
        provider,
        retry=RetrySettings(max_attempts=4, initial_delay_seconds=30.0, max_delay_seconds=30.0),
    )

    result = orchestrator.trigger_manual_run(ResearchMode.DEEP_REASONING)
    orchestrator.stop(wait=True)

    job = orchestrator.repository.get_job(job_id=result.job_id or "")
    assert job is not None
    assert job.status == JobStatus.QUEUED
    assert job.retry_count == 0
    assert orchestrator.state.active_count() == 0
    details = orchestrator.inspect_job(job.job_id)
    assert details.events[-1].details == {"reason": "cancelled"}


def test_open_provider_circuit_requeues_without_calling(make_orchestrator) -> None:
    provider = EchoProvider()
    orchestrator = make_orchestrator(provider)
    for _ in range(orchestrator.provider_breaker.failure_threshold):
        orchestrator.provider_breaker.record_failure()

    job = _run_one(orchestrator)

    assert job.status == JobStatus.QUEUED
    assert job.failure_class == FailureClass.CIRCUIT_OPEN
    assert job.retry_count == 1
    assert provider.calls == 0
    changes = orchestrator.list_activity(event_type="circuit_state_changed")
    assert changes[0].payload["to"] == "open"


def test_spend_is_booked_when_post_processing_crashes(make_orchestrator, monkeypatch) -> None:
    sink = RecordingSink()
    orchestrator = make_orchestrator(EchoProvider(cost_usd=2.0), sink=sink)

    def _explode(*_args, **_kwargs):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(orchestrator.executor.post_processor, "process", _explode)

    job = _run_one(orchestrator)

    assert job.status == JobStatus.FAILED
    assert job.failure_class == FailureClass.UNKNOWN
    assert job.error_message is not None
    assert job.error_message.startswith("OperationalError")
    assert orchestrator.state.daily_cost_usd == pytest.approx(2.0)
    failed = [event for event in sink.events if event[0] == "research_job_failed"]
    assert len(failed) == 1
    assert failed[0][3]["job_id"] == job.job_id
    assert failed[0][3]["failure_class"] == "unknown"
