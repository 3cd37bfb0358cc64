from __future__ import annotations

import allure

from conftest import GatedProvider, RecordingSink
from research_orchestrator.config import LimitSettings
from research_orchestrator.orchestrator.models import JobStatus, ResearchMode
from research_orchestrator.orchestrator.queue import CAPACITY_REASON

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Admission & Dispatch"),
]

CONTEXT = {"current_regime": "RISK_ON"}


def _wait_entered(provider: GatedProvider, count: int) -> None:
    for _ in range(count):
        assert provider.entered.acquire(timeout=10)


def test_drain_respects_concurrency_limit(make_orchestrator) -> None:
    provider = GatedProvider()
    orchestrator = make_orchestrator(provider, limits=LimitSettings(max_concurrent_jobs=3))
    queue = orchestrator.queue

    decisions = [queue.enqueue(ResearchMode.SENTIMENT_BURST, CONTEXT) for _ in range(5)]
    assert [decision.status for decision in decisions] == [JobStatus.QUEUED] * 5

    first = queue.drain()
    _wait_entered(provider, 3)

    counts = orchestrator.repository.count_jobs_by_status()
    assert len(first) == 3
    assert counts[JobStatus.RUNNING] == 3
    assert counts[JobStatus.QUEUED] == 2
    assert orchestrator.state.active_count() == 3
    assert queue.drain() == []

    provider.gate.set()
    assert orchestrator.wait_idle(timeout=10)
    second = queue.drain()
    assert orchestrator.wait_idle(timeout=10)

    assert len(second) == 2
    assert set(first).isdisjoint(second)
    assert orchestrator.repository.count_jobs_by_status()[JobStatus.COMPLETED] == 5
    assert provider.calls == 5


def test_enqueue_at_capacity_defers(make_orchestrator) -> None:
    provider = GatedProvider()
    orchestrator = make_orchestrator(provider, limits=LimitSettings(max_concurrent_jobs=1))
    queue = orchestrator.queue

    running = queue.enqueue(ResearchMode.CONTRARIAN_SCAN, CONTEXT)
    assert queue.drain() == [running.job_id]
    _wait_entered(provider, 1)

    deferred = queue.enqueue(ResearchMode.CONTRARIAN_SCAN, CONTEXT)

    assert deferred.allowed is True
    assert deferred.status == JobStatus.DEFERRED
    assert deferred.reason == CAPACITY_REASON
    job = orchestrator.repository.get_job(job_id=deferred.job_id or "")
    assert job is not None
    assert job.deferred_reason == CAPACITY_REASON
    provider.gate.set()
    assert orchestrator.wait_idle(timeout=10)


def test_drain_never_promotes_deferred_jobs(make_orchestrator) -> None:
    provider = GatedProvider()
    orchestrator = make_orchestrator(provider, limits=LimitSettings(max_concurrent_jobs=1))
    queue = orchestrator.queue

    queue.enqueue(ResearchMode.SENTIMENT_BURST, CONTEXT)
    queue.drain()
    _wait_entered(provider, 1)
    deferred = queue.enqueue(ResearchMode.SENTIMENT_BURST, CONTEXT)
    provider.gate.set()
    assert orchestrator.wait_idle(timeout=10)

    assert queue.drain() == []
    job = orchestrator.repository.get_job(job_id=deferred.job_id or "")
    assert job is not None
    assert job.status == JobStatus.DEFERRED

    other_mode = queue.enqueue(ResearchMode.DEEP_REASONING, CONTEXT)
    assert other_mode.promoted is False

    promoted = queue.enqueue(ResearchMode.SENTIMENT_BURST, CONTEXT)
    assert promoted.promoted is True
    assert promoted.job_id == deferred.job_id
    assert promoted.status == JobStatus.QUEUED
    assert orchestrator.repository.count_jobs_by_status()[JobStatus.DEFERRED] == 0


def test_blocked_admission_creates_no_job(make_orchestrator) -> None:
    orchestrator = make_orchestrator()
    orchestrator.budget.set_limit("echo", 5.0)
    orchestrator.budget.pause("echo")

    decision = orchestrator.queue.enqueue(ResearchMode.SENTIMENT_BURST, CONTEXT)

    assert decision.allowed is False
    assert decision.job_id is None
    assert decision.reason == "Provider echo budget is paused"
    assert orchestrator.repository.list_jobs() == []


def test_drain_after_shutdown_returns_job_to_queue(make_orchestrator) -> None:
    orchestrator = make_orchestrator()
    decision = orchestrator.queue.enqueue(ResearchMode.SENTIMENT_BURST, CONTEXT)
    orchestrator.controller.shutdown(wait=True)

    assert orchestrator.queue.drain() == []

    details = orchestrator.repository.get_job_details(job_id=decision.job_id or "")
    assert details is not None
    assert details.job.status == JobStatus.QUEUED
    assert details.events[-1].details == {"reason": "executor_unavailable"}
    assert orchestrator.state.active_count() == 0


def test_open_persistence_circuit_blocks_admission(make_orchestrator) -> None:
    sink = RecordingSink()
    orchestrator = make_orchestrator(sink=sink)
    breaker = orchestrator.persistence.breaker
    for _ in range(breaker.failure_threshold):
        breaker.record_failure()

    decision = orchestrator.queue.enqueue(ResearchMode.SENTIMENT_BURST, CONTEXT)
    triggered = orchestrator.trigger_manual_run(ResearchMode.DEEP_REASONING, CONTEXT)

    assert decision.allowed is False
    assert decision.job_id is None
    assert decision.reason is not None
    assert decision.reason.startswith("Persistence error: Circuit 'persistence' is open")
    assert triggered.accepted is False
    assert orchestrator.repository.list_jobs() == []
    assert sink.types() == ["admission_blocked", "admission_blocked"]


def test_every_admission_outcome_is_reported(make_orchestrator) -> None:
    sink = RecordingSink()
    provider = GatedProvider()
    orchestrator = make_orchestrator(
        provider,
        sink=sink,
        limits=LimitSettings(max_concurrent_jobs=1),
    )
    queue = orchestrator.queue

    queued = queue.enqueue(ResearchMode.SENTIMENT_BURST, CONTEXT, source="manual")
    queue.drain()
    _wait_entered(provider, 1)
    deferred = queue.enqueue(ResearchMode.SENTIMENT_BURST, CONTEXT)
    provider.gate.set()
    assert orchestrator.wait_idle(timeout=10)
    promoted = queue.enqueue(ResearchMode.SENTIMENT_BURST, CONTEXT)

    admissions = [event for event in sink.events if event[0].startswith("job_")]
    assert [event[0] for event in admissions] == ["job_admitted", "job_deferred", "job_promoted"]
    assert [event[3]["job_id"] for event in admissions] == [
        queued.job_id,
        deferred.job_id,
        promoted.job_id,
    ]
    assert admissions[0][3]["source"] == "manual"
    assert admissions[1][3]["reason"] == CAPACITY_REASON
    assert admissions[2][3]["status"] == "queued"
