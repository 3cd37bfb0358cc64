from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import allure
import pytest

from research_orchestrator.config import SchedulerSettings
from research_orchestrator.orchestrator.models import (
    JobStatus,
    ResearchJobCreate,
    ResearchMode,
)
from research_orchestrator.orchestrator.scheduler import ResearchScheduler, TickSummary, is_in_slot

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Tick Loop"),
]

DAY = datetime(2026, 10, 17, tzinfo=UTC)


def _at(hour: int, minute: int, *, day: datetime = DAY) -> datetime:
    return day.replace(hour=hour, minute=minute)


@pytest.mark.parametrize(
    ("mode", "minute", "expected"),
    [
        (ResearchMode.SENTIMENT_BURST, 5, True),
        (ResearchMode.SENTIMENT_BURST, 35, True),
        (ResearchMode.SENTIMENT_BURST, 6, False),
        (ResearchMode.CONTRARIAN_SCAN, 20, True),
        (ResearchMode.CONTRARIAN_SCAN, 24, True),
        (ResearchMode.CONTRARIAN_SCAN, 25, False),
        (ResearchMode.DEEP_REASONING, 50, True),
        (ResearchMode.DEEP_REASONING, 54, True),
        (ResearchMode.DEEP_REASONING, 5, False),
    ],
)
def test_modes_fire_only_in_their_slots(mode: ResearchMode, minute: int, expected: bool) -> None:
    assert is_in_slot(mode, _at(9, minute)) is expected


def test_disabled_tick_enqueues_nothing_but_drains(make_orchestrator) -> None:
    orchestrator = make_orchestrator()
    manual = orchestrator.repository.create_job(
        ResearchJobCreate(mode=ResearchMode.DEEP_REASONING, status=JobStatus.QUEUED),
    )

    summary = orchestrator.tick(_at(12, 5))
    assert orchestrator.wait_idle(timeout=10)

    assert summary.decisions == {}
    assert summary.dispatched == [manual.job_id]
    assert orchestrator.state.last_runs[ResearchMode.SENTIMENT_BURST] is None


def test_enabled_tick_enqueues_due_mode_in_slot(make_orchestrator) -> None:
    orchestrator = make_orchestrator()
    orchestrator.enable()

    first = orchestrator.tick(_at(12, 5))
    assert orchestrator.wait_idle(timeout=10)

    assert list(first.decisions) == [ResearchMode.SENTIMENT_BURST]
    assert first.decisions[ResearchMode.SENTIMENT_BURST].status == JobStatus.QUEUED
    assert len(first.dispatched) == 1
    assert orchestrator.state.last_runs[ResearchMode.SENTIMENT_BURST] == _at(12, 5)

    assert orchestrator.tick(_at(12, 6)).decisions == {}
    assert orchestrator.tick(_at(12, 35)).decisions.keys() == {ResearchMode.SENTIMENT_BURST}
    assert orchestrator.wait_idle(timeout=10)

    persisted = orchestrator.repository.load_state()
    assert persisted.last_runs[ResearchMode.SENTIMENT_BURST] == _at(12, 35)


def test_mode_is_not_due_before_interval(make_orchestrator) -> None:
    orchestrator = make_orchestrator()
    orchestrator.enable()
    orchestrator.state.mark_run(ResearchMode.CONTRARIAN_SCAN, _at(11, 20))

    assert orchestrator.tick(_at(12, 20)).decisions == {}
    assert orchestrator.tick(_at(13, 20)).decisions.keys() == {ResearchMode.CONTRARIAN_SCAN}
    assert orchestrator.wait_idle(timeout=10)


def test_blocked_admission_does_not_record_run(make_orchestrator) -> None:
    orchestrator = make_orchestrator()
    orchestrator.enable()
    orchestrator.tick(_at(12, 4))
    orchestrator.state.add_cost(60.0)

    summary = orchestrator.tick(_at(12, 5))

    decision = summary.decisions[ResearchMode.SENTIMENT_BURST]
    assert decision.allowed is False
    assert orchestrator.state.last_runs[ResearchMode.SENTIMENT_BURST] is None


def test_daily_window_resets_counters(make_orchestrator) -> None:
    orchestrator = make_orchestrator()

    assert orchestrator.tick(_at(8, 0)).daily_reset is True
    orchestrator.state.add_cost(5.0)
    orchestrator.state.record_completion()
    assert orchestrator.tick(_at(23, 59)).daily_reset is False
    assert orchestrator.state.daily_cost_usd == 5.0

    next_day = orchestrator.tick(_at(0, 1, day=DAY + timedelta(days=1)))

    assert next_day.daily_reset is True
    assert orchestrator.state.daily_cost_usd == 0.0
    assert orchestrator.state.daily_job_count == 0
    assert orchestrator.repository.load_state().daily_window == "2026-10-18"


def test_tick_picks_up_enable_from_another_process(make_orchestrator) -> None:
    orchestrator = make_orchestrator()
    other = make_orchestrator()
    other.load()
    other.enable()

    summary = orchestrator.tick(_at(12, 5))
    assert orchestrator.wait_idle(timeout=10)

    assert orchestrator.state.enabled is True
    assert ResearchMode.SENTIMENT_BURST in summary.decisions


def test_schedules_report_next_run(make_orchestrator) -> None:
    orchestrator = make_orchestrator()
    now = _at(12, 0)
    orchestrator.state.mark_run(ResearchMode.DEEP_REASONING, _at(9, 50))

    schedules = {schedule.mode: schedule for schedule in orchestrator.scheduler.schedules(now)}

    assert list(schedules) == [
        ResearchMode.SENTIMENT_BURST,
        ResearchMode.CONTRARIAN_SCAN,
        ResearchMode.DEEP_REASONING,
    ]
    assert schedules[ResearchMode.SENTIMENT_BURST].next_run_at == now
    assert schedules[ResearchMode.DEEP_REASONING].next_run_at == _at(15, 50)


def test_run_loop_stops_after_max_ticks(make_orchestrator) -> None:
    orchestrator = make_orchestrator(scheduler=SchedulerSettings(tick_seconds=0.01))
    orchestrator.start()

    assert orchestrator.run_forever(max_ticks=2) == 2
    assert orchestrator.scheduler.running is False


class _SteppingClock:
    def __init__(self) -> None:
        self.value = 100.0

    def __call__(self) -> float:
        return self.value


class _RecordingStop(threading.Event):
    def __init__(self, clock: _SteppingClock) -> None:
        super().__init__()
        self.clock = clock
        self.timeouts: list[float] = []

    def wait(self, timeout: float | None = None) -> bool:
        self.timeouts.append(timeout or 0.0)
        self.clock.value += timeout or 0.0
        return False


def _timed_scheduler(orchestrator, clock: _SteppingClock, tick_costs: list[float]):
    scheduler = ResearchScheduler(
        queue=orchestrator.queue,
        state=orchestrator.state,
        repository=orchestrator.repository,
        intervals=orchestrator.settings.scheduler.intervals,
        context_provider=dict,
        tick_seconds=60.0,
        monotonic=clock,
    )
    costs = iter(tick_costs)

    def _tick(now=None):
        clock.value += next(costs)
        return TickSummary()

    scheduler.tick = _tick  # type: ignore[method-assign]
    scheduler._stop = _RecordingStop(clock)  # noqa: SLF001
    return scheduler


def test_run_loop_keeps_fixed_rate_despite_tick_cost(make_orchestrator) -> None:
    clock = _SteppingClock()
    scheduler = _timed_scheduler(make_orchestrator(), clock, [0.5, 0.5, 0.5, 0.5])

    assert scheduler.run_loop(max_ticks=4) == 4
    assert scheduler._stop.timeouts == [59.5, 59.5, 59.5]  # noqa: SLF001
    assert clock.value == 100.0 + 3 * 60.0 + 0.5


def test_run_loop_runs_next_tick_at_once_after_overrun(make_orchestrator) -> None:
    clock = _SteppingClock()
    scheduler = _timed_scheduler(make_orchestrator(), clock, [75.0, 1.0, 1.0])

    assert scheduler.run_loop(max_ticks=3) == 3
    assert scheduler._stop.timeouts == [0.0, 59.0]  # noqa: SLF001
