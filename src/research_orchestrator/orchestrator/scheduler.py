"""Tick-driven scheduler for the research modes."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from research_orchestrator.orchestrator.models import (
    MODE_PROFILES,
    AdmissionDecision,
    JobStatus,
    ModeSchedule,
    ResearchMode,
    modes_by_priority,
)
from research_orchestrator.orchestrator.queue import JobQueue
from research_orchestrator.orchestrator.repository import OrchestratorRepository
from research_orchestrator.orchestrator.state import OrchestratorState

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TickSummary:
    """What one scheduler tick did."""

    daily_reset: bool = False
    decisions: dict[ResearchMode, AdmissionDecision] = field(default_factory=dict)
    dispatched: list[str] = field(default_factory=list)


def is_in_slot(mode: ResearchMode, now: datetime) -> bool:
    return now.minute in MODE_PROFILES[mode].slot_minutes


class ResearchScheduler:
    """Enqueues due modes on each tick and drains the queue.

    A mode fires when its interval has elapsed since the last scheduled run
    and the current minute falls inside its staggered slot. The tick itself
    never waits for jobs; execution happens on the worker pool.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: JobQueue,
        state: OrchestratorState,
        repository: OrchestratorRepository,
        intervals: dict[ResearchMode, timedelta],
        context_provider: Callable[[], dict[str, Any]],
        tick_seconds: float = 60.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.queue = queue
        self.state = state
        self.repository = repository
        self.intervals = intervals
        self.context_provider = context_provider
        self.tick_seconds = tick_seconds
        self._monotonic = monotonic
        self._stop = threading.Event()
        self._running = threading.Event()

    @property
    def running(self) -> bool:
        return self._running.is_set()

    def tick(self, now: datetime | None = None) -> TickSummary:
        now = now or self.repository.now()
        summary = TickSummary(daily_reset=self.state.roll_daily_window(now))

        # The flag may have been toggled by another process.
        enabled = self.repository.load_state().enabled
        self.state.set_enabled(enabled)
        if enabled:
            for mode in modes_by_priority():
                if not (self.is_due(mode, now) and is_in_slot(mode, now)):
                    continue
                decision = self.queue.enqueue(mode, self.context_provider(), source="scheduler")
                summary.decisions[mode] = decision
                if decision.allowed and decision.status in {JobStatus.QUEUED, JobStatus.DEFERRED}:
                    self.state.mark_run(mode, now)

        summary.dispatched = self.queue.drain()
        self.repository.save_state(self.state.snapshot())
        return summary

    def is_due(self, mode: ResearchMode, now: datetime) -> bool:
        with self.state.lock:
            last_run = self.state.last_runs.get(mode)
        return last_run is None or now - last_run >= self.intervals[mode]

    def schedules(self, now: datetime) -> list[ModeSchedule]:
        with self.state.lock:
            last_runs = dict(self.state.last_runs)
        return [
            ModeSchedule(
                mode=mode,
                last_run_at=last_runs.get(mode),
                next_run_at=(
                    last_runs[mode] + self.intervals[mode]
                    if last_runs.get(mode) is not None
                    else now
                ),
            )
            for mode in modes_by_priority()
        ]

    def run_loop(self, *, max_ticks: int | None = None) -> int:
        """Tick every ``tick_seconds`` until stopped; return ticks run.

        Ticks keep a fixed rate: the wait after each tick is shortened by the
        time the tick took. After a tick that overran its period the next one
        runs at once and the schedule restarts from there, without a burst
        of catch-up ticks.
        """

        ticks = 0
        next_at = self._monotonic()
        self._stop.clear()
        self._running.set()
        try:
            with self._signal_handlers():
                while not self._stop.is_set():
                    try:
                        summary = self.tick()
                        logger.debug(
                            "Tick: enqueued=%d dispatched=%d",
                            len(summary.decisions),
                            len(summary.dispatched),
                        )
                    except Exception:  # noqa: BLE001
                        logger.exception("Scheduler tick failed")
                    ticks += 1
                    if max_ticks is not None and ticks >= max_ticks:
                        break
                    next_at = self._next_deadline(next_at)
                    self._stop.wait(timeout=max(0.0, next_at - self._monotonic()))
        finally:
            self._running.clear()
        return ticks

    def stop(self) -> None:
        self._stop.set()

    def _next_deadline(self, previous: float) -> float:
        next_at = previous + self.tick_seconds
        now = self._monotonic()
        if next_at < now:
            logger.warning("Scheduler tick overran by %.1fs", now - next_at)
            return now
        return next_at

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; stopping scheduler", name)
            self.stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
