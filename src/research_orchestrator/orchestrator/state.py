"""In-memory orchestrator state shared by the scheduler, queue and workers."""

from __future__ import annotations

import logging
import threading
from datetime import datetime

from research_orchestrator.orchestrator.models import OrchestratorStateSnapshot, ResearchMode

logger = logging.getLogger(__name__)


class OrchestratorState:
    """Mutable orchestrator state guarded by a single lock.

    Plain attributes are read and written under ``lock``; the helper methods
    take it themselves and must not be called while it is held. ``active``
    maps each RUNNING job id to its cancellation token.
    """

    def __init__(self, *, enabled: bool = False) -> None:
        self.lock = threading.Lock()
        self.enabled = enabled
        self.last_runs: dict[ResearchMode, datetime | None] = dict.fromkeys(ResearchMode)
        self.daily_window: str | None = None
        self.daily_cost_usd = 0.0
        self.daily_job_count = 0
        self.active: dict[str, threading.Event] = {}

    def restore(self, snapshot: OrchestratorStateSnapshot) -> None:
        with self.lock:
            self.enabled = snapshot.enabled
            self.daily_window = snapshot.daily_window
            self.daily_cost_usd = snapshot.daily_cost_usd
            self.daily_job_count = snapshot.daily_job_count
            for mode in ResearchMode:
                self.last_runs[mode] = snapshot.last_runs.get(mode)

    def snapshot(self) -> OrchestratorStateSnapshot:
        with self.lock:
            return OrchestratorStateSnapshot(
                enabled=self.enabled,
                daily_window=self.daily_window,
                daily_cost_usd=self.daily_cost_usd,
                daily_job_count=self.daily_job_count,
                last_runs=dict(self.last_runs),
            )

    def roll_daily_window(self, now: datetime) -> bool:
        """Reset the daily counters when ``now`` is on a new UTC date."""

        window = now.date().isoformat()
        with self.lock:
            if self.daily_window == window:
                return False
            previous = self.daily_window
            self.daily_window = window
            self.daily_cost_usd = 0.0
            self.daily_job_count = 0
        logger.info("Daily window rolled %s -> %s", previous or "-", window)
        return True

    def add_cost(self, cost_usd: float) -> None:
        if cost_usd <= 0:
            return
        with self.lock:
            self.daily_cost_usd += cost_usd

    def record_completion(self) -> None:
        with self.lock:
            self.daily_job_count += 1

    def mark_run(self, mode: ResearchMode, at: datetime) -> None:
        with self.lock:
            self.last_runs[mode] = at

    def set_enabled(self, enabled: bool) -> bool:
        """Set the flag; return whether it changed."""

        with self.lock:
            changed = self.enabled != enabled
            self.enabled = enabled
        return changed

    def finish(self, job_id: str) -> None:
        with self.lock:
            self.active.pop(job_id, None)

    def active_count(self) -> int:
        with self.lock:
            return len(self.active)

    def cancel_all(self) -> int:
        with self.lock:
            tokens = list(self.active.values())
        for token in tokens:
            token.set()
        return len(tokens)
