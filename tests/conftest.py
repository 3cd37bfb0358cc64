"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from research_orchestrator.config import RetrySettings, Settings
from research_orchestrator.orchestrator.backend import EchoProvider, ReasoningProvider
from research_orchestrator.orchestrator.backend.base import ProviderRequest, ProviderResult
from research_orchestrator.orchestrator.models import Severity
from research_orchestrator.orchestrator.repository import OrchestratorRepository
from research_orchestrator.orchestrator.services import ResearchOrchestrator


class FakeClock:
    """Settable UTC clock shared by repository and services."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


class RecordingSink:
    """Activity sink that keeps events in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, Severity, dict[str, object]]] = []

    def emit(
        self,
        event_type: str,
        title: str,
        *,
        severity: Severity = Severity.INFO,
        trace_id: str | None = None,
        payload: dict[str, object] | None = None,
    ) -> None:
        self.events.append((event_type, title, severity, payload or {}))

    def types(self) -> list[str]:
        return [event[0] for event in self.events]


class GatedProvider(EchoProvider):
    """Echo provider that blocks every call until ``gate`` is set."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.gate = threading.Event()
        self.entered = threading.Semaphore(0)

    def generate(self, request: ProviderRequest) -> ProviderResult:
        self.entered.release()
        self.gate.wait(timeout=10)
        return super().generate(request)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 17, 12, 5, tzinfo=UTC))


@pytest.fixture()
def repository(tmp_path: Path, clock: FakeClock) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(tmp_path / "orchestrator.db", clock=clock)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "orchestrator.db",
        retry=RetrySettings(max_attempts=4, initial_delay_seconds=0.0, max_delay_seconds=0.0),
    )


@pytest.fixture()
def make_orchestrator(
    settings: Settings,
    repository: OrchestratorRepository,
) -> Iterator[Callable[..., ResearchOrchestrator]]:
    created: list[ResearchOrchestrator] = []

    def _make(
        provider: ReasoningProvider | None = None,
        sink: RecordingSink | None = None,
        **overrides: object,
    ) -> ResearchOrchestrator:
        orchestrator = ResearchOrchestrator(
            settings=replace(settings, **overrides),
            repository=repository,
            provider=provider or EchoProvider(),
            sink=sink,
            persistence_sleep=lambda _: None,
        )
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        orchestrator.close()
