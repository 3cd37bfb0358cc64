"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from research_orchestrator.config import ProviderSettings, Settings
from research_orchestrator.orchestrator.backend import (
    EchoProvider,
    HttpReasoningProvider,
    ReasoningProvider,
)
from research_orchestrator.orchestrator.models import (
    BudgetLedgerView,
    JobStatus,
    ResearchMode,
)
from research_orchestrator.orchestrator.repository import OrchestratorRepository
from research_orchestrator.orchestrator.services import ResearchOrchestrator

BUDGET_ACTIONS = ("pause", "resume", "enable", "disable")


@dataclass(slots=True)
class RunCommand:
    """CLI input for the scheduler loop."""

    db_path: Path | None
    max_ticks: int | None = None
    enable: bool = False


@dataclass(slots=True)
class TickCommand:
    """CLI input for a single scheduler tick."""

    db_path: Path | None
    wait_seconds: float = 300.0


@dataclass(slots=True)
class TriggerCommand:
    """CLI input for a manual run."""

    db_path: Path | None
    mode: str
    regime: str | None = None
    wait_seconds: float = 300.0


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


@dataclass(slots=True)
class ToggleCommand:
    """CLI input for enable/disable."""

    db_path: Path | None
    enabled: bool


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    mode: str | None
    limit: int


@dataclass(slots=True)
class InspectJobCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class BudgetSetCommand:
    """CLI input for changing a provider's monthly limit."""

    db_path: Path | None
    provider: str | None
    monthly_limit_usd: float


@dataclass(slots=True)
class BudgetActionCommand:
    """CLI input for pause/resume/enable/disable of a provider budget."""

    db_path: Path | None
    provider: str | None
    action: str


@dataclass(slots=True)
class ListCandidatesCommand:
    """CLI input for candidate listing."""

    db_path: Path | None
    job_id: str | None
    limit: int


@dataclass(slots=True)
class ListActivityCommand:
    """CLI input for activity feed listing."""

    db_path: Path | None
    event_type: str | None
    limit: int


class OrchestratorCliController:
    """Coordinates scheduler, queue and inspection CLI operations."""

    def run(self, command: RunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _orchestrator(settings, start=True) as orchestrator:
            if command.enable:
                orchestrator.enable()
            ticks = orchestrator.run_forever(max_ticks=command.max_ticks)
            status = orchestrator.status()
        return [
            f"Scheduler stopped after {ticks} tick(s): "
            f"jobs_today={status.daily_job_count} cost_today=${status.daily_cost_usd:.4f}",
        ]

    def tick(self, command: TickCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _orchestrator(settings, start=True) as orchestrator:
            summary = orchestrator.tick()
            orchestrator.wait_idle(timeout=command.wait_seconds)

        lines = [
            f"Tick: daily_reset={summary.daily_reset} "
            f"enqueued={len(summary.decisions)} dispatched={len(summary.dispatched)}",
        ]
        for mode, decision in summary.decisions.items():
            outcome = decision.status.value if decision.status is not None else "blocked"
            lines.append(
                f"  {mode.value}: {outcome} job_id={decision.job_id or '-'} "
                f"reason={decision.reason or '-'}",
            )
        return lines

    def trigger(self, command: TriggerCommand) -> list[str]:
        settings = _settings(command.db_path)
        mode = _parse_mode(command.mode)
        with _orchestrator(settings, start=True, recover_orphans=False) as orchestrator:
            context = None
            if command.regime is not None:
                context = {"current_regime": command.regime}
            result = orchestrator.trigger_manual_run(mode, context)
            if not result.accepted:
                return [f"Run not admitted: {result.reason}"]
            orchestrator.wait_idle(timeout=command.wait_seconds)
            job = orchestrator.repository.get_job(job_id=result.job_id or "")

        status = job.status.value if job is not None else "-"
        lines = [f"Run triggered: job_id={result.job_id} mode={mode.value} status={status}"]
        if job is not None and job.result is not None and job.status == JobStatus.COMPLETED:
            lines.append(
                f"  candidates={job.result.candidates_created} "
                f"duplicates={job.result.duplicates_filtered} "
                f"cost=${job.result.cost_usd:.4f} attempts={job.result.wrapper_attempts}",
            )
        if job is not None and job.error_message:
            lines.append(f"  error={job.error_message}")
        return lines

    def status(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _orchestrator(settings, start=False) as orchestrator:
            status = orchestrator.status()

        lines = [
            f"Enabled: {status.enabled}",
            f"Active jobs: {status.active_jobs}/{status.max_concurrent_jobs}",
            f"Today: jobs={status.daily_job_count} "
            f"cost=${status.daily_cost_usd:.4f} / ${status.max_daily_cost_usd:.2f}",
        ]
        for schedule in status.schedules:
            lines.append(
                f"  {schedule.mode.value}: last_run={_fmt(schedule.last_run_at)} "
                f"next_run={_fmt(schedule.next_run_at)}",
            )
        return lines

    def set_enabled(self, command: ToggleCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _orchestrator(settings, start=False) as orchestrator:
            changed = (
                orchestrator.enable() if command.enabled else orchestrator.disable()
            )
        state = "enabled" if command.enabled else "disabled"
        return [f"Orchestrator {state}" + ("" if changed else " (unchanged)")]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = JobStatus(command.status.strip().lower()) if command.status else None
        mode_filter = _parse_mode(command.mode) if command.mode else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, mode=mode_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} mode={job.mode.value} status={job.status.value} "
                f"priority={job.priority} retry={job.retry_count}/{job.max_retries} "
                f"source={job.source} created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: InspectJobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(job_id=command.job_id)
            candidates = repository.list_candidates(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Mode: {job.mode.value} (priority={job.priority} cost_class={job.cost_class.value})",
            f"Status: {job.status.value}",
            f"Trace: {job.trace_id}",
            f"Retry: {job.retry_count}/{job.max_retries}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Action required: {job.action_required}",
            f"Error: {job.error_message or '-'}",
            f"Deferred reason: {job.deferred_reason or '-'}",
        ]
        if job.result is not None:
            lines.append(
                f"Result: artifacts={job.result.artifacts_total} "
                f"created={job.result.candidates_created} "
                f"duplicates={job.result.duplicates_filtered} "
                f"cost=${job.result.cost_usd:.4f} tokens={job.result.input_tokens}/"
                f"{job.result.output_tokens} attempts={job.result.wrapper_attempts} "
                f"latency_ms={job.result.latency_ms}",
            )
        lines.append(f"Candidates: {len(candidates)}")
        for candidate in candidates:
            lines.append(
                f"  {candidate.candidate_id} {candidate.name} "
                f"score={candidate.confidence_score} disposition={candidate.disposition.value}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def budget_set(self, command: BudgetSetCommand) -> list[str]:
        settings = _settings(command.db_path)
        provider = command.provider or settings.provider.name
        with _orchestrator(settings, start=False) as orchestrator:
            ledger = orchestrator.budget.set_limit(provider, command.monthly_limit_usd)
        return [_ledger_line(ledger)]

    def budget_action(self, command: BudgetActionCommand) -> list[str]:
        if command.action not in BUDGET_ACTIONS:
            raise ValueError(f"Unsupported budget action: {command.action}")
        settings = _settings(command.db_path)
        provider = command.provider or settings.provider.name
        with _orchestrator(settings, start=False) as orchestrator:
            ledger = getattr(orchestrator.budget, command.action)(provider)
        return [_ledger_line(ledger)]

    def budget_show(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _orchestrator(settings, start=False) as orchestrator:
            ledgers = orchestrator.budget.list_ledgers()
        if not ledgers:
            return ["No provider budgets configured."]
        return [_ledger_line(ledger) for ledger in ledgers]

    def gc_fingerprints(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            removed = repository.cleanup_expired_fingerprints()
        return [f"Expired fingerprints removed: {removed}"]

    def health(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _orchestrator(settings, start=False) as orchestrator:
            snapshot = orchestrator.health(publish=False)

        inputs = snapshot.inputs
        lines = [
            f"Health: {snapshot.status.value}",
            f"Jobs: active={inputs.active_jobs} queued={inputs.queued_jobs} "
            f"deferred={inputs.deferred_jobs}",
            f"Last 24h: completed={inputs.completed_24h} failed={inputs.failed_24h} "
            f"failure_rate={snapshot.failure_rate_24h:.1%}",
            f"Daily budget: {snapshot.daily_utilization:.1%}",
            f"Alerts: {len(snapshot.alerts)}",
        ]
        for alert in snapshot.alerts:
            lines.append(f"  [{alert.severity.value}] {alert.type.value}: {alert.message}")
        return lines

    def list_candidates(self, command: ListCandidatesCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            candidates = repository.list_candidates(job_id=command.job_id, limit=command.limit)

        lines = [f"Candidates: {len(candidates)}"]
        for candidate in candidates:
            lines.append(
                f"  {candidate.candidate_id} {candidate.category} {candidate.name} "
                f"score={candidate.confidence_score} disposition={candidate.disposition.value}",
            )
        return lines

    def list_activity(self, command: ListActivityCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            events = repository.list_activity_events(
                event_type=command.event_type,
                limit=command.limit,
            )

        lines = [f"Activity events: {len(events)}"]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} [{event.severity.value}] "
                f"{event.event_type}: {event.title}",
            )
        return lines


def build_provider(settings: ProviderSettings) -> ReasoningProvider:
    if settings.kind == "echo":
        return EchoProvider(name=settings.name, cost_usd=settings.echo_cost_usd)
    return HttpReasoningProvider(
        api_key=settings.api_key,
        name=settings.name,
        base_url=settings.base_url,
        model=settings.model,
        timeout_seconds=settings.timeout_seconds,
    )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_mode(value: str) -> ResearchMode:
    return ResearchMode(value.strip().lower())


def _fmt(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


def _ledger_line(ledger: BudgetLedgerView) -> str:
    flags = [
        name
        for name, on in (
            ("disabled", not ledger.is_enabled),
            ("paused", ledger.is_paused),
            ("throttled", ledger.is_auto_throttled),
        )
        if on
    ]
    return (
        f"{ledger.provider}: ${ledger.current_month_spend_usd:.4f} / "
        f"${ledger.monthly_limit_usd:.2f} ({ledger.utilization:.1%}) "
        f"month_start={ledger.budget_month_start.date().isoformat()} "
        f"flags={','.join(flags) or '-'}"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _orchestrator(
    settings: Settings,
    *,
    start: bool,
    recover_orphans: bool = True,
) -> Iterator[ResearchOrchestrator]:
    provider = build_provider(settings.provider)
    with _repository(settings) as repository:
        orchestrator = ResearchOrchestrator(
            settings=settings,
            repository=repository,
            provider=provider,
        )
        if start:
            orchestrator.start(recover_orphans=recover_orphans)
        else:
            orchestrator.load()
        try:
            yield orchestrator
        finally:
            if start:
                orchestrator.stop(wait=True)
            else:
                orchestrator.close()
            provider.close()
