"""CLI entrypoint for research-orchestrator."""

import logging
from pathlib import Path

import rich_click as click

from research_orchestrator import __version__
from research_orchestrator.orchestrator.controllers import (
    BUDGET_ACTIONS,
    BudgetActionCommand,
    BudgetSetCommand,
    DbCommand,
    InspectJobCommand,
    ListActivityCommand,
    ListCandidatesCommand,
    ListJobsCommand,
    OrchestratorCliController,
    RunCommand,
    TickCommand,
    ToggleCommand,
    TriggerCommand,
)
from research_orchestrator.orchestrator.models import JobStatus, ResearchMode

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

MODE_CHOICES = [mode.value for mode in ResearchMode]
STATUS_CHOICES = [status.value for status in JobStatus]


def _db_path_option(func):
    return click.option(
        "--db-path",
        type=click.Path(path_type=Path),
        default=None,
        help="SQLite DB path.",
    )(func)


@click.group()
@click.version_option(version=__version__, prog_name="research-orchestrator")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level.",
)
def research_orchestrator(log_level: str) -> None:
    """Research job orchestrator CLI.

    Schedules **sentiment**, **contrarian** and **deep reasoning** research
    runs under concurrency and budget limits.
    """

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@research_orchestrator.command("run")
@_db_path_option
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks (default: run until SIGINT/SIGTERM).",
)
@click.option("--enable", is_flag=True, default=False, help="Enable scheduling before starting.")
def run(db_path: Path | None, max_ticks: int | None, enable: bool) -> None:
    """Run the scheduler loop."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.run(
            RunCommand(db_path=db_path, max_ticks=max_ticks, enable=enable),
        ),
    )


@research_orchestrator.command("tick")
@_db_path_option
@click.option(
    "--wait-seconds",
    type=click.FloatRange(min=0),
    default=300.0,
    show_default=True,
    help="How long to wait for dispatched jobs.",
)
def tick(db_path: Path | None, wait_seconds: float) -> None:
    """Run one scheduler tick and wait for the jobs it dispatched."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.tick(TickCommand(db_path=db_path, wait_seconds=wait_seconds)),
    )


@research_orchestrator.command("trigger")
@_db_path_option
@click.option("--mode", type=click.Choice(MODE_CHOICES), required=True, help="Research mode.")
@click.option("--regime", default=None, help="Override the current market regime context.")
@click.option(
    "--wait-seconds",
    type=click.FloatRange(min=0),
    default=300.0,
    show_default=True,
    help="How long to wait for the job.",
)
def trigger(db_path: Path | None, mode: str, regime: str | None, wait_seconds: float) -> None:
    """Trigger one research run now, even while disabled."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.trigger(
            TriggerCommand(db_path=db_path, mode=mode, regime=regime, wait_seconds=wait_seconds),
        ),
    )


@research_orchestrator.command("status")
@_db_path_option
def status(db_path: Path | None) -> None:
    """Show enabled flag, today's counters and per-mode schedule."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.status(DbCommand(db_path=db_path)))


@research_orchestrator.command("enable")
@_db_path_option
def enable(db_path: Path | None) -> None:
    """Enable scheduled runs."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.set_enabled(ToggleCommand(db_path=db_path, enabled=True)),
    )


@research_orchestrator.command("disable")
@_db_path_option
def disable(db_path: Path | None) -> None:
    """Disable scheduled runs; manual triggers still work."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.set_enabled(ToggleCommand(db_path=db_path, enabled=False)),
    )


@research_orchestrator.command("health")
@_db_path_option
def health(db_path: Path | None) -> None:
    """Show health status and active alerts."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.health(DbCommand(db_path=db_path)))


@research_orchestrator.group()
def jobs() -> None:
    """Job inspection commands."""


@jobs.command("list")
@_db_path_option
@click.option("--status", type=click.Choice(STATUS_CHOICES), default=None, help="Status filter.")
@click.option("--mode", type=click.Choice(MODE_CHOICES), default=None, help="Mode filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, mode: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.list_jobs(
            ListJobsCommand(db_path=db_path, status=status, mode=mode, limit=limit),
        ),
    )


@jobs.command("inspect")
@_db_path_option
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with candidates and event history."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.inspect_job(InspectJobCommand(db_path=db_path, job_id=job_id)),
    )


@research_orchestrator.group()
def budget() -> None:
    """Provider budget commands."""


@budget.command("set")
@_db_path_option
@click.option("--provider", default=None, help="Provider name (default: configured provider).")
@click.option(
    "--monthly-limit-usd",
    type=click.FloatRange(min=0),
    required=True,
    help="Monthly spend limit in USD.",
)
def budget_set(db_path: Path | None, provider: str | None, monthly_limit_usd: float) -> None:
    """Create or update a provider's monthly limit."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.budget_set(
            BudgetSetCommand(
                db_path=db_path,
                provider=provider,
                monthly_limit_usd=monthly_limit_usd,
            ),
        ),
    )


def _register_budget_action(action: str) -> None:
    @budget.command(action, help=f"{action.capitalize()} a provider budget.")
    @_db_path_option
    @click.option("--provider", default=None, help="Provider name (default: configured provider).")
    def _command(db_path: Path | None, provider: str | None) -> None:
        _emit_lines(
            ORCHESTRATOR_CONTROLLER.budget_action(
                BudgetActionCommand(db_path=db_path, provider=provider, action=action),
            ),
        )


for _action in BUDGET_ACTIONS:
    _register_budget_action(_action)


@budget.command("show")
@_db_path_option
def budget_show(db_path: Path | None) -> None:
    """Show all provider ledgers."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.budget_show(DbCommand(db_path=db_path)))


@research_orchestrator.group()
def fingerprints() -> None:
    """Candidate fingerprint commands."""


@fingerprints.command("gc")
@_db_path_option
def fingerprints_gc(db_path: Path | None) -> None:
    """Delete expired dedup fingerprints."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.gc_fingerprints(DbCommand(db_path=db_path)))


@research_orchestrator.command("candidates")
@_db_path_option
@click.option("--job-id", default=None, help="Only candidates of this job.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max candidates to print.",
)
def candidates(db_path: Path | None, job_id: str | None, limit: int) -> None:
    """List recent research candidates."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.list_candidates(
            ListCandidatesCommand(db_path=db_path, job_id=job_id, limit=limit),
        ),
    )


@research_orchestrator.command("activity")
@_db_path_option
@click.option("--event-type", default=None, help="Only events of this type.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max events to print.",
)
def activity(db_path: Path | None, event_type: str | None, limit: int) -> None:
    """Show the activity feed."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.list_activity(
            ListActivityCommand(db_path=db_path, event_type=event_type, limit=limit),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    research_orchestrator()
