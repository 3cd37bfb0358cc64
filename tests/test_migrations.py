from pathlib import Path

import allure
from sqlalchemy import text

from research_orchestrator.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name != 'alembic_version'
                ORDER BY name
                """,
            ),
        ).scalars().all()
        singleton = connection.execute(
            text("SELECT COUNT(*) FROM orchestrator_state"),
        ).scalar_one()

    assert version == "20261017_0001"
    assert tables == [
        "activity_events",
        "candidate_fingerprints",
        "orchestrator_state",
        "provider_budgets",
        "research_candidates",
        "research_job_events",
        "research_jobs",
        "research_mode_runs",
    ]
    assert singleton == 1
    repository.close()
