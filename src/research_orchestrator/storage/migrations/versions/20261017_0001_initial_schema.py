"""Initial orchestrator schema: jobs, state, fingerprints, budgets, candidates."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "research_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("50")),
        sa.Column("cost_class", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False, server_default="scheduler"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("context_json", sa.Text(), nullable=True),
        sa.Column("trace_id", sa.String(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("deferred_reason", sa.String(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column(
            "action_required",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("artifacts_total", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "candidates_created",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column(
            "duplicates_filtered",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("cost_usd", sa.Float(), nullable=True),
        sa.Column("input_tokens", sa.Integer(), nullable=True),
        sa.Column("output_tokens", sa.Integer(), nullable=True),
        sa.Column("wrapper_attempts", sa.Integer(), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_research_jobs_mode", "research_jobs", ["mode"], unique=False)
    op.create_index("ix_research_jobs_status", "research_jobs", ["status"], unique=False)
    op.create_index("ix_research_jobs_priority", "research_jobs", ["priority"], unique=False)
    op.create_index("ix_research_jobs_trace_id", "research_jobs", ["trace_id"], unique=False)
    op.create_index(
        "ix_research_jobs_failure_class",
        "research_jobs",
        ["failure_class"],
        unique=False,
    )
    op.create_index(
        "idx_research_jobs_queue",
        "research_jobs",
        ["status", "priority", "scheduled_for"],
        unique=False,
    )
    op.create_index(
        "idx_research_jobs_mode_status",
        "research_jobs",
        ["mode", "status"],
        unique=False,
    )

    op.create_table(
        "research_job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["research_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_research_job_events_job_id",
        "research_job_events",
        ["job_id"],
        unique=False,
    )
    op.create_index(
        "ix_research_job_events_event_type",
        "research_job_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "ix_research_job_events_status_from",
        "research_job_events",
        ["status_from"],
        unique=False,
    )
    op.create_index(
        "ix_research_job_events_status_to",
        "research_job_events",
        ["status_to"],
        unique=False,
    )
    op.create_index(
        "idx_research_job_events_job_time",
        "research_job_events",
        ["job_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "orchestrator_state",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("daily_window", sa.String(), nullable=True),
        sa.Column("daily_cost_usd", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("daily_job_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "research_mode_runs",
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("mode"),
    )

    op.create_table(
        "candidate_fingerprints",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("fingerprint_hash", sa.String(), nullable=False),
        sa.Column("candidate_id", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("hit_count", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_candidate_fingerprints_fingerprint_hash",
        "candidate_fingerprints",
        ["fingerprint_hash"],
        unique=True,
    )
    op.create_index(
        "ix_candidate_fingerprints_candidate_id",
        "candidate_fingerprints",
        ["candidate_id"],
        unique=False,
    )
    op.create_index(
        "idx_candidate_fingerprints_expiry",
        "candidate_fingerprints",
        ["expires_at"],
        unique=False,
    )

    op.create_table(
        "research_candidates",
        sa.Column("candidate_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("fingerprint_hash", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("thesis", sa.Text(), nullable=False),
        sa.Column("rules_json", sa.Text(), nullable=False),
        sa.Column("confidence_score", sa.Integer(), nullable=False),
        sa.Column("score_breakdown_json", sa.Text(), nullable=False),
        sa.Column("disposition", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["research_jobs.job_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("candidate_id"),
    )
    op.create_index(
        "ix_research_candidates_job_id",
        "research_candidates",
        ["job_id"],
        unique=False,
    )
    op.create_index(
        "ix_research_candidates_fingerprint_hash",
        "research_candidates",
        ["fingerprint_hash"],
        unique=False,
    )
    op.create_index(
        "ix_research_candidates_category",
        "research_candidates",
        ["category"],
        unique=False,
    )
    op.create_index(
        "ix_research_candidates_disposition",
        "research_candidates",
        ["disposition"],
        unique=False,
    )

    op.create_table(
        "provider_budgets",
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column(
            "monthly_limit_usd",
            sa.Float(),
            nullable=False,
            server_default=sa.text("10"),
        ),
        sa.Column(
            "current_month_spend_usd",
            sa.Float(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("is_paused", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "is_auto_throttled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("budget_month_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("provider"),
    )

    op.create_table(
        "activity_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False, server_default="INFO"),
        sa.Column("trace_id", sa.String(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_activity_events_severity",
        "activity_events",
        ["severity"],
        unique=False,
    )
    op.create_index(
        "ix_activity_events_trace_id",
        "activity_events",
        ["trace_id"],
        unique=False,
    )
    op.create_index(
        "idx_activity_events_type_time",
        "activity_events",
        ["event_type", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_activity_events_type_time", table_name="activity_events")
    op.drop_index("ix_activity_events_trace_id", table_name="activity_events")
    op.drop_index("ix_activity_events_severity", table_name="activity_events")
    op.drop_table("activity_events")
    op.drop_table("provider_budgets")
    op.drop_index("ix_research_candidates_disposition", table_name="research_candidates")
    op.drop_index("ix_research_candidates_category", table_name="research_candidates")
    op.drop_index("ix_research_candidates_fingerprint_hash", table_name="research_candidates")
    op.drop_index("ix_research_candidates_job_id", table_name="research_candidates")
    op.drop_table("research_candidates")
    op.drop_index("idx_candidate_fingerprints_expiry", table_name="candidate_fingerprints")
    op.drop_index("ix_candidate_fingerprints_candidate_id", table_name="candidate_fingerprints")
    op.drop_index(
        "ix_candidate_fingerprints_fingerprint_hash",
        table_name="candidate_fingerprints",
    )
    op.drop_table("candidate_fingerprints")
    op.drop_table("research_mode_runs")
    op.drop_table("orchestrator_state")
    op.drop_index("idx_research_job_events_job_time", table_name="research_job_events")
    op.drop_index("ix_research_job_events_status_to", table_name="research_job_events")
    op.drop_index("ix_research_job_events_status_from", table_name="research_job_events")
    op.drop_index("ix_research_job_events_event_type", table_name="research_job_events")
    op.drop_index("ix_research_job_events_job_id", table_name="research_job_events")
    op.drop_table("research_job_events")
    op.drop_index("idx_research_jobs_mode_status", table_name="research_jobs")
    op.drop_index("idx_research_jobs_queue", table_name="research_jobs")
    op.drop_index("ix_research_jobs_failure_class", table_name="research_jobs")
    op.drop_index("ix_research_jobs_trace_id", table_name="research_jobs")
    op.drop_index("ix_research_jobs_priority", table_name="research_jobs")
    op.drop_index("ix_research_jobs_status", table_name="research_jobs")
    op.drop_index("ix_research_jobs_mode", table_name="research_jobs")
    op.drop_table("research_jobs")
