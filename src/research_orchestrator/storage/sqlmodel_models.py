"""SQLModel ORM tables for orchestrator storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel

ORCHESTRATOR_SINGLETON_ID = 1


class ResearchJob(SQLModel, table=True):
    __tablename__ = "research_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_research_jobs_queue", "status", "priority", "scheduled_for"),
        Index("idx_research_jobs_mode_status", "mode", "status"),
    )

    job_id: str = Field(primary_key=True)
    mode: str = Field(index=True)
    status: str = Field(index=True)
    priority: int = Field(default=50, index=True)
    cost_class: str
    source: str = Field(default="scheduler")
    scheduled_for: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    context_json: str | None = Field(default=None, sa_column=Column(Text))
    trace_id: str = Field(index=True)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    deferred_reason: str | None = None
    failure_class: str | None = Field(default=None, index=True)
    action_required: bool = Field(default=False)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    artifacts_total: int = Field(default=0)
    candidates_created: int = Field(default=0)
    duplicates_filtered: int = Field(default=0)
    cost_usd: float | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    wrapper_attempts: int | None = None
    latency_ms: int | None = None
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ResearchJobEvent(SQLModel, table=True):
    __tablename__ = "research_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_research_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("research_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class OrchestratorStateRow(SQLModel, table=True):
    __tablename__ = "orchestrator_state"  # type: ignore[bad-override]

    id: int = Field(default=ORCHESTRATOR_SINGLETON_ID, primary_key=True)
    enabled: bool = Field(default=False)
    daily_window: str | None = None
    daily_cost_usd: float = Field(default=0.0)
    daily_job_count: int = Field(default=0)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ResearchModeRun(SQLModel, table=True):
    __tablename__ = "research_mode_runs"  # type: ignore[bad-override]

    mode: str = Field(primary_key=True)
    last_run_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CandidateFingerprintRow(SQLModel, table=True):
    __tablename__ = "candidate_fingerprints"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_candidate_fingerprints_expiry", "expires_at"),)

    id: int | None = Field(default=None, primary_key=True)
    fingerprint_hash: str = Field(unique=True, index=True)
    candidate_id: str | None = Field(default=None, index=True)
    category: str | None = None
    hit_count: int = Field(default=1)
    first_seen_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_seen_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class ResearchCandidate(SQLModel, table=True):
    __tablename__ = "research_candidates"  # type: ignore[bad-override]

    candidate_id: str = Field(primary_key=True)
    job_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("research_jobs.job_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    fingerprint_hash: str = Field(index=True)
    name: str
    category: str = Field(index=True)
    thesis: str = Field(sa_column=Column(Text, nullable=False))
    rules_json: str = Field(sa_column=Column(Text, nullable=False))
    confidence_score: int
    score_breakdown_json: str = Field(sa_column=Column(Text, nullable=False))
    disposition: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProviderBudget(SQLModel, table=True):
    __tablename__ = "provider_budgets"  # type: ignore[bad-override]

    provider: str = Field(primary_key=True)
    monthly_limit_usd: float = Field(default=10.0)
    current_month_spend_usd: float = Field(default=0.0)
    is_enabled: bool = Field(default=True)
    is_paused: bool = Field(default=False)
    is_auto_throttled: bool = Field(default=False)
    budget_month_start: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ActivityEvent(SQLModel, table=True):
    __tablename__ = "activity_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_activity_events_type_time", "event_type", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    event_type: str
    title: str
    severity: str = Field(default="INFO", index=True)
    trace_id: str | None = Field(default=None, index=True)
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
