"""Domain models for research job orchestration."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class ResearchMode(str, Enum):
    """Research cadences the scheduler knows how to run."""

    SENTIMENT_BURST = "sentiment_burst"
    CONTRARIAN_SCAN = "contrarian_scan"
    DEEP_REASONING = "deep_reasoning"


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    DEFERRED = "deferred"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class CostClass(str, Enum):
    """Relative provider spend of one run."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    ACCESS_OR_AUTH = "access_or_auth"
    BILLING_OR_QUOTA = "billing_or_quota"
    MODEL_NOT_AVAILABLE = "model_not_available"
    MALFORMED_REQUEST = "malformed_request"
    CIRCUIT_OPEN = "circuit_open"
    PERSISTENCE_BUSY = "persistence_busy"
    UNKNOWN = "unknown"


class Disposition(str, Enum):
    """Routing decision for a scored candidate."""

    FAST_TRACK = "fast_track"
    REVIEW = "review"
    BACKLOG = "backlog"


class Severity(str, Enum):
    """Activity event severity."""

    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


@dataclass(frozen=True, slots=True)
class ModeProfile:
    """Static scheduling attributes of one research mode.

    ``slot_minutes`` lists the minutes of the hour in which the mode may be
    enqueued; spreading the modes apart keeps their provider calls from
    landing in the same minute.
    """

    priority: int
    cost_class: CostClass
    default_interval: timedelta
    slot_minutes: frozenset[int]
    focus: str


MODE_PROFILES: dict[ResearchMode, ModeProfile] = {
    ResearchMode.SENTIMENT_BURST: ModeProfile(
        priority=80,
        cost_class=CostClass.LOW,
        default_interval=timedelta(minutes=30),
        slot_minutes=frozenset({5, 35}),
        focus="Fast read of current sentiment extremes and crowd positioning.",
    ),
    ResearchMode.CONTRARIAN_SCAN: ModeProfile(
        priority=60,
        cost_class=CostClass.MEDIUM,
        default_interval=timedelta(hours=2),
        slot_minutes=frozenset(range(20, 25)),
        focus="Look for consensus views that are overcrowded and likely to reverse.",
    ),
    ResearchMode.DEEP_REASONING: ModeProfile(
        priority=40,
        cost_class=CostClass.HIGH,
        default_interval=timedelta(hours=6),
        slot_minutes=frozenset(range(50, 55)),
        focus="Multi-step structural analysis of regime, catalysts and edge decay.",
    ),
}


def modes_by_priority() -> list[ResearchMode]:
    """All modes, highest priority first."""

    return sorted(ResearchMode, key=lambda mode: MODE_PROFILES[mode].priority, reverse=True)


@dataclass(slots=True)
class ResearchJobCreate:
    """Input payload for persisting a new job."""

    mode: ResearchMode
    status: JobStatus
    context: dict[str, Any] = field(default_factory=dict)
    source: str = "scheduler"
    job_id: str | None = None
    trace_id: str | None = None
    scheduled_for: datetime | None = None
    max_retries: int = 3
    deferred_reason: str | None = None


@dataclass(slots=True)
class JobResultSummary:
    """Outcome counters recorded on a completed job."""

    artifacts_total: int = 0
    candidates_created: int = 0
    duplicates_filtered: int = 0
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    wrapper_attempts: int = 1
    latency_ms: int = 0

    def to_event_details(self) -> dict[str, object]:
        return {
            "artifacts_total": self.artifacts_total,
            "candidates_created": self.candidates_created,
            "duplicates_filtered": self.duplicates_filtered,
            "cost_usd": round(self.cost_usd, 6),
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "wrapper_attempts": self.wrapper_attempts,
            "wrapper_retries": max(0, self.wrapper_attempts - 1),
            "latency_ms": self.latency_ms,
        }


@dataclass(slots=True)
class ResearchJobView:
    """Readable job view for CLI and worker logic."""

    job_id: str
    mode: ResearchMode
    status: JobStatus
    priority: int
    cost_class: CostClass
    source: str
    scheduled_for: datetime | None
    context: dict[str, Any]
    trace_id: str
    retry_count: int
    max_retries: int
    deferred_reason: str | None
    failure_class: FailureClass | None
    action_required: bool
    error_message: str | None
    result: JobResultSummary | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ResearchJobDetails:
    """Job details with event stream."""

    job: ResearchJobView
    events: list[JobEventView]


@dataclass(slots=True)
class OrchestratorStateSnapshot:
    """Persisted orchestrator counters restored on start."""

    enabled: bool
    daily_window: str | None
    daily_cost_usd: float
    daily_job_count: int
    last_runs: dict[ResearchMode, datetime | None]


@dataclass(slots=True)
class AdmissionDecision:
    """Result of one enqueue attempt; admission never raises."""

    allowed: bool
    job_id: str | None = None
    status: JobStatus | None = None
    reason: str | None = None
    promoted: bool = False


@dataclass(slots=True)
class QuotaDecision:
    """Budget gate verdict for one provider."""

    allowed: bool
    reason: str | None = None
    action_required: bool = False


@dataclass(slots=True)
class BudgetLedgerView:
    """Monthly spend ledger of one provider."""

    provider: str
    monthly_limit_usd: float
    current_month_spend_usd: float
    is_enabled: bool
    is_paused: bool
    is_auto_throttled: bool
    budget_month_start: datetime
    updated_at: datetime

    @property
    def utilization(self) -> float:
        if self.monthly_limit_usd <= 0:
            return 1.0
        return self.current_month_spend_usd / self.monthly_limit_usd


@dataclass(slots=True)
class CandidateArtifact:
    """One research artifact returned by a provider."""

    name: str
    category: str
    thesis: str
    entry_rules: Any = None
    exit_rules: Any = None
    risk_rules: Any = None
    novelty_score: float | None = None
    structural_score: float | None = None
    validation_score: float | None = None
    robustness_score: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class FingerprintView:
    """Stored dedup fingerprint."""

    fingerprint_hash: str
    candidate_id: str | None
    category: str | None
    hit_count: int
    first_seen_at: datetime
    last_seen_at: datetime
    expires_at: datetime | None


@dataclass(slots=True)
class CandidateWrite:
    """Scored non-duplicate candidate ready to persist."""

    candidate_id: str
    job_id: str | None
    fingerprint_hash: str
    name: str
    category: str
    thesis: str
    rules: dict[str, Any]
    confidence_score: int
    score_breakdown: dict[str, float]
    disposition: Disposition


@dataclass(slots=True)
class CandidateView:
    """Persisted research candidate."""

    candidate_id: str
    job_id: str | None
    fingerprint_hash: str
    name: str
    category: str
    confidence_score: int
    disposition: Disposition
    created_at: datetime


@dataclass(slots=True)
class PostProcessSummary:
    """Counters from routing a job's artifacts through dedup and scoring."""

    created: int = 0
    duplicates: int = 0
    candidate_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TriggerResult:
    """Outcome of a manual run request."""

    job_id: str | None
    status: JobStatus | None
    reason: str | None = None

    @property
    def accepted(self) -> bool:
        return self.job_id is not None


@dataclass(slots=True)
class ModeSchedule:
    """Last/next run timestamps of one mode."""

    mode: ResearchMode
    last_run_at: datetime | None
    next_run_at: datetime


@dataclass(slots=True)
class OrchestratorStatus:
    """Side-effect free status snapshot."""

    enabled: bool
    loop_running: bool
    active_jobs: int
    max_concurrent_jobs: int
    daily_cost_usd: float
    daily_job_count: int
    max_daily_cost_usd: float
    schedules: list[ModeSchedule]


@dataclass(slots=True)
class ActivityEventView:
    """Audit feed entry."""

    event_id: int
    event_type: str
    title: str
    severity: Severity
    trace_id: str | None
    created_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
