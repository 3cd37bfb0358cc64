"""Runtime configuration for the research orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from research_orchestrator.orchestrator.models import MODE_PROFILES, ResearchMode

PROVIDER_KINDS = ("http", "echo")


@dataclass(slots=True)
class SchedulerSettings:
    """Tick cadence and per-mode intervals."""

    tick_seconds: float = 60.0
    intervals: dict[ResearchMode, timedelta] = field(
        default_factory=lambda: {
            mode: profile.default_interval for mode, profile in MODE_PROFILES.items()
        },
    )
    enabled_on_start: bool = False
    default_regime: str = "UNKNOWN"


@dataclass(slots=True)
class LimitSettings:
    """Concurrency and spend ceilings."""

    max_concurrent_jobs: int = 3
    max_daily_cost_usd: float = 50.0
    max_retries: int = 3


@dataclass(slots=True)
class DedupSettings:
    """Candidate fingerprint settings."""

    ttl_hours: float = 24.0

    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=self.ttl_hours)


@dataclass(slots=True)
class RetrySettings:
    """In-call backoff for provider requests."""

    max_attempts: int = 4
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0


@dataclass(slots=True)
class CircuitSettings:
    """Circuit breaker thresholds shared by provider and persistence."""

    failure_threshold: int = 5
    success_threshold: int = 2
    cooldown_seconds: float = 30.0


@dataclass(slots=True)
class ProviderSettings:
    """Reasoning provider selection and HTTP client settings."""

    kind: str = "http"
    name: str = "xai"
    base_url: str = "https://api.x.ai/v1"
    model: str = "grok-4-1-fast-reasoning"
    api_key_env: str = "XAI_API_KEY"
    timeout_seconds: float = 120.0
    echo_cost_usd: float = 0.0

    @property
    def api_key(self) -> str | None:
        return os.getenv(self.api_key_env) or None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".research_orchestrator.db")
    sqlite_busy_timeout_ms: int = 5_000
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    limits: LimitSettings = field(default_factory=LimitSettings)
    dedup: DedupSettings = field(default_factory=DedupSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    circuit: CircuitSettings = field(default_factory=CircuitSettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path
            or Path(os.getenv("RESEARCH_ORCH_DB_PATH", ".research_orchestrator.db")),
            sqlite_busy_timeout_ms=int(os.getenv("RESEARCH_ORCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            scheduler=SchedulerSettings(
                tick_seconds=float(os.getenv("RESEARCH_ORCH_TICK_SECONDS", "60")),
                intervals=_collect_intervals(),
                enabled_on_start=_env_bool("RESEARCH_ORCH_ENABLED", False),
                default_regime=os.getenv("RESEARCH_ORCH_DEFAULT_REGIME", "UNKNOWN"),
            ),
            limits=LimitSettings(
                max_concurrent_jobs=int(os.getenv("RESEARCH_ORCH_MAX_CONCURRENT_JOBS", "3")),
                max_daily_cost_usd=float(os.getenv("RESEARCH_ORCH_MAX_DAILY_COST_USD", "50")),
                max_retries=int(os.getenv("RESEARCH_ORCH_MAX_RETRIES", "3")),
            ),
            dedup=DedupSettings(
                ttl_hours=float(os.getenv("RESEARCH_ORCH_DEDUP_TTL_HOURS", "24")),
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("RESEARCH_ORCH_RETRY_MAX_ATTEMPTS", "4")),
                initial_delay_seconds=float(
                    os.getenv("RESEARCH_ORCH_RETRY_INITIAL_DELAY_SECONDS", "1.0"),
                ),
                max_delay_seconds=float(os.getenv("RESEARCH_ORCH_RETRY_MAX_DELAY_SECONDS", "30")),
            ),
            circuit=CircuitSettings(
                failure_threshold=int(os.getenv("RESEARCH_ORCH_CIRCUIT_FAILURE_THRESHOLD", "5")),
                success_threshold=int(os.getenv("RESEARCH_ORCH_CIRCUIT_SUCCESS_THRESHOLD", "2")),
                cooldown_seconds=float(os.getenv("RESEARCH_ORCH_CIRCUIT_COOLDOWN_SECONDS", "30")),
            ),
            provider=ProviderSettings(
                kind=os.getenv("RESEARCH_ORCH_PROVIDER", "http").strip().lower(),
                name=os.getenv("RESEARCH_ORCH_PROVIDER_NAME", "xai"),
                base_url=os.getenv("RESEARCH_ORCH_PROVIDER_BASE_URL", "https://api.x.ai/v1"),
                model=os.getenv("RESEARCH_ORCH_PROVIDER_MODEL", "grok-4-1-fast-reasoning"),
                api_key_env=os.getenv("RESEARCH_ORCH_PROVIDER_API_KEY_ENV", "XAI_API_KEY"),
                timeout_seconds=float(os.getenv("RESEARCH_ORCH_PROVIDER_TIMEOUT_SECONDS", "120")),
                echo_cost_usd=float(os.getenv("RESEARCH_ORCH_ECHO_COST_USD", "0")),
            ),
        )

    def validate(self) -> None:  # noqa: C901
        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("RESEARCH_ORCH_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.scheduler.tick_seconds <= 0:
            raise ValueError("RESEARCH_ORCH_TICK_SECONDS must be > 0.")
        for mode, interval in self.scheduler.intervals.items():
            if interval <= timedelta(0):
                raise ValueError(f"Interval for {mode.value} must be > 0.")
        if self.limits.max_concurrent_jobs < 1:
            raise ValueError("RESEARCH_ORCH_MAX_CONCURRENT_JOBS must be >= 1.")
        if self.limits.max_daily_cost_usd < 0:
            raise ValueError("RESEARCH_ORCH_MAX_DAILY_COST_USD must be >= 0.")
        if self.limits.max_retries < 0:
            raise ValueError("RESEARCH_ORCH_MAX_RETRIES must be >= 0.")
        if self.dedup.ttl_hours <= 0:
            raise ValueError("RESEARCH_ORCH_DEDUP_TTL_HOURS must be > 0.")
        if self.retry.max_attempts < 1:
            raise ValueError("RESEARCH_ORCH_RETRY_MAX_ATTEMPTS must be >= 1.")
        if self.retry.initial_delay_seconds < 0 or self.retry.max_delay_seconds < 0:
            raise ValueError("Retry delays must be >= 0.")
        if self.circuit.failure_threshold < 1 or self.circuit.success_threshold < 1:
            raise ValueError("Circuit breaker thresholds must be >= 1.")
        if self.circuit.cooldown_seconds < 0:
            raise ValueError("RESEARCH_ORCH_CIRCUIT_COOLDOWN_SECONDS must be >= 0.")
        if self.provider.kind not in PROVIDER_KINDS:
            raise ValueError(
                f"RESEARCH_ORCH_PROVIDER must be one of {', '.join(PROVIDER_KINDS)}; "
                f"got {self.provider.kind!r}.",
            )
        if self.provider.timeout_seconds <= 0:
            raise ValueError("RESEARCH_ORCH_PROVIDER_TIMEOUT_SECONDS must be > 0.")


def _collect_intervals() -> dict[ResearchMode, timedelta]:
    intervals: dict[ResearchMode, timedelta] = {}
    for mode, profile in MODE_PROFILES.items():
        raw = os.getenv(f"RESEARCH_ORCH_{mode.name}_INTERVAL_MINUTES")
        if raw is None:
            intervals[mode] = profile.default_interval
            continue
        try:
            minutes = float(raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid RESEARCH_ORCH_{mode.name}_INTERVAL_MINUTES value: {raw!r}",
            ) from error
        intervals[mode] = timedelta(minutes=minutes)
    return intervals


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
