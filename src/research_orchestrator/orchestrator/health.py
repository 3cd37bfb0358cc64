"""Health snapshot and alerting over orchestrator counters."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from research_orchestrator.orchestrator.events import ActivitySink
from research_orchestrator.orchestrator.models import (
    BudgetLedgerView,
    ModeSchedule,
    ResearchMode,
    Severity,
)
from research_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

FAILURE_RATE_WARNING = 0.30
BACKPRESSURE_DEFERRED = 10
SCHEDULING_DRIFT_GRACE = timedelta(minutes=10)
BUDGET_WARNING_UTILIZATION = 0.80
BUDGET_CRITICAL_UTILIZATION = 0.95
ALERT_DEDUP_WINDOW = timedelta(minutes=30)


class HealthStatus(str, Enum):
    """Overall orchestrator health, worst first."""

    CRITICAL = "critical"
    STALLED = "stalled"
    DEGRADED = "degraded"
    HEALTHY = "healthy"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class AlertType(str, Enum):
    STALLED = "orchestrator_stalled"
    BUDGET = "budget_utilization"
    FAILURE_RATE = "high_failure_rate"
    BACKPRESSURE = "backpressure_exceeded"
    SCHEDULING_DRIFT = "scheduling_drift"


@dataclass(slots=True)
class HealthAlert:
    type: AlertType
    severity: AlertSeverity
    message: str


@dataclass(slots=True)
class HealthInputs:
    """Raw counters a health evaluation works from."""

    enabled: bool
    loop_running: bool
    active_jobs: int
    queued_jobs: int
    deferred_jobs: int
    completed_24h: int
    failed_24h: int
    daily_cost_usd: float
    max_daily_cost_usd: float
    ledgers: list[BudgetLedgerView] = field(default_factory=list)
    schedules: list[ModeSchedule] = field(default_factory=list)
    intervals: dict[ResearchMode, timedelta] = field(default_factory=dict)


@dataclass(slots=True)
class HealthSnapshot:
    status: HealthStatus
    alerts: list[HealthAlert]
    checked_at: datetime
    failure_rate_24h: float
    daily_utilization: float
    inputs: HealthInputs


def failure_rate(completed: int, failed: int) -> float:
    total = completed + failed
    return failed / total if total > 0 else 0.0


def evaluate_health(inputs: HealthInputs, *, now: datetime) -> HealthSnapshot:
    """Derive alerts and overall status from counters; no side effects."""

    alerts: list[HealthAlert] = []
    if inputs.enabled and not inputs.loop_running:
        alerts.append(
            HealthAlert(
                AlertType.STALLED,
                AlertSeverity.CRITICAL,
                "Orchestrator is enabled but the scheduler loop is not running",
            ),
        )

    daily_utilization = (
        inputs.daily_cost_usd / inputs.max_daily_cost_usd
        if inputs.max_daily_cost_usd > 0
        else 0.0
    )
    utilizations = [("daily", daily_utilization)] + [
        (ledger.provider, ledger.utilization)
        for ledger in inputs.ledgers
        if ledger.is_enabled
    ]
    for scope, utilization in utilizations:
        if utilization >= BUDGET_CRITICAL_UTILIZATION:
            severity = AlertSeverity.CRITICAL
        elif utilization >= BUDGET_WARNING_UTILIZATION:
            severity = AlertSeverity.WARNING
        else:
            continue
        alerts.append(
            HealthAlert(AlertType.BUDGET, severity, f"{scope} budget at {utilization:.1%}"),
        )

    rate = failure_rate(inputs.completed_24h, inputs.failed_24h)
    if rate > FAILURE_RATE_WARNING:
        alerts.append(
            HealthAlert(
                AlertType.FAILURE_RATE,
                AlertSeverity.WARNING,
                f"Failure rate at {rate:.1%} over 24h",
            ),
        )

    if inputs.deferred_jobs > BACKPRESSURE_DEFERRED:
        alerts.append(
            HealthAlert(
                AlertType.BACKPRESSURE,
                AlertSeverity.WARNING,
                f"{inputs.deferred_jobs} jobs deferred by backpressure",
            ),
        )

    if inputs.enabled:
        for schedule in inputs.schedules:
            interval = inputs.intervals.get(schedule.mode)
            if schedule.last_run_at is None or interval is None:
                continue
            behind = now - schedule.last_run_at - interval
            if behind > SCHEDULING_DRIFT_GRACE:
                alerts.append(
                    HealthAlert(
                        AlertType.SCHEDULING_DRIFT,
                        AlertSeverity.WARNING,
                        f"{schedule.mode.value} is {int(behind.total_seconds() // 60)}min "
                        "behind schedule",
                    ),
                )

    return HealthSnapshot(
        status=_overall_status(alerts),
        alerts=alerts,
        checked_at=now,
        failure_rate_24h=rate,
        daily_utilization=daily_utilization,
        inputs=inputs,
    )


def _overall_status(alerts: list[HealthAlert]) -> HealthStatus:
    if any(
        alert.severity == AlertSeverity.CRITICAL and alert.type != AlertType.STALLED
        for alert in alerts
    ):
        return HealthStatus.CRITICAL
    if any(alert.type == AlertType.STALLED for alert in alerts):
        return HealthStatus.STALLED
    warnings = [alert for alert in alerts if alert.severity == AlertSeverity.WARNING]
    if len(warnings) >= 2 or any(
        alert.type in {AlertType.FAILURE_RATE, AlertType.BACKPRESSURE} for alert in warnings
    ):
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


class HealthMonitor:
    """Publishes alerts to the activity feed, once per window per kind."""

    def __init__(
        self,
        *,
        sink: ActivitySink,
        dedup_window: timedelta = ALERT_DEDUP_WINDOW,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.sink = sink
        self.dedup_window = dedup_window
        self._clock = clock
        self._last_emitted: dict[tuple[AlertType, AlertSeverity], datetime] = {}
        self._lock = threading.Lock()

    def publish(self, snapshot: HealthSnapshot) -> list[HealthAlert]:
        """Emit alerts not already emitted within the dedup window."""

        now = self._clock()
        emitted: list[HealthAlert] = []
        with self._lock:
            for alert in snapshot.alerts:
                key = (alert.type, alert.severity)
                last = self._last_emitted.get(key)
                if last is not None and now - last < self.dedup_window:
                    continue
                self._last_emitted[key] = now
                emitted.append(alert)

        for alert in emitted:
            self.sink.emit(
                "orchestrator_alert",
                f"[{alert.severity.value.upper()}] {alert.type.value}: {alert.message}",
                severity=Severity.ERROR if alert.severity == AlertSeverity.CRITICAL else Severity.WARN,
                payload={"alert_type": alert.type.value, "severity": alert.severity.value},
            )
        if snapshot.status != HealthStatus.HEALTHY:
            logger.info(
                "Health check: %s with %d alert(s)",
                snapshot.status.value,
                len(snapshot.alerts),
            )
        return emitted
