"""Fire-and-forget audit feed for orchestrator activity."""

from __future__ import annotations

import logging
from typing import Protocol

from research_orchestrator.orchestrator.models import Severity
from research_orchestrator.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARN: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


class ActivitySink(Protocol):
    """Destination for operator-facing activity events."""

    def emit(
        self,
        event_type: str,
        title: str,
        *,
        severity: Severity = Severity.INFO,
        trace_id: str | None = None,
        payload: dict[str, object] | None = None,
    ) -> None:
        """Record one event; must never raise."""


class RepositoryActivitySink:
    """Writes activity events to the ``activity_events`` table.

    Emission failures are logged and swallowed: losing an audit row must not
    fail the job that produced it.
    """

    def __init__(self, repository: OrchestratorRepository) -> None:
        self.repository = repository

    def emit(
        self,
        event_type: str,
        title: str,
        *,
        severity: Severity = Severity.INFO,
        trace_id: str | None = None,
        payload: dict[str, object] | None = None,
    ) -> None:
        logger.log(
            _LOG_LEVELS[severity],
            "%s: %s (trace_id=%s)",
            event_type,
            title,
            trace_id or "-",
        )
        try:
            self.repository.add_activity_event(
                event_type=event_type,
                title=title,
                severity=severity,
                trace_id=trace_id,
                payload=payload or {},
            )
        except Exception:  # noqa: BLE001
            logger.warning("Failed to persist activity event %s", event_type, exc_info=True)
