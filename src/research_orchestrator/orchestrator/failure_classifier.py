"""Deterministic failure classification for retry and operator policy."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass

import httpx
from sqlalchemy.exc import DBAPIError

from research_orchestrator.orchestrator.backend.base import (
    ProviderConnectionError,
    ProviderError,
    ProviderTimeoutError,
)
from research_orchestrator.orchestrator.models import FailureClass
from research_orchestrator.orchestrator.resilience import CircuitOpenError

FAILURE_CLASSIFIER_VERSION = 1

RETRYABLE_CLASSES = frozenset(
    {
        FailureClass.RATE_LIMITED,
        FailureClass.SERVER_ERROR,
        FailureClass.NETWORK_ERROR,
        FailureClass.TIMEOUT,
        FailureClass.PERSISTENCE_BUSY,
    },
)
# A tripped breaker is not retried in-call but the job goes back to the queue.
REQUEUE_CLASSES = RETRYABLE_CLASSES | {FailureClass.CIRCUIT_OPEN}
ACTION_REQUIRED_CLASSES = frozenset(
    {
        FailureClass.ACCESS_OR_AUTH,
        FailureClass.BILLING_OR_QUOTA,
        FailureClass.MODEL_NOT_AVAILABLE,
        FailureClass.MALFORMED_REQUEST,
    },
)

ACTION_HINTS: dict[FailureClass, str] = {
    FailureClass.ACCESS_OR_AUTH: (
        "Check that the provider API key is valid and has not expired."
    ),
    FailureClass.BILLING_OR_QUOTA: (
        "Add credits to the provider account or raise its budget, then resume."
    ),
    FailureClass.MODEL_NOT_AVAILABLE: (
        "The model may have been deprecated. Check the provider's model list."
    ),
    FailureClass.MALFORMED_REQUEST: (
        "The provider rejected the request payload. Inspect the job context."
    ),
}

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "payment required",
    "insufficient",
    "billing",
    "credits",
    "quota",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "permission denied",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "invalid model",
    "not found",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "connection reset",
    "econnreset",
    "connection refused",
    "network",
    "temporarily unavailable",
    "dns",
)
_PERSISTENCE_BUSY_PATTERNS: tuple[str, ...] = (
    "database is locked",
    "database is busy",
    "database table is locked",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None
    status_code: int | None = None

    @property
    def retryable(self) -> bool:
        """Worth another attempt within the same call."""

        return self.failure_class in RETRYABLE_CLASSES

    @property
    def requeue(self) -> bool:
        """Job may go back to the queue after the call gives up."""

        return self.failure_class in REQUEUE_CLASSES

    @property
    def action_required(self) -> bool:
        return self.failure_class in ACTION_REQUIRED_CLASSES

    @property
    def action_hint(self) -> str | None:
        return ACTION_HINTS.get(self.failure_class)

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
            "status_code": self.status_code,
        }


def classify_status_code(status_code: int) -> FailureClass | None:
    """Map an HTTP status code to a failure class, if it is decisive."""

    if status_code in {401, 403}:
        return FailureClass.ACCESS_OR_AUTH
    if status_code == 402:
        return FailureClass.BILLING_OR_QUOTA
    if status_code == 404:
        return FailureClass.MODEL_NOT_AVAILABLE
    if status_code in {400, 422}:
        return FailureClass.MALFORMED_REQUEST
    if status_code == 408:
        return FailureClass.TIMEOUT
    if status_code == 429:
        return FailureClass.RATE_LIMITED
    if 500 <= status_code < 600:
        return FailureClass.SERVER_ERROR
    return None


def classify_provider_failure(
    *,
    provider: str,
    status_code: int | None,
    message: str,
) -> FailureClassification:
    """Classify a provider failure from its HTTP status and error text."""

    if status_code is not None:
        failure_class = classify_status_code(status_code)
        if failure_class is not None:
            return FailureClassification(
                failure_class=failure_class,
                reason_code=f"{provider}_{failure_class.value}",
                matched_rule="status_code",
                status_code=status_code,
            )
    return _classify_text(provider=provider, text=message, status_code=status_code)


def classify_error(error: BaseException, *, provider: str) -> FailureClassification:
    """Classify any exception raised across a guarded call boundary."""

    if isinstance(error, CircuitOpenError):
        return FailureClassification(
            failure_class=FailureClass.CIRCUIT_OPEN,
            reason_code=f"{error.breaker_name}_circuit_open",
            matched_rule="circuit_open",
        )
    if isinstance(error, ProviderTimeoutError):
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code=f"{provider}_timeout",
            matched_rule="timeout_error",
        )
    if isinstance(error, ProviderConnectionError):
        return FailureClassification(
            failure_class=FailureClass.NETWORK_ERROR,
            reason_code=f"{provider}_network_error",
            matched_rule="connection_error",
        )
    if isinstance(error, ProviderError):
        return classify_provider_failure(
            provider=provider,
            status_code=error.status_code,
            message=error.message,
        )
    if isinstance(error, httpx.TimeoutException):
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code=f"{provider}_timeout",
            matched_rule="timeout_error",
        )
    if isinstance(error, httpx.TransportError):
        return FailureClassification(
            failure_class=FailureClass.NETWORK_ERROR,
            reason_code=f"{provider}_network_error",
            matched_rule="connection_error",
        )
    if isinstance(error, DBAPIError) and isinstance(error.orig, sqlite3.OperationalError):
        error = error.orig
    if isinstance(error, sqlite3.OperationalError):
        pattern = _first_match(str(error).lower(), _PERSISTENCE_BUSY_PATTERNS)
        if pattern is not None:
            return FailureClassification(
                failure_class=FailureClass.PERSISTENCE_BUSY,
                reason_code="sqlite_busy",
                matched_rule="persistence_busy",
                matched_pattern=pattern,
            )
    return _classify_text(provider=provider, text=str(error), status_code=None)


def _classify_text(
    *,
    provider: str,
    text: str,
    status_code: int | None,
) -> FailureClassification:
    haystack = text.lower()
    rules: tuple[tuple[str, tuple[str, ...], FailureClass], ...] = (
        ("persistence_busy", _PERSISTENCE_BUSY_PATTERNS, FailureClass.PERSISTENCE_BUSY),
        ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS, FailureClass.BILLING_OR_QUOTA),
        ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS, FailureClass.ACCESS_OR_AUTH),
        ("model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS, FailureClass.MODEL_NOT_AVAILABLE),
        ("rate_limited", _RATE_LIMIT_PATTERNS, FailureClass.RATE_LIMITED),
        ("timeout", _TIMEOUT_PATTERNS, FailureClass.TIMEOUT),
        ("network_error", _NETWORK_PATTERNS, FailureClass.NETWORK_ERROR),
    )
    for rule, patterns, failure_class in rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure_class,
                reason_code=f"{provider}_{failure_class.value}",
                matched_rule=rule,
                matched_pattern=pattern,
                status_code=status_code,
            )

    return FailureClassification(
        failure_class=FailureClass.UNKNOWN,
        reason_code=f"{provider}_unknown",
        matched_rule="fallback_unknown",
        status_code=status_code,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
