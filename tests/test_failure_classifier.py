from __future__ import annotations

import sqlite3

import allure
import httpx
import pytest

from research_orchestrator.orchestrator.backend.base import (
    ProviderConnectionError,
    ProviderError,
    ProviderTimeoutError,
)
from research_orchestrator.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_error,
    classify_provider_failure,
)
from research_orchestrator.orchestrator.models import FailureClass
from research_orchestrator.orchestrator.resilience import CircuitOpenError

pytestmark = [
    allure.epic("Job Execution"),
    allure.feature("Failure Classification"),
]


@pytest.mark.parametrize(
    ("status_code", "expected"),
    [
        (401, FailureClass.ACCESS_OR_AUTH),
        (403, FailureClass.ACCESS_OR_AUTH),
        (402, FailureClass.BILLING_OR_QUOTA),
        (404, FailureClass.MODEL_NOT_AVAILABLE),
        (400, FailureClass.MALFORMED_REQUEST),
        (408, FailureClass.TIMEOUT),
        (429, FailureClass.RATE_LIMITED),
        (503, FailureClass.SERVER_ERROR),
    ],
)
def test_status_code_decides_failure_class(status_code: int, expected: FailureClass) -> None:
    classification = classify_provider_failure(
        provider="xai",
        status_code=status_code,
        message="irrelevant",
    )

    assert classification.failure_class == expected
    assert classification.matched_rule == "status_code"
    assert classification.reason_code == f"xai_{expected.value}"


def test_text_patterns_apply_when_status_is_missing() -> None:
    rate = classify_error(ProviderError("Rate limit exceeded, slow down"), provider="xai")
    billing = classify_error(ProviderError("Insufficient credits on account"), provider="xai")

    assert rate.failure_class == FailureClass.RATE_LIMITED
    assert rate.matched_pattern == "rate limit"
    assert billing.failure_class == FailureClass.BILLING_OR_QUOTA
    assert billing.action_required is True
    assert billing.action_hint is not None


def test_transport_errors_are_retryable() -> None:
    timeout = classify_error(ProviderTimeoutError("Timeout calling xai"), provider="xai")
    network = classify_error(ProviderConnectionError("reset"), provider="xai")
    raw = classify_error(httpx.ConnectError("connection refused"), provider="xai")

    assert timeout.failure_class == FailureClass.TIMEOUT
    assert network.failure_class == FailureClass.NETWORK_ERROR
    assert raw.failure_class == FailureClass.NETWORK_ERROR
    assert all(item.retryable for item in (timeout, network, raw))


def test_fatal_classes_need_operator_action() -> None:
    classification = classify_error(ProviderError("bad key", status_code=401), provider="xai")

    assert classification.retryable is False
    assert classification.requeue is False
    assert classification.action_required is True
    assert "API key" in (classification.action_hint or "")


def test_open_circuit_requeues_without_in_call_retry() -> None:
    classification = classify_error(CircuitOpenError("provider:xai", 12.0), provider="xai")

    assert classification.failure_class == FailureClass.CIRCUIT_OPEN
    assert classification.retryable is False
    assert classification.requeue is True
    assert classification.action_required is False


def test_locked_sqlite_is_persistence_busy() -> None:
    classification = classify_error(
        sqlite3.OperationalError("database is locked"),
        provider="sqlite",
    )

    assert classification.failure_class == FailureClass.PERSISTENCE_BUSY
    assert classification.retryable is True
    assert classification.matched_pattern == "database is locked"


def test_unknown_errors_fail_without_action_required() -> None:
    classification = classify_error(ValueError("boom"), provider="xai")

    assert classification.failure_class == FailureClass.UNKNOWN
    assert classification.requeue is False
    assert classification.action_required is False
    details = classification.to_event_details()
    assert details["classifier_version"] == FAILURE_CLASSIFIER_VERSION
    assert details["matched_rule"] == "fallback_unknown"
