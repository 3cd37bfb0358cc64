from __future__ import annotations

import json

import allure
import httpx
import pytest

from research_orchestrator.orchestrator.backend import HttpReasoningProvider
from research_orchestrator.orchestrator.backend.base import (
    ProviderConnectionError,
    ProviderError,
    ProviderRequest,
    ProviderTimeoutError,
)
from research_orchestrator.orchestrator.models import JobStatus, ResearchMode
from research_orchestrator.orchestrator.pricing import PRICING_ENV_VAR

pytestmark = [
    allure.epic("Job Execution"),
    allure.feature("HTTP Provider"),
]

CANDIDATES = {
    "candidates": [
        {
            "name": "Funding fade",
            "category": "contrarian",
            "thesis": "Fade crowded longs when funding is extreme.",
            "entry_rules": ["funding > 0.1%"],
        },
    ],
}


def _request() -> ProviderRequest:
    return ProviderRequest(
        mode=ResearchMode.CONTRARIAN_SCAN,
        system_prompt="system",
        user_prompt="user",
        trace_id="trace-123",
    )


def _provider(handler, *, api_key: str | None = "secret") -> HttpReasoningProvider:
    return HttpReasoningProvider(api_key=api_key, transport=httpx.MockTransport(handler))


def test_generate_parses_candidates_usage_and_cost(monkeypatch) -> None:
    monkeypatch.delenv(PRICING_ENV_VAR, raising=False)
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "model": "grok-4-1-fast-reasoning",
                "choices": [{"message": {"content": "```json\n" + json.dumps(CANDIDATES) + "```"}}],
                "usage": {"prompt_tokens": 1000, "completion_tokens": 500},
            },
        )

    with _provider(handler) as provider:
        result = provider.generate(_request())

    assert [artifact.name for artifact in result.artifacts] == ["Funding fade"]
    assert result.usage.input_tokens == 1000
    assert result.usage.output_tokens == 500
    assert result.usage.cost_usd == pytest.approx(0.00045)
    assert result.model == "grok-4-1-fast-reasoning"

    sent = seen[0]
    assert sent.url.path == "/v1/chat/completions"
    assert sent.headers["Authorization"] == "Bearer secret"
    assert sent.headers["X-Trace-Id"] == "trace-123"
    body = json.loads(sent.content)
    assert body["messages"][0] == {"role": "system", "content": "system"}
    assert body["max_tokens"] == 4_000


def test_error_status_surfaces_provider_message() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "Too many requests"}})

    with _provider(handler) as provider, pytest.raises(ProviderError) as excinfo:
        provider.generate(_request())

    assert excinfo.value.status_code == 429
    assert excinfo.value.message == "Too many requests"


def test_missing_api_key_fails_without_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    with _provider(handler, api_key=None) as provider, pytest.raises(ProviderError) as excinfo:
        provider.generate(_request())

    assert excinfo.value.status_code == 401
    assert calls == []


def test_transport_failures_map_to_provider_errors() -> None:
    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with _provider(refused) as provider, pytest.raises(ProviderConnectionError):
        provider.generate(_request())
    with _provider(slow) as provider, pytest.raises(ProviderTimeoutError):
        provider.generate(_request())


@pytest.mark.parametrize(
    "body",
    [
        "<html>gateway</html>",
        "[]",
        '{"choices": ["x"]}',
        '{"choices": [{"message": "plain"}], "usage": "n/a"}',
    ],
)
def test_unusable_success_body_yields_zero_artifacts(body: str) -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=body)

    with _provider(handler) as provider:
        result = provider.generate(_request())

    assert result.artifacts == []
    assert result.raw_text == ""
    assert result.usage.input_tokens == 0


def test_unusable_body_completes_job_without_candidates(make_orchestrator) -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>oops</html>")

    orchestrator = make_orchestrator(provider=_provider(handler))
    result = orchestrator.trigger_manual_run(ResearchMode.SENTIMENT_BURST, {})
    assert orchestrator.wait_idle(timeout=10)

    job = orchestrator.repository.get_job(job_id=result.job_id or "")
    assert job is not None
    assert job.status == JobStatus.COMPLETED
    assert job.failure_class is None
    assert job.result is not None
    assert job.result.artifacts_total == 0
    assert job.result.candidates_created == 0
