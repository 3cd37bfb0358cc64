"""OpenAI-compatible chat-completions provider over httpx."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from research_orchestrator.orchestrator.backend.base import (
    ProviderConnectionError,
    ProviderError,
    ProviderRequest,
    ProviderResult,
    ProviderTimeoutError,
    ProviderUsage,
)
from research_orchestrator.orchestrator.contracts import parse_artifacts
from research_orchestrator.orchestrator.pricing import estimate_cost_usd

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.x.ai/v1"
DEFAULT_MODEL = "grok-4-1-fast-reasoning"
DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_USER_AGENT = "research-orchestrator/1.0"


class HttpReasoningProvider:
    """Calls ``POST {base_url}/chat/completions`` and parses candidates.

    Transport-level retries are left to the caller's resilience wrapper, so
    every failure surfaces here as a ``ProviderError`` subclass.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str | None,
        name: str = "xai",
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        temperature: float = 0.7,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.name = name
        self.model = model
        self.temperature = temperature
        self._api_key = api_key
        headers = {"User-Agent": DEFAULT_USER_AGENT, "Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport,
        )

    def generate(self, request: ProviderRequest) -> ProviderResult:
        if not self._api_key:
            raise ProviderError(f"{self.name} API key not configured", status_code=401)

        started = time.monotonic()
        try:
            response = self._client.post(
                "/chat/completions",
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": request.system_prompt},
                        {"role": "user", "content": request.user_prompt},
                    ],
                    "temperature": self.temperature,
                    "max_tokens": request.max_output_tokens,
                },
                headers={"X-Trace-Id": request.trace_id},
            )
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling %s trace_id=%s", self.name, request.trace_id)
            raise ProviderTimeoutError(f"Timeout calling {self.name}") from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling %s trace_id=%s: %s", self.name, request.trace_id, exc)
            raise ProviderConnectionError(f"Network error calling {self.name}: {exc}") from exc

        latency_ms = int((time.monotonic() - started) * 1000)
        if not response.is_success:
            raise ProviderError(_error_message(response), status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            logger.warning(
                "%s returned an unusable body trace_id=%s; treating as zero artifacts",
                self.name,
                request.trace_id,
            )
            data = {}

        content = _message_content(data)
        usage_payload = data.get("usage")
        if not isinstance(usage_payload, dict):
            usage_payload = {}
        input_tokens = int(usage_payload.get("prompt_tokens") or 0)
        output_tokens = int(usage_payload.get("completion_tokens") or 0)
        model = str(data.get("model") or self.model)
        usage = ProviderUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=estimate_cost_usd(
                provider=self.name,
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            ),
        )
        return ProviderResult(
            artifacts=parse_artifacts(content),
            usage=usage,
            latency_ms=latency_ms,
            raw_text=content,
            model=model,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpReasoningProvider:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _message_content(data: dict[str, Any]) -> str:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    return content if isinstance(content, str) else ""


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return response.reason_phrase or f"HTTP {response.status_code}"
