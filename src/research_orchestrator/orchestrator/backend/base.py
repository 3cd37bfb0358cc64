"""Provider interface for research job execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from research_orchestrator.orchestrator.models import CandidateArtifact, ResearchMode


@dataclass(slots=True)
class ProviderRequest:
    """Inputs required to run one research generation call."""

    mode: ResearchMode
    system_prompt: str
    user_prompt: str
    trace_id: str
    context: dict[str, Any] = field(default_factory=dict)
    max_output_tokens: int = 4_000


@dataclass(slots=True)
class ProviderUsage:
    """Token usage and cost reported for one call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


@dataclass(slots=True)
class ProviderResult:
    """Successful generation outcome."""

    artifacts: list[CandidateArtifact]
    usage: ProviderUsage
    latency_ms: int
    raw_text: str
    model: str | None = None


class ProviderError(RuntimeError):
    """Provider call failed; ``cost_usd`` is spend the call still incurred."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        cost_usd: float = 0.0,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.cost_usd = cost_usd

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"HTTP {self.status_code}: {self.message}"


class ProviderTimeoutError(ProviderError):
    """Provider did not answer within the request timeout."""


class ProviderConnectionError(ProviderError):
    """Provider could not be reached (DNS, reset, refused)."""


class ReasoningProvider(Protocol):
    """Protocol implemented by research providers."""

    name: str

    def generate(self, request: ProviderRequest) -> ProviderResult:
        """Run one generation call or raise ``ProviderError``."""

    def close(self) -> None:
        """Release client resources."""
