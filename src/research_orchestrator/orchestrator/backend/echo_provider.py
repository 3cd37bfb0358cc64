"""Local deterministic provider for demos and tests."""

from __future__ import annotations

import json
import threading
from collections import deque
from collections.abc import Iterable

from research_orchestrator.orchestrator.backend.base import (
    ProviderError,
    ProviderRequest,
    ProviderResult,
    ProviderUsage,
)
from research_orchestrator.orchestrator.contracts import parse_artifacts


class EchoProvider:
    """Returns candidates derived from the request, never calls out.

    ``failures`` is a script consumed one entry per call: an HTTP status
    code raises a ``ProviderError`` with that status, a ``ProviderError``
    instance is raised as-is, ``None`` lets the call succeed. Identical
    requests yield identical candidates, which exercises deduplication.
    """

    def __init__(
        self,
        *,
        name: str = "echo",
        failures: Iterable[int | ProviderError | None] = (),
        cost_usd: float = 0.0,
        candidates_per_call: int = 2,
        response_text: str | None = None,
    ) -> None:
        self.name = name
        self.cost_usd = cost_usd
        self.candidates_per_call = candidates_per_call
        self.response_text = response_text
        self.calls = 0
        self.requests: list[ProviderRequest] = []
        self._failures: deque[int | ProviderError | None] = deque(failures)
        self._lock = threading.Lock()

    def generate(self, request: ProviderRequest) -> ProviderResult:
        with self._lock:
            self.calls += 1
            self.requests.append(request)
            scripted = self._failures.popleft() if self._failures else None

        if isinstance(scripted, ProviderError):
            raise scripted
        if scripted is not None:
            raise ProviderError(f"scripted failure {scripted}", status_code=scripted)

        raw_text = self.response_text
        if raw_text is None:
            raw_text = json.dumps({"candidates": self._candidates(request)}, sort_keys=True)
        return ProviderResult(
            artifacts=parse_artifacts(raw_text),
            usage=ProviderUsage(
                input_tokens=len(request.system_prompt + request.user_prompt) // 4,
                output_tokens=len(raw_text) // 4,
                cost_usd=self.cost_usd,
            ),
            latency_ms=0,
            raw_text=raw_text,
            model="echo",
        )

    def close(self) -> None:
        return None

    def _candidates(self, request: ProviderRequest) -> list[dict[str, object]]:
        regime = str(request.context.get("current_regime", "UNKNOWN"))
        return [
            {
                "name": f"{request.mode.name.title()} idea {index + 1}",
                "category": request.mode.value,
                "thesis": (
                    f"{request.mode.name} candidate {index + 1} for regime {regime}: "
                    "fade moves that extend beyond recent range while sentiment is stretched."
                ),
                "entry_rules": [f"signal_{index + 1} crosses threshold"],
                "exit_rules": ["take profit at 2R", "stop at 1R"],
                "risk_rules": ["max 1% equity per position"],
                "evidence": ["echo"],
            }
            for index in range(self.candidates_per_call)
        ]
