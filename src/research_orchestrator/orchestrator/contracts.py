"""Prompt and response contracts between jobs and reasoning providers."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from research_orchestrator.orchestrator.models import MODE_PROFILES, CandidateArtifact, ResearchMode

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

SYSTEM_PROMPT = (
    "You are a research analyst. Reply with JSON only: an object with a "
    '"candidates" array. Each candidate has "name", "category", "thesis", '
    '"entry_rules", "exit_rules", "risk_rules" and optional 0-100 scores '
    '"novelty_score", "structural_score", "validation_score", "robustness_score".'
)


def build_research_prompt(mode: ResearchMode, context: dict[str, Any]) -> tuple[str, str]:
    """Return (system, user) prompts for one research run."""

    profile = MODE_PROFILES[mode]
    lines = [
        f"Research mode: {mode.name}",
        f"Focus: {profile.focus}",
        f"Current regime: {context.get('current_regime', 'UNKNOWN')}",
    ]
    extra = {key: value for key, value in context.items() if key != "current_regime"}
    if extra:
        lines.append(f"Context: {json.dumps(extra, ensure_ascii=False, sort_keys=True)}")
    lines.append("Propose up to 3 distinct candidates.")
    return SYSTEM_PROMPT, "\n".join(lines)


def parse_artifacts(raw_text: str) -> list[CandidateArtifact]:
    """Extract candidate artifacts from provider text.

    Accepts a bare JSON array, an object with ``candidates``/``strategies``,
    or a single candidate object, optionally inside markdown fences or
    surrounded by prose. Unparseable content yields an empty list.
    """

    payload = _extract_json(raw_text)
    if payload is None:
        logger.warning("No JSON found in provider response (%d chars)", len(raw_text))
        return []

    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        nested = payload.get("candidates", payload.get("strategies"))
        items = nested if isinstance(nested, list) else [payload]
    else:
        logger.warning("Unexpected JSON payload type %s", type(payload).__name__)
        return []

    artifacts: list[CandidateArtifact] = []
    for item in items:
        artifact = _to_artifact(item)
        if artifact is not None:
            artifacts.append(artifact)
    if items and not artifacts:
        logger.warning("Provider returned %d item(s) but none were valid candidates", len(items))
    return artifacts


def _extract_json(raw_text: str) -> Any:
    text = raw_text.strip()
    if not text:
        return None
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    starts = [index for index in (text.find("{"), text.find("[")) if index >= 0]
    if not starts:
        return None
    start = min(starts)
    closing = "}" if text[start] == "{" else "]"
    end = text.rfind(closing)
    if end <= start:
        return None
    try:
        return json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None


def _to_artifact(item: Any) -> CandidateArtifact | None:
    if not isinstance(item, dict):
        return None
    thesis = str(item.get("thesis") or item.get("hypothesis") or "").strip()
    if not thesis:
        return None
    known = {
        "name",
        "strategyName",
        "category",
        "archetypeName",
        "thesis",
        "hypothesis",
        "entry_rules",
        "exit_rules",
        "risk_rules",
        "novelty_score",
        "structural_score",
        "validation_score",
        "robustness_score",
    }
    return CandidateArtifact(
        name=str(item.get("name") or item.get("strategyName") or "Unnamed candidate").strip(),
        category=str(item.get("category") or item.get("archetypeName") or "general").strip(),
        thesis=thesis,
        entry_rules=item.get("entry_rules"),
        exit_rules=item.get("exit_rules"),
        risk_rules=item.get("risk_rules"),
        novelty_score=_optional_float(item.get("novelty_score")),
        structural_score=_optional_float(item.get("structural_score")),
        validation_score=_optional_float(item.get("validation_score")),
        robustness_score=_optional_float(item.get("robustness_score")),
        extra={key: value for key, value in item.items() if key not in known},
    )


def _optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
