"""Content fingerprints used to suppress duplicate research candidates."""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any

from research_orchestrator.orchestrator.models import CandidateArtifact

FINGERPRINT_LENGTH = 32
THESIS_PREFIX_CHARS = 200
RULES_PREFIX_CHARS = 300

_WHITESPACE_RE = re.compile(r"\s+")


def compute_fingerprint(artifact: CandidateArtifact) -> str:
    """Hash the semantic content of an artifact.

    Only category, thesis and entry/exit rules participate. Names, scores,
    costs, timestamps and the producing job's context do not, so the same
    idea generated twice under different runs maps to the same hash.
    """

    projection = "|".join(
        (
            artifact.category,
            artifact.thesis.lower()[:THESIS_PREFIX_CHARS],
            _rules_text(artifact.entry_rules)[:RULES_PREFIX_CHARS],
            _rules_text(artifact.exit_rules)[:RULES_PREFIX_CHARS],
        ),
    )
    normalized = _WHITESPACE_RE.sub(" ", projection.lower()).strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def _rules_text(rules: Any) -> str:
    if rules is None:
        return ""
    if isinstance(rules, str):
        return rules
    return json.dumps(rules, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
