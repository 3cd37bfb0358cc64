"""Candidate post-processing: dedup, confidence scoring, disposition."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from uuid import uuid4

from research_orchestrator.orchestrator.fingerprint import compute_fingerprint
from research_orchestrator.orchestrator.models import (
    CandidateArtifact,
    CandidateWrite,
    Disposition,
    PostProcessSummary,
)
from research_orchestrator.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)

SCORE_WEIGHTS: dict[str, float] = {
    "research": 0.30,
    "structural": 0.25,
    "validation": 0.30,
    "robustness": 0.15,
}
FAST_TRACK_THRESHOLD = 65
REVIEW_THRESHOLD = 50
NEUTRAL_SUBSCORE = 50.0


@dataclass(slots=True)
class ConfidenceScore:
    """Weighted total with the per-dimension sub-scores it came from."""

    total: int
    breakdown: dict[str, float]


def assign_disposition(score: int) -> Disposition:
    if score >= FAST_TRACK_THRESHOLD:
        return Disposition.FAST_TRACK
    if score >= REVIEW_THRESHOLD:
        return Disposition.REVIEW
    return Disposition.BACKLOG


def score_artifact(artifact: CandidateArtifact) -> ConfidenceScore:
    """Score an artifact on four 0-100 dimensions and weight them.

    Provider-supplied hints win; otherwise each dimension falls back to a
    structural heuristic over the artifact's own content.
    """

    breakdown = {
        "research": _clamp(
            artifact.novelty_score
            if artifact.novelty_score is not None
            else _research_heuristic(artifact),
        ),
        "structural": _clamp(
            artifact.structural_score
            if artifact.structural_score is not None
            else _structural_heuristic(artifact),
        ),
        "validation": _clamp(
            artifact.validation_score
            if artifact.validation_score is not None
            else NEUTRAL_SUBSCORE,
        ),
        "robustness": _clamp(
            artifact.robustness_score
            if artifact.robustness_score is not None
            else _robustness_heuristic(artifact),
        ),
    }
    total = round(sum(breakdown[key] * weight for key, weight in SCORE_WEIGHTS.items()))
    return ConfidenceScore(total=int(total), breakdown=breakdown)


class CandidatePostProcessor:
    """Routes a job's artifacts through the fingerprint index and scorer."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        dedup_ttl: timedelta = timedelta(hours=24),
    ) -> None:
        self.repository = repository
        self.dedup_ttl = dedup_ttl

    def process(
        self,
        artifacts: list[CandidateArtifact],
        *,
        job_id: str | None,
        trace_id: str | None = None,
    ) -> PostProcessSummary:
        summary = PostProcessSummary()
        for artifact in artifacts:
            fingerprint_hash = compute_fingerprint(artifact)
            if self.repository.find_live_fingerprint(fingerprint_hash=fingerprint_hash):
                self._count_duplicate(summary, fingerprint_hash=fingerprint_hash)
                continue

            score = score_artifact(artifact)
            candidate = CandidateWrite(
                candidate_id=str(uuid4()),
                job_id=job_id,
                fingerprint_hash=fingerprint_hash,
                name=artifact.name,
                category=artifact.category,
                thesis=artifact.thesis,
                rules={
                    "entry": artifact.entry_rules,
                    "exit": artifact.exit_rules,
                    "risk": artifact.risk_rules,
                },
                confidence_score=score.total,
                score_breakdown=score.breakdown,
                disposition=assign_disposition(score.total),
            )
            if not self.repository.insert_candidate(candidate, ttl=self.dedup_ttl):
                # Lost the race to a concurrent job registering the same hash.
                self._count_duplicate(summary, fingerprint_hash=fingerprint_hash)
                continue
            summary.created += 1
            summary.candidate_ids.append(candidate.candidate_id)
            logger.info(
                "Candidate %s created: score=%d disposition=%s trace_id=%s",
                candidate.candidate_id,
                candidate.confidence_score,
                candidate.disposition.value,
                trace_id or "-",
            )
        return summary

    def _count_duplicate(self, summary: PostProcessSummary, *, fingerprint_hash: str) -> None:
        hits = self.repository.record_fingerprint_hit(fingerprint_hash=fingerprint_hash)
        summary.duplicates += 1
        logger.debug("Duplicate candidate %s (hits=%d)", fingerprint_hash, hits)


def _research_heuristic(artifact: CandidateArtifact) -> float:
    evidence = artifact.extra.get("evidence")
    evidence_count = len(evidence) if isinstance(evidence, list) else 0
    base = {0: 35.0, 1: 50.0, 2: 65.0}.get(evidence_count, 80.0)
    if len(artifact.thesis.strip()) >= 80:
        base += 10.0
    return base


def _structural_heuristic(artifact: CandidateArtifact) -> float:
    score = 0.0
    if artifact.entry_rules:
        score += 35.0
    if artifact.exit_rules:
        score += 35.0
    if artifact.risk_rules:
        score += 30.0
    return score


def _robustness_heuristic(artifact: CandidateArtifact) -> float:
    regimes = artifact.extra.get("regimes")
    if isinstance(regimes, list) and regimes:
        return 40.0 + 20.0 * len(regimes)
    return NEUTRAL_SUBSCORE


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, float(value)))
