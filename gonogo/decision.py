"""Decision engine: weighted average of criterion scores and threshold mapping.

Pure functions only; callers persist the result.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping

from gonogo.config import ScoringConfig


class Recommendation(str, Enum):
    GO = "GO"
    REVIEW = "REVIEW"
    NO_GO = "NO_GO"


@dataclass(frozen=True)
class DecisionResult:
    scores: dict[str, int]
    overall_score: float
    recommendation: Recommendation
    decision: str  # recommendation rendered in the config's scheme (go / GO / ...)
    comments: str = ""
    weights_used: dict[str, float] = field(default_factory=dict)


def weighted_average(scores: Mapping[str, float], weights: Mapping[str, float]) -> float:
    """Sum of score*weight over sum of weights; unknown criteria weigh 1, empty input gives 0."""
    weighted_sum = 0.0
    total_weight = 0.0
    for criterion, score in scores.items():
        weight = weights.get(criterion, 1.0)
        weighted_sum += score * weight
        total_weight += weight
    return weighted_sum / total_weight if total_weight > 0 else 0.0


def recommend(overall: float, config: ScoringConfig) -> Recommendation:
    if overall >= config.go_threshold:
        return Recommendation.GO
    if config.scheme == "tiered" and config.review_threshold is not None and overall >= config.review_threshold:
        return Recommendation.REVIEW
    return Recommendation.NO_GO


def compute_decision(
    scores: Mapping[str, float], config: ScoringConfig, comments: str = "",
) -> DecisionResult:
    overall = weighted_average(scores, config.weights)
    rec = recommend(overall, config)
    return DecisionResult(
        scores=dict(scores),
        overall_score=overall,
        recommendation=rec,
        decision=config.label(rec),
        comments=comments,
        weights_used={c: config.weight_for(c) for c in scores},
    )


def override_decision(
    result: DecisionResult,
    manager_scores: Mapping[str, float],
    manager_comments: str,
    config: ScoringConfig,
) -> DecisionResult:
    """Merge manager scores over the AI scores and recompute.

    Criteria the manager did not score keep the AI score.  The manager's
    comment replaces the AI comment unless it is empty.
    """
    merged = {**result.scores, **manager_scores}
    return compute_decision(merged, config, comments=manager_comments or result.comments)
