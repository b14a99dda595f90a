"""
Provider Ranking Algorithm
==========================

Ranks assignment candidates by a composite score derived from two weighted
factors:

  1. Rating          (default weight: 0.7) -- average client rating, 0-5
  2. Completed jobs  (default weight: 0.3) -- experience, capped

Both component scores are normalised to a 0-100 scale before weighting, so
the composite score is also on a 0-100 scale. Weights and the completed-jobs
cap come from ``settings.ranking_weights`` / ``settings.ranking_completed_jobs_cap``.

The algorithm is deterministic: ties are broken by rating descending, then
completed jobs descending, then provider id ascending.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from escrowbook.core.config import settings


MAX_RATING: float = 5.0


@dataclass
class RankingCandidate:
    """Input data for a single provider to be ranked."""

    provider_id: Any
    rating: float
    completed_jobs: int


@dataclass
class RankedProvider:
    provider_id: Any
    rating: float
    completed_jobs: int

    # Normalised component scores (0-100)
    score_rating: float = 0.0
    score_jobs: float = 0.0

    score: float = 0.0


# ---------------------------------------------------------------------------
# Normalisation functions
# ---------------------------------------------------------------------------

def _normalise_rating(rating: float | Decimal) -> float:
    clamped = max(0.0, min(float(rating), MAX_RATING))
    return (clamped / MAX_RATING) * 100.0


def _normalise_completed_jobs(completed_jobs: int, cap: int) -> float:
    """More is better, up to ``cap`` jobs which scores 100."""
    if cap <= 0:
        return 0.0
    clamped = max(0, min(completed_jobs, cap))
    return (clamped / cap) * 100.0


def score_candidate(
    rating: float | Decimal,
    completed_jobs: int,
    weights: dict[str, float] | None = None,
    completed_jobs_cap: int | None = None,
) -> float:
    w = weights or settings.ranking_weights
    cap = settings.ranking_completed_jobs_cap if completed_jobs_cap is None else completed_jobs_cap
    composite = (
        _normalise_rating(rating) * w.get("rating", 0.0)
        + _normalise_completed_jobs(completed_jobs, cap) * w.get("completed_jobs", 0.0)
    )
    return round(composite, 2)


# ---------------------------------------------------------------------------
# Ranking function
# ---------------------------------------------------------------------------

def rank_providers(
    candidates: list[RankingCandidate],
    weights: dict[str, float] | None = None,
    completed_jobs_cap: int | None = None,
) -> list[RankedProvider]:
    """Rank provider candidates by composite score, highest first.

    Raises:
        ValueError: If the weights do not sum to 1.0.
    """
    w = weights or settings.ranking_weights
    weight_sum = sum(w.values())
    if abs(weight_sum - 1.0) > 0.01:
        raise ValueError(
            f"Ranking weights must sum to 1.0, got {weight_sum:.4f}. "
            f"Weights: {w}"
        )
    cap = settings.ranking_completed_jobs_cap if completed_jobs_cap is None else completed_jobs_cap

    ranked: list[RankedProvider] = []
    for candidate in candidates:
        rating = float(candidate.rating)
        ranked.append(
            RankedProvider(
                provider_id=candidate.provider_id,
                rating=rating,
                completed_jobs=candidate.completed_jobs,
                score_rating=round(_normalise_rating(rating), 2),
                score_jobs=round(_normalise_completed_jobs(candidate.completed_jobs, cap), 2),
                score=score_candidate(rating, candidate.completed_jobs, w, cap),
            )
        )

    ranked.sort(key=lambda r: (-r.score, -r.rating, -r.completed_jobs, str(r.provider_id)))
    return ranked
