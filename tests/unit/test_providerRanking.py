"""
Unit tests for the provider ranking algorithm.

Covers the component normalisation, weighting, the deterministic tie-break
order and weight validation.
"""

import uuid

import pytest

from escrowbook.algorithms.providerRanking import (
    RankingCandidate,
    _normalise_completed_jobs,
    _normalise_rating,
    rank_providers,
    score_candidate,
)


def _candidate(rating: float, jobs: int, provider_id=None) -> RankingCandidate:
    return RankingCandidate(provider_id=provider_id or uuid.uuid4(), rating=rating, completed_jobs=jobs)


class TestNormalisation:

    def test_rating_scaled_to_100(self):
        assert _normalise_rating(5) == 100.0
        assert _normalise_rating(2.5) == 50.0

    def test_rating_clamped(self):
        assert _normalise_rating(7) == 100.0
        assert _normalise_rating(-1) == 0.0

    def test_completed_jobs_capped(self):
        assert _normalise_completed_jobs(50, 100) == 50.0
        assert _normalise_completed_jobs(250, 100) == 100.0

    def test_zero_cap_scores_nothing(self):
        assert _normalise_completed_jobs(10, 0) == 0.0


class TestScoreCandidate:

    def test_default_weights(self):
        # 0.7 * 90 + 0.3 * 50
        assert score_candidate(4.5, 50) == 78.0

    def test_custom_weights(self):
        assert score_candidate(5.0, 0, weights={"rating": 0.5, "completed_jobs": 0.5}) == 50.0

    def test_custom_cap(self):
        assert score_candidate(0, 10, completed_jobs_cap=10) == 30.0


class TestRankProviders:

    def test_highest_score_first(self):
        low = _candidate(3.0, 5)
        high = _candidate(4.9, 80)
        ranked = rank_providers([low, high])
        assert [r.provider_id for r in ranked] == [high.provider_id, low.provider_id]
        assert ranked[0].score_rating == 98.0
        assert ranked[0].score_jobs == 80.0

    def test_tie_broken_by_rating_then_jobs(self):
        # Both score 70.0 with the rating weight alone
        weights = {"rating": 1.0}
        a = _candidate(3.5, 10)
        b = _candidate(3.5, 40)
        ranked = rank_providers([a, b], weights=weights)
        assert ranked[0].provider_id == b.provider_id

    def test_full_tie_broken_by_provider_id(self):
        first = uuid.UUID("00000000-0000-0000-0000-000000000001")
        second = uuid.UUID("00000000-0000-0000-0000-000000000002")
        ranked = rank_providers([_candidate(4.0, 10, second), _candidate(4.0, 10, first)])
        assert [r.provider_id for r in ranked] == [first, second]

    def test_ranking_is_deterministic(self):
        candidates = [_candidate(4.0, j) for j in (3, 30, 300)]
        assert [r.provider_id for r in rank_providers(candidates)] == [
            r.provider_id for r in rank_providers(list(reversed(candidates)))
        ]

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValueError, match="sum to 1.0"):
            rank_providers([_candidate(4.0, 1)], weights={"rating": 0.5, "completed_jobs": 0.2})

    def test_empty_input(self):
        assert rank_providers([]) == []
