"""Tests for message similarity scoring."""

from __future__ import annotations

from datetime import timedelta

import pytest

from mourning.config import SimilarityWeights
from mourning.messages import utc_now
from mourning.similarity import (
    length_similarity,
    rank_by_similarity,
    semantic_similarity,
    similarity,
    temporal_proximity,
)
from tests.conftest import make_message


class TestTerms:
    def test_temporal_identical_times(self) -> None:
        now = utc_now()
        a = make_message(1, created_at=now)
        b = make_message(2, created_at=now)
        assert temporal_proximity(a, b) == 1.0

    def test_temporal_linear_falloff(self) -> None:
        now = utc_now()
        a = make_message(1, created_at=now)
        b = make_message(2, created_at=now - timedelta(days=15))
        assert temporal_proximity(a, b, window_days=30) == pytest.approx(0.5)

    def test_temporal_clamped_at_zero(self) -> None:
        now = utc_now()
        a = make_message(1, created_at=now)
        b = make_message(2, created_at=now - timedelta(days=90))
        assert temporal_proximity(a, b) == 0.0

    def test_temporal_symmetric(self) -> None:
        now = utc_now()
        a = make_message(1, created_at=now)
        b = make_message(2, created_at=now - timedelta(days=3))
        assert temporal_proximity(a, b) == temporal_proximity(b, a)

    def test_length_equal(self) -> None:
        assert length_similarity(make_message(1, "abc"), make_message(2, "xyz")) == 1.0

    def test_length_difference(self) -> None:
        a = make_message(1, "x" * 10)
        b = make_message(2, "x" * 150)
        assert length_similarity(a, b) == pytest.approx(0.5)

    def test_semantic_is_inert(self) -> None:
        assert semantic_similarity(make_message(1), make_message(2)) == 0.0


class TestCombinedScore:
    def test_default_maximum_is_point_eight(self) -> None:
        """With the semantic term inert, identical messages score 0.6 + 0.2."""
        now = utc_now()
        a = make_message(1, "same length", created_at=now)
        b = make_message(2, "same length", created_at=now)
        assert similarity(a, b) == pytest.approx(0.8)

    def test_custom_weights(self) -> None:
        now = utc_now()
        a = make_message(1, "x" * 10, created_at=now)
        b = make_message(2, "x" * 10, created_at=now - timedelta(days=60))
        weights = SimilarityWeights(temporal_weight=0.0, length_weight=1.0, semantic_weight=0.0)
        assert similarity(a, b, weights) == pytest.approx(1.0)

    def test_range(self) -> None:
        now = utc_now()
        a = make_message(1, "x", created_at=now)
        b = make_message(2, "x" * 280, created_at=now - timedelta(days=400))
        assert 0.0 <= similarity(a, b) <= 1.0


class TestRanking:
    def test_orders_by_score_then_id(self) -> None:
        now = utc_now()
        focus = make_message(10, "x" * 20, created_at=now)
        close = make_message(3, "x" * 20, created_at=now - timedelta(hours=1))
        tie_a = make_message(5, "x" * 20, created_at=now - timedelta(days=10))
        tie_b = make_message(4, "x" * 20, created_at=now - timedelta(days=10))
        far = make_message(1, "x" * 200, created_at=now - timedelta(days=29))

        ranked = rank_by_similarity(focus, [far, tie_a, close, tie_b], SimilarityWeights())

        assert [m.id for m, _ in ranked] == [3, 4, 5, 1]
        scores = [s for _, s in ranked]
        assert scores == sorted(scores, reverse=True)

    def test_skips_focus(self) -> None:
        focus = make_message(1)
        ranked = rank_by_similarity(focus, [focus, make_message(2)], SimilarityWeights())
        assert [m.id for m, _ in ranked] == [2]
