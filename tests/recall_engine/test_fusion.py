"""Tests for channel fusion in :mod:`InterviewKG.RecallEngine.fusion`."""

from __future__ import annotations

import pytest

from InterviewKG.RecallEngine.config import FusionConfig
from InterviewKG.RecallEngine.fusion import HybridRanker, ReciprocalRankFusion, normalize_scores
from InterviewKG.RecallEngine.types import TextHit, VectorHit


def test_minmax_normalisation_maps_extremes() -> None:
    assert normalize_scores({1: 1.0, 2: 3.0, 3: 2.0}) == {1: 0.0, 2: 1.0, 3: 0.5}
    assert normalize_scores({}) == {}
    assert normalize_scores({4: 0.2, 5: 0.2}) == {4: 1.0, 5: 1.0}


def test_clamp_normalisation_per_channel() -> None:
    assert normalize_scores({1: 1.2, 2: -0.3}, mode="clamp", channel="vector") == {1: 1.0, 2: 0.0}
    assert normalize_scores({1: 3.0}, mode="clamp", channel="text") == {1: 0.75}
    with pytest.raises(ValueError):
        normalize_scores({1: 1.0}, mode="zscore")


def test_weighted_fusion_combines_both_channels() -> None:
    ranker = HybridRanker(FusionConfig(vector_weight=0.6, text_weight=0.4))
    ranked = ranker.rank(
        [VectorHit(1, 0.9), VectorHit(2, 0.5), VectorHit(3, 0.1)],
        [TextHit(3, 8.0), TextHit(2, 4.0)],
    )
    by_id = {item.id: item for item in ranked.items}
    assert by_id[1].score == pytest.approx(0.6)
    assert by_id[2].score == pytest.approx(0.6 * 0.5 + 0.4 * 0.0)
    assert by_id[3].score == pytest.approx(0.4)
    assert ranked.ids == [1, 3, 2]
    assert not ranked.degraded
    assert ranked.mode == "hybrid"


def test_weight_override_changes_order() -> None:
    ranker = HybridRanker()
    vector = [VectorHit(1, 0.9), VectorHit(2, 0.1)]
    text = [TextHit(2, 5.0), TextHit(1, 1.0)]
    assert ranker.rank(vector, text, {"vector": 1.0, "text": 0.0}).ids[0] == 1
    assert ranker.rank(vector, text, {"vector": 0.0, "text": 1.0}).ids[0] == 2


def test_missing_vector_channel_degrades_to_keyword_ranking() -> None:
    ranked = HybridRanker().rank(None, [TextHit(7, 2.0), TextHit(4, 6.0)])
    assert ranked.degraded
    assert ranked.mode == "keyword-only"
    assert ranked.ids == [4, 7]
    assert ranked.items[0].vector_score == 0.0


def test_empty_vector_channel_is_not_degraded() -> None:
    ranked = HybridRanker().rank([], [TextHit(1, 1.0)])
    assert not ranked.degraded
    assert ranked.ids == [1]


def test_ties_break_by_id() -> None:
    ranked = HybridRanker().rank([VectorHit(9, 0.5), VectorHit(3, 0.5)], [])
    assert ranked.ids == [3, 9]


def test_reciprocal_rank_fusion() -> None:
    rrf = ReciprocalRankFusion(k0=60.0)
    scores = rrf.fuse([[1, 2], [2, 3]])
    assert scores[2] == pytest.approx(1 / 62 + 1 / 61)
    assert scores[1] == pytest.approx(1 / 61)
    with pytest.raises(ValueError):
        ReciprocalRankFusion(k0=0)

    ranker = HybridRanker(FusionConfig(method="rrf"))
    ranked = ranker.rank([VectorHit(1, 0.9), VectorHit(2, 0.8)], [TextHit(2, 3.0), TextHit(3, 1.0)])
    assert ranked.ids == [2, 1, 3]
