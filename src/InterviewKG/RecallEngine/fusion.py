"""Hybrid ranking: per-channel normalisation, weighted fusion and RRF."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Mapping, Optional, Sequence

from .config import FusionConfig
from .types import RankedId, RankedList, TextHit, VectorHit

__all__ = ("HybridRanker", "ReciprocalRankFusion", "normalize_scores")


def normalize_scores(scores: Mapping[int, float], *, mode: str = "minmax", channel: str = "text") -> Dict[int, float]:
    """Map one channel's raw scores onto ``[0, 1]``.

    ``minmax`` rescales by the channel's own min and max; a channel whose
    scores are all equal maps every id to 1.0. ``clamp`` is stateless: cosine
    scores are clipped into ``[0, 1]`` and unbounded BM25 scores are squashed
    with ``s / (1 + s)``.

    Args:
        scores: Raw scores keyed by id.
        mode: ``"minmax"`` or ``"clamp"``.
        channel: ``"vector"`` or ``"text"``; only used by ``clamp``.

    Returns:
        Normalised scores keyed by id.

    Examples:
        >>> normalize_scores({1: 2.0, 2: 4.0})
        {1: 0.0, 2: 1.0}
        >>> normalize_scores({5: 0.3})
        {5: 1.0}
    """
    if not scores:
        return {}
    if mode == "clamp":
        if channel == "vector":
            return {key: min(1.0, max(0.0, float(value))) for key, value in scores.items()}
        return {key: max(0.0, float(value)) / (1.0 + max(0.0, float(value))) for key, value in scores.items()}
    if mode != "minmax":
        raise ValueError(f"Unsupported normalization mode: {mode}")
    low = min(scores.values())
    high = max(scores.values())
    span = high - low
    if span <= 0.0:
        return {key: 1.0 for key in scores}
    return {key: (float(value) - low) / span for key, value in scores.items()}


class ReciprocalRankFusion:
    """Combine ranked lists using Reciprocal Rank Fusion.

    Attributes:
        _k0: Fusion parameter controlling the influence of item rank.

    Examples:
        >>> rrf = ReciprocalRankFusion(k0=60.0)
        >>> {key: round(score, 4) for key, score in rrf.fuse([[3, 1], [1]]).items()}
        {3: 0.0164, 1: 0.0325}
    """

    def __init__(self, k0: float = 60.0) -> None:
        if k0 <= 0:
            raise ValueError("k0 must be positive")
        self._k0 = k0

    def fuse(self, rankings: Sequence[Sequence[int]]) -> Dict[int, float]:
        """Score ids by summing ``1 / (k0 + rank)`` over every ranking (rank starts at 1)."""

        scores: Dict[int, float] = defaultdict(float)
        for ranking in rankings:
            for rank, key in enumerate(ranking, start=1):
                scores[key] += 1.0 / (self._k0 + rank)
        return dict(scores)


class HybridRanker:
    """Merge vector and keyword channels into one deterministic ranking.

    ``vector_results=None`` means the vector channel was unavailable (for
    example the embedding provider timed out). The ranker then orders by the
    keyword channel alone and returns a list flagged ``degraded`` so callers
    can lower their confidence. An *empty* vector list is not degraded: the
    channel ran and simply found nothing.

    Examples:
        >>> ranker = HybridRanker()
        >>> ranked = ranker.rank([VectorHit(1, 0.9)], [TextHit(2, 3.0)], {"vector": 0.5, "text": 0.5})
        >>> ranked.ids, ranked.degraded
        ([1, 2], False)
    """

    def __init__(self, config: Optional[FusionConfig] = None) -> None:
        self.config = config or FusionConfig()
        self._rrf = ReciprocalRankFusion(self.config.k0)

    def rank(
        self,
        vector_results: Optional[Sequence[VectorHit]],
        text_results: Sequence[TextHit],
        weights: Optional[Mapping[str, float]] = None,
    ) -> RankedList:
        """Fuse channel results.

        Args:
            vector_results: Vector hits, or ``None`` when the channel is unavailable.
            text_results: Keyword hits.
            weights: ``{"vector": w_v, "text": w_t}``; defaults to the config weights.
                Ignored by reciprocal rank fusion.

        Returns:
            Ranked list ordered by fused score descending, id ascending.
        """
        resolved = dict(self.config.weights)
        if weights:
            resolved.update({key: float(value) for key, value in weights.items()})
        degraded = vector_results is None
        vector_hits: Sequence[VectorHit] = vector_results or ()

        if self.config.method == "rrf":
            items = self._rank_rrf(vector_hits, text_results)
        else:
            items = self._rank_weighted(vector_hits, text_results, resolved, degraded)
        items.sort(key=lambda item: (-item.score, item.id))
        return RankedList(items=items, degraded=degraded)

    def _rank_weighted(
        self,
        vector_hits: Sequence[VectorHit],
        text_hits: Sequence[TextHit],
        weights: Mapping[str, float],
        degraded: bool,
    ) -> List[RankedId]:
        mode = self.config.normalization
        vector_norm = normalize_scores({hit.id: hit.score for hit in vector_hits}, mode=mode, channel="vector")
        text_norm = normalize_scores({hit.id: hit.score for hit in text_hits}, mode=mode, channel="text")
        if degraded:
            return [RankedId(id=key, score=value, text_score=value) for key, value in text_norm.items()]
        weight_v = weights.get("vector", 0.0)
        weight_t = weights.get("text", 0.0)
        items: List[RankedId] = []
        for key in set(vector_norm) | set(text_norm):
            v = vector_norm.get(key, 0.0)
            t = text_norm.get(key, 0.0)
            items.append(RankedId(id=key, score=weight_v * v + weight_t * t, vector_score=v, text_score=t))
        return items

    def _rank_rrf(self, vector_hits: Sequence[VectorHit], text_hits: Sequence[TextHit]) -> List[RankedId]:
        vector_order = [hit.id for hit in sorted(vector_hits, key=lambda hit: (-hit.score, hit.id))]
        text_order = [hit.id for hit in sorted(text_hits, key=lambda hit: (-hit.score, hit.id))]
        vector_part = self._rrf.fuse([vector_order])
        text_part = self._rrf.fuse([text_order])
        return [
            RankedId(
                id=key,
                score=vector_part.get(key, 0.0) + text_part.get(key, 0.0),
                vector_score=vector_part.get(key, 0.0),
                text_score=text_part.get(key, 0.0),
            )
            for key in set(vector_part) | set(text_part)
        ]
