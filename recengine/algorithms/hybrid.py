"""
Weighted fusion of collaborative and content-based candidates.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Sequence

from ..entities import CandidateScore

ALGORITHM = "hybrid"


def combine_recommendations(
    collaborative: Sequence[CandidateScore],
    content: Sequence[CandidateScore],
    collaborative_weight: float = 0.6,
    content_weight: float = 0.4,
) -> List[CandidateScore]:
    """
    Merge two candidate lists by item id.

    Items in both lists score ``collab * collaborative_weight + content *
    content_weight`` with the union of reasons and the higher confidence.
    Single-source items are scaled by their estimator's weight. The result is
    sorted by score descending; ties keep collaborative order first, then
    content-only items in content order.
    """
    merged: Dict[str, CandidateScore] = {}

    for candidate in collaborative:
        merged[candidate.item_id] = replace(
            candidate, score=candidate.score * collaborative_weight
        )

    for candidate in content:
        existing = merged.get(candidate.item_id)
        if existing is None:
            merged[candidate.item_id] = replace(candidate, score=candidate.score * content_weight)
            continue
        merged[candidate.item_id] = replace(
            existing,
            score=existing.score + candidate.score * content_weight,
            confidence=max(existing.confidence, candidate.confidence),
            reasons=existing.reasons | candidate.reasons,
            algorithm=ALGORITHM,
            matching_features=existing.matching_features + candidate.matching_features,
        )

    # sorted() is stable, so equal scores keep insertion order.
    return sorted(merged.values(), key=lambda c: c.score, reverse=True)


__all__ = ["combine_recommendations"]
