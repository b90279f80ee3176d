"""
User-based collaborative filtering over the interaction log.

Neighbours are users who share at least ``min_common_items`` items with the
target user; similarity is cosine over the shared items only. Candidates are
the items neighbours touched that the target has not, scored as

    sum(sim_n * avg_weight_n) / sum(sim_n) + log(interaction_count + 1) / 10

and clamped to [0, 1]. Users without neighbours get recent popular items.
"""
from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from config.settings import EngineSettings, resolve_settings

from ..entities import CandidateScore, ReasonTag
from ..ports import InteractionLog
from ..similarity import intersection_cosine
from ..timeutils import Clock, utcnow
from .popularity import popular_items

LOGGER = logging.getLogger(__name__)

ALGORITHM = "collaborative"
POPULAR_ALGORITHM = "popular"
POPULAR_CONFIDENCE = 0.5


@dataclass(frozen=True)
class SimilarUser:
    user_id: str
    similarity: float
    common_items: int


class CollaborativeEstimator:
    """Scores unseen items from the behaviour of similar users."""

    def __init__(
        self,
        interaction_log: InteractionLog,
        settings: Optional[EngineSettings] = None,
        clock: Clock = utcnow,
    ):
        self.interaction_log = interaction_log
        self.settings = resolve_settings(settings)
        self.clock = clock

    def interaction_vector(self, user_id: str) -> Dict[str, float]:
        """item_id -> summed interaction weight over the user's most recent history."""
        vector: Dict[str, float] = defaultdict(float)
        for row in self.interaction_log.recent_for_user(
            user_id, self.settings.interaction_history_limit
        ):
            if row.item_id:
                vector[row.item_id] += row.weight
        return dict(vector)

    def find_similar_users(self, user_id: str, limit: Optional[int] = None) -> List[SimilarUser]:
        limit = limit if limit is not None else self.settings.max_neighbors
        target = self.interaction_vector(user_id)
        if not target:
            return []

        pool = self.interaction_log.users_sharing_items(
            target.keys(),
            exclude_user=user_id,
            min_common=self.settings.min_common_items,
            limit=self.settings.neighbor_pool_size,
        )

        neighbours: List[SimilarUser] = []
        for other_id, common in pool:
            similarity = intersection_cosine(target, self.interaction_vector(other_id))
            if similarity > self.settings.min_similarity:
                neighbours.append(
                    SimilarUser(user_id=other_id, similarity=similarity, common_items=common)
                )

        neighbours.sort(key=lambda n: n.similarity, reverse=True)
        return neighbours[:limit]

    def recommend(self, user_id: str, limit: int = 10) -> List[CandidateScore]:
        neighbours = self.find_similar_users(user_id)
        if not neighbours:
            LOGGER.debug("No neighbours for user=%s; serving popular items", user_id)
            return self.popular_fallback(user_id, limit)
        return self._score_from_neighbours(user_id, neighbours, limit)

    def _score_from_neighbours(
        self,
        user_id: str,
        neighbours: List[SimilarUser],
        limit: int,
    ) -> List[CandidateScore]:
        seen = self.interaction_log.item_ids_for_user(user_id)

        # item -> neighbour -> positive weights that neighbour gave the item
        weights: Dict[str, Dict[str, List[float]]] = defaultdict(lambda: defaultdict(list))
        for neighbour in neighbours:
            for row in self.interaction_log.recent_for_user(
                neighbour.user_id, self.settings.interaction_history_limit
            ):
                if row.item_id and row.item_id not in seen and row.weight > 0:
                    weights[row.item_id][neighbour.user_id].append(row.weight)

        similarity_of = {n.user_id: n.similarity for n in neighbours}
        candidates: List[CandidateScore] = []
        for item_id, by_user in weights.items():
            weighted = 0.0
            total_similarity = 0.0
            interaction_count = 0
            for other_id, values in by_user.items():
                similarity = similarity_of[other_id]
                weighted += similarity * (sum(values) / len(values))
                total_similarity += similarity
                interaction_count += len(values)
            if total_similarity <= 0:
                continue
            base = weighted / total_similarity
            boost = math.log(interaction_count + 1) / 10
            score = min(max(base + boost, 0.0), 1.0)
            contributors = tuple(
                sorted(by_user, key=lambda uid: similarity_of[uid], reverse=True)
            )
            candidates.append(
                CandidateScore(
                    item_id=item_id,
                    score=score,
                    confidence=min(score, 1.0),
                    reasons=frozenset({ReasonTag.SIMILAR_USERS}),
                    algorithm=ALGORITHM,
                    similar_users=contributors,
                )
            )

        candidates.sort(key=lambda c: c.score, reverse=True)
        LOGGER.debug(
            "Collaborative candidates for user=%s: neighbours=%d candidates=%d",
            user_id,
            len(neighbours),
            len(candidates),
        )
        return candidates[:limit]

    def popular_fallback(self, user_id: str, limit: int) -> List[CandidateScore]:
        since = self.clock() - timedelta(days=self.settings.popularity_window_days)
        seen = self.interaction_log.item_ids_for_user(user_id)
        return [
            CandidateScore(
                item_id=item_id,
                score=min(avg_weight / 10, 1.0),
                confidence=POPULAR_CONFIDENCE,
                reasons=frozenset({ReasonTag.POPULAR}),
                algorithm=POPULAR_ALGORITHM,
            )
            for item_id, _, avg_weight in popular_items(
                self.interaction_log, since, limit, exclude_ids=seen
            )
        ]


__all__ = ["CollaborativeEstimator", "SimilarUser"]
