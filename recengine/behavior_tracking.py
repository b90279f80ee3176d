"""Behavioural tracking boundary: records interactions and their preference side effects."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import pandas as pd

from app.metrics import interactions_tracked_total, preference_updates_total

from .entities import Interaction, InteractionContext, InteractionType, Preference, interaction_weight
from .errors import ValidationError
from .ports import InteractionLog
from .preferences import DecayReport, PreferenceModel
from .timeutils import Clock, ensure_utc, utcnow

LOGGER = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5


def _coerce_type(interaction_type: Union[InteractionType, str]) -> InteractionType:
    try:
        return InteractionType(interaction_type)
    except ValueError as exc:
        raise ValidationError(
            "interaction_type", f"Unknown interaction type: {interaction_type!r}"
        ) from exc


def _check_rating(rating: Optional[int]) -> Optional[int]:
    if rating is None:
        return None
    if isinstance(rating, bool) or not isinstance(rating, (int, float)) or int(rating) != rating:
        raise ValidationError("rating", f"Rating must be an integer, got {rating!r}")
    if not MIN_RATING <= rating <= MAX_RATING:
        raise ValidationError("rating", f"Rating must be between {MIN_RATING} and {MAX_RATING}, got {rating}")
    return int(rating)


class BehaviorTracker:
    """Appends interactions to the log and feeds the preference model."""

    def __init__(
        self,
        interaction_log: InteractionLog,
        preference_model: PreferenceModel,
        clock: Clock = utcnow,
    ):
        self.interaction_log = interaction_log
        self.preference_model = preference_model
        self.clock = clock

    def build_interaction(
        self,
        user_id: str,
        interaction_type: Union[InteractionType, str],
        item_id: Optional[str] = None,
        context: Union[InteractionContext, Mapping[str, Any], None] = None,
        rating: Optional[int] = None,
        duration: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> Interaction:
        """Validated, weighted interaction; nothing is stored."""
        if not user_id:
            raise ValidationError("request", "user_id is required")
        kind = _coerce_type(interaction_type)
        return Interaction(
            user_id=user_id,
            item_id=item_id or None,
            type=kind,
            weight=interaction_weight(kind),
            timestamp=ensure_utc(timestamp) if timestamp else self.clock(),
            context=InteractionContext.from_dict(context),
            rating=_check_rating(rating),
            duration=duration,
        )

    def track_interaction(self, user_id: str, interaction_type: Union[InteractionType, str], **kwargs: Any) -> Interaction:
        interaction = self.build_interaction(user_id, interaction_type, **kwargs)
        return self._store(interaction)

    def batch_track_interactions(self, payloads: Iterable[Mapping[str, Any]]) -> List[Interaction]:
        """Validate every payload first, then store them in order."""
        interactions = [self.build_interaction(**dict(payload)) for payload in payloads]
        stored = [self._store(interaction) for interaction in interactions]
        LOGGER.info("Tracked batch of %d interactions", len(stored))
        return stored

    def _store(self, interaction: Interaction) -> Interaction:
        saved = self.interaction_log.append(interaction)
        interactions_tracked_total.labels(interaction_type=interaction.type.value).inc()
        for preference in self.preference_model.record(interaction):
            preference_updates_total.labels(attribute_type=preference.attribute_type.value).inc()
        return saved

    def get_user_interactions(
        self,
        user_id: str,
        limit: int = 100,
        interaction_type: Union[InteractionType, str, None] = None,
    ) -> List[Interaction]:
        kind = _coerce_type(interaction_type) if interaction_type is not None else None
        return self.interaction_log.recent_for_user(user_id, limit, kind)

    def get_interaction_stats(self, user_id: str, days: int = 30) -> Dict[str, Any]:
        """Per-type counts and average weights over the last ``days`` days."""
        cutoff = self.clock() - timedelta(days=days)
        history = self.interaction_log.recent_for_user(
            user_id, self.interaction_log.count_for_user(user_id)
        )
        rows = [
            {"type": row.type.value, "weight": row.weight}
            for row in history
            if ensure_utc(row.timestamp) >= cutoff
        ]
        if not rows:
            return {
                "total_interactions": 0,
                "interaction_breakdown": [],
                "average_engagement": 0.0,
                "period": f"{days} days",
            }

        frame = pd.DataFrame(rows)
        breakdown = (
            frame.groupby("type")
            .agg(interactions=("weight", "size"), avg_weight=("weight", "mean"))
            .reset_index()
            .sort_values(["interactions", "type"], ascending=[False, True])
        )
        return {
            "total_interactions": int(breakdown["interactions"].sum()),
            "interaction_breakdown": [
                {"type": row.type, "count": int(row.interactions), "avg_weight": float(row.avg_weight)}
                for row in breakdown.itertuples(index=False)
            ],
            "average_engagement": float(breakdown["avg_weight"].mean()),
            "period": f"{days} days",
        }

    def get_user_preferences(self, user_id: str) -> List[Preference]:
        return self.preference_model.profile(user_id)

    def get_top_preferences(self, user_id: str, limit: int = 10) -> List[Preference]:
        return self.preference_model.top_preferences(user_id, limit)

    def decay_preferences(self, now: Optional[datetime] = None) -> DecayReport:
        return self.preference_model.decay(now)


__all__ = ["BehaviorTracker"]
