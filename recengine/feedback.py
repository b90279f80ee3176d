"""Feedback on served recommendations and the performance summary built from it."""
from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from app.metrics import recommendation_feedback_total

from .entities import CandidateScore, RecommendationStatus, ServedRecommendation
from .errors import NotFoundError, ValidationError
from .ports import RecommendationLog
from .timeutils import Clock, utcnow

LOGGER = logging.getLogger(__name__)

# Feedback type -> (status it moves the record to, timestamp field it stamps)
FEEDBACK_TYPES = {
    "view": (RecommendationStatus.VIEWED, "viewed_at"),
    "click": (RecommendationStatus.CLICKED, "clicked_at"),
    "purchase": (RecommendationStatus.PURCHASED, "purchased_at"),
    "dismiss": (RecommendationStatus.DISMISSED, "dismissed_at"),
}

_RATE_COLUMNS = {
    "view_rate": "viewed_at",
    "click_through_rate": "clicked_at",
    "conversion_rate": "purchased_at",
    "dismissal_rate": "dismissed_at",
}


def _empty_summary(days: int) -> Dict[str, Any]:
    summary: Dict[str, Any] = {"total_recommendations": 0}
    summary.update({name: 0.0 for name in _RATE_COLUMNS})
    summary.update({"average_score": 0.0, "average_confidence": 0.0, "by_algorithm": [], "period": f"{days} days"})
    return summary


def _rates(frame: pd.DataFrame) -> Dict[str, float]:
    return {name: float(frame[column].notna().mean()) for name, column in _RATE_COLUMNS.items()}


class RecommendationFeedback:
    """Persists served lists and records what users did with each entry."""

    def __init__(self, log: RecommendationLog, clock: Clock = utcnow):
        self.log = log
        self.clock = clock

    def record_served(
        self,
        request_id: str,
        user_id: str,
        candidates: Sequence[CandidateScore],
        *,
        model_id: Optional[str] = None,
        variant: Optional[str] = None,
    ) -> List[ServedRecommendation]:
        """Store one record per candidate and stamp its ``recommendation_id``."""
        now = self.clock()
        records = []
        for candidate in candidates:
            record = ServedRecommendation(
                recommendation_id=f"rec_{uuid.uuid4()}",
                request_id=request_id,
                user_id=user_id,
                item_id=candidate.item_id,
                algorithm=candidate.algorithm,
                score=candidate.score,
                confidence=candidate.confidence,
                rank=candidate.rank,
                created_at=now,
                model_id=model_id,
                variant=variant,
            )
            self.log.save(record)
            candidate.recommendation_id = record.recommendation_id
            records.append(record)
        return records

    def track_recommendation_interaction(
        self,
        recommendation_id: str,
        interaction_type: str,
    ) -> ServedRecommendation:
        try:
            status, field_name = FEEDBACK_TYPES[interaction_type]
        except KeyError as exc:
            raise ValidationError(
                "interaction_type",
                f"Feedback must be one of {sorted(FEEDBACK_TYPES)}, got {interaction_type!r}",
            ) from exc
        record = self.log.get(recommendation_id)
        if record is None:
            raise NotFoundError("recommendation", recommendation_id)

        record.status = status
        setattr(record, field_name, self.clock())
        self.log.save(record)
        recommendation_feedback_total.labels(feedback=interaction_type, algorithm=record.algorithm).inc()
        LOGGER.debug("Recommendation %s marked %s", recommendation_id, status.value)
        return record

    def get_recommendation_performance(
        self,
        model_id: Optional[str] = None,
        days: int = 30,
        algorithm: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Engagement with recommendations served over the last ``days`` days.

        Each rate is the share of served entries that received that feedback
        at least once. Every figure is zero when nothing was served.
        """
        records = self.log.since(self.clock() - timedelta(days=days))
        if model_id is not None:
            records = [r for r in records if r.model_id == model_id]
        if algorithm is not None:
            records = [r for r in records if r.algorithm == algorithm]
        if not records:
            return _empty_summary(days)

        frame = pd.DataFrame(
            [
                {
                    "algorithm": r.algorithm,
                    "score": r.score,
                    "confidence": r.confidence,
                    "viewed_at": r.viewed_at,
                    "clicked_at": r.clicked_at,
                    "purchased_at": r.purchased_at,
                    "dismissed_at": r.dismissed_at,
                }
                for r in records
            ]
        )
        by_algorithm = []
        for name, group in frame.groupby("algorithm", sort=True):
            row: Dict[str, Any] = {"algorithm": name, "total_recommendations": int(len(group))}
            row.update(_rates(group))
            row["average_score"] = float(group["score"].mean())
            by_algorithm.append(row)

        summary: Dict[str, Any] = {"total_recommendations": int(len(frame))}
        summary.update(_rates(frame))
        summary.update(
            {
                "average_score": float(frame["score"].mean()),
                "average_confidence": float(frame["confidence"].mean()),
                "by_algorithm": by_algorithm,
                "period": f"{days} days",
            }
        )
        return summary


__all__ = ["FEEDBACK_TYPES", "RecommendationFeedback"]
