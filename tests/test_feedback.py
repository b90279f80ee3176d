from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from recengine.entities import CandidateScore, ReasonTag, RecommendationStatus
from recengine.errors import NotFoundError, ValidationError
from recengine.feedback import RecommendationFeedback
from recengine.memory_store import InMemoryRecommendationLog

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _sample_feedback(clock=None) -> RecommendationFeedback:
    return RecommendationFeedback(InMemoryRecommendationLog(), clock=clock or _Clock())


def _sample_candidates(*rows):
    return [
        CandidateScore(
            item_id=item_id,
            score=score,
            confidence=score / 2,
            reasons=frozenset({ReasonTag.POPULAR}),
            algorithm=algorithm,
            rank=rank,
        )
        for rank, (item_id, score, algorithm) in enumerate(rows, start=1)
    ]


def test_record_served_stamps_recommendation_ids():
    feedback = _sample_feedback()
    candidates = _sample_candidates(("e1", 0.9, "hybrid"), ("e2", 0.5, "collaborative"))

    records = feedback.record_served("req_1", "u1", candidates, model_id=None, variant="control")

    assert [r.recommendation_id for r in records] == [c.recommendation_id for c in candidates]
    stored = feedback.log.get(records[1].recommendation_id)
    assert stored.item_id == "e2"
    assert stored.rank == 2
    assert stored.variant == "control"
    assert stored.status is RecommendationStatus.GENERATED
    assert candidates[0].to_dict()["recommendation_id"] == records[0].recommendation_id


def test_feedback_moves_status_and_stamps_time():
    clock = _Clock()
    feedback = _sample_feedback(clock)
    (record,) = feedback.record_served("req_1", "u1", _sample_candidates(("e1", 0.9, "hybrid")))

    clock.now = NOW + timedelta(minutes=5)
    feedback.track_recommendation_interaction(record.recommendation_id, "view")
    clock.now = NOW + timedelta(minutes=6)
    updated = feedback.track_recommendation_interaction(record.recommendation_id, "click")

    assert updated.status is RecommendationStatus.CLICKED
    stored = feedback.log.get(record.recommendation_id)
    assert stored.viewed_at == NOW + timedelta(minutes=5)
    assert stored.clicked_at == NOW + timedelta(minutes=6)
    assert stored.purchased_at is None


def test_feedback_rejects_unknown_type_and_id():
    feedback = _sample_feedback()
    (record,) = feedback.record_served("req_1", "u1", _sample_candidates(("e1", 0.9, "hybrid")))

    with pytest.raises(ValidationError) as excinfo:
        feedback.track_recommendation_interaction(record.recommendation_id, "like")
    assert excinfo.value.kind == "interaction_type"

    with pytest.raises(NotFoundError) as excinfo:
        feedback.track_recommendation_interaction("rec_missing", "view")
    assert excinfo.value.entity == "recommendation"


def test_performance_summary_rates_and_breakdown():
    feedback = _sample_feedback()
    hybrid = feedback.record_served(
        "req_1",
        "u1",
        _sample_candidates(("e1", 0.9, "hybrid"), ("e2", 0.6, "hybrid"), ("e3", 0.3, "hybrid")),
    )
    (model,) = feedback.record_served("req_2", "u2", _sample_candidates(("e4", 0.8, "model")), model_id="m1")

    feedback.track_recommendation_interaction(hybrid[0].recommendation_id, "view")
    feedback.track_recommendation_interaction(hybrid[0].recommendation_id, "purchase")
    feedback.track_recommendation_interaction(hybrid[1].recommendation_id, "dismiss")
    feedback.track_recommendation_interaction(model.recommendation_id, "view")
    feedback.track_recommendation_interaction(model.recommendation_id, "click")

    summary = feedback.get_recommendation_performance()
    assert summary["total_recommendations"] == 4
    assert summary["view_rate"] == pytest.approx(0.5)
    assert summary["click_through_rate"] == pytest.approx(0.25)
    assert summary["conversion_rate"] == pytest.approx(0.25)
    assert summary["dismissal_rate"] == pytest.approx(0.25)
    assert summary["average_score"] == pytest.approx((0.9 + 0.6 + 0.3 + 0.8) / 4)
    assert summary["average_confidence"] == pytest.approx((0.9 + 0.6 + 0.3 + 0.8) / 8)
    assert summary["period"] == "30 days"
    assert [(row["algorithm"], row["total_recommendations"]) for row in summary["by_algorithm"]] == [
        ("hybrid", 3),
        ("model", 1),
    ]

    by_model = feedback.get_recommendation_performance(model_id="m1")
    assert by_model["total_recommendations"] == 1
    assert by_model["click_through_rate"] == pytest.approx(1.0)
    assert feedback.get_recommendation_performance(algorithm="hybrid")["total_recommendations"] == 3


def test_performance_is_zero_when_nothing_served_in_window():
    clock = _Clock(NOW - timedelta(days=40))
    feedback = _sample_feedback(clock)
    feedback.record_served("req_1", "u1", _sample_candidates(("e1", 0.9, "hybrid")))
    clock.now = NOW

    summary = feedback.get_recommendation_performance(days=30)
    assert summary["total_recommendations"] == 0
    assert summary["click_through_rate"] == 0.0
    assert summary["average_score"] == 0.0
    assert summary["by_algorithm"] == []
    assert feedback.get_recommendation_performance(days=60)["total_recommendations"] == 1
