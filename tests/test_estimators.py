from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from recengine.algorithms.collaborative_filtering import CollaborativeEstimator
from recengine.algorithms.content_based import (
    FIXED_FEATURE_NAMES,
    ContentEstimator,
    extract_item_features,
    preference_matches,
    reasons_for,
    score_item,
)
from recengine.algorithms.hybrid import combine_recommendations
from recengine.entities import (
    AttributeType,
    CandidateScore,
    Interaction,
    InteractionType,
    Item,
    Preference,
    PreferenceKey,
    ReasonTag,
    interaction_weight,
)
from recengine.memory_store import InMemoryInteractionLog, InMemoryItemCatalog, InMemoryPreferenceStore
from recengine.preferences import PreferenceModel

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _clock():
    return NOW


def _sample_interaction(user_id: str, item_id: str, kind: InteractionType, days_ago: float = 1) -> Interaction:
    return Interaction(
        user_id=user_id,
        item_id=item_id,
        type=kind,
        weight=interaction_weight(kind),
        timestamp=NOW - timedelta(days=days_ago),
    )


def _sample_log() -> InMemoryInteractionLog:
    # A = {e1: 3, e2: 2}; B = {e1: 2, e2: 1, e3: 4}
    return InMemoryInteractionLog(
        [
            _sample_interaction("A", "e1", InteractionType.SHARE),
            _sample_interaction("A", "e2", InteractionType.CLICK),
            _sample_interaction("B", "e1", InteractionType.CLICK),
            _sample_interaction("B", "e2", InteractionType.VIEW),
            _sample_interaction("B", "e3", InteractionType.CART_ADD),
        ]
    )


def _sample_item(item_id: str, **overrides) -> Item:
    payload = dict(
        item_id=item_id,
        name="Jazz Concert Night",
        category="Music",
        city="Austin",
        state="TX",
        country="US",
        capacity=500,
        price=30.0,
        # 2024-06-01 is a Saturday.
        start_date=datetime(2024, 6, 1, 20, 0, tzinfo=timezone.utc),
        created_at=NOW - timedelta(days=10),
        tags=("Jazz",),
    )
    payload.update(overrides)
    return Item(**payload)


def _sample_preference(attribute_type: AttributeType, value: str, weight: float = 0.9) -> Preference:
    return Preference(
        user_id="u1",
        attribute_type=attribute_type,
        value=value,
        weight=weight,
        confidence=1.0,
        frequency=5,
        last_used=NOW,
    )


def _candidate(item_id: str, score: float, algorithm: str = "collaborative", **kwargs) -> CandidateScore:
    return CandidateScore(
        item_id=item_id,
        score=score,
        confidence=kwargs.pop("confidence", score),
        reasons=kwargs.pop("reasons", frozenset({ReasonTag.SIMILAR_USERS})),
        algorithm=algorithm,
        **kwargs,
    )


# --------------------------------------------------------------------------- #
# Collaborative
# --------------------------------------------------------------------------- #


def test_similar_users_share_items():
    estimator = CollaborativeEstimator(_sample_log(), clock=_clock)
    neighbours = estimator.find_similar_users("A")
    assert [n.user_id for n in neighbours] == ["B"]
    assert neighbours[0].common_items == 2
    assert neighbours[0].similarity == pytest.approx(8 / (13 * 5) ** 0.5)


def test_collaborative_surfaces_neighbour_items():
    estimator = CollaborativeEstimator(_sample_log(), clock=_clock)
    results = estimator.recommend("A", limit=10)

    assert [c.item_id for c in results] == ["e3"]
    top = results[0]
    assert top.reasons == frozenset({ReasonTag.SIMILAR_USERS})
    assert top.algorithm == "collaborative"
    assert top.similar_users == ("B",)
    assert 0.0 <= top.score <= 1.0
    # Neighbour weight 4.0 plus log boost clamps to the upper bound.
    assert top.score == pytest.approx(1.0)


def test_collaborative_never_recommends_seen_items():
    estimator = CollaborativeEstimator(_sample_log(), clock=_clock)
    seen = {"e1", "e2"}
    assert seen.isdisjoint(c.item_id for c in estimator.recommend("A"))


def test_cold_start_user_gets_popular_items():
    estimator = CollaborativeEstimator(_sample_log(), clock=_clock)
    results = estimator.recommend("nobody", limit=10)

    # e1 and e2 have two interactions each; e1 has the higher average weight.
    assert [c.item_id for c in results] == ["e1", "e2", "e3"]
    assert all(c.algorithm == "popular" for c in results)
    assert all(c.reasons == frozenset({ReasonTag.POPULAR}) for c in results)
    assert all(c.confidence == pytest.approx(0.5) for c in results)
    assert results[0].score == pytest.approx(2.5 / 10)


def test_user_without_neighbours_gets_unseen_popular_items():
    log = _sample_log()
    log.append(_sample_interaction("C", "e3", InteractionType.VIEW))
    estimator = CollaborativeEstimator(log, clock=_clock)

    results = estimator.recommend("C", limit=10)
    assert [c.item_id for c in results] == ["e1", "e2"]


def test_popular_fallback_ignores_old_interactions():
    log = InMemoryInteractionLog([_sample_interaction("B", "old", InteractionType.PURCHASE, days_ago=45)])
    estimator = CollaborativeEstimator(log, clock=_clock)
    assert estimator.recommend("nobody") == []


# --------------------------------------------------------------------------- #
# Content
# --------------------------------------------------------------------------- #


def test_extract_item_features():
    features = extract_item_features(_sample_item("e1"))
    assert features.category == "music"
    assert features.location == "austin, tx, us"
    assert features.price_range == "medium"
    assert features.time_tokens == ("weekend", "evening")
    assert features.tags == ("jazz",)
    assert len(features.fixed) == len(FIXED_FEATURE_NAMES)
    assert features.fixed_vector.shape == (len(FIXED_FEATURE_NAMES),)
    fixed = dict(zip(FIXED_FEATURE_NAMES, features.fixed))
    assert fixed["keyword_concert"] > 0
    assert fixed["keyword_sports"] == 0
    assert fixed["capacity_medium"] > 0
    assert "category:music" in features.dense


def test_preference_matching_covers_every_attribute_type():
    features = extract_item_features(_sample_item("e1"))
    assert preference_matches(PreferenceKey(AttributeType.CATEGORY, "music"), features)
    assert preference_matches(PreferenceKey(AttributeType.LOCATION, "austin"), features)
    assert preference_matches(PreferenceKey(AttributeType.PRICE_RANGE, "medium"), features)
    assert preference_matches(PreferenceKey(AttributeType.TIME, "weekend"), features)
    assert preference_matches(PreferenceKey(AttributeType.GENERIC, "jazz"), features)
    assert not preference_matches(PreferenceKey(AttributeType.CATEGORY, "sports"), features)
    assert not preference_matches(PreferenceKey(AttributeType.LOCATION, "denver"), features)


def test_score_item_rewards_matching_preferences():
    features = extract_item_features(_sample_item("e1"))
    matching_score, matching = score_item({PreferenceKey(AttributeType.CATEGORY, "music"): 0.9}, features)
    other_score, other = score_item({PreferenceKey(AttributeType.CATEGORY, "sports"): 0.9}, features)

    assert matching == ["category:music"]
    assert other == []
    assert other_score == pytest.approx(0.0)
    assert 0.0 < matching_score <= 1.0
    assert matching_score > other_score


def test_weak_preferences_are_not_reported_as_matching_features():
    features = extract_item_features(_sample_item("e1"))
    _, matching = score_item({PreferenceKey(AttributeType.CATEGORY, "music"): 0.3}, features)
    assert matching == []


def test_reasons_for_matching_features():
    assert reasons_for(["category:music", "location:austin"]) == frozenset(
        {ReasonTag.CATEGORY_PREFERENCE, ReasonTag.LOCATION_BASED}
    )
    assert reasons_for(["price_range:low"]) == frozenset({ReasonTag.PRICE_PREFERENCE})
    assert reasons_for(["time:weekend"]) == frozenset({ReasonTag.PAST_BEHAVIOR})
    assert reasons_for([]) == frozenset({ReasonTag.PAST_BEHAVIOR})


def _sample_content_estimator(preferences=(), interactions=()):
    catalog = InMemoryItemCatalog(
        [
            _sample_item("music-1"),
            _sample_item(
                "sports-1",
                name="Football Match",
                category="Sports",
                city="Denver",
                state="CO",
                tags=("football",),
                created_at=NOW - timedelta(days=1),
            ),
        ]
    )
    log = InMemoryInteractionLog(interactions)
    model = PreferenceModel(InMemoryPreferenceStore(preferences), clock=_clock)
    return ContentEstimator(model, catalog, log, clock=_clock)


def test_content_estimator_scores_matching_items():
    estimator = _sample_content_estimator([_sample_preference(AttributeType.CATEGORY, "music")])
    results = estimator.recommend("u1", limit=10)

    assert [c.item_id for c in results] == ["music-1"]
    top = results[0]
    assert top.algorithm == "content_based"
    assert top.reasons == frozenset({ReasonTag.CATEGORY_PREFERENCE})
    assert top.matching_features == ("category:music",)
    assert top.confidence == pytest.approx(min(top.score * 0.8, 1.0))


def test_content_estimator_excludes_seen_items():
    estimator = _sample_content_estimator(
        [_sample_preference(AttributeType.CATEGORY, "music")],
        [_sample_interaction("u1", "music-1", InteractionType.VIEW)],
    )
    assert estimator.recommend("u1") == []


def test_content_estimator_cold_profile_falls_back_to_trending():
    estimator = _sample_content_estimator()
    results = estimator.recommend("u1", limit=10)

    # Newest first.
    assert [c.item_id for c in results] == ["sports-1", "music-1"]
    assert all(c.algorithm == "trending" for c in results)
    assert all(c.score == pytest.approx(0.5) for c in results)
    assert all(c.confidence == pytest.approx(0.3) for c in results)
    assert all(c.reasons == frozenset({ReasonTag.TRENDING}) for c in results)


def test_match_score_is_zero_for_cold_profile():
    estimator = _sample_content_estimator()
    assert estimator.match_score("u1", _sample_item("music-1")) == 0.0


# --------------------------------------------------------------------------- #
# Hybrid
# --------------------------------------------------------------------------- #


def test_combine_weights_shared_items():
    collaborative = [_candidate("e1", 1.0), _candidate("e2", 0.8, similar_users=("B",))]
    content = [
        _candidate(
            "e2",
            0.5,
            algorithm="content_based",
            confidence=0.9,
            reasons=frozenset({ReasonTag.CATEGORY_PREFERENCE}),
            matching_features=("category:music",),
        ),
        _candidate("e3", 1.0, algorithm="content_based", reasons=frozenset({ReasonTag.PAST_BEHAVIOR})),
    ]

    merged = {c.item_id: c for c in combine_recommendations(collaborative, content)}

    assert merged["e1"].score == pytest.approx(0.6)
    assert merged["e1"].algorithm == "collaborative"
    assert merged["e3"].score == pytest.approx(0.4)
    assert merged["e3"].algorithm == "content_based"

    shared = merged["e2"]
    assert shared.score == pytest.approx(0.8 * 0.6 + 0.5 * 0.4)
    assert shared.algorithm == "hybrid"
    assert shared.confidence == pytest.approx(0.9)
    assert shared.reasons == frozenset({ReasonTag.SIMILAR_USERS, ReasonTag.CATEGORY_PREFERENCE})
    assert shared.similar_users == ("B",)
    assert shared.matching_features == ("category:music",)


def test_combine_sorts_by_score_and_keeps_collaborative_first_on_ties():
    collaborative = [_candidate("c1", 0.4)]
    content = [_candidate("k1", 0.4, algorithm="content_based"), _candidate("k2", 0.9, algorithm="content_based")]

    merged = combine_recommendations(collaborative, content, 0.5, 0.5)
    assert [c.item_id for c in merged] == ["k2", "c1", "k1"]


def test_combine_does_not_mutate_inputs():
    collaborative = [_candidate("e1", 1.0)]
    combine_recommendations(collaborative, [])
    assert collaborative[0].score == 1.0
