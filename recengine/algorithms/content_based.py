"""
Content-based scoring: match item attributes against a user's preference profile.

The score blends exact attribute matches (category, location, price range,
time, tags) with the cosine similarity between the sparse preference map and
the item's dense feature map, normalised by the weight of the terms that
actually matched so a missing signal type is not a penalty.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from sklearn.preprocessing import normalize

from config.settings import EngineSettings, resolve_settings

from ..entities import AttributeType, CandidateScore, Item, PreferenceKey, ReasonTag
from ..hashing import hash_feature
from ..ports import InteractionLog, ItemCatalog
from ..preferences import PreferenceModel, normalize_value, price_bucket
from ..similarity import union_cosine
from ..timeutils import Clock, utcnow

LOGGER = logging.getLogger(__name__)

ALGORITHM = "content_based"
TRENDING_ALGORITHM = "trending"

KEYWORDS: Tuple[str, ...] = (
    "music",
    "concert",
    "festival",
    "conference",
    "workshop",
    "seminar",
    "sports",
    "game",
    "match",
    "tournament",
    "comedy",
    "theater",
    "art",
    "exhibition",
    "food",
    "wine",
    "tech",
    "business",
)

FIXED_FEATURE_NAMES: Tuple[str, ...] = (
    "location_country",
    "location_state",
    "location_city",
    "capacity",
    "capacity_small",
    "capacity_medium",
    "capacity_large",
    "has_tickets",
) + tuple(f"keyword_{keyword}" for keyword in KEYWORDS)

# Exact-match term weight per attribute type. The cosine term always applies.
MATCH_WEIGHTS: Dict[AttributeType, float] = {
    AttributeType.CATEGORY: 0.30,
    AttributeType.LOCATION: 0.20,
    AttributeType.PRICE_RANGE: 0.15,
    AttributeType.TIME: 0.10,
    AttributeType.GENERIC: 0.05,
}
VECTOR_WEIGHT = 0.35

# Only strong preferences count as "matching features" for reasons/explanations.
STRONG_PREFERENCE = 0.5

FEATURE_REASONS: Dict[AttributeType, ReasonTag] = {
    AttributeType.CATEGORY: ReasonTag.CATEGORY_PREFERENCE,
    AttributeType.LOCATION: ReasonTag.LOCATION_BASED,
    AttributeType.PRICE_RANGE: ReasonTag.PRICE_PREFERENCE,
}

_WORD_RE = re.compile(r"[a-z0-9]+")


def _time_tokens(item: Item) -> Tuple[str, ...]:
    if item.start_date is None:
        return ()
    start = item.start_date
    tokens = ["weekend" if start.weekday() >= 5 else "weekday"]
    if start.hour < 12:
        tokens.append("morning")
    elif start.hour < 17:
        tokens.append("afternoon")
    else:
        tokens.append("evening")
    return tuple(tokens)


@dataclass(frozen=True)
class ItemFeatures:
    item_id: str
    category: Optional[str]
    location: str
    price_range: Optional[str]
    time_tokens: Tuple[str, ...]
    tags: Tuple[str, ...]
    fixed: Tuple[float, ...]
    dense: Mapping[str, float] = field(default_factory=dict)

    @property
    def fixed_vector(self) -> np.ndarray:
        return np.asarray(self.fixed, dtype=float)


def extract_item_features(item: Item) -> ItemFeatures:
    """Dense and categorical features of an item."""
    words = set(_WORD_RE.findall(f"{item.name} {' '.join(item.tags)}".lower()))
    capacity = max(item.capacity, 0)
    raw: Dict[str, float] = {
        "location_country": hash_feature(item.country or ""),
        "location_state": hash_feature(item.state or ""),
        "location_city": hash_feature(item.city or ""),
        "capacity": math.log(capacity + 1),
        "capacity_small": 1.0 if capacity < 100 else 0.0,
        "capacity_medium": 1.0 if 100 <= capacity < 1000 else 0.0,
        "capacity_large": 1.0 if capacity >= 1000 else 0.0,
        "has_tickets": 1.0 if capacity > 0 else 0.0,
    }
    for keyword in KEYWORDS:
        raw[f"keyword_{keyword}"] = 1.0 if keyword in words else 0.0

    category = normalize_value(item.category) if item.category else None
    location = item.location.lower()
    price_range = price_bucket(item.price)
    time_tokens = _time_tokens(item)
    tags = tuple(normalize_value(tag) for tag in item.tags)

    # Indicator keys share the "type:value" naming of preference profiles so the
    # sparse/dense cosine has overlapping dimensions.
    indicators: Dict[str, float] = {}
    if category:
        indicators[f"category:{category}"] = 1.0
    for part in (item.city, item.state, item.country):
        if part:
            indicators[f"location:{normalize_value(part)}"] = 1.0
    if price_range:
        indicators[f"price_range:{price_range}"] = 1.0
    for token in time_tokens:
        indicators[f"time:{token}"] = 1.0
    for tag in tags:
        indicators[f"generic:{tag}"] = 1.0

    keys = list(raw) + list(indicators)
    values = np.array([[*raw.values(), *indicators.values()]], dtype=float)
    scaled = normalize(values)[0]
    fixed = normalize(np.array([[raw[name] for name in FIXED_FEATURE_NAMES]], dtype=float))[0]

    return ItemFeatures(
        item_id=item.item_id,
        category=category,
        location=location,
        price_range=price_range,
        time_tokens=time_tokens,
        tags=tags,
        fixed=tuple(float(v) for v in fixed),
        dense=dict(zip(keys, (float(v) for v in scaled))),
    )


def preference_matches(key: PreferenceKey, features: ItemFeatures) -> bool:
    attribute_type, value = key
    if attribute_type is AttributeType.CATEGORY:
        return features.category == value
    if attribute_type is AttributeType.LOCATION:
        return bool(value) and value in features.location
    if attribute_type is AttributeType.PRICE_RANGE:
        return features.price_range == value
    if attribute_type is AttributeType.TIME:
        return value in features.time_tokens
    if attribute_type is AttributeType.GENERIC:
        return value in features.tags
    raise ValueError(f"Unhandled attribute type: {attribute_type}")


def score_item(
    profile: Mapping[PreferenceKey, float],
    features: ItemFeatures,
) -> Tuple[float, List[str]]:
    """
    Content score of one item for a weighted preference profile.

    Returns the score and the strong preferences the item matched, formatted
    as ``"type:value"``.
    """
    score = 0.0
    total_weight = 0.0
    matching: List[str] = []
    for key, weight in profile.items():
        if not preference_matches(key, features):
            continue
        term_weight = MATCH_WEIGHTS[key.attribute_type]
        score += weight * term_weight
        total_weight += term_weight
        if weight > STRONG_PREFERENCE:
            matching.append(str(key))

    sparse = {str(key): weight for key, weight in profile.items()}
    score += union_cosine(sparse, features.dense) * VECTOR_WEIGHT
    total_weight += VECTOR_WEIGHT
    return (score / total_weight if total_weight > 0 else 0.0), matching


def reasons_for(matching_features: Sequence[str]) -> frozenset:
    reasons = set()
    for feature in matching_features:
        attribute_type = AttributeType(feature.split(":", 1)[0])
        reason = FEATURE_REASONS.get(attribute_type)
        if reason is not None:
            reasons.add(reason)
    return frozenset(reasons or {ReasonTag.PAST_BEHAVIOR})


class ContentEstimator:
    """Scores catalog items against the user's preference profile."""

    def __init__(
        self,
        preference_model: PreferenceModel,
        item_catalog: ItemCatalog,
        interaction_log: InteractionLog,
        settings: Optional[EngineSettings] = None,
        clock: Clock = utcnow,
    ):
        self.preference_model = preference_model
        self.item_catalog = item_catalog
        self.interaction_log = interaction_log
        self.settings = resolve_settings(settings)
        self.clock = clock

    def recommend(self, user_id: str, limit: int = 10) -> List[CandidateScore]:
        profile = self.preference_model.weighted_profile(user_id)
        seen = self.interaction_log.item_ids_for_user(user_id)
        if not profile:
            LOGGER.debug("Empty preference profile for user=%s; serving trending items", user_id)
            return self.trending_fallback(limit, exclude_ids=seen)

        candidates = self.item_catalog.query_items(
            limit=self.settings.content_candidate_pool, exclude_ids=seen
        )
        results: List[CandidateScore] = []
        for item in candidates:
            score, matching = score_item(profile, extract_item_features(item))
            if score <= self.settings.min_content_score:
                continue
            results.append(
                CandidateScore(
                    item_id=item.item_id,
                    score=score,
                    confidence=min(score * 0.8, 1.0),
                    reasons=reasons_for(matching),
                    algorithm=ALGORITHM,
                    matching_features=tuple(matching),
                )
            )
        results.sort(key=lambda c: c.score, reverse=True)
        LOGGER.debug(
            "Content candidates for user=%s: pool=%d scored=%d",
            user_id,
            len(candidates),
            len(results),
        )
        return results[:limit]

    def match_score(self, user_id: str, item: Item) -> float:
        """Content score of a single item, 0.0 for a cold-start profile."""
        profile = self.preference_model.weighted_profile(user_id)
        if not profile:
            return 0.0
        score, _ = score_item(profile, extract_item_features(item))
        return score

    def trending_fallback(self, limit: int, exclude_ids=()) -> List[CandidateScore]:
        return [
            CandidateScore(
                item_id=item.item_id,
                score=self.settings.trending_score,
                confidence=self.settings.trending_confidence,
                reasons=frozenset({ReasonTag.TRENDING}),
                algorithm=TRENDING_ALGORITHM,
            )
            for item in self.item_catalog.query_items(limit=limit, exclude_ids=exclude_ids)
        ]


__all__ = [
    "ContentEstimator",
    "FIXED_FEATURE_NAMES",
    "ItemFeatures",
    "KEYWORDS",
    "MATCH_WEIGHTS",
    "extract_item_features",
    "preference_matches",
    "reasons_for",
    "score_item",
]
