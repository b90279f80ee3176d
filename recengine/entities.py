"""Domain entities shared by the estimators, the fusion engine and the experiment layer."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, NamedTuple, Optional, Tuple


class InteractionType(str, Enum):
    VIEW = "view"
    CLICK = "click"
    PURCHASE = "purchase"
    SHARE = "share"
    FAVORITE = "favorite"
    SEARCH = "search"
    FILTER = "filter"
    CART_ADD = "cart_add"
    CART_REMOVE = "cart_remove"
    WISHLIST_ADD = "wishlist_add"
    REVIEW = "review"
    RATING = "rating"


# Weight stored on each interaction at ingestion time.
INTERACTION_WEIGHTS: Dict[InteractionType, float] = {
    InteractionType.VIEW: 1.0,
    InteractionType.CLICK: 2.0,
    InteractionType.PURCHASE: 10.0,
    InteractionType.SHARE: 3.0,
    InteractionType.FAVORITE: 5.0,
    InteractionType.SEARCH: 1.5,
    InteractionType.FILTER: 1.5,
    InteractionType.CART_ADD: 4.0,
    InteractionType.CART_REMOVE: -1.0,
    InteractionType.WISHLIST_ADD: 3.0,
    InteractionType.REVIEW: 6.0,
    InteractionType.RATING: 4.0,
}

# Strength an interaction contributes to a preference it reinforces.
PREFERENCE_WEIGHTS: Dict[InteractionType, float] = {
    InteractionType.VIEW: 0.1,
    InteractionType.CLICK: 0.3,
    InteractionType.PURCHASE: 1.0,
    InteractionType.SHARE: 0.5,
    InteractionType.FAVORITE: 0.7,
    InteractionType.SEARCH: 0.2,
    InteractionType.FILTER: 0.2,
    InteractionType.CART_ADD: 0.6,
    InteractionType.CART_REMOVE: -0.1,
    InteractionType.WISHLIST_ADD: 0.4,
    InteractionType.REVIEW: 0.8,
    InteractionType.RATING: 0.6,
}


def interaction_weight(interaction_type: InteractionType) -> float:
    return INTERACTION_WEIGHTS.get(interaction_type, 1.0)


def preference_weight(interaction_type: InteractionType) -> float:
    return PREFERENCE_WEIGHTS.get(interaction_type, 0.1)


class AttributeType(str, Enum):
    """Closed set of preference attribute kinds the content matcher understands."""

    CATEGORY = "category"
    LOCATION = "location"
    PRICE_RANGE = "price_range"
    TIME = "time"
    GENERIC = "generic"


class ReasonTag(str, Enum):
    SIMILAR_USERS = "similar_users"
    PAST_BEHAVIOR = "past_behavior"
    CATEGORY_PREFERENCE = "category_preference"
    LOCATION_BASED = "location_based"
    PRICE_PREFERENCE = "price_preference"
    POPULAR = "popular"
    TRENDING = "trending"


class ExperimentStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RecommendationStatus(str, Enum):
    """Latest feedback on a served recommendation."""

    GENERATED = "generated"
    VIEWED = "viewed"
    CLICKED = "clicked"
    PURCHASED = "purchased"
    DISMISSED = "dismissed"


class MetricType(str, Enum):
    """Common experiment metric names; any string is accepted when recording."""

    IMPRESSION = "impression"
    CLICK = "click"
    CONVERSION = "conversion"
    CLICK_THROUGH_RATE = "click_through_rate"
    CONVERSION_RATE = "conversion_rate"
    REVENUE = "revenue"
    ENGAGEMENT = "engagement"


@dataclass(frozen=True)
class InteractionContext:
    """Search/filter context attached to an interaction."""

    search_query: Mapping[str, Any] = field(default_factory=dict)
    filter_criteria: Mapping[str, Any] = field(default_factory=dict)
    page: Optional[str] = None
    session_id: Optional[str] = None
    device_type: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> Optional["InteractionContext"]:
        if payload is None:
            return None
        if isinstance(payload, InteractionContext):
            return payload
        return cls(
            search_query=dict(payload.get("search_query") or {}),
            filter_criteria=dict(payload.get("filter_criteria") or {}),
            page=payload.get("page"),
            session_id=payload.get("session_id"),
            device_type=payload.get("device_type"),
        )


@dataclass(frozen=True)
class Interaction:
    user_id: str
    item_id: Optional[str]
    type: InteractionType
    weight: float
    timestamp: datetime
    context: Optional[InteractionContext] = None
    rating: Optional[int] = None
    duration: Optional[float] = None


class PreferenceKey(NamedTuple):
    attribute_type: AttributeType
    value: str

    def __str__(self) -> str:
        return f"{self.attribute_type.value}:{self.value}"


@dataclass
class Preference:
    user_id: str
    attribute_type: AttributeType
    value: str
    weight: float
    confidence: float
    frequency: int
    last_used: datetime
    is_active: bool = True
    decayed_at: Optional[datetime] = None

    @property
    def key(self) -> PreferenceKey:
        return PreferenceKey(self.attribute_type, self.value)

    def copy(self) -> "Preference":
        return replace(self)


@dataclass(frozen=True)
class Item:
    """An event in the catalog, reduced to the attributes the engine scores on."""

    item_id: str
    name: str
    description: str = ""
    category: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    capacity: int = 0
    price: Optional[float] = None
    start_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    tags: Tuple[str, ...] = ()

    @property
    def location(self) -> str:
        return ", ".join(part for part in (self.city, self.state, self.country) if part)


@dataclass
class CandidateScore:
    """A scored candidate; ephemeral, produced per request."""

    item_id: str
    score: float
    confidence: float
    reasons: FrozenSet[ReasonTag]
    algorithm: str
    rank: int = 0
    similar_users: Tuple[str, ...] = ()
    matching_features: Tuple[str, ...] = ()
    explanation: Optional[Dict[str, Any]] = None
    recommendation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "item_id": self.item_id,
            "score": self.score,
            "confidence": self.confidence,
            "reasons": sorted(reason.value for reason in self.reasons),
            "rank": self.rank,
            "algorithm": self.algorithm,
        }
        if self.recommendation_id is not None:
            payload["recommendation_id"] = self.recommendation_id
        if self.explanation is not None:
            payload["explanation"] = self.explanation
        return payload


@dataclass
class ServedRecommendation:
    """One served candidate and the feedback it received afterwards."""

    recommendation_id: str
    request_id: str
    user_id: str
    item_id: str
    algorithm: str
    score: float
    confidence: float
    rank: int
    created_at: datetime
    model_id: Optional[str] = None
    variant: Optional[str] = None
    status: RecommendationStatus = RecommendationStatus.GENERATED
    viewed_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None
    purchased_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None

    def copy(self) -> "ServedRecommendation":
        return replace(self)


@dataclass(frozen=True)
class Variant:
    name: str
    traffic_percentage: float
    config: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExperimentResult:
    experiment_id: str
    winning_variant: str
    confidence_level: float
    statistical_significance: bool
    conclusion: str
    metrics: Dict[str, Dict[str, float]] = field(default_factory=dict)
    sample_sizes: Dict[str, int] = field(default_factory=dict)


@dataclass
class Experiment:
    experiment_id: str
    name: str
    variants: List[Variant]
    target_metrics: List[str]
    start_date: datetime
    end_date: datetime
    minimum_sample_size: int = 1000
    significance_level: float = 0.05
    status: ExperimentStatus = ExperimentStatus.DRAFT
    description: Optional[str] = None
    results: Optional[ExperimentResult] = None

    @property
    def winning_variant(self) -> Optional[str]:
        return self.results.winning_variant if self.results else None

    @property
    def confidence_level(self) -> Optional[float]:
        return self.results.confidence_level if self.results else None

    @property
    def conclusion(self) -> Optional[str]:
        return self.results.conclusion if self.results else None

    def variant(self, name: str) -> Optional[Variant]:
        for variant in self.variants:
            if variant.name == name:
                return variant
        return None


@dataclass(frozen=True)
class ExperimentMetric:
    experiment_id: str
    variant: str
    metric_type: str
    value: float
    recorded_at: datetime
    metadata: Mapping[str, Any] = field(default_factory=dict)


__all__ = [
    "AttributeType",
    "CandidateScore",
    "Experiment",
    "ExperimentMetric",
    "ExperimentResult",
    "ExperimentStatus",
    "INTERACTION_WEIGHTS",
    "Interaction",
    "InteractionContext",
    "InteractionType",
    "Item",
    "MetricType",
    "PREFERENCE_WEIGHTS",
    "Preference",
    "PreferenceKey",
    "ReasonTag",
    "RecommendationStatus",
    "ServedRecommendation",
    "Variant",
    "interaction_weight",
    "preference_weight",
]
