"""
Human-readable explanations for served recommendations.

Each algorithm tag gets its own explanation builder; unknown tags fall back to
a generic explanation. Confidence values are capped at 0.95.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from .algorithms.content_based import extract_item_features, preference_matches
from .entities import AttributeType, CandidateScore, Item, Preference, ReasonTag
from .ports import InteractionLog, ItemCatalog
from .preferences import PreferenceModel

LOGGER = logging.getLogger(__name__)

MAX_CONFIDENCE = 0.95
RECENT_INTERACTIONS = 20

REASON_TEXT: Dict[ReasonTag, str] = {
    ReasonTag.SIMILAR_USERS: "Users with similar interests liked this",
    ReasonTag.PAST_BEHAVIOR: "Based on your past activity",
    ReasonTag.CATEGORY_PREFERENCE: "Matches a category you like",
    ReasonTag.LOCATION_BASED: "Near a location you prefer",
    ReasonTag.PRICE_PREFERENCE: "Fits your usual price range",
    ReasonTag.POPULAR: "Popular with other users",
    ReasonTag.TRENDING: "Trending right now",
}

_FACTOR_LABELS: Dict[AttributeType, str] = {
    AttributeType.CATEGORY: "Category Match",
    AttributeType.LOCATION: "Location Match",
    AttributeType.PRICE_RANGE: "Price Match",
    AttributeType.TIME: "Time Match",
    AttributeType.GENERIC: "Interest Match",
}


@dataclass
class ExplanationFactor:
    factor: str
    weight: float
    description: str


@dataclass
class Explanation:
    primary: str
    secondary: List[str] = field(default_factory=list)
    factors: List[ExplanationFactor] = field(default_factory=list)
    confidence: float = 0.5
    personalized_reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary": self.primary,
            "secondary": list(self.secondary),
            "factors": [
                {"factor": f.factor, "weight": f.weight, "description": f.description}
                for f in self.factors
            ],
            "confidence": self.confidence,
            "personalized_reasons": list(self.personalized_reasons),
        }


def explanation_factors(reasons: Iterable[ReasonTag]) -> List[str]:
    """One-line texts for a candidate's reason tags, in a stable order."""
    return [REASON_TEXT[reason] for reason in sorted(set(reasons), key=lambda r: r.value)]


def _category_of(item: Optional[Item]) -> Optional[str]:
    return item.category.lower() if item is not None and item.category else None


class ExplanationService:
    """Builds explanations from the user's profile, recent history and the item."""

    def __init__(
        self,
        preference_model: PreferenceModel,
        interaction_log: InteractionLog,
        item_catalog: ItemCatalog,
    ):
        self.preference_model = preference_model
        self.interaction_log = interaction_log
        self.item_catalog = item_catalog
        self._builders: Dict[str, Callable[[str, CandidateScore, Optional[Item]], Explanation]] = {
            "collaborative": self._collaborative,
            "content_based": self._content_based,
            "hybrid": self._hybrid,
            "trending": self._trending,
            "popular": self._trending,
            "location": self._location,
        }

    def explain(
        self,
        user_id: str,
        candidate: CandidateScore,
        item: Optional[Item] = None,
    ) -> Explanation:
        if item is None:
            item = self.item_catalog.get_item(candidate.item_id)
        builder = self._builders.get(candidate.algorithm, self._generic)
        return builder(user_id, candidate, item)

    def _category_interactions(self, user_id: str, item: Optional[Item]) -> int:
        category = _category_of(item)
        if category is None:
            return 0
        recent = self.interaction_log.recent_for_user(user_id, RECENT_INTERACTIONS)
        item_ids = [row.item_id for row in recent if row.item_id and row.item_id != item.item_id]
        if not item_ids:
            return 0
        categories = {
            other.item_id: _category_of(other)
            for other in self.item_catalog.get_items_by_ids(item_ids)
        }
        return sum(1 for item_id in item_ids if categories.get(item_id) == category)

    def _collaborative(self, user_id: str, candidate: CandidateScore, item: Optional[Item]) -> Explanation:
        similar = candidate.similar_users
        explanation = Explanation(
            primary=(
                "Users with similar interests also liked this event"
                if similar
                else "This event matches patterns from your activity"
            )
        )
        if similar:
            explanation.secondary.append(
                f"{len(similar)} users with similar preferences engaged with this event"
            )
            explanation.factors.append(
                ExplanationFactor("User Similarity", 0.7, "Based on users with similar event preferences")
            )

        category_hits = self._category_interactions(user_id, item)
        if category_hits:
            explanation.secondary.append(f"You've shown interest in {item.category} events")
            explanation.personalized_reasons.append(
                f"You've interacted with {category_hits} similar events"
            )
            explanation.factors.append(
                ExplanationFactor("Category Interest", 0.5, f"Your engagement with {item.category} events")
            )

        explanation.confidence = min(
            MAX_CONFIDENCE, 0.3 + len(similar) * 0.1 + category_hits * 0.05
        )
        return explanation

    def _content_based(self, user_id: str, candidate: CandidateScore, item: Optional[Item]) -> Explanation:
        explanation = Explanation(primary="This event matches your preferences")
        if item is None:
            return explanation
        features = extract_item_features(item)
        matched: List[Preference] = [
            pref for pref in self.preference_model.profile(user_id)
            if preference_matches(pref.key, features)
        ]
        seen_types = set()
        for pref in matched:
            # Strongest preference per attribute type; profile() is weight-ordered.
            if pref.attribute_type in seen_types:
                continue
            seen_types.add(pref.attribute_type)
            label = _FACTOR_LABELS[pref.attribute_type]
            explanation.factors.append(
                ExplanationFactor(label, pref.weight, f"Matches your {pref.attribute_type.value} preference")
            )
            if pref.attribute_type is AttributeType.CATEGORY:
                explanation.secondary.append(f"You prefer {item.category} events")
                explanation.personalized_reasons.append(f"{item.category} is one of your favorite categories")
            elif pref.attribute_type is AttributeType.LOCATION:
                explanation.secondary.append("This event is in your preferred location")
                explanation.personalized_reasons.append(f"{pref.value} is one of your preferred locations")
            elif pref.attribute_type is AttributeType.PRICE_RANGE:
                explanation.secondary.append("Price fits your budget")
                explanation.personalized_reasons.append(f"Event price is in your preferred {pref.value} range")
            elif pref.attribute_type is AttributeType.TIME:
                explanation.secondary.append("Event time matches your schedule")
                explanation.personalized_reasons.append("Event timing aligns with your preferences")
            else:
                explanation.secondary.append(f"Tagged with {pref.value}")

        if explanation.factors:
            confidence = sum(f.weight for f in explanation.factors) / len(explanation.factors)
        else:
            confidence = 0.5
        explanation.confidence = min(MAX_CONFIDENCE, confidence)
        return explanation

    def _hybrid(self, user_id: str, candidate: CandidateScore, item: Optional[Item]) -> Explanation:
        collaborative = self._collaborative(user_id, candidate, item)
        content = self._content_based(user_id, candidate, item)
        factors = sorted(
            collaborative.factors + content.factors, key=lambda f: f.weight, reverse=True
        )
        return Explanation(
            primary="This event matches both your preferences and similar users' interests",
            secondary=collaborative.secondary[:2] + content.secondary[:2],
            factors=factors[:5],
            confidence=(collaborative.confidence + content.confidence) / 2,
            personalized_reasons=(collaborative.personalized_reasons + content.personalized_reasons)[:4],
        )

    def _trending(self, user_id: str, candidate: CandidateScore, item: Optional[Item]) -> Explanation:
        category = item.category if item is not None and item.category else None
        return Explanation(
            primary="This event is trending and popular right now",
            secondary=[
                "High engagement from other users",
                f"Growing interest in {category or 'this type of'} events",
            ],
            factors=[
                ExplanationFactor("Trending Score", 0.8, "High current popularity and engagement"),
                ExplanationFactor("Recent Activity", 0.6, "Increased user interest and interactions"),
            ],
            confidence=0.75,
            personalized_reasons=[f"Trending in {category or 'events'}"],
        )

    def _location(self, user_id: str, candidate: CandidateScore, item: Optional[Item]) -> Explanation:
        where = item.location if item is not None and item.location else "your area"
        return Explanation(
            primary="This event is conveniently located near you",
            secondary=[f"Located in {where}"],
            factors=[
                ExplanationFactor("Location Preference", 0.5, "Matches your location preferences"),
            ],
            confidence=0.8,
            personalized_reasons=["In your preferred area"],
        )

    def _generic(self, user_id: str, candidate: CandidateScore, item: Optional[Item]) -> Explanation:
        return Explanation(
            primary="This event might interest you",
            secondary=explanation_factors(candidate.reasons) or ["Based on your activity patterns"],
            factors=[ExplanationFactor("General Interest", 0.5, "Based on general user patterns")],
            confidence=min(MAX_CONFIDENCE, 0.6),
            personalized_reasons=["Recommended based on your profile"],
        )


__all__ = ["Explanation", "ExplanationFactor", "ExplanationService", "explanation_factors"]
