"""
Preference model: a decaying, weighted profile of user attribute preferences.

Preferences are derived from interactions that carry a search or filter
context. Each (user, attribute type, value) row is reinforced on every
relevant interaction and weakened by a periodic decay pass:

- reinforcement: ``weight = (old + incoming) / 2``, ``confidence += 0.1`` (cap 1.0)
- decay (idle >= 30 days): ``weight *= 0.9``, ``confidence *= 0.95``
- deactivation (idle >= 90 days and weight < 0.1): ``is_active = False``

Rows are never deleted. Reinforcement is a read-then-write against the
preference store; two concurrent reinforcements of the same row resolve as
last writer wins unless the store serialises them.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from config.settings import EngineSettings, resolve_settings

from .entities import (
    AttributeType,
    Interaction,
    Preference,
    PreferenceKey,
    preference_weight,
)
from .ports import PreferenceStore
from .timeutils import Clock, days_between, ensure_utc, utcnow

LOGGER = logging.getLogger(__name__)

PRICE_BUCKETS = (
    (0.0, "free"),
    (25.0, "low"),
    (100.0, "medium"),
)


def price_bucket(price: Optional[float]) -> Optional[str]:
    """Bucket a price into free/low/medium/high; ``None`` when unknown."""
    if price is None:
        return None
    if price <= 0:
        return "free"
    for upper, label in PRICE_BUCKETS[1:]:
        if price < upper:
            return label
    return "high"


def normalize_value(value: Any) -> str:
    """Canonical string form of a preference value."""
    if isinstance(value, Mapping):
        return json.dumps(dict(value), sort_keys=True)
    return str(value).strip().lower()


def _price_range_value(raw: Any) -> Optional[str]:
    # A {min, max} filter is reduced to the bucket of its midpoint so it can
    # match item price buckets exactly.
    if isinstance(raw, Mapping):
        low = raw.get("min")
        high = raw.get("max")
        bounds = [float(v) for v in (low, high) if v is not None]
        if not bounds:
            return None
        return price_bucket(sum(bounds) / len(bounds))
    if raw in (None, ""):
        return None
    return normalize_value(raw)


@dataclass(frozen=True)
class PreferenceSignal:
    attribute_type: AttributeType
    value: str
    weight: float


@dataclass(frozen=True)
class DecayReport:
    decayed: int
    deactivated: int


def extract_signals(interaction: Interaction) -> List[PreferenceSignal]:
    """Attribute signals carried by an interaction's search and filter context."""
    context = interaction.context
    if context is None:
        return []
    search = context.search_query or {}
    filters = context.filter_criteria or {}
    strength = preference_weight(interaction.type)
    signals: List[PreferenceSignal] = []

    category = search.get("category") or filters.get("category")
    if category:
        signals.append(PreferenceSignal(AttributeType.CATEGORY, normalize_value(category), strength))

    location = search.get("location") or filters.get("location")
    if location:
        signals.append(PreferenceSignal(AttributeType.LOCATION, normalize_value(location), strength))

    price_range = _price_range_value(filters.get("price_range"))
    if price_range:
        signals.append(PreferenceSignal(AttributeType.PRICE_RANGE, price_range, strength))

    time_range = filters.get("time_range")
    if time_range:
        signals.append(PreferenceSignal(AttributeType.TIME, normalize_value(time_range), strength))

    return signals


class PreferenceModel:
    """Maintains per-user preference profiles in a PreferenceStore."""

    def __init__(
        self,
        store: PreferenceStore,
        settings: Optional[EngineSettings] = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.settings = resolve_settings(settings)
        self.clock = clock

    def record(self, interaction: Interaction) -> List[Preference]:
        """Reinforce every preference the interaction signals; no-op without an item id."""
        if not interaction.item_id:
            return []
        signals = extract_signals(interaction)
        if not signals:
            return []
        now = ensure_utc(interaction.timestamp)
        updated = [
            self.reinforce(interaction.user_id, signal.attribute_type, signal.value, signal.weight, now)
            for signal in signals
        ]
        LOGGER.debug(
            "Updated %d preferences for user=%s from %s",
            len(updated),
            interaction.user_id,
            interaction.type.value,
        )
        return updated

    def reinforce(
        self,
        user_id: str,
        attribute_type: AttributeType,
        value: str,
        incoming_weight: float,
        now: Optional[datetime] = None,
    ) -> Preference:
        now = now or self.clock()
        existing = self.store.get(user_id, attribute_type, value)
        if existing is None:
            preference = Preference(
                user_id=user_id,
                attribute_type=attribute_type,
                value=value,
                weight=max(0.0, incoming_weight),
                confidence=self.settings.initial_confidence,
                frequency=1,
                last_used=now,
            )
        else:
            preference = existing
            preference.weight = max(0.0, (existing.weight + incoming_weight) / 2)
            preference.confidence = min(
                existing.confidence + self.settings.reinforcement_confidence_step, 1.0
            )
            preference.frequency = existing.frequency + 1
            preference.last_used = max(ensure_utc(existing.last_used), now)
            preference.is_active = True
        self.store.save(preference)
        return preference

    def decay(self, now: Optional[datetime] = None) -> DecayReport:
        """
        Weaken preferences that have not been reinforced recently.

        A row is decayed at most once per ``decay_interval_hours``, so
        re-running the pass within that interval changes nothing.
        """
        now = ensure_utc(now or self.clock())
        interval = timedelta(hours=self.settings.decay_interval_hours)
        decayed = 0
        deactivated = 0
        for preference in self.store.all():
            idle_days = days_between(preference.last_used, now)
            changed = False
            recently_decayed = (
                preference.decayed_at is not None
                and ensure_utc(preference.decayed_at) + interval > now
            )
            if idle_days >= self.settings.decay_idle_days and not recently_decayed:
                preference.weight *= self.settings.weight_decay_factor
                preference.confidence *= self.settings.confidence_decay_factor
                preference.decayed_at = now
                decayed += 1
                changed = True
            if (
                preference.is_active
                and idle_days >= self.settings.deactivate_idle_days
                and preference.weight < self.settings.deactivate_weight_floor
            ):
                preference.is_active = False
                deactivated += 1
                changed = True
            if changed:
                self.store.save(preference)
        LOGGER.info("Preference decay pass: decayed=%d deactivated=%d", decayed, deactivated)
        return DecayReport(decayed=decayed, deactivated=deactivated)

    def profile(self, user_id: str) -> List[Preference]:
        """Active preferences, strongest first. Empty for cold-start users."""
        preferences = self.store.for_user(user_id, active_only=True)
        return sorted(preferences, key=lambda pref: pref.weight, reverse=True)

    def top_preferences(self, user_id: str, limit: int = 10) -> List[Preference]:
        preferences = self.store.for_user(user_id, active_only=True)
        preferences.sort(key=lambda pref: (pref.weight, pref.frequency), reverse=True)
        return preferences[:limit]

    def weighted_profile(self, user_id: str) -> Dict[PreferenceKey, float]:
        """Sparse profile keyed by (attribute type, value) -> weight * confidence."""
        return {pref.key: pref.weight * pref.confidence for pref in self.profile(user_id)}


__all__ = [
    "DecayReport",
    "PreferenceModel",
    "PreferenceSignal",
    "extract_signals",
    "normalize_value",
    "price_bucket",
]
