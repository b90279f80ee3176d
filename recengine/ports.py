"""Interfaces the engine consumes from its storage and model collaborators.

The engine depends only on these protocols; concrete storage technologies
live behind them (see ``recengine.memory_store`` for the in-process versions
and ``app.model_manager`` for the file-backed model registry).
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from .entities import (
    AttributeType,
    Experiment,
    ExperimentMetric,
    ExperimentStatus,
    Interaction,
    InteractionType,
    Item,
    Preference,
    ServedRecommendation,
)


class InteractionLog(Protocol):
    """Append-only store of user/item behavioural events."""

    def append(self, interaction: Interaction) -> Interaction:
        ...

    def recent_for_user(
        self,
        user_id: str,
        limit: int,
        interaction_type: Optional[InteractionType] = None,
    ) -> List[Interaction]:
        """Newest first."""
        ...

    def item_ids_for_user(self, user_id: str) -> Set[str]:
        ...

    def users_sharing_items(
        self,
        item_ids: Iterable[str],
        *,
        exclude_user: str,
        min_common: int,
        limit: int,
    ) -> List[Tuple[str, int]]:
        """(user_id, distinct shared item count) ordered by count descending."""
        ...

    def since(self, cutoff: datetime) -> List[Interaction]:
        ...

    def count_for_user(self, user_id: str) -> int:
        ...

    def count_for_item(self, item_id: str) -> int:
        ...


class PreferenceStore(Protocol):
    """Preference rows keyed by (user_id, attribute_type, value).

    ``save`` is a plain write: concurrent read-then-write cycles on the same
    row resolve as last writer wins unless the implementation serialises them.
    """

    def get(self, user_id: str, attribute_type: AttributeType, value: str) -> Optional[Preference]:
        ...

    def save(self, preference: Preference) -> None:
        ...

    def for_user(self, user_id: str, active_only: bool = True) -> List[Preference]:
        ...

    def all(self) -> List[Preference]:
        ...


class ItemCatalog(Protocol):
    def query_items(
        self,
        *,
        limit: int,
        exclude_ids: Iterable[str] = (),
        category: Optional[str] = None,
    ) -> List[Item]:
        """Published items, newest first."""
        ...

    def get_items_by_ids(self, item_ids: Sequence[str]) -> List[Item]:
        ...

    def get_item(self, item_id: str) -> Optional[Item]:
        ...


class ModelHandle(Protocol):
    model_id: str

    def predict(self, features: Sequence[float]) -> float:
        """Score in [0, 1]."""
        ...


class ModelRegistry(Protocol):
    def get_active_model(self, model_type: Optional[str] = None) -> Optional[ModelHandle]:
        ...


class ExperimentStore(Protocol):
    def save(self, experiment: Experiment) -> None:
        ...

    def get(self, experiment_id: str) -> Optional[Experiment]:
        ...

    def list(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        ...


class RecommendationLog(Protocol):
    """Served recommendations, keyed by recommendation id."""

    def save(self, record: ServedRecommendation) -> None:
        ...

    def get(self, recommendation_id: str) -> Optional[ServedRecommendation]:
        ...

    def since(self, cutoff: datetime) -> List[ServedRecommendation]:
        ...


class MetricLog(Protocol):
    """Append-only experiment metric log."""

    def append(self, metric: ExperimentMetric) -> None:
        ...

    def for_experiment(self, experiment_id: str) -> List[ExperimentMetric]:
        ...


__all__ = [
    "ExperimentStore",
    "InteractionLog",
    "ItemCatalog",
    "MetricLog",
    "ModelHandle",
    "ModelRegistry",
    "PreferenceStore",
    "RecommendationLog",
]
