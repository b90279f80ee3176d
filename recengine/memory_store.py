"""In-process implementations of the storage ports.

Used by the test-suite and by embedders that keep state in memory. Each store
guards its containers with a lock so concurrent readers and writers never see
a half-updated collection; the preference store still resolves concurrent
read-then-write cycles on one row as last writer wins.
"""
from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

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
from .timeutils import ensure_utc


class InMemoryInteractionLog:
    def __init__(self, interactions: Iterable[Interaction] = ()):
        self._lock = threading.Lock()
        self._interactions: List[Interaction] = []
        self._by_user: Dict[str, List[Interaction]] = defaultdict(list)
        for interaction in interactions:
            self.append(interaction)

    def append(self, interaction: Interaction) -> Interaction:
        # Stored timestamps are aware UTC so range queries compare cleanly.
        interaction = replace(interaction, timestamp=ensure_utc(interaction.timestamp))
        with self._lock:
            self._interactions.append(interaction)
            self._by_user[interaction.user_id].append(interaction)
        return interaction

    def recent_for_user(
        self,
        user_id: str,
        limit: int,
        interaction_type: Optional[InteractionType] = None,
    ) -> List[Interaction]:
        with self._lock:
            rows = list(self._by_user.get(user_id, ()))
        if interaction_type is not None:
            rows = [row for row in rows if row.type == interaction_type]
        # Equal timestamps: the later append comes first.
        rows = sorted(enumerate(rows), key=lambda pair: (pair[1].timestamp, pair[0]), reverse=True)
        return [row for _, row in rows[:limit]]

    def item_ids_for_user(self, user_id: str) -> Set[str]:
        with self._lock:
            return {row.item_id for row in self._by_user.get(user_id, ()) if row.item_id}

    def users_sharing_items(
        self,
        item_ids: Iterable[str],
        *,
        exclude_user: str,
        min_common: int,
        limit: int,
    ) -> List[Tuple[str, int]]:
        wanted = set(item_ids)
        with self._lock:
            shared: Dict[str, Set[str]] = defaultdict(set)
            for row in self._interactions:
                if row.user_id != exclude_user and row.item_id in wanted:
                    shared[row.user_id].add(row.item_id)
        counts = [(user_id, len(items)) for user_id, items in shared.items() if len(items) >= min_common]
        counts.sort(key=lambda pair: (-pair[1], pair[0]))
        return counts[:limit]

    def since(self, cutoff: datetime) -> List[Interaction]:
        cutoff = ensure_utc(cutoff)
        with self._lock:
            return [row for row in self._interactions if row.timestamp >= cutoff]

    def count_for_user(self, user_id: str) -> int:
        with self._lock:
            return len(self._by_user.get(user_id, ()))

    def count_for_item(self, item_id: str) -> int:
        with self._lock:
            return sum(1 for row in self._interactions if row.item_id == item_id)


class InMemoryPreferenceStore:
    def __init__(self, preferences: Iterable[Preference] = ()):
        self._lock = threading.Lock()
        self._rows: Dict[Tuple[str, AttributeType, str], Preference] = {}
        for preference in preferences:
            self.save(preference)

    def get(self, user_id: str, attribute_type: AttributeType, value: str) -> Optional[Preference]:
        with self._lock:
            row = self._rows.get((user_id, attribute_type, value))
        return row.copy() if row else None

    def save(self, preference: Preference) -> None:
        key = (preference.user_id, preference.attribute_type, preference.value)
        with self._lock:
            self._rows[key] = preference.copy()

    def for_user(self, user_id: str, active_only: bool = True) -> List[Preference]:
        with self._lock:
            rows = [row.copy() for key, row in self._rows.items() if key[0] == user_id]
        if active_only:
            rows = [row for row in rows if row.is_active]
        return rows

    def all(self) -> List[Preference]:
        with self._lock:
            return [row.copy() for row in self._rows.values()]


class InMemoryItemCatalog:
    def __init__(self, items: Iterable[Item] = ()):
        self._lock = threading.Lock()
        self._items: Dict[str, Item] = {}
        for item in items:
            self.add(item)

    def add(self, item: Item) -> None:
        with self._lock:
            self._items[item.item_id] = item

    def query_items(
        self,
        *,
        limit: int,
        exclude_ids: Iterable[str] = (),
        category: Optional[str] = None,
    ) -> List[Item]:
        excluded = set(exclude_ids)
        with self._lock:
            items = [item for item in self._items.values() if item.item_id not in excluded]
        if category is not None:
            items = [item for item in items if (item.category or "").lower() == category.lower()]
        items.sort(
            key=lambda item: (
                item.created_at is not None,
                ensure_utc(item.created_at) if item.created_at else datetime.min,
            ),
            reverse=True,
        )
        return items[:limit]

    def get_items_by_ids(self, item_ids: Sequence[str]) -> List[Item]:
        with self._lock:
            return [self._items[item_id] for item_id in item_ids if item_id in self._items]

    def get_item(self, item_id: str) -> Optional[Item]:
        with self._lock:
            return self._items.get(item_id)


class InMemoryExperimentStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._experiments: Dict[str, Experiment] = {}

    def save(self, experiment: Experiment) -> None:
        with self._lock:
            self._experiments[experiment.experiment_id] = replace(
                experiment, variants=list(experiment.variants)
            )

    def get(self, experiment_id: str) -> Optional[Experiment]:
        with self._lock:
            experiment = self._experiments.get(experiment_id)
        if experiment is None:
            return None
        return replace(experiment, variants=list(experiment.variants))

    def list(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        with self._lock:
            experiments = list(self._experiments.values())
        if status is not None:
            experiments = [exp for exp in experiments if exp.status == status]
        return [replace(exp, variants=list(exp.variants)) for exp in experiments]


class InMemoryMetricLog:
    def __init__(self):
        self._lock = threading.Lock()
        self._metrics: List[ExperimentMetric] = []

    def append(self, metric: ExperimentMetric) -> None:
        with self._lock:
            self._metrics.append(metric)

    def for_experiment(self, experiment_id: str) -> List[ExperimentMetric]:
        with self._lock:
            return [metric for metric in self._metrics if metric.experiment_id == experiment_id]


class InMemoryRecommendationLog:
    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, ServedRecommendation] = {}

    def save(self, record: ServedRecommendation) -> None:
        record = replace(record, created_at=ensure_utc(record.created_at))
        with self._lock:
            self._records[record.recommendation_id] = record

    def get(self, recommendation_id: str) -> Optional[ServedRecommendation]:
        with self._lock:
            record = self._records.get(recommendation_id)
        return record.copy() if record else None

    def since(self, cutoff: datetime) -> List[ServedRecommendation]:
        cutoff = ensure_utc(cutoff)
        with self._lock:
            return [record.copy() for record in self._records.values() if record.created_at >= cutoff]


__all__ = [
    "InMemoryExperimentStore",
    "InMemoryInteractionLog",
    "InMemoryItemCatalog",
    "InMemoryMetricLog",
    "InMemoryPreferenceStore",
    "InMemoryRecommendationLog",
]
