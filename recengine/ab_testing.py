"""
Experiment controller: lifecycle, deterministic variant assignment, metric
recording and analysis.

Lifecycle::

    draft -> running -> {paused, completed, cancelled}
    paused -> {running, cancelled}

Only ``running -> completed`` (``stop_experiment``) triggers final analysis.

Assignment is a pure function of ``(user_id, experiment_id)`` and the stored
experiment definition: ``bucket = abs(string_hash32(f"{user_id}:{experiment_id}")) % 100``
and the first variant whose cumulative traffic percentage is >= bucket wins.
Nothing is stored per user, so no locking is needed.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from app.metrics import experiment_assignments_total, experiment_metrics_recorded_total

from .entities import (
    Experiment,
    ExperimentMetric,
    ExperimentResult,
    ExperimentStatus,
    MetricType,
    Variant,
)
from .errors import NotFoundError, ValidationError
from .hashing import assignment_bucket
from .ports import ExperimentStore, MetricLog
from .significance import SampleSizeSignificance, SignificanceStrategy, VariantStats
from .timeutils import Clock, ensure_utc, utcnow

LOGGER = logging.getLogger(__name__)

DEFAULT_VARIANT = "control"
TRAFFIC_TOLERANCE = 0.01

_TRANSITIONS: Dict[ExperimentStatus, Tuple[ExperimentStatus, ...]] = {
    ExperimentStatus.DRAFT: (ExperimentStatus.RUNNING,),
    ExperimentStatus.RUNNING: (
        ExperimentStatus.PAUSED,
        ExperimentStatus.COMPLETED,
        ExperimentStatus.CANCELLED,
    ),
    ExperimentStatus.PAUSED: (ExperimentStatus.RUNNING, ExperimentStatus.CANCELLED),
    ExperimentStatus.COMPLETED: (),
    ExperimentStatus.CANCELLED: (),
}


class VariantConfig(BaseModel):
    name: str = Field(min_length=1)
    traffic_percentage: float = Field(ge=0, le=100)
    config: Dict[str, Any] = Field(default_factory=dict)


class ExperimentConfig(BaseModel):
    name: str = Field(min_length=1)
    variants: List[VariantConfig] = Field(min_length=1)
    target_metrics: List[str] = Field(min_length=1)
    start_date: datetime
    end_date: datetime
    experiment_id: Optional[str] = None
    description: Optional[str] = None
    minimum_sample_size: int = Field(default=1000, ge=1)
    significance_level: float = Field(default=0.05, gt=0, lt=1)


def is_rate_metric(metric_type: str) -> bool:
    """Rate metrics are averaged per variant; everything else is summed."""
    return metric_type.endswith("_rate")


def _parse_config(config: Union[ExperimentConfig, Mapping[str, Any]]) -> ExperimentConfig:
    if isinstance(config, ExperimentConfig):
        return config
    try:
        return ExperimentConfig.model_validate(dict(config))
    except PydanticValidationError as exc:
        raise ValidationError("request", str(exc)) from exc


def _conclusion(winner: str, confidence: float, significant: bool) -> str:
    if significant:
        return (
            f'Variant "{winner}" is the winner with {confidence * 100:.1f}% confidence. '
            "Results are statistically significant."
        )
    return (
        f'Variant "{winner}" shows promise but results are not yet statistically '
        "significant. Continue experiment or increase sample size."
    )


class ExperimentController:
    """Creates, transitions and analyses A/B experiments."""

    def __init__(
        self,
        store: ExperimentStore,
        metric_log: MetricLog,
        *,
        clock: Clock = utcnow,
        significance: Optional[SignificanceStrategy] = None,
    ):
        self.store = store
        self.metric_log = metric_log
        self.clock = clock
        self.significance = significance or SampleSizeSignificance()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def create_experiment(self, config: Union[ExperimentConfig, Mapping[str, Any]]) -> Experiment:
        cfg = _parse_config(config)

        total = sum(variant.traffic_percentage for variant in cfg.variants)
        if abs(total - 100) > TRAFFIC_TOLERANCE:
            raise ValidationError(
                "traffic_allocation",
                f"Traffic allocation must sum to 100% (got {total:g})",
            )
        names = [variant.name for variant in cfg.variants]
        if len(set(names)) != len(names):
            raise ValidationError("variants", f"Variant names must be unique: {names}")
        if ensure_utc(cfg.end_date) <= ensure_utc(cfg.start_date):
            raise ValidationError("date_range", "end_date must be after start_date")

        experiment_id = cfg.experiment_id or uuid.uuid4().hex
        if self.store.get(experiment_id) is not None:
            raise ValidationError("experiment_id", f"Experiment {experiment_id} already exists")

        experiment = Experiment(
            experiment_id=experiment_id,
            name=cfg.name,
            description=cfg.description,
            variants=[
                Variant(name=v.name, traffic_percentage=v.traffic_percentage, config=dict(v.config))
                for v in cfg.variants
            ],
            target_metrics=list(cfg.target_metrics),
            start_date=ensure_utc(cfg.start_date),
            end_date=ensure_utc(cfg.end_date),
            minimum_sample_size=cfg.minimum_sample_size,
            significance_level=cfg.significance_level,
            status=ExperimentStatus.DRAFT,
        )
        self.store.save(experiment)
        LOGGER.info(
            "Created experiment %s (%s) with variants %s",
            experiment_id,
            cfg.name,
            ", ".join(f"{v.name}:{v.traffic_percentage:g}" for v in experiment.variants),
        )
        return experiment

    def get_experiment(self, experiment_id: str) -> Experiment:
        experiment = self.store.get(experiment_id)
        if experiment is None:
            raise NotFoundError("experiment", experiment_id)
        return experiment

    def _transition(self, experiment_id: str, target: ExperimentStatus) -> Experiment:
        experiment = self.get_experiment(experiment_id)
        if target not in _TRANSITIONS[experiment.status]:
            raise ValidationError(
                "status_transition",
                f"Cannot move experiment {experiment_id} from {experiment.status.value} to {target.value}",
            )
        previous = experiment.status
        experiment.status = target
        self.store.save(experiment)
        LOGGER.info(
            "Experiment %s: %s -> %s", experiment_id, previous.value, target.value
        )
        return experiment

    def start_experiment(self, experiment_id: str) -> Experiment:
        experiment = self.get_experiment(experiment_id)
        if experiment.status is not ExperimentStatus.DRAFT:
            raise ValidationError(
                "status_transition",
                f"Only draft experiments can be started ({experiment.status.value})",
            )
        if ensure_utc(experiment.start_date) > self.clock():
            raise ValidationError("date_range", "Experiment start date is in the future")
        return self._transition(experiment_id, ExperimentStatus.RUNNING)

    def pause_experiment(self, experiment_id: str) -> Experiment:
        return self._transition(experiment_id, ExperimentStatus.PAUSED)

    def resume_experiment(self, experiment_id: str) -> Experiment:
        experiment = self.get_experiment(experiment_id)
        if experiment.status is not ExperimentStatus.PAUSED:
            raise ValidationError(
                "status_transition",
                f"Only paused experiments can be resumed ({experiment.status.value})",
            )
        return self._transition(experiment_id, ExperimentStatus.RUNNING)

    def cancel_experiment(self, experiment_id: str) -> Experiment:
        return self._transition(experiment_id, ExperimentStatus.CANCELLED)

    def stop_experiment(self, experiment_id: str) -> ExperimentResult:
        """Complete a running experiment and persist its final analysis."""
        experiment = self.get_experiment(experiment_id)
        if experiment.status is not ExperimentStatus.RUNNING:
            raise ValidationError(
                "status_transition",
                f"Only running experiments can be stopped ({experiment.status.value})",
            )
        self._transition(experiment_id, ExperimentStatus.COMPLETED)
        return self.analyze_experiment(experiment_id)

    # ------------------------------------------------------------------ #
    # Assignment
    # ------------------------------------------------------------------ #
    def assign_variant(self, user_id: str, experiment_id: str) -> str:
        """Deterministic variant for a user; ``"control"`` when the experiment is not live."""
        experiment = self.store.get(experiment_id)
        if experiment is None or experiment.status is not ExperimentStatus.RUNNING:
            return DEFAULT_VARIANT
        now = self.clock()
        if now < ensure_utc(experiment.start_date) or now > ensure_utc(experiment.end_date):
            return DEFAULT_VARIANT

        bucket = assignment_bucket(user_id, experiment_id)
        variant = self._variant_for_bucket(experiment.variants, bucket)
        experiment_assignments_total.labels(experiment_id=experiment_id, variant=variant).inc()
        LOGGER.debug(
            "Experiment assignment: experiment=%s user=%s bucket=%d variant=%s",
            experiment_id,
            user_id,
            bucket,
            variant,
        )
        return variant

    @staticmethod
    def _variant_for_bucket(variants: Sequence[Variant], bucket: int) -> str:
        cumulative = 0.0
        for variant in variants:
            if variant.traffic_percentage <= 0:
                continue
            cumulative += variant.traffic_percentage
            if bucket <= cumulative:
                return variant.name
        return variants[0].name

    def get_variant_config(self, experiment_id: str, variant_name: str) -> Dict[str, Any]:
        experiment = self.store.get(experiment_id)
        if experiment is None:
            return {}
        variant = experiment.variant(variant_name)
        return dict(variant.config) if variant is not None else {}

    def get_active_experiments(self) -> List[Experiment]:
        running = self.store.list(ExperimentStatus.RUNNING)
        return sorted(running, key=lambda exp: ensure_utc(exp.start_date), reverse=True)

    # ------------------------------------------------------------------ #
    # Metrics and analysis
    # ------------------------------------------------------------------ #
    def record_experiment_metric(
        self,
        experiment_id: str,
        variant: str,
        metric_type: Union[MetricType, str],
        value: float,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> ExperimentMetric:
        experiment = self.get_experiment(experiment_id)
        if experiment.variant(variant) is None:
            raise ValidationError("variant", f"Unknown variant {variant!r} for {experiment_id}")
        metric_name = metric_type.value if isinstance(metric_type, MetricType) else str(metric_type)
        metric = ExperimentMetric(
            experiment_id=experiment_id,
            variant=variant,
            metric_type=metric_name,
            value=float(value),
            recorded_at=self.clock(),
            metadata=dict(metadata or {}),
        )
        self.metric_log.append(metric)
        experiment_metrics_recorded_total.labels(
            experiment_id=experiment_id, metric_type=metric_name
        ).inc()
        return metric

    def variant_stats(self, experiment: Experiment) -> List[VariantStats]:
        """Per-variant aggregates in the experiment's variant order."""
        rows = [
            {"variant": m.variant, "metric_type": m.metric_type, "value": m.value}
            for m in self.metric_log.for_experiment(experiment.experiment_id)
        ]
        frame = pd.DataFrame(rows, columns=["variant", "metric_type", "value"]).astype({"value": float})
        primary = experiment.target_metrics[0]

        stats: List[VariantStats] = []
        for variant in experiment.variants:
            subset = frame[frame["variant"] == variant.name]
            grouped = subset.groupby("metric_type")["value"]
            sums = grouped.sum()
            means = grouped.mean()
            metrics = {
                str(name): float(means[name] if is_rate_metric(str(name)) else sums[name])
                for name in sums.index
            }
            primary_values = subset.loc[subset["metric_type"] == primary, "value"].clip(0, 1)
            stats.append(
                VariantStats(
                    variant=variant.name,
                    sample_size=int(len(subset)),
                    metrics=metrics,
                    primary_trials=int(len(primary_values)),
                    primary_successes=float(primary_values.sum()),
                )
            )
        return stats

    def analyze_experiment(self, experiment_id: str) -> ExperimentResult:
        """Pick the variant maximising the summed target metrics and judge its significance."""
        experiment = self.get_experiment(experiment_id)
        stats = self.variant_stats(experiment)

        winner = stats[0]
        best_score = float("-inf")
        for entry in stats:
            score = sum(entry.metrics.get(metric, 0.0) for metric in experiment.target_metrics)
            if score > best_score:
                best_score = score
                winner = entry

        others = [entry for entry in stats if entry.variant != winner.variant]
        verdict = self.significance.evaluate(experiment, winner, others)
        result = ExperimentResult(
            experiment_id=experiment_id,
            winning_variant=winner.variant,
            confidence_level=verdict.confidence_level,
            statistical_significance=verdict.is_significant,
            conclusion=_conclusion(
                winner.variant, verdict.confidence_level, verdict.is_significant
            ),
            metrics={entry.variant: dict(entry.metrics) for entry in stats},
            sample_sizes={entry.variant: entry.sample_size for entry in stats},
        )

        experiment.results = result
        self.store.save(experiment)
        LOGGER.info(
            "Analysed experiment %s: winner=%s confidence=%.3f significant=%s",
            experiment_id,
            result.winning_variant,
            result.confidence_level,
            result.statistical_significance,
        )
        return result

    def get_experiment_report(self, experiment_id: str) -> Dict[str, Any]:
        experiment = self.get_experiment(experiment_id)
        metrics = sorted(
            self.metric_log.for_experiment(experiment_id), key=lambda m: m.recorded_at
        )
        return {
            "experiment": asdict(experiment),
            "metrics": [asdict(metric) for metric in metrics],
            "summary": asdict(experiment.results) if experiment.results else None,
            "conclusion": experiment.conclusion,
        }


__all__ = [
    "DEFAULT_VARIANT",
    "ExperimentConfig",
    "ExperimentController",
    "VariantConfig",
    "is_rate_metric",
]
