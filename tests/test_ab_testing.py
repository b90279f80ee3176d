from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest

from recengine.ab_testing import ExperimentController, is_rate_metric
from recengine.entities import ExperimentStatus, MetricType
from recengine.errors import NotFoundError, ValidationError
from recengine.memory_store import InMemoryExperimentStore, InMemoryMetricLog
from recengine.significance import (
    SampleSizeSignificance,
    TwoProportionZTest,
    VariantStats,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _sample_controller(clock=None, significance=None) -> ExperimentController:
    return ExperimentController(
        InMemoryExperimentStore(),
        InMemoryMetricLog(),
        clock=clock or _Clock(),
        significance=significance,
    )


def _sample_config(**overrides):
    config = {
        "experiment_id": "homepage",
        "name": "Homepage ranking",
        "variants": [
            {"name": "baseline", "traffic_percentage": 50, "config": {"collaborative_weight": 0.6}},
            {"name": "treatment", "traffic_percentage": 50, "config": {"collaborative_weight": 0.8}},
        ],
        "target_metrics": ["conversion"],
        "start_date": NOW - timedelta(days=1),
        "end_date": NOW + timedelta(days=30),
        "minimum_sample_size": 10,
    }
    config.update(overrides)
    return config


def _variants(*percentages):
    return [
        {"name": f"v{index}", "traffic_percentage": percentage}
        for index, percentage in enumerate(percentages)
    ]


def _running(controller: ExperimentController, **overrides):
    experiment = controller.create_experiment(_sample_config(**overrides))
    controller.start_experiment(experiment.experiment_id)
    return experiment.experiment_id


# --------------------------------------------------------------------------- #
# Creation and validation
# --------------------------------------------------------------------------- #


def test_create_experiment_starts_as_draft():
    controller = _sample_controller()
    experiment = controller.create_experiment(_sample_config())

    assert experiment.status is ExperimentStatus.DRAFT
    assert [v.name for v in experiment.variants] == ["baseline", "treatment"]
    assert controller.get_experiment("homepage").name == "Homepage ranking"


def test_generated_experiment_ids_are_unique():
    controller = _sample_controller()
    first = controller.create_experiment(_sample_config(experiment_id=None))
    second = controller.create_experiment(_sample_config(experiment_id=None))
    assert first.experiment_id != second.experiment_id


@pytest.mark.parametrize("percentages", [(49, 50), (50, 51), (60, 60)])
def test_traffic_must_sum_to_100(percentages):
    with pytest.raises(ValidationError) as excinfo:
        _sample_controller().create_experiment(_sample_config(variants=_variants(*percentages)))
    assert excinfo.value.kind == "traffic_allocation"


@pytest.mark.parametrize("percentages", [(50, 50), (49.995, 50), (50.005, 50), (100,)])
def test_traffic_within_tolerance_is_accepted(percentages):
    experiment = _sample_controller().create_experiment(_sample_config(variants=_variants(*percentages)))
    assert len(experiment.variants) == len(percentages)


def test_end_date_must_follow_start_date():
    with pytest.raises(ValidationError) as excinfo:
        _sample_controller().create_experiment(_sample_config(end_date=NOW - timedelta(days=1)))
    assert excinfo.value.kind == "date_range"


def test_variant_names_must_be_unique():
    variants = [
        {"name": "same", "traffic_percentage": 50},
        {"name": "same", "traffic_percentage": 50},
    ]
    with pytest.raises(ValidationError) as excinfo:
        _sample_controller().create_experiment(_sample_config(variants=variants))
    assert excinfo.value.kind == "variants"


def test_duplicate_experiment_id_is_rejected():
    controller = _sample_controller()
    controller.create_experiment(_sample_config())
    with pytest.raises(ValidationError) as excinfo:
        controller.create_experiment(_sample_config())
    assert excinfo.value.kind == "experiment_id"


def test_malformed_config_is_a_request_error():
    with pytest.raises(ValidationError) as excinfo:
        _sample_controller().create_experiment(_sample_config(variants=[]))
    assert excinfo.value.kind == "request"


def test_unknown_experiment_is_not_found():
    with pytest.raises(NotFoundError):
        _sample_controller().get_experiment("missing")


# --------------------------------------------------------------------------- #
# Lifecycle
# --------------------------------------------------------------------------- #


def test_status_transitions():
    controller = _sample_controller()
    experiment_id = controller.create_experiment(_sample_config()).experiment_id

    with pytest.raises(ValidationError):
        controller.pause_experiment(experiment_id)
    with pytest.raises(ValidationError):
        controller.stop_experiment(experiment_id)

    assert controller.start_experiment(experiment_id).status is ExperimentStatus.RUNNING
    with pytest.raises(ValidationError):
        controller.resume_experiment(experiment_id)
    assert controller.pause_experiment(experiment_id).status is ExperimentStatus.PAUSED
    assert controller.resume_experiment(experiment_id).status is ExperimentStatus.RUNNING

    controller.stop_experiment(experiment_id)
    assert controller.get_experiment(experiment_id).status is ExperimentStatus.COMPLETED
    with pytest.raises(ValidationError) as excinfo:
        controller.start_experiment(experiment_id)
    assert excinfo.value.kind == "status_transition"


def test_cancel_from_paused():
    controller = _sample_controller()
    experiment_id = _running(controller)
    controller.pause_experiment(experiment_id)
    assert controller.cancel_experiment(experiment_id).status is ExperimentStatus.CANCELLED
    with pytest.raises(ValidationError):
        controller.resume_experiment(experiment_id)


def test_cannot_start_before_start_date():
    controller = _sample_controller()
    experiment = controller.create_experiment(
        _sample_config(start_date=NOW + timedelta(days=2), end_date=NOW + timedelta(days=10))
    )
    with pytest.raises(ValidationError) as excinfo:
        controller.start_experiment(experiment.experiment_id)
    assert excinfo.value.kind == "date_range"


def test_active_experiments_newest_first():
    controller = _sample_controller()
    _running(controller, experiment_id="older", start_date=NOW - timedelta(days=5))
    _running(controller, experiment_id="newer", start_date=NOW - timedelta(hours=1))
    controller.create_experiment(_sample_config(experiment_id="draft"))

    assert [e.experiment_id for e in controller.get_active_experiments()] == ["newer", "older"]


# --------------------------------------------------------------------------- #
# Assignment
# --------------------------------------------------------------------------- #


def test_assignment_is_deterministic():
    controller = _sample_controller()
    experiment_id = _running(controller)
    assignments = {controller.assign_variant("user-42", experiment_id) for _ in range(1000)}
    assert len(assignments) == 1
    assert assignments <= {"baseline", "treatment"}


def test_assignment_handles_unpaired_surrogate_user_ids():
    controller = _sample_controller()
    experiment_id = _running(controller)
    first = controller.assign_variant("user\ud800", experiment_id)
    assert first in {"baseline", "treatment"}
    assert controller.assign_variant("user\ud800", experiment_id) == first


def test_assignment_splits_traffic():
    controller = _sample_controller()
    experiment_id = _running(controller)
    counts = Counter(controller.assign_variant(f"user-{i}", experiment_id) for i in range(10000))

    assert set(counts) == {"baseline", "treatment"}
    assert 0.35 < counts["baseline"] / 10000 < 0.65


def test_zero_traffic_variant_is_never_assigned():
    controller = _sample_controller()
    variants = [
        {"name": "off", "traffic_percentage": 0},
        {"name": "on", "traffic_percentage": 100},
    ]
    experiment_id = _running(controller, variants=variants)
    assert {controller.assign_variant(f"user-{i}", experiment_id) for i in range(500)} == {"on"}


def test_control_when_experiment_not_live():
    clock = _Clock()
    controller = _sample_controller(clock=clock)
    assert controller.assign_variant("user-1", "missing") == "control"

    experiment_id = controller.create_experiment(_sample_config()).experiment_id
    assert controller.assign_variant("user-1", experiment_id) == "control"

    controller.start_experiment(experiment_id)
    assert controller.assign_variant("user-1", experiment_id) in {"baseline", "treatment"}

    controller.pause_experiment(experiment_id)
    assert controller.assign_variant("user-1", experiment_id) == "control"

    controller.resume_experiment(experiment_id)
    clock.now = NOW + timedelta(days=31)
    assert controller.assign_variant("user-1", experiment_id) == "control"


def test_variant_config_lookup():
    controller = _sample_controller()
    experiment_id = _running(controller)
    assert controller.get_variant_config(experiment_id, "treatment") == {"collaborative_weight": 0.8}
    assert controller.get_variant_config(experiment_id, "nope") == {}
    assert controller.get_variant_config("missing", "treatment") == {}


# --------------------------------------------------------------------------- #
# Metrics and analysis
# --------------------------------------------------------------------------- #


def test_record_metric_validates_variant_and_experiment():
    controller = _sample_controller()
    experiment_id = _running(controller)

    metric = controller.record_experiment_metric(experiment_id, "baseline", MetricType.CONVERSION, 1)
    assert metric.metric_type == "conversion"
    assert metric.value == 1.0

    with pytest.raises(ValidationError) as excinfo:
        controller.record_experiment_metric(experiment_id, "nope", "conversion", 1)
    assert excinfo.value.kind == "variant"
    with pytest.raises(NotFoundError):
        controller.record_experiment_metric("missing", "baseline", "conversion", 1)


def test_rate_metrics_are_averaged_and_counts_summed():
    assert is_rate_metric("click_through_rate")
    assert not is_rate_metric("revenue")

    controller = _sample_controller()
    experiment_id = _running(controller, target_metrics=["click_through_rate", "revenue"])
    controller.record_experiment_metric(experiment_id, "baseline", "click_through_rate", 0.2)
    controller.record_experiment_metric(experiment_id, "baseline", "click_through_rate", 0.4)
    controller.record_experiment_metric(experiment_id, "baseline", "revenue", 10)
    controller.record_experiment_metric(experiment_id, "baseline", "revenue", 15)

    result = controller.analyze_experiment(experiment_id)
    assert result.metrics["baseline"]["click_through_rate"] == pytest.approx(0.3)
    assert result.metrics["baseline"]["revenue"] == pytest.approx(25.0)
    assert result.metrics["treatment"] == {}
    assert result.sample_sizes == {"baseline": 4, "treatment": 0}


def test_significant_winner():
    controller = _sample_controller()
    experiment_id = _running(controller)
    for _ in range(12):
        controller.record_experiment_metric(experiment_id, "treatment", "conversion", 1)
    for _ in range(5):
        controller.record_experiment_metric(experiment_id, "baseline", "conversion", 1)

    result = controller.stop_experiment(experiment_id)

    assert result.winning_variant == "treatment"
    assert result.statistical_significance is True
    assert result.confidence_level == pytest.approx(0.95)
    assert result.conclusion == (
        'Variant "treatment" is the winner with 95.0% confidence. '
        "Results are statistically significant."
    )
    stored = controller.get_experiment(experiment_id)
    assert stored.winning_variant == "treatment"
    assert stored.conclusion == result.conclusion


def test_winner_below_minimum_sample_is_not_significant():
    controller = _sample_controller()
    experiment_id = _running(controller)
    for _ in range(4):
        controller.record_experiment_metric(experiment_id, "treatment", "conversion", 1)

    result = controller.analyze_experiment(experiment_id)
    assert result.winning_variant == "treatment"
    assert result.statistical_significance is False
    assert result.confidence_level == pytest.approx(0.5 + 0.4 * 0.45)
    assert result.conclusion == (
        'Variant "treatment" shows promise but results are not yet statistically '
        "significant. Continue experiment or increase sample size."
    )


def test_analysis_without_samples_is_neutral():
    controller = _sample_controller()
    experiment_id = _running(controller)
    result = controller.analyze_experiment(experiment_id)

    assert result.winning_variant == "baseline"
    assert result.confidence_level == 0.0
    assert result.statistical_significance is False


def test_experiment_report():
    controller = _sample_controller()
    experiment_id = _running(controller)
    controller.record_experiment_metric(experiment_id, "baseline", "conversion", 1)
    controller.stop_experiment(experiment_id)

    report = controller.get_experiment_report(experiment_id)
    assert report["experiment"]["experiment_id"] == experiment_id
    assert len(report["metrics"]) == 1
    assert report["summary"]["winning_variant"] == "baseline"
    assert report["conclusion"].startswith('Variant "baseline"')


def test_z_test_strategy_plugs_into_controller():
    controller = _sample_controller(significance=TwoProportionZTest())
    experiment_id = _running(controller)
    for index in range(100):
        controller.record_experiment_metric(experiment_id, "treatment", "conversion", 1 if index < 60 else 0)
        controller.record_experiment_metric(experiment_id, "baseline", "conversion", 1 if index < 30 else 0)

    result = controller.analyze_experiment(experiment_id)
    assert result.winning_variant == "treatment"
    assert result.statistical_significance is True
    assert result.confidence_level > 0.99


def test_z_test_edge_cases():
    experiment = _sample_controller().create_experiment(_sample_config())
    strategy = TwoProportionZTest()

    equal = strategy.evaluate(
        experiment,
        VariantStats("treatment", 100, primary_trials=100, primary_successes=40),
        [VariantStats("baseline", 100, primary_trials=100, primary_successes=40)],
    )
    assert equal.is_significant is False
    assert equal.p_value == pytest.approx(1.0)

    empty = strategy.evaluate(experiment, VariantStats("treatment", 0), [VariantStats("baseline", 0)])
    assert empty.is_significant is False
    assert empty.confidence_level == 0.0


def test_sample_size_strategy():
    experiment = _sample_controller().create_experiment(_sample_config(minimum_sample_size=100))
    strategy = SampleSizeSignificance()

    assert strategy.evaluate(experiment, VariantStats("a", 0), []).confidence_level == 0.0
    half = strategy.evaluate(experiment, VariantStats("a", 50), [])
    assert half.is_significant is False
    assert half.confidence_level == pytest.approx(0.725)
    full = strategy.evaluate(experiment, VariantStats("a", 500), [])
    assert full.is_significant is True
    assert full.confidence_level == pytest.approx(0.95)
