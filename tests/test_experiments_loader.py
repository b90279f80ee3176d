from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import yaml

from app.experiments import load_experiments
from recengine.ab_testing import ExperimentController
from recengine.entities import ExperimentStatus
from recengine.memory_store import InMemoryExperimentStore, InMemoryMetricLog

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _sample_controller() -> ExperimentController:
    return ExperimentController(InMemoryExperimentStore(), InMemoryMetricLog(), clock=lambda: NOW)


def _sample_config() -> dict:
    return {
        "experiments": {
            "homepage_weights": {
                "name": "Homepage fusion weights",
                "target_metrics": ["click_through_rate"],
                "start_date": "2024-05-01T00:00:00+00:00",
                "end_date": "2024-07-01T00:00:00+00:00",
                "minimum_sample_size": 500,
                "auto_start": True,
                "variants": [
                    {"name": "control", "traffic_percentage": 50, "config": {"collaborative_weight": 0.6}},
                    {"name": "content_heavy", "traffic_percentage": 50, "config": {"content_weight": 0.7}},
                ],
            },
            "broken_split": {
                "target_metrics": ["conversion"],
                "start_date": "2024-05-01T00:00:00+00:00",
                "end_date": "2024-07-01T00:00:00+00:00",
                "variants": [
                    {"name": "control", "traffic_percentage": 30},
                    {"name": "treatment", "traffic_percentage": 30},
                ],
            },
            "model_rollout": {
                "target_metrics": ["conversion"],
                "start_date": "2024-05-01T00:00:00+00:00",
                "end_date": "2024-07-01T00:00:00+00:00",
                "variants": [
                    {"name": "control", "traffic_percentage": 90, "config": {"use_model": False}},
                    {"name": "model", "traffic_percentage": 10, "config": {"use_model": True}},
                ],
            },
        }
    }


def test_load_experiments_from_yaml(tmp_path: Path):
    config_path = tmp_path / "experiments.yaml"
    config_path.write_text(yaml.safe_dump(_sample_config()))
    controller = _sample_controller()

    loaded = load_experiments(controller, config_path)

    assert [e.experiment_id for e in loaded] == ["homepage_weights", "model_rollout"]
    homepage = controller.get_experiment("homepage_weights")
    assert homepage.status is ExperimentStatus.RUNNING
    assert homepage.minimum_sample_size == 500
    assert controller.get_variant_config("homepage_weights", "content_heavy") == {"content_weight": 0.7}

    rollout = controller.get_experiment("model_rollout")
    assert rollout.status is ExperimentStatus.DRAFT
    assert rollout.name == "model_rollout"


def test_load_experiments_can_start_everything(tmp_path: Path):
    config_path = tmp_path / "experiments.json"
    config_path.write_text(json.dumps(_sample_config()))
    controller = _sample_controller()

    loaded = load_experiments(controller, config_path, start=True)

    assert all(e.status is ExperimentStatus.RUNNING for e in loaded)
    assert {e.experiment_id for e in controller.get_active_experiments()} == {
        "homepage_weights",
        "model_rollout",
    }


def test_reloading_skips_existing_experiments(tmp_path: Path):
    config_path = tmp_path / "experiments.yaml"
    config_path.write_text(yaml.safe_dump(_sample_config()))
    controller = _sample_controller()

    load_experiments(controller, config_path)
    assert load_experiments(controller, config_path) == []


def test_missing_config_disables_experiments(tmp_path: Path):
    assert load_experiments(_sample_controller(), tmp_path / "missing.yaml") == []


def test_empty_config_loads_nothing(tmp_path: Path):
    config_path = tmp_path / "experiments.yaml"
    config_path.write_text("")
    assert load_experiments(_sample_controller(), config_path) == []


def test_experiment_that_cannot_start_yet_stays_loaded_as_draft(tmp_path: Path):
    config = {
        "experiments": {
            "summer_launch": {
                "target_metrics": ["conversion"],
                "start_date": "2024-07-01T00:00:00+00:00",
                "end_date": "2024-08-01T00:00:00+00:00",
                "auto_start": True,
                "variants": [{"name": "control", "traffic_percentage": 100}],
            }
        }
    }
    config_path = tmp_path / "experiments.yaml"
    config_path.write_text(yaml.safe_dump(config))
    controller = _sample_controller()

    (loaded,) = load_experiments(controller, config_path)

    assert loaded.experiment_id == "summer_launch"
    assert loaded.status is ExperimentStatus.DRAFT
    assert controller.get_experiment("summer_launch").status is ExperimentStatus.DRAFT
