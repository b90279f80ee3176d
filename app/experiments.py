"""Load A/B experiment definitions from a YAML/JSON file into an ExperimentController."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Union

import yaml

from config.settings import EXPERIMENTS_CONFIG_PATH
from recengine.ab_testing import ExperimentController
from recengine.entities import Experiment

LOGGER = logging.getLogger(__name__)

_CONFIG_KEYS = (
    "name",
    "description",
    "target_metrics",
    "start_date",
    "end_date",
    "minimum_sample_size",
    "significance_level",
)


def _read_config(config_path: Path) -> Dict[str, Any]:
    text = config_path.read_text(encoding="utf-8")
    if config_path.suffix.lower() in {".yaml", ".yml"}:
        return yaml.safe_load(text) or {}
    return json.loads(text)


def _experiment_config(experiment_id: str, entry: Mapping[str, Any]) -> Dict[str, Any]:
    """Controller payload for one entry; the entry key doubles as id and default name."""
    payload: Dict[str, Any] = {key: entry[key] for key in _CONFIG_KEYS if key in entry}
    payload.setdefault("name", experiment_id)
    payload["experiment_id"] = experiment_id
    payload["variants"] = [
        {
            "name": variant.get("name"),
            "traffic_percentage": variant.get("traffic_percentage", 0.0),
            "config": dict(variant.get("config") or {}),
        }
        for variant in entry.get("variants") or []
    ]
    return payload


def load_experiments(
    controller: ExperimentController,
    config_path: Union[str, Path, None] = None,
    start: bool = False,
) -> List[Experiment]:
    """
    Create every experiment described in the config file.

    Entries that fail validation or already exist are logged and skipped.
    An entry is started when ``start`` is set or it carries ``auto_start: true``;
    one that cannot start yet stays loaded as a draft.
    """
    path = Path(config_path) if config_path is not None else EXPERIMENTS_CONFIG_PATH
    if not path.exists():
        LOGGER.warning("Experiment config %s not found; experiments disabled.", path)
        return []

    raw = _read_config(path)
    created: List[Experiment] = []
    for experiment_id, entry in (raw.get("experiments") or {}).items():
        try:
            experiment = controller.create_experiment(_experiment_config(str(experiment_id), entry or {}))
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Failed to load experiment '%s': %s", experiment_id, exc)
            continue
        if start or (entry or {}).get("auto_start", False):
            try:
                experiment = controller.start_experiment(experiment.experiment_id)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Experiment '%s' loaded but not started: %s", experiment_id, exc)
        created.append(experiment)
        LOGGER.info(
            "Loaded experiment '%s' with %d variants (%s)",
            experiment.experiment_id,
            len(experiment.variants),
            experiment.status.value,
        )
    return created


__all__ = ["load_experiments"]
