"""Global configuration helpers for the recommendation engine."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_DIR: Path = Path(__file__).resolve().parents[1]
DATA_DIR: Path = Path(os.getenv("RECENGINE_DATA_DIR", BASE_DIR / "data"))
MODELS_DIR: Path = Path(os.getenv("RECENGINE_MODELS_DIR", BASE_DIR / "models"))
MODEL_REGISTRY_PATH: Path = Path(
    os.getenv("RECENGINE_MODEL_REGISTRY", MODELS_DIR / "model_registry.json")
)
EXPERIMENTS_CONFIG_PATH: Path = Path(
    os.getenv("RECENGINE_EXPERIMENTS_CONFIG", BASE_DIR / "config" / "experiments.yaml")
)
EXPOSURE_LOG_PATH: Path = Path(
    os.getenv("RECENGINE_EXPOSURE_LOG", DATA_DIR / "evaluation" / "exposure_log.jsonl")
)

LOG_LEVEL: str = os.getenv("RECENGINE_LOG_LEVEL", "INFO")
LOG_JSON: bool = os.getenv("RECENGINE_LOG_JSON", "true").lower() == "true"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


@dataclass(frozen=True)
class EngineSettings:
    """Tunables shared by the estimators, the fusion engine and the preference model."""

    # Preference decay
    decay_idle_days: int = 30
    deactivate_idle_days: int = 90
    weight_decay_factor: float = 0.9
    confidence_decay_factor: float = 0.95
    deactivate_weight_floor: float = 0.1
    decay_interval_hours: int = 24
    reinforcement_confidence_step: float = 0.1
    initial_confidence: float = 0.5

    # Collaborative estimator
    interaction_history_limit: int = 500
    min_common_items: int = 2
    neighbor_pool_size: int = 100
    max_neighbors: int = 50
    min_similarity: float = 0.1
    popularity_window_days: int = 30

    # Content estimator
    content_candidate_pool: int = 1000
    min_content_score: float = 0.1
    trending_score: float = 0.5
    trending_confidence: float = 0.3

    # Fusion
    collaborative_weight: float = 0.6
    content_weight: float = 0.4
    model_type: str = "hybrid"
    model_candidate_pool: int = 500
    model_score_cutoff: float = 0.3
    model_inference_timeout: float = 1.0
    registry_timeout: float = 0.5
    trending_window_days: int = 7
    max_limit: int = 50


def load_engine_settings() -> EngineSettings:
    """Build EngineSettings from ``RECENGINE_*`` environment variables."""
    defaults = EngineSettings()
    return EngineSettings(
        decay_idle_days=_env_int("RECENGINE_DECAY_IDLE_DAYS", defaults.decay_idle_days),
        deactivate_idle_days=_env_int(
            "RECENGINE_DEACTIVATE_IDLE_DAYS", defaults.deactivate_idle_days
        ),
        weight_decay_factor=_env_float(
            "RECENGINE_WEIGHT_DECAY_FACTOR", defaults.weight_decay_factor
        ),
        confidence_decay_factor=_env_float(
            "RECENGINE_CONFIDENCE_DECAY_FACTOR", defaults.confidence_decay_factor
        ),
        deactivate_weight_floor=_env_float(
            "RECENGINE_DEACTIVATE_WEIGHT_FLOOR", defaults.deactivate_weight_floor
        ),
        decay_interval_hours=_env_int(
            "RECENGINE_DECAY_INTERVAL_HOURS", defaults.decay_interval_hours
        ),
        reinforcement_confidence_step=_env_float(
            "RECENGINE_REINFORCEMENT_CONFIDENCE_STEP", defaults.reinforcement_confidence_step
        ),
        initial_confidence=_env_float("RECENGINE_INITIAL_CONFIDENCE", defaults.initial_confidence),
        interaction_history_limit=_env_int(
            "RECENGINE_INTERACTION_HISTORY_LIMIT", defaults.interaction_history_limit
        ),
        min_common_items=_env_int("RECENGINE_MIN_COMMON_ITEMS", defaults.min_common_items),
        neighbor_pool_size=_env_int("RECENGINE_NEIGHBOR_POOL_SIZE", defaults.neighbor_pool_size),
        max_neighbors=_env_int("RECENGINE_MAX_NEIGHBORS", defaults.max_neighbors),
        min_similarity=_env_float("RECENGINE_MIN_SIMILARITY", defaults.min_similarity),
        popularity_window_days=_env_int(
            "RECENGINE_POPULARITY_WINDOW_DAYS", defaults.popularity_window_days
        ),
        content_candidate_pool=_env_int(
            "RECENGINE_CONTENT_CANDIDATE_POOL", defaults.content_candidate_pool
        ),
        min_content_score=_env_float("RECENGINE_MIN_CONTENT_SCORE", defaults.min_content_score),
        trending_score=_env_float("RECENGINE_TRENDING_SCORE", defaults.trending_score),
        trending_confidence=_env_float(
            "RECENGINE_TRENDING_CONFIDENCE", defaults.trending_confidence
        ),
        collaborative_weight=_env_float(
            "RECENGINE_COLLABORATIVE_WEIGHT", defaults.collaborative_weight
        ),
        content_weight=_env_float("RECENGINE_CONTENT_WEIGHT", defaults.content_weight),
        model_type=os.getenv("RECENGINE_MODEL_TYPE", defaults.model_type),
        model_candidate_pool=_env_int(
            "RECENGINE_MODEL_CANDIDATE_POOL", defaults.model_candidate_pool
        ),
        model_score_cutoff=_env_float(
            "RECENGINE_MODEL_SCORE_CUTOFF", defaults.model_score_cutoff
        ),
        model_inference_timeout=_env_float(
            "RECENGINE_MODEL_INFERENCE_TIMEOUT", defaults.model_inference_timeout
        ),
        registry_timeout=_env_float("RECENGINE_REGISTRY_TIMEOUT", defaults.registry_timeout),
        trending_window_days=_env_int(
            "RECENGINE_TRENDING_WINDOW_DAYS", defaults.trending_window_days
        ),
        max_limit=_env_int("RECENGINE_MAX_LIMIT", defaults.max_limit),
    )


DEFAULT_SETTINGS = EngineSettings()


def resolve_settings(settings: EngineSettings | None) -> EngineSettings:
    """Return settings or DEFAULT_SETTINGS when none is provided."""
    return settings if settings is not None else DEFAULT_SETTINGS


__all__ = [
    "BASE_DIR",
    "DATA_DIR",
    "MODELS_DIR",
    "MODEL_REGISTRY_PATH",
    "EXPERIMENTS_CONFIG_PATH",
    "EXPOSURE_LOG_PATH",
    "LOG_LEVEL",
    "LOG_JSON",
    "EngineSettings",
    "DEFAULT_SETTINGS",
    "load_engine_settings",
    "resolve_settings",
]
