"""Process-level wiring: settings, logging, Sentry, model registry, experiments and the engine."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Union

from app.experiments import load_experiments
from app.logging_config import setup_structured_logging
from app.model_manager import FileModelRegistry, NullModelRegistry
from app.resilience import with_fallback
from app.sentry_config import init_sentry
from app.telemetry import JsonlExposureSink
from config.settings import (
    EXPERIMENTS_CONFIG_PATH,
    EXPOSURE_LOG_PATH,
    LOG_JSON,
    LOG_LEVEL,
    MODEL_REGISTRY_PATH,
    EngineSettings,
    load_engine_settings,
)
from recengine.ab_testing import ExperimentController
from recengine.entities import Item
from recengine.memory_store import (
    InMemoryExperimentStore,
    InMemoryInteractionLog,
    InMemoryItemCatalog,
    InMemoryMetricLog,
    InMemoryPreferenceStore,
)
from recengine.recommendation_engine import RecommendationEngine

LOGGER = logging.getLogger(__name__)


@dataclass
class EngineServices:
    engine: RecommendationEngine
    experiments: ExperimentController
    catalog: InMemoryItemCatalog
    sentry_enabled: bool = False


def build_services(
    *,
    items: Iterable[Item] = (),
    settings: Optional[EngineSettings] = None,
    registry_path: Union[str, Path, None] = None,
    experiments_path: Union[str, Path, None] = None,
    exposure_log_path: Union[str, Path, None] = None,
    configure_logging: bool = True,
    use_model: bool = True,
) -> EngineServices:
    """Assemble an engine backed by the in-process stores."""
    if configure_logging:
        setup_structured_logging(level=LOG_LEVEL, json_logs=LOG_JSON)
    sentry_enabled = init_sentry()

    settings = settings or load_engine_settings()
    catalog = InMemoryItemCatalog(items)
    experiments = ExperimentController(InMemoryExperimentStore(), InMemoryMetricLog())
    # A malformed experiments file must not keep the engine from starting.
    with_fallback(fallback_value=[])(load_experiments)(
        experiments, experiments_path or EXPERIMENTS_CONFIG_PATH
    )

    registry = (
        FileModelRegistry(registry_path or MODEL_REGISTRY_PATH) if use_model else NullModelRegistry()
    )
    engine = RecommendationEngine(
        InMemoryInteractionLog(),
        InMemoryPreferenceStore(),
        catalog,
        registry,
        settings=settings,
        experiments=experiments,
        exposure_sink=JsonlExposureSink(exposure_log_path or EXPOSURE_LOG_PATH),
    )
    LOGGER.info(
        "Recommendation engine ready (items=%d, experiments=%d, model=%s, sentry=%s)",
        len(catalog.query_items(limit=settings.content_candidate_pool)),
        len(experiments.get_active_experiments()),
        "enabled" if use_model else "disabled",
        sentry_enabled,
    )
    return EngineServices(
        engine=engine,
        experiments=experiments,
        catalog=catalog,
        sentry_enabled=sentry_enabled,
    )


__all__ = ["EngineServices", "build_services"]
