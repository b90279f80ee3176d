"""File-backed model registry: resolves the active trained model for the engine."""
from __future__ import annotations

import json
import logging
import math
import pickle
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from app.resilience import with_circuit_breaker
from config.settings import MODEL_REGISTRY_PATH
from recengine.algorithms.content_based import ItemFeatures

LOGGER = logging.getLogger(__name__)
_ENTRY_KEYS = {"model_id", "run_id", "artifact", "artifact_uri", "model_type"}


# Sentry is imported lazily so the registry works without it configured
def _get_sentry_funcs():
    try:
        from app.sentry_config import add_breadcrumb, capture_exception_with_context
        return capture_exception_with_context, add_breadcrumb
    except ImportError:
        return None, None


@dataclass(frozen=True)
class ModelEntry:
    model_id: str
    model_type: str
    artifact: Path
    metadata: Dict[str, Any]

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], base_dir: Path) -> Optional["ModelEntry"]:
        model_id = payload.get("model_id") or payload.get("run_id")
        artifact = payload.get("artifact") or payload.get("artifact_uri")
        if not model_id or not artifact:
            return None
        artifact_path = Path(artifact)
        if not artifact_path.is_absolute():
            artifact_path = base_dir / artifact_path
        return cls(
            model_id=str(model_id),
            model_type=str(payload.get("model_type", "hybrid")),
            artifact=artifact_path,
            metadata={k: v for k, v in payload.items() if k not in _ENTRY_KEYS},
        )


class SklearnModelHandle:
    """Wraps a fitted scikit-learn estimator as a ModelHandle."""

    def __init__(self, model_id: str, estimator: Any):
        self.model_id = model_id
        self.estimator = estimator

    def predict(self, features: Sequence[float]) -> float:
        X = np.asarray(features, dtype=float).reshape(1, -1)
        if hasattr(self.estimator, "predict_proba"):
            # Positive class is the last entry of classes_ for binary classifiers.
            value = float(self.estimator.predict_proba(X)[0, -1])
        else:
            value = float(self.estimator.predict(X)[0])
        return float(np.clip(value, 0.0, 1.0))

    def __repr__(self) -> str:
        return f"SklearnModelHandle(model_id={self.model_id!r})"


class NullModelRegistry:
    """Registry with no trained model; the engine always takes the heuristic path."""

    def get_active_model(self, model_type: Optional[str] = None):
        return None


class FileModelRegistry:
    """
    Reads a JSON registry of the form::

        {"current": {"model_id": ..., "model_type": ..., "artifact": "hybrid.pkl"},
         "models": {"hybrid": {...}}}

    Artifacts are pickled scikit-learn estimators; relative paths resolve
    against the registry's directory. Loaded estimators are cached per
    (model id, artifact mtime) so a retrained model is picked up on the next
    lookup without a restart.
    """

    def __init__(
        self,
        path: Union[str, Path, None] = None,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
    ):
        self.path = Path(path) if path is not None else MODEL_REGISTRY_PATH
        self._lock = threading.Lock()
        self._cache: Dict[Tuple[str, float], SklearnModelHandle] = {}
        self._read = with_circuit_breaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
        )(self._read_registry)

    def _read_registry(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        return json.loads(self.path.read_text(encoding="utf-8"))

    def load_registry(self) -> Optional[Dict[str, Any]]:
        """Parsed registry, or None when missing or unreadable."""
        try:
            return self._read()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Failed to read model registry at %s: %s", self.path, exc)
            capture_exc, _ = _get_sentry_funcs()
            if capture_exc:
                capture_exc(
                    exc,
                    level="warning",
                    fingerprint=["model", "registry_read_failed"],
                    registry_path=str(self.path),
                )
            return None

    def active_entry(self, model_type: Optional[str] = None) -> Optional[ModelEntry]:
        registry = self.load_registry()
        if not isinstance(registry, dict):
            return None
        base_dir = self.path.parent
        models = registry.get("models") or {}
        if model_type and isinstance(models.get(model_type), dict):
            return ModelEntry.from_dict(models[model_type], base_dir)
        current = registry.get("current")
        if not isinstance(current, dict):
            return None
        entry = ModelEntry.from_dict(current, base_dir)
        if entry is None or (model_type and entry.model_type != model_type):
            return None
        return entry

    def get_active_model(self, model_type: Optional[str] = None) -> Optional[SklearnModelHandle]:
        entry = self.active_entry(model_type)
        if entry is None:
            return None
        try:
            mtime = entry.artifact.stat().st_mtime
        except OSError as exc:
            LOGGER.warning("Model artifact missing for %s: %s", entry.model_id, exc)
            return None

        key = (entry.model_id, mtime)
        with self._lock:
            handle = self._cache.get(key)
        if handle is not None:
            return handle

        try:
            with entry.artifact.open("rb") as stream:
                estimator = pickle.load(stream)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Failed to load model %s from %s: %s", entry.model_id, entry.artifact, exc)
            capture_exc, _ = _get_sentry_funcs()
            if capture_exc:
                capture_exc(
                    exc,
                    level="warning",
                    fingerprint=["model", "artifact_load_failed"],
                    model_id=entry.model_id,
                    artifact=str(entry.artifact),
                )
            return None

        handle = SklearnModelHandle(entry.model_id, estimator)
        with self._lock:
            self._cache = {key: handle}
        LOGGER.info("Loaded model %s (%s) from %s", entry.model_id, entry.model_type, entry.artifact)
        _, add_bc = _get_sentry_funcs()
        if add_bc:
            add_bc(
                message=f"Loaded model {entry.model_id}",
                category="model",
                model_type=entry.model_type,
            )
        return handle


def register_model(
    registry_path: Union[str, Path],
    *,
    model_id: str,
    artifact: Union[str, Path],
    model_type: str = "hybrid",
    make_current: bool = True,
    **metadata: Any,
) -> Dict[str, Any]:
    """Record a trained artifact in the registry file, optionally as the current model."""
    registry_path = Path(registry_path)
    registry: Dict[str, Any] = {"current": None, "models": {}}
    if registry_path.exists():
        try:
            registry = json.loads(registry_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            LOGGER.warning("Overwriting unreadable registry at %s", registry_path)
    entry = {"model_id": model_id, "model_type": model_type, "artifact": str(artifact), **metadata}
    registry.setdefault("models", {})[model_type] = entry
    if make_current:
        registry["current"] = entry
    registry_path.parent.mkdir(parents=True, exist_ok=True)
    registry_path.write_text(json.dumps(registry, indent=2, default=str), encoding="utf-8")
    LOGGER.info("Registered model %s (%s) in %s", model_id, model_type, registry_path)
    return registry


def build_model_features(
    user_interaction_count: int,
    item_interaction_count: int,
    content_score: float,
    item_features: ItemFeatures,
) -> List[float]:
    """Feature vector scored by the active model for one user x item pair."""
    return [
        math.log(user_interaction_count + 1),
        math.log(item_interaction_count + 1),
        float(content_score),
        *item_features.fixed,
    ]


__all__ = [
    "FileModelRegistry",
    "ModelEntry",
    "NullModelRegistry",
    "SklearnModelHandle",
    "build_model_features",
    "register_model",
]
