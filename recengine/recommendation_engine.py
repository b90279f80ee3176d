"""
Recommendation engine: fuses the estimators (or defers to a trained model),
applies caller filters and exclusions, and returns a ranked, capped list.

Degradation never surfaces as an error. A missing, failing or slow model falls
back to the heuristic blend; a model that answers owns the list even when it
scores nothing above the cutoff. Empty histories and profiles fall back to
popular or trending items. Only validation and not-found failures reach the
caller.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from app.logging_config import bind_request_context, clear_request_context
from app.metrics import candidates_count, get_metrics_tracker, track_model_inference, track_request_metrics
from app.model_manager import build_model_features
from app.resilience import call_with_timeout
from config.settings import EngineSettings, resolve_settings

from .ab_testing import ExperimentController
from .algorithms.collaborative_filtering import CollaborativeEstimator
from .algorithms.content_based import ContentEstimator, extract_item_features, score_item
from .algorithms.hybrid import combine_recommendations
from .algorithms.popularity import popular_items
from .behavior_tracking import BehaviorTracker
from .entities import AttributeType, CandidateScore, Item, ReasonTag
from .errors import NotFoundError, ValidationError
from .explanations import ExplanationService
from .feedback import RecommendationFeedback
from .memory_store import InMemoryRecommendationLog
from .ports import (
    InteractionLog,
    ItemCatalog,
    ModelHandle,
    ModelRegistry,
    PreferenceStore,
    RecommendationLog,
)
from .preferences import PreferenceModel
from .timeutils import Clock, ensure_utc, utcnow

LOGGER = logging.getLogger(__name__)

MODEL_ALGORITHM = "model"
LOCATION_ALGORITHM = "location"
LOCATION_CONTEXT = "location_based"
TRENDING_CONFIDENCE = 0.8

ExposureSink = Callable[..., None]


# Sentry is imported lazily so the engine runs without it configured
def _get_sentry_funcs():
    try:
        from app.sentry_config import capture_exception_with_context, set_recommendation_context
        return capture_exception_with_context, set_recommendation_context
    except ImportError:
        return None, None


class RecommendationFilters(BaseModel):
    """Optional, AND-combined constraints on returned items."""

    category: Optional[str] = None
    location: Optional[str] = None
    min_price: Optional[float] = Field(default=None, ge=0)
    max_price: Optional[float] = Field(default=None, ge=0)
    start_after: Optional[datetime] = None
    start_before: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_ranges(self) -> "RecommendationFilters":
        if self.min_price is not None and self.max_price is not None and self.min_price > self.max_price:
            raise ValueError("min_price must not exceed max_price")
        if (
            self.start_after is not None
            and self.start_before is not None
            and ensure_utc(self.start_after) > ensure_utc(self.start_before)
        ):
            raise ValueError("start_after must not be later than start_before")
        return self

    def is_empty(self) -> bool:
        return all(value is None for value in self.model_dump().values())

    def accepts(self, item: Item) -> bool:
        if self.category is not None:
            if not item.category or item.category.strip().lower() != self.category.strip().lower():
                return False
        if self.location is not None:
            if self.location.strip().lower() not in item.location.lower():
                return False
        if self.min_price is not None or self.max_price is not None:
            if item.price is None:
                return False
            if self.min_price is not None and item.price < self.min_price:
                return False
            if self.max_price is not None and item.price > self.max_price:
                return False
        if self.start_after is not None or self.start_before is not None:
            if item.start_date is None:
                return False
            start = ensure_utc(item.start_date)
            if self.start_after is not None and start < ensure_utc(self.start_after):
                return False
            if self.start_before is not None and start > ensure_utc(self.start_before):
                return False
        return True


class RecommendationRequest(BaseModel):
    user_id: str = Field(min_length=1)
    limit: int = Field(default=10, ge=1)
    context: Optional[str] = None
    filters: Optional[RecommendationFilters] = None
    exclude_ids: List[str] = Field(default_factory=list)
    include_explanations: bool = False
    experiment_id: Optional[str] = None


def parse_request(request: Union[RecommendationRequest, Mapping[str, Any]]) -> RecommendationRequest:
    """Validate a request, converting pydantic errors to ``ValidationError(kind="request")``."""
    if isinstance(request, RecommendationRequest):
        return request
    try:
        return RecommendationRequest.model_validate(dict(request))
    except PydanticValidationError as exc:
        raise ValidationError("request", str(exc)) from exc


class RecommendationEngine:
    """Entry point for scored recommendation lists."""

    def __init__(
        self,
        interaction_log: InteractionLog,
        preference_store: PreferenceStore,
        item_catalog: ItemCatalog,
        model_registry: Optional[ModelRegistry] = None,
        *,
        settings: Optional[EngineSettings] = None,
        clock: Clock = utcnow,
        experiments: Optional[ExperimentController] = None,
        exposure_sink: Optional[ExposureSink] = None,
        recommendation_log: Optional[RecommendationLog] = None,
    ):
        self.settings = resolve_settings(settings)
        self.clock = clock
        self.interaction_log = interaction_log
        self.item_catalog = item_catalog
        self.model_registry = model_registry
        self.experiments = experiments
        self.exposure_sink = exposure_sink
        self.preference_model = PreferenceModel(preference_store, self.settings, clock)
        self.collaborative = CollaborativeEstimator(interaction_log, self.settings, clock)
        self.content = ContentEstimator(
            self.preference_model, item_catalog, interaction_log, self.settings, clock
        )
        self.explanations = ExplanationService(self.preference_model, interaction_log, item_catalog)
        self.tracker = BehaviorTracker(interaction_log, self.preference_model, clock)
        self.feedback = RecommendationFeedback(
            recommendation_log if recommendation_log is not None else InMemoryRecommendationLog(), clock
        )

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    @track_request_metrics("get_recommendations")
    def get_recommendations(
        self,
        request: Union[RecommendationRequest, Mapping[str, Any]],
    ) -> List[CandidateScore]:
        req = parse_request(request)
        request_id = f"req_{uuid.uuid4()}"
        bind_request_context(request_id, req.user_id)
        try:
            return self._serve(req, request_id)
        finally:
            clear_request_context()

    def track_interaction(self, user_id: str, interaction_type: str, **kwargs: Any):
        """Record an interaction; preferences it signals are reinforced as a side effect."""
        return self.tracker.track_interaction(user_id, interaction_type, **kwargs)

    def track_recommendation_interaction(self, recommendation_id: str, interaction_type: str):
        """Record view, click, purchase or dismiss feedback on a served recommendation."""
        return self.feedback.track_recommendation_interaction(recommendation_id, interaction_type)

    def get_recommendation_performance(
        self,
        model_id: Optional[str] = None,
        days: int = 30,
        algorithm: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self.feedback.get_recommendation_performance(model_id, days, algorithm)

    def get_homepage_recommendations(self, user_id: str, limit: int = 6) -> List[CandidateScore]:
        return self.get_recommendations(
            {"user_id": user_id, "limit": limit, "context": "homepage", "include_explanations": True}
        )

    def get_similar_item_recommendations(
        self,
        user_id: str,
        item_id: str,
        limit: int = 8,
    ) -> List[CandidateScore]:
        """Recommendations near the given item's location, never the item itself."""
        target = self.item_catalog.get_item(item_id)
        if target is None:
            raise NotFoundError("item", item_id)
        location = target.city or target.state or target.country
        return self.get_recommendations(
            {
                "user_id": user_id,
                "limit": limit,
                "context": "similar_items",
                "filters": {"location": location} if location else None,
                "exclude_ids": [item_id],
            }
        )

    def get_category_recommendations(
        self,
        user_id: str,
        category: str,
        limit: int = 12,
    ) -> List[CandidateScore]:
        return self.get_recommendations(
            {
                "user_id": user_id,
                "limit": limit,
                "context": "category_browse",
                "filters": {"category": category},
            }
        )

    def get_location_based_recommendations(
        self,
        user_id: str,
        location: Optional[str] = None,
        limit: int = 10,
    ) -> List[CandidateScore]:
        """
        Recommendations in ``location``, or in the user's strongest location
        preference when no location is given. Without either the list is not
        narrowed by place.
        """
        if location is None:
            preferred = [
                p for p in self.preference_model.profile(user_id) if p.attribute_type is AttributeType.LOCATION
            ]
            location = preferred[0].value if preferred else None
        return self.get_recommendations(
            {
                "user_id": user_id,
                "limit": limit,
                "context": LOCATION_CONTEXT,
                "filters": {"location": location} if location else None,
                "include_explanations": True,
            }
        )

    @track_request_metrics("get_trending_recommendations")
    def get_trending_recommendations(self, limit: int = 10) -> List[CandidateScore]:
        """Items with the most positive interactions over the trending window."""
        since = self.clock() - timedelta(days=self.settings.trending_window_days)
        results = [
            CandidateScore(
                item_id=item_id,
                score=min(avg_weight / 10, 1.0),
                confidence=TRENDING_CONFIDENCE,
                reasons=frozenset({ReasonTag.TRENDING}),
                algorithm="trending",
                rank=rank,
            )
            for rank, (item_id, _, avg_weight) in enumerate(
                popular_items(self.interaction_log, since, limit), start=1
            )
        ]
        get_metrics_tracker().track_response("get_trending_recommendations", "trending", len(results), False)
        return results

    # ------------------------------------------------------------------ #
    # Pipeline
    # ------------------------------------------------------------------ #
    def _serve(self, req: RecommendationRequest, request_id: str) -> List[CandidateScore]:
        limit = min(req.limit, self.settings.max_limit)
        excluded = set(req.exclude_ids)
        filters = req.filters if req.filters is not None and not req.filters.is_empty() else None

        variant, variant_config = self._variant(req)
        fetch = (limit + len(excluded)) * 2
        if filters is not None:
            fetch *= 5

        candidates, algorithm, degrade_reason, model_id = self._score(req.user_id, fetch, variant_config)

        items_by_id: Dict[str, Item] = {}
        if filters is not None or req.include_explanations:
            ids = [c.item_id for c in candidates if c.item_id not in excluded]
            items_by_id = {item.item_id: item for item in self.item_catalog.get_items_by_ids(ids)}

        results: List[CandidateScore] = []
        for candidate in candidates:
            if candidate.item_id in excluded:
                continue
            if filters is not None:
                item = items_by_id.get(candidate.item_id)
                if item is None or not filters.accepts(item):
                    continue
            results.append(candidate)
            if len(results) >= limit:
                break

        for rank, candidate in enumerate(results, start=1):
            candidate.rank = rank
            if req.context == LOCATION_CONTEXT:
                candidate.algorithm = LOCATION_ALGORITHM
                candidate.reasons = candidate.reasons | {ReasonTag.LOCATION_BASED}
            if req.include_explanations:
                explanation = self.explanations.explain(
                    req.user_id, candidate, items_by_id.get(candidate.item_id)
                )
                candidate.explanation = explanation.to_dict()

        LOGGER.info(
            "Served %d recommendations (user=%s, algorithm=%s, variant=%s, degraded=%s)",
            len(results),
            req.user_id,
            algorithm,
            variant,
            degrade_reason,
        )
        get_metrics_tracker().track_response(
            "get_recommendations", algorithm, len(results), degrade_reason is not None
        )
        _, set_context = _get_sentry_funcs()
        if set_context:
            set_context(algorithm=algorithm, variant=variant, degrade_reason=degrade_reason)
        self._record_served(req, request_id, results, model_id, variant)
        self._log_exposure(req, request_id, results, algorithm, variant, degrade_reason)
        return results

    def _variant(self, req: RecommendationRequest) -> Tuple[Optional[str], Mapping[str, Any]]:
        if not req.experiment_id or self.experiments is None:
            return None, {}
        variant = self.experiments.assign_variant(req.user_id, req.experiment_id)
        config = self.experiments.get_variant_config(req.experiment_id, variant) or {}
        return variant, config

    def _score(
        self,
        user_id: str,
        fetch: int,
        variant_config: Mapping[str, Any],
    ) -> Tuple[List[CandidateScore], str, Optional[str], Optional[str]]:
        """Candidates in final order, the algorithm, the degrade reason and the model id."""
        degrade_reason: Optional[str] = None
        use_model = bool(variant_config.get("use_model", True))
        model = self._active_model() if use_model else None
        if model is not None:
            try:
                scored = call_with_timeout(
                    self._model_candidates,
                    self.settings.model_inference_timeout,
                    user_id,
                    model,
                )
            except TimeoutError as exc:
                degrade_reason = "model_timeout"
                self._report_degradation("model", degrade_reason, exc, user_id=user_id)
            except Exception as exc:  # noqa: BLE001
                degrade_reason = "model_error"
                self._report_degradation("model", degrade_reason, exc, user_id=user_id)
            else:
                if not scored:
                    LOGGER.info(
                        "Model %s scored no candidate above the cutoff for user=%s", model.model_id, user_id
                    )
                return scored, MODEL_ALGORITHM, None, model.model_id

        collaborative_weight = float(
            variant_config.get("collaborative_weight", self.settings.collaborative_weight)
        )
        content_weight = float(variant_config.get("content_weight", self.settings.content_weight))
        collaborative = self.collaborative.recommend(user_id, fetch)
        content = self.content.recommend(user_id, fetch)
        candidates_count.labels(estimator="collaborative").observe(len(collaborative))
        candidates_count.labels(estimator="content").observe(len(content))
        for source in (collaborative, content):
            if source and source[0].algorithm in {"popular", "trending"}:
                get_metrics_tracker().track_fallback(source[0].algorithm, "cold_start")

        fused = combine_recommendations(collaborative, content, collaborative_weight, content_weight)
        return fused, "hybrid", degrade_reason, None

    def _active_model(self) -> Optional[ModelHandle]:
        if self.model_registry is None:
            return None
        try:
            return call_with_timeout(
                self.model_registry.get_active_model,
                self.settings.registry_timeout,
                self.settings.model_type,
            )
        except Exception as exc:  # noqa: BLE001
            self._report_degradation("model_registry", "registry_unavailable", exc)
            return None

    def _model_candidates(self, user_id: str, model: ModelHandle) -> List[CandidateScore]:
        seen = self.interaction_log.item_ids_for_user(user_id)
        pool = self.item_catalog.query_items(
            limit=self.settings.model_candidate_pool, exclude_ids=seen
        )
        user_count = self.interaction_log.count_for_user(user_id)
        profile = self.preference_model.weighted_profile(user_id)
        predict = track_model_inference(self.settings.model_type)(model.predict)

        scored: List[CandidateScore] = []
        for item in pool:
            features = extract_item_features(item)
            content_score = score_item(profile, features)[0] if profile else 0.0
            vector = build_model_features(
                user_count,
                self.interaction_log.count_for_item(item.item_id),
                content_score,
                features,
            )
            score = float(predict(vector))
            if score < self.settings.model_score_cutoff:
                continue
            scored.append(
                CandidateScore(
                    item_id=item.item_id,
                    score=score,
                    confidence=score,
                    reasons=frozenset({ReasonTag.PAST_BEHAVIOR}),
                    algorithm=MODEL_ALGORITHM,
                )
            )
        scored.sort(key=lambda c: c.score, reverse=True)
        candidates_count.labels(estimator="model").observe(len(scored))
        return scored

    def _report_degradation(self, estimator: str, reason: str, exc: Exception, **context: Any) -> None:
        LOGGER.warning("Falling back from %s (%s): %s", estimator, reason, exc)
        get_metrics_tracker().track_fallback(estimator, reason)
        capture_exc, _ = _get_sentry_funcs()
        if capture_exc:
            capture_exc(
                exc,
                level="warning",
                fingerprint=["recommendation", estimator, reason],
                **context,
            )

    def _record_served(
        self,
        req: RecommendationRequest,
        request_id: str,
        results: Sequence[CandidateScore],
        model_id: Optional[str],
        variant: Optional[str],
    ) -> None:
        try:
            self.feedback.record_served(request_id, req.user_id, results, model_id=model_id, variant=variant)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Failed to record served recommendations %s: %s", request_id, exc)

    def _log_exposure(
        self,
        req: RecommendationRequest,
        request_id: str,
        results: Sequence[CandidateScore],
        algorithm: str,
        variant: Optional[str],
        degrade_reason: Optional[str],
    ) -> None:
        if self.exposure_sink is None:
            return
        context: Dict[str, Any] = {}
        if req.context:
            context["context"] = req.context
        if req.experiment_id:
            context["experiment_id"] = req.experiment_id
        if degrade_reason:
            context["degrade_reason"] = degrade_reason
        try:
            self.exposure_sink(
                request_id=request_id,
                user_id=req.user_id,
                variant=variant,
                algorithm=algorithm,
                items=[
                    {
                        "recommendation_id": c.recommendation_id,
                        "item_id": c.item_id,
                        "score": c.score,
                        "rank": c.rank,
                        "algorithm": c.algorithm,
                    }
                    for c in results
                ],
                context=context,
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Failed to record exposure %s: %s", request_id, exc)


__all__ = [
    "RecommendationEngine",
    "RecommendationFilters",
    "RecommendationRequest",
    "parse_request",
]
