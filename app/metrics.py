"""Prometheus metrics for the recommendation engine."""
from __future__ import annotations

import time
from collections import defaultdict
from functools import wraps
from typing import Callable, Dict

from prometheus_client import Counter, Gauge, Histogram

# Request metrics
recommendation_requests_total = Counter(
    "recengine_recommendation_requests_total",
    "Total number of recommendation requests",
    ["endpoint", "status"],
)

recommendation_latency_seconds = Histogram(
    "recengine_recommendation_latency_seconds",
    "Recommendation request latency in seconds",
    ["endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

recommendation_count = Histogram(
    "recengine_recommendation_count",
    "Number of items returned in recommendation",
    ["algorithm"],
    buckets=(0, 1, 5, 10, 20, 50, 100),
)

# Model metrics
model_inference_latency_seconds = Histogram(
    "recengine_model_inference_latency_seconds",
    "Model inference latency in seconds",
    ["model_type"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

candidates_count = Histogram(
    "recengine_candidates_count",
    "Number of candidates produced per estimator",
    ["estimator"],
    buckets=(0, 10, 50, 100, 200, 500, 1000),
)

# Fallback metrics
fallback_triggered_total = Counter(
    "recengine_fallback_triggered_total",
    "Number of times a fallback path was taken",
    ["estimator", "reason"],
)

fallback_ratio_gauge = Gauge(
    "recengine_fallback_ratio",
    "Ratio of requests served from a fallback path (rolling)",
    ["endpoint"],
)

# Behaviour metrics
interactions_tracked_total = Counter(
    "recengine_interactions_tracked_total",
    "Interactions recorded by type",
    ["interaction_type"],
)

preference_updates_total = Counter(
    "recengine_preference_updates_total",
    "Preference rows reinforced by attribute type",
    ["attribute_type"],
)

recommendation_feedback_total = Counter(
    "recengine_recommendation_feedback_total",
    "Feedback recorded on served recommendations",
    ["feedback", "algorithm"],
)

# Experiment metrics
experiment_assignments_total = Counter(
    "recengine_experiment_assignments_total",
    "Variant assignments served",
    ["experiment_id", "variant"],
)

experiment_metrics_recorded_total = Counter(
    "recengine_experiment_metrics_recorded_total",
    "Experiment metric records appended",
    ["experiment_id", "metric_type"],
)

# Error metrics
error_total = Counter(
    "recengine_error_total",
    "Total number of errors",
    ["error_type", "endpoint"],
)


class MetricsTracker:
    """Track metrics for monitoring."""

    def __init__(self):
        self.request_totals: Dict[str, int] = defaultdict(int)
        self.fallback_totals: Dict[str, int] = defaultdict(int)

    def track_fallback(self, estimator: str, reason: str) -> None:
        """Track fallback usage."""
        fallback_triggered_total.labels(estimator=estimator, reason=reason).inc()

    def track_error(self, error_type: str, endpoint: str) -> None:
        """Track error occurrence."""
        error_total.labels(error_type=error_type, endpoint=endpoint).inc()

    def track_response(self, endpoint: str, algorithm: str, count: int, degraded: bool) -> None:
        """Track a served list and update the fallback ratio gauge."""
        recommendation_count.labels(algorithm=algorithm).observe(count)
        self.request_totals[endpoint] += 1
        if degraded:
            self.fallback_totals[endpoint] += 1
        ratio = self.fallback_totals[endpoint] / self.request_totals[endpoint]
        fallback_ratio_gauge.labels(endpoint=endpoint).set(ratio)

    def fallback_ratio(self, endpoint: str) -> float:
        total = self.request_totals.get(endpoint, 0)
        if total == 0:
            return 0.0
        return self.fallback_totals.get(endpoint, 0) / total


# Global metrics tracker
_metrics_tracker: MetricsTracker | None = None


def get_metrics_tracker() -> MetricsTracker:
    """Get global metrics tracker instance."""
    global _metrics_tracker
    if _metrics_tracker is None:
        _metrics_tracker = MetricsTracker()
    return _metrics_tracker


def track_request_metrics(endpoint: str):
    """
    Decorator to track request metrics.

    Args:
        endpoint: Name of the operation being tracked
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()
            status = "success"

            try:
                return func(*args, **kwargs)
            except Exception as exc:
                status = "error"
                get_metrics_tracker().track_error(type(exc).__name__, endpoint)
                raise
            finally:
                latency = time.time() - start_time
                recommendation_latency_seconds.labels(endpoint=endpoint).observe(latency)
                recommendation_requests_total.labels(
                    endpoint=endpoint, status=status
                ).inc()

        return wrapper

    return decorator


def track_model_inference(model_type: str):
    """
    Decorator to track model inference time.

    Args:
        model_type: Type of model (e.g., 'hybrid')
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()
            try:
                return func(*args, **kwargs)
            finally:
                latency = time.time() - start_time
                model_inference_latency_seconds.labels(model_type=model_type).observe(
                    latency
                )

        return wrapper

    return decorator


__all__ = [
    "MetricsTracker",
    "candidates_count",
    "experiment_assignments_total",
    "experiment_metrics_recorded_total",
    "get_metrics_tracker",
    "interactions_tracked_total",
    "preference_updates_total",
    "recommendation_feedback_total",
    "track_model_inference",
    "track_request_metrics",
]
