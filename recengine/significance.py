"""
Significance strategies for experiment analysis.

The controller picks the winning variant; a strategy decides how much to
trust that pick. ``SampleSizeSignificance`` is the default heuristic (enough
samples means significant). ``TwoProportionZTest`` runs a real hypothesis test
on the primary metric, treating each recorded value as a 0/1 outcome.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Protocol, Sequence

from scipy.stats import norm

from .entities import Experiment


@dataclass(frozen=True)
class VariantStats:
    variant: str
    sample_size: int
    metrics: Dict[str, float] = field(default_factory=dict)
    primary_trials: int = 0
    primary_successes: float = 0.0

    @property
    def primary_rate(self) -> float:
        if self.primary_trials == 0:
            return 0.0
        return self.primary_successes / self.primary_trials


@dataclass(frozen=True)
class SignificanceResult:
    is_significant: bool
    confidence_level: float
    p_value: float = 1.0


class SignificanceStrategy(Protocol):
    def evaluate(
        self,
        experiment: Experiment,
        winner: VariantStats,
        others: Sequence[VariantStats],
    ) -> SignificanceResult:
        ...


class SampleSizeSignificance:
    """
    Significant once the winner has ``minimum_sample_size`` samples.

    Confidence is ``min(0.95, 0.5 + (n / minimum) * 0.45)``; zero samples give
    zero confidence. This is not a hypothesis test: it ignores variance and the
    gap between variants.
    """

    def evaluate(
        self,
        experiment: Experiment,
        winner: VariantStats,
        others: Sequence[VariantStats],
    ) -> SignificanceResult:
        n = winner.sample_size
        minimum = max(experiment.minimum_sample_size, 1)
        if n == 0:
            return SignificanceResult(is_significant=False, confidence_level=0.0)
        confidence = min(0.95, 0.5 + (n / minimum) * 0.45)
        return SignificanceResult(is_significant=n >= minimum, confidence_level=confidence)


class TwoProportionZTest:
    """Two-sided two-proportion z-test of the winner against the best other variant."""

    def evaluate(
        self,
        experiment: Experiment,
        winner: VariantStats,
        others: Sequence[VariantStats],
    ) -> SignificanceResult:
        contenders = [other for other in others if other.primary_trials > 0]
        if winner.primary_trials == 0 or not contenders:
            return SignificanceResult(is_significant=False, confidence_level=0.0)
        runner_up = max(contenders, key=lambda s: s.primary_rate)

        n1, n2 = winner.primary_trials, runner_up.primary_trials
        p1, p2 = winner.primary_rate, runner_up.primary_rate
        pooled = (winner.primary_successes + runner_up.primary_successes) / (n1 + n2)
        se = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
        if se == 0:
            return SignificanceResult(is_significant=False, confidence_level=0.0)

        z = (p1 - p2) / se
        p_value = float(2 * norm.sf(abs(z)))
        return SignificanceResult(
            is_significant=p_value < experiment.significance_level and p1 > p2,
            confidence_level=1.0 - p_value,
            p_value=p_value,
        )


__all__ = [
    "SampleSizeSignificance",
    "SignificanceResult",
    "SignificanceStrategy",
    "TwoProportionZTest",
    "VariantStats",
]
