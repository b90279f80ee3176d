"""
Similarity utilities: cosine similarity for dense vectors and sparse maps.
"""
from __future__ import annotations

from typing import Mapping, Sequence

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity as pairwise_cosine


def cosine_similarity(v1: Sequence[float], v2: Sequence[float]) -> float:
    """Compute cosine similarity between two dense vectors of equal length."""
    if len(v1) == 0 or len(v2) == 0:
        return 0.0
    a = np.asarray(v1, dtype=float).reshape(1, -1)
    b = np.asarray(v2, dtype=float).reshape(1, -1)
    # Zero vectors normalise to zero, so they score 0.0.
    return float(np.clip(pairwise_cosine(a, b)[0, 0], -1.0, 1.0))


def intersection_cosine(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    """
    Cosine similarity restricted to the keys both maps share.

    Norms are taken over the shared keys only, so two users who weigh their
    common items proportionally score 1.0 regardless of what else they did.
    """
    common = [key for key in a if key in b]
    if not common:
        return 0.0
    va = [a[key] for key in common]
    vb = [b[key] for key in common]
    return cosine_similarity(va, vb)


def union_cosine(sparse: Mapping[str, float], dense: Mapping[str, float]) -> float:
    """Cosine similarity over the union of keys; missing entries count as zero."""
    keys = list(dict.fromkeys([*sparse.keys(), *dense.keys()]))
    if not keys:
        return 0.0
    va = [sparse.get(key, 0.0) for key in keys]
    vb = [dense.get(key, 0.0) for key in keys]
    return cosine_similarity(va, vb)


__all__ = ["cosine_similarity", "intersection_cosine", "union_cosine"]
