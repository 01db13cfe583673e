"""Scaled rank transform for Spearman correlation via Euclidean distance.

Each sample (column) is replaced by its centered ranks, scaled so that the
column has Euclidean norm 1/2. For two such columns x and y,

    ||x - y||^2 = (1 - rho) / 2

where rho is the Spearman correlation of the original values. This lets
Euclidean nearest-neighbor indices answer rank-correlation queries.
"""

from __future__ import annotations

import math

import numpy as np
from scipy.stats import rankdata

RANK_EPSILON = 1e-8


def scaled_colranks(x: np.ndarray) -> np.ndarray:
    """Rank-transform each column of a genes x samples matrix.

    Ties receive their average rank. Ranks are centered on (n + 1) / 2 and
    divided by 2 * sqrt(sum of squared centered ranks), floored at
    RANK_EPSILON so constant or single-gene columns map to zero.

    Parameters
    ----------
    x : np.ndarray
        Matrix of shape (n_genes, n_samples) without missing values.

    Returns
    -------
    np.ndarray
        Scaled ranks with the same shape as ``x``.
    """
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 1:
        x = x[:, None]
    n_genes = x.shape[0]
    if n_genes == 0:
        return np.zeros(x.shape, dtype=np.float64)

    ranks = rankdata(x, method="average", axis=0)
    center = (n_genes + 1) / 2.0
    ranks -= center
    sum_sq = np.maximum(np.sum(ranks ** 2, axis=0), RANK_EPSILON)
    return ranks / (np.sqrt(sum_sq) * 2.0)


def distance_to_correlation(distance: np.ndarray) -> np.ndarray:
    """Convert distances between scaled rank vectors to Spearman correlations."""
    distance = np.asarray(distance, dtype=np.float64)
    return 1.0 - 2.0 * distance ** 2


def quantile_rank(n_samples: int, quantile: float) -> int:
    """Return the 1-based neighbor rank whose distance represents ``quantile``.

    With quantile=0.8 and 10 reference samples, the 2nd nearest neighbor is
    used: 80% of the reference samples are at least that distant.
    """
    if n_samples < 1:
        raise ValueError("Cannot score against a label with no reference samples")
    # Rounding guard: (1 - 0.7) * 10 is 3.0000000000000004 in floating point
    k = math.ceil(round((1.0 - quantile) * n_samples, 10))
    return min(n_samples, max(1, k))


def kth_smallest(distances: np.ndarray, k: int) -> np.ndarray:
    """Return the k-th smallest value (1-based) along the last axis."""
    distances = np.asarray(distances, dtype=np.float64)
    return np.partition(distances, k - 1, axis=-1)[..., k - 1]
