"""Post-hoc pruning of low-quality label assignments.

Two independent checks are combined; a sample is pruned if either flags it.

Per-sample check:
    Without a fine-tuning trace, flag samples whose top coarse score is
    within ``min_diff_med`` of their median coarse score. With a trace,
    flag samples whose best fine-tuning score is within ``min_diff_next``
    of the second best.

Per-label check:
    For the samples assigned to each label, flag those whose score for
    that label lies more than ``nmads`` scaled MADs below the label median.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ...utils.stats import lower_outlier_threshold

# Fraction of the score range used when min_diff_med is not given
MIN_DIFF_MED_FRACTION = 0.01


def _as_score_frame(scores: Any) -> pd.DataFrame:
    if isinstance(scores, pd.DataFrame):
        return scores
    values = np.asarray(scores, dtype=np.float64)
    if values.ndim != 2:
        raise ValueError("scores must be a 2-dimensional samples x labels matrix")
    return pd.DataFrame(values)


def _as_trace(tuning_scores: Any, n_samples: int) -> Tuple[np.ndarray, np.ndarray]:
    """Extract (first, second) arrays from a DataFrame, mapping or n x 2 array."""
    if isinstance(tuning_scores, (pd.DataFrame, dict)):
        first = np.asarray(tuning_scores["first"], dtype=np.float64)
        second = np.asarray(tuning_scores["second"], dtype=np.float64)
    else:
        values = np.asarray(tuning_scores, dtype=np.float64)
        if values.ndim != 2 or values.shape[1] != 2:
            raise ValueError("tuning_scores must have 'first' and 'second' columns")
        first, second = values[:, 0], values[:, 1]
    if len(first) != n_samples or len(second) != n_samples:
        raise ValueError(
            f"tuning_scores has {len(first)} rows but scores has {n_samples} samples"
        )
    return first, second


def default_min_diff_med(scores: Any) -> float:
    """Derive the per-sample ``min_diff_med`` threshold from a score matrix.

    Returns 1% of the range of the finite scores, or 0.0 when there are
    none.
    """
    values = _as_score_frame(scores).to_numpy(dtype=np.float64)
    finite = values[np.isfinite(values)]
    if finite.size == 0:
        return 0.0
    return MIN_DIFF_MED_FRACTION * float(finite.max() - finite.min())


def prune_scores(
    results_or_scores: Any,
    tuning_scores: Any = None,
    labels: Optional[Sequence[Any]] = None,
    nmads: float = 3.0,
    min_diff_med: Optional[float] = None,
    min_diff_next: float = 0.05,
    get_thresholds: bool = False,
) -> Union[np.ndarray, Tuple[np.ndarray, pd.Series]]:
    """Flag low-quality assignments.

    Args:
        results_or_scores: A PredictionResult, or a samples x labels score
            matrix (DataFrame or 2-D array)
        tuning_scores: Fine-tuning trace with "first" and "second" columns.
            Taken from the PredictionResult when not given.
        labels: Assigned label per sample, matching score columns. Defaults
            to the final labels of a PredictionResult, else the row argmax.
        nmads: Scaled MADs below the per-label median that flags a sample
        min_diff_med: Minimum top-minus-median gap (None = derived from the
            scores; non-positive disables the check)
        min_diff_next: Minimum gap between the two best fine-tuning scores
        get_thresholds: Also return the per-label lower thresholds

    Returns:
        Boolean array, True for samples that should be pruned. With
        get_thresholds=True, a tuple of (flags, thresholds Series).

    Raises:
        ValueError: If labels or trace do not match the score matrix
    """
    if not isinstance(results_or_scores, (pd.DataFrame, np.ndarray)) and hasattr(
        results_or_scores, "tuning_scores"
    ):
        result = results_or_scores
        scores = result.scores
        if tuning_scores is None:
            tuning_scores = result.tuning_scores
        if labels is None:
            labels = result.labels
    else:
        scores = results_or_scores
    scores = _as_score_frame(scores)

    values = scores.to_numpy(dtype=np.float64)
    n_samples, n_labels = values.shape
    flagged = np.zeros(n_samples, dtype=bool)
    thresholds = pd.Series(np.nan, index=scores.columns, dtype=np.float64)
    if n_samples == 0 or n_labels == 0:
        return (flagged, thresholds) if get_thresholds else flagged

    if labels is None:
        positions = np.argmax(values, axis=1)
    else:
        if len(labels) != n_samples:
            raise ValueError(
                f"'labels' has {len(labels)} entries but scores has {n_samples} samples"
            )
        positions = scores.columns.get_indexer(pd.Index(list(labels)))
        if (positions < 0).any():
            unknown = sorted({str(labels[i]) for i in np.flatnonzero(positions < 0)})
            raise ValueError(f"Labels not found among score columns: {unknown[:5]}")
    assigned = values[np.arange(n_samples), positions]

    # Per-sample check
    if tuning_scores is None:
        if min_diff_med is None:
            min_diff_med = default_min_diff_med(scores)
        if min_diff_med > 0:
            delta = np.max(values, axis=1) - np.median(values, axis=1)
            flagged |= delta < min_diff_med
    else:
        first, second = _as_trace(tuning_scores, n_samples)
        with np.errstate(invalid="ignore"):
            flagged |= first < second + min_diff_next

    # Per-label check
    for j in np.unique(positions):
        members = positions == j
        threshold = lower_outlier_threshold(assigned[members], nmads=nmads)
        thresholds.iloc[j] = threshold
        if np.isfinite(threshold):
            flagged[members] |= assigned[members] < threshold

    if get_thresholds:
        return flagged, thresholds
    return flagged
