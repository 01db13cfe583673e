"""Coarse scoring of test samples against every reference label.

For each label, a test sample's score is the Spearman correlation to the
reference sample at the requested upper quantile of that label's
correlation distribution, obtained from the label's neighbor index.

Supports parallel scoring via joblib for large test sets.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .indexing import LabelIndex
from .ranking import scaled_colranks


def score_ranked(
    ranked: np.ndarray,
    indices: Mapping[str, LabelIndex],
    quantile: float = 0.8,
    labels: Optional[Sequence[str]] = None,
) -> np.ndarray:
    """Score rank-transformed test samples against label indices.

    Args:
        ranked: genes x samples scaled ranks over the indexed genes
        indices: Label -> LabelIndex built over the same genes
        quantile: Quantile of the per-label correlation distribution
        labels: Label order of the output columns (default: index order)

    Returns:
        samples x labels score array
    """
    if labels is None:
        labels = list(indices)
    queries = np.ascontiguousarray(ranked.T)
    scores = np.empty((queries.shape[0], len(labels)), dtype=np.float64)
    for j, label in enumerate(labels):
        scores[:, j] = indices[label].quantile_correlation(queries, quantile)
    return scores


def _score_sample_batch(
    positions: np.ndarray,
    values: np.ndarray,
    indices: Mapping[str, LabelIndex],
    labels: Sequence[str],
    quantile: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Rank-transform and score one batch of test columns."""
    ranked = scaled_colranks(values)
    return positions, score_ranked(ranked, indices, quantile=quantile, labels=labels)


def _batches(n_samples: int, batch_size: int) -> List[np.ndarray]:
    return [
        np.arange(start, min(start + batch_size, n_samples))
        for start in range(0, n_samples, batch_size)
    ]


def score_samples(
    test: pd.DataFrame,
    indices: Mapping[str, LabelIndex],
    genes: Sequence[str],
    quantile: float = 0.8,
    labels: Optional[Sequence[str]] = None,
    n_workers: int = 1,
    batch_size: int = 500,
    logger: Optional[logging.Logger] = None,
) -> pd.DataFrame:
    """Compute the coarse score matrix for a test set.

    When n_workers=1, samples are scored sequentially. When n_workers>1,
    batches of samples are scored in parallel with joblib; each batch
    writes only its own rows of the output.

    Args:
        test: Clean genes x samples test matrix containing ``genes``
        indices: Label -> LabelIndex built over ``genes``
        genes: Genes the indices were built on, in index order
        quantile: Quantile of the per-label correlation distribution
        labels: Label order of the output columns (default: index order)
        n_workers: Number of parallel workers (1=sequential)
        batch_size: Samples per worker batch
        logger: Optional logger instance

    Returns:
        DataFrame of scores, samples x labels
    """
    if logger is None:
        logger = logging.getLogger(__name__)
    if labels is None:
        labels = list(indices)
    labels = list(labels)

    values = test.loc[list(genes)].to_numpy(dtype=np.float64)
    n_samples = values.shape[1]
    batches = _batches(n_samples, max(1, batch_size))
    logger.info(
        "Scoring %d samples against %d labels over %d genes (quantile=%.2f)",
        n_samples,
        len(labels),
        len(genes),
        quantile,
    )

    start_time = time.time()
    if n_workers <= 1 or len(batches) <= 1:
        results = [
            _score_sample_batch(pos, values[:, pos], indices, labels, quantile)
            for pos in batches
        ]
    else:
        logger.info(
            "Scoring %d batches (batch_size=%d) with %d workers",
            len(batches),
            batch_size,
            n_workers,
        )
        results = Parallel(n_jobs=n_workers, backend="loky", verbose=0)(
            delayed(_score_sample_batch)(pos, values[:, pos], indices, labels, quantile)
            for pos in batches
        )

    scores = np.empty((n_samples, len(labels)), dtype=np.float64)
    for positions, rows in results:
        scores[positions, :] = rows

    logger.info("Scoring completed in %.2f sec", time.time() - start_time)
    return pd.DataFrame(scores, index=test.columns, columns=labels)


def first_pass_labels(scores: pd.DataFrame) -> np.ndarray:
    """Best-scoring label per sample.

    Ties go to the first label in column order.
    """
    if scores.shape[1] == 0:
        return np.array([], dtype=object)
    columns = np.asarray(scores.columns, dtype=object)
    return columns[np.argmax(scores.to_numpy(), axis=1)]


def score_summary(scores: pd.DataFrame) -> Dict[str, float]:
    """Summary statistics of a score matrix for logging."""
    values = scores.to_numpy()
    if values.size == 0:
        return {"min": float("nan"), "median": float("nan"), "max": float("nan")}
    return {
        "min": float(np.nanmin(values)),
        "median": float(np.nanmedian(values)),
        "max": float(np.nanmax(values)),
    }
