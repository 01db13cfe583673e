"""Iterative fine-tuning of label assignments.

Starting from a sample's coarse score row over all labels, fine-tuning
repeatedly keeps the labels scoring within ``tune_thresh`` of the best,
then rescores those candidates using only genes that discriminate between
them. It stops when one label remains or when a filtering step removes no
candidate.

Gene sets per step:
    de (pairwise or user markers): union of markers between all ordered
        pairs of current candidates
    sd (also genes="all"): genes whose label medians vary by more than
        sd_thresh across the current candidates
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .features import genes_by_sd
from .ranking import distance_to_correlation, kth_smallest, quantile_rank, scaled_colranks
from .training import TrainedReference


@dataclass(frozen=True)
class TuningState:
    """Snapshot of one fine-tuning step for a single sample.

    Attributes:
        step: 0 for the coarse row, incremented after each rescoring
        candidates: Candidate labels the scores refer to
        scores: Scores aligned with ``candidates``
        n_genes: Genes used to compute ``scores`` (0 for the coarse row)
    """

    step: int
    candidates: Tuple[str, ...]
    scores: np.ndarray
    n_genes: int = 0

    def top(self) -> str:
        """Best candidate, ties resolved by candidate order."""
        return self.candidates[int(np.argmax(self.scores))]


@dataclass(frozen=True)
class TuningOutcome:
    """Terminal result of fine-tuning one sample.

    Attributes:
        label: Final label
        first: Best score of the last computed row
        second: Second-best score of the last computed row (NaN if absent)
        n_steps: Number of rescoring steps performed
        converged: True if exactly one candidate remained
    """

    label: str
    first: float
    second: float
    n_steps: int
    converged: bool


def _top_two(scores: np.ndarray) -> Tuple[float, float]:
    ordered = np.sort(np.asarray(scores, dtype=np.float64))[::-1]
    first = float(ordered[0])
    second = float(ordered[1]) if ordered.size > 1 else float("nan")
    return first, second


class FineTuner:
    """Fine-tuning state machine bound to one trained reference and test gene set.

    Parameters
    ----------
    trained : TrainedReference
        Trained reference (read only)
    test_genes : Sequence[str]
        Gene identifiers of the test matrix, in row order
    quantile : float
        Quantile of the per-label correlation distribution
    tune_thresh : float
        Candidates scoring below ``max - tune_thresh`` are dropped
    sd_thresh : float, optional
        Override of the trained sd_thresh (sd mode only)
    """

    def __init__(
        self,
        trained: TrainedReference,
        test_genes: Sequence[str],
        quantile: float = 0.8,
        tune_thresh: float = 0.05,
        sd_thresh: Optional[float] = None,
    ):
        self.trained = trained
        self.quantile = quantile
        self.tune_thresh = tune_thresh
        if sd_thresh is None:
            sd_thresh = trained.search.args.get("sd_thresh", 1.0)
        self.sd_thresh = sd_thresh

        test_index = pd.Index([str(g) for g in test_genes])
        self._test_pos: Dict[str, int] = {g: i for i, g in enumerate(test_index)}
        ref_index = trained.gene_index
        self._ref_pos: Dict[str, int] = {g: i for i, g in enumerate(ref_index)}
        self._blocks: Dict[str, np.ndarray] = {
            label: block.to_numpy(dtype=np.float64)
            for label, block in trained.original_exprs.items()
        }
        self._gene_cache: Dict[Tuple[str, ...], Tuple[np.ndarray, np.ndarray]] = {}
        self._ranked_cache: Dict[Tuple[str, Tuple[str, ...]], np.ndarray] = {}

    def candidate_genes(self, candidates: Sequence[str]) -> Tuple[str, ...]:
        """Discriminating genes for a candidate set, before test filtering."""
        if self.trained.mode == "de":
            return self.trained.markers.union(candidates)
        return genes_by_sd(self.trained.search.medians, self.sd_thresh, labels=candidates)

    def _gene_positions(self, candidates: Tuple[str, ...]) -> Tuple[np.ndarray, np.ndarray]:
        """Test and reference row positions of the usable genes for ``candidates``.

        Genes absent from the test matrix are skipped.
        """
        cached = self._gene_cache.get(candidates)
        if cached is None:
            test_pos: List[int] = []
            ref_pos: List[int] = []
            for gene in self.candidate_genes(candidates):
                if gene in self._test_pos and gene in self._ref_pos:
                    test_pos.append(self._test_pos[gene])
                    ref_pos.append(self._ref_pos[gene])
            cached = (np.asarray(test_pos, dtype=np.intp), np.asarray(ref_pos, dtype=np.intp))
            self._gene_cache[candidates] = cached
        return cached

    def _ranked_reference(self, label: str, candidates: Tuple[str, ...], ref_pos: np.ndarray) -> np.ndarray:
        key = (label, candidates)
        ranked = self._ranked_cache.get(key)
        if ranked is None:
            ranked = scaled_colranks(self._blocks[label][ref_pos, :])
            self._ranked_cache[key] = ranked
        return ranked

    def rescore(self, values: np.ndarray, candidates: Tuple[str, ...]) -> Tuple[np.ndarray, int]:
        """Score one sample against ``candidates`` using their discriminating genes.

        Returns
        -------
        Tuple[np.ndarray, int]
            Scores aligned with ``candidates`` and the number of genes used.
            With no usable genes the scores are empty.
        """
        test_pos, ref_pos = self._gene_positions(candidates)
        if test_pos.size == 0:
            return np.empty(0, dtype=np.float64), 0

        ranked_test = scaled_colranks(values[test_pos])[:, 0]
        scores = np.empty(len(candidates), dtype=np.float64)
        for j, label in enumerate(candidates):
            ranked_ref = self._ranked_reference(label, candidates, ref_pos)
            distances = np.sqrt(np.sum((ranked_ref - ranked_test[:, None]) ** 2, axis=0))
            k = quantile_rank(ranked_ref.shape[1], self.quantile)
            scores[j] = distance_to_correlation(kth_smallest(distances, k))
        return scores, int(test_pos.size)

    def iterate(self, values: np.ndarray, coarse_scores: np.ndarray) -> Iterator[TuningState]:
        """Yield every state visited while fine-tuning one sample.

        The first state is the coarse row over all labels. Iteration stops
        after the last computed state; use ``tune`` for the final label.
        """
        state = TuningState(
            step=0,
            candidates=tuple(self.trained.labels),
            scores=np.asarray(coarse_scores, dtype=np.float64),
        )
        yield state

        while len(state.candidates) > 1:
            threshold = np.max(state.scores) - self.tune_thresh
            keep = tuple(
                label for label, score in zip(state.candidates, state.scores)
                if score >= threshold
            )
            # No candidate dropped: no further separation is possible
            if len(keep) == 1 or len(keep) == len(state.candidates):
                return

            scores, n_genes = self.rescore(values, keep)
            if n_genes == 0:
                return
            state = TuningState(
                step=state.step + 1,
                candidates=keep,
                scores=scores,
                n_genes=n_genes,
            )
            yield state

    def tune(self, values: np.ndarray, coarse_scores: np.ndarray) -> TuningOutcome:
        """Fine-tune one sample.

        Parameters
        ----------
        values : np.ndarray
            Expression of the sample over the test genes
        coarse_scores : np.ndarray
            Coarse scores aligned with ``trained.labels``

        Returns
        -------
        TuningOutcome
            Final label and the top two scores of the last computed row
        """
        state = None
        for state in self.iterate(values, coarse_scores):
            pass

        threshold = np.max(state.scores) - self.tune_thresh
        n_close = int(np.sum(state.scores >= threshold))
        first, second = _top_two(state.scores)
        return TuningOutcome(
            label=state.top(),
            first=first,
            second=second,
            n_steps=state.step,
            converged=len(state.candidates) == 1 or n_close == 1,
        )


def _tune_sample_batch(
    positions: np.ndarray,
    values: np.ndarray,
    coarse: np.ndarray,
    trained: TrainedReference,
    test_genes: Sequence[str],
    quantile: float,
    tune_thresh: float,
    sd_thresh: Optional[float],
) -> Tuple[np.ndarray, List[TuningOutcome]]:
    """Fine-tune one batch of samples with a worker-local FineTuner."""
    tuner = FineTuner(
        trained,
        test_genes,
        quantile=quantile,
        tune_thresh=tune_thresh,
        sd_thresh=sd_thresh,
    )
    outcomes = [tuner.tune(values[:, i], coarse[i, :]) for i in range(values.shape[1])]
    return positions, outcomes


def fine_tune_samples(
    test: pd.DataFrame,
    scores: pd.DataFrame,
    trained: TrainedReference,
    quantile: float = 0.8,
    tune_thresh: float = 0.05,
    sd_thresh: Optional[float] = None,
    n_workers: int = 1,
    batch_size: int = 500,
    logger: Optional[logging.Logger] = None,
) -> Tuple[np.ndarray, pd.DataFrame]:
    """Fine-tune every test sample.

    Args:
        test: Clean genes x samples test matrix
        scores: Coarse scores, samples x trained.labels
        trained: Trained reference
        quantile: Quantile of the per-label correlation distribution
        tune_thresh: Score window for keeping candidates
        sd_thresh: Override of the trained sd_thresh
        n_workers: Number of parallel workers (1=sequential)
        batch_size: Samples per worker batch
        logger: Optional logger instance

    Returns:
        Tuple of (final labels, tuning scores DataFrame with columns
        "first" and "second")
    """
    if logger is None:
        logger = logging.getLogger(__name__)

    values = test.to_numpy(dtype=np.float64)
    coarse = scores.loc[:, list(trained.labels)].to_numpy(dtype=np.float64)
    test_genes = list(test.index)
    n_samples = values.shape[1]
    batch_size = max(1, batch_size)
    batches = [
        np.arange(start, min(start + batch_size, n_samples))
        for start in range(0, n_samples, batch_size)
    ]
    logger.info(
        "Fine-tuning %d samples (mode=%s, tune_thresh=%.3f)",
        n_samples,
        trained.mode,
        tune_thresh,
    )

    start_time = time.time()
    args = (trained, test_genes, quantile, tune_thresh, sd_thresh)
    if n_workers <= 1 or len(batches) <= 1:
        results = [
            _tune_sample_batch(pos, values[:, pos], coarse[pos, :], *args)
            for pos in batches
        ]
    else:
        results = Parallel(n_jobs=n_workers, backend="loky", verbose=0)(
            delayed(_tune_sample_batch)(pos, values[:, pos], coarse[pos, :], *args)
            for pos in batches
        )

    labels = np.empty(n_samples, dtype=object)
    first = np.full(n_samples, np.nan)
    second = np.full(n_samples, np.nan)
    n_steps = np.zeros(n_samples, dtype=int)
    for positions, outcomes in results:
        for pos, outcome in zip(positions, outcomes):
            labels[pos] = outcome.label
            first[pos] = outcome.first
            second[pos] = outcome.second
            n_steps[pos] = outcome.n_steps

    logger.info(
        "Fine-tuning completed in %.2f sec (mean %.2f steps per sample)",
        time.time() - start_time,
        float(n_steps.mean()) if n_samples else 0.0,
    )
    tuning = pd.DataFrame({"first": first, "second": second}, index=test.columns)
    return labels, tuning
