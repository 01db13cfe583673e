"""Classification engine for reference-based labelling.

This module provides the classification entry point ``classify_samples``
and the ClassificationEngine class that orchestrates the full workflow:
training on a labelled reference, coarse scoring, fine-tuning, pruning,
and export.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np
import pandas as pd

from ...io.logging import log_yaml
from ...io.matrix import ensure_output_dir, to_clean_matrix, write_dataframe
from .config import ClassificationConfig, PruningConfig, ReferenceConfig
from .fine_tuning import fine_tune_samples
from .pruning import prune_scores
from .scoring import first_pass_labels, score_samples, score_summary
from .training import TrainedReference, train_reference


@dataclass(frozen=True)
class PredictionResult:
    """Result of classifying a test set.

    Attributes:
        scores: Coarse scores (samples x labels)
        first_labels: Best coarse label per sample
        labels: Final label per sample (after fine-tuning, if enabled)
        tuning_scores: Best two scores of the last fine-tuning step
            (columns "first" and "second"); None without fine-tuning
        pruned_labels: Final label, or None for pruned samples; None if
            pruning was not run
    """

    scores: pd.DataFrame
    first_labels: np.ndarray
    labels: np.ndarray
    tuning_scores: Optional[pd.DataFrame] = None
    pruned_labels: Optional[np.ndarray] = None

    @property
    def sample_ids(self) -> pd.Index:
        return self.scores.index

    def n_pruned(self) -> int:
        """Number of samples without a call after pruning."""
        if self.pruned_labels is None:
            return 0
        return int(sum(label is None for label in self.pruned_labels))

    def to_frame(self) -> pd.DataFrame:
        """Flatten into one row per sample."""
        frame = pd.DataFrame(
            {
                "first_labels": self.first_labels,
                "labels": self.labels,
            },
            index=self.scores.index,
        )
        if self.pruned_labels is not None:
            frame["pruned_labels"] = self.pruned_labels
        if self.tuning_scores is not None:
            frame["tuning_first"] = self.tuning_scores["first"].to_numpy()
            frame["tuning_second"] = self.tuning_scores["second"].to_numpy()
        for label in self.scores.columns:
            frame[f"score_{label}"] = self.scores[label].to_numpy()
        frame.index.name = "sample_id"
        return frame

    def write(self, output_dir: Union[str, Path]) -> Dict[str, Path]:
        """Write predictions.csv and scores.csv to ``output_dir``."""
        output_dir = ensure_output_dir(output_dir)
        predictions = self.to_frame().drop(
            columns=[f"score_{label}" for label in self.scores.columns]
        )
        scores = self.scores.copy()
        scores.index.name = "sample_id"
        return {
            "predictions": write_dataframe(predictions, output_dir / "predictions.csv", index=True),
            "scores": write_dataframe(scores, output_dir / "scores.csv", index=True),
        }


def _resolve_config(
    config: Optional[ClassificationConfig],
    **overrides: Any,
) -> ClassificationConfig:
    """Apply non-None keyword overrides to a copy of ``config``."""
    config = config or ClassificationConfig()
    changes = {key: value for key, value in overrides.items() if value is not None}
    if changes:
        config = dataclasses.replace(config, **changes)
    config.validate()
    return config


def classify_samples(
    test: Any,
    trained: TrainedReference,
    quantile: Optional[float] = None,
    tune_thresh: Optional[float] = None,
    fine_tune: Optional[bool] = None,
    sd_thresh: Optional[float] = None,
    config: Optional[ClassificationConfig] = None,
    pruning: Optional[PruningConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> PredictionResult:
    """Classify test samples against a trained reference.

    Args:
        test: genes x samples DataFrame or AnnData of log-expression values
        trained: Output of ``train_reference``
        quantile: Override of config.quantile
        tune_thresh: Override of config.tune_thresh
        fine_tune: Override of config.fine_tune
        sd_thresh: Override of config.sd_thresh (sd/all fine-tuning)
        config: Classification configuration (uses defaults if None)
        pruning: Pruning configuration (uses defaults if None)
        logger: Optional logger instance

    Returns:
        PredictionResult

    Raises:
        ValueError: If parameters are out of range or the test set lacks
            any common gene of the trained reference
    """
    if logger is None:
        logger = logging.getLogger(__name__)
    config = _resolve_config(
        config,
        quantile=quantile,
        tune_thresh=tune_thresh,
        fine_tune=fine_tune,
        sd_thresh=sd_thresh,
    )
    pruning = pruning or PruningConfig()
    trained.neighbor_config.validate()

    test = to_clean_matrix(
        test, layer=config.layer, check_missing=config.check_missing, name="test"
    )
    missing = [g for g in trained.common_genes if g not in test.index]
    if missing:
        logger.debug("Missing common genes: %s", missing[:10])
        raise ValueError("'test' does not contain all 'common_genes' in 'trained'")

    scores = score_samples(
        test,
        trained.nn_indices,
        trained.common_genes,
        quantile=config.quantile,
        labels=trained.labels,
        n_workers=config.n_workers,
        batch_size=config.batch_size,
        logger=logger,
    )
    first_labels = first_pass_labels(scores)
    logger.debug("Coarse score summary: %s", score_summary(scores))

    tuning_scores = None
    if config.fine_tune:
        labels, tuning_scores = fine_tune_samples(
            test,
            scores,
            trained,
            quantile=config.quantile,
            tune_thresh=config.tune_thresh,
            sd_thresh=config.sd_thresh,
            n_workers=config.n_workers,
            batch_size=config.batch_size,
            logger=logger,
        )
        n_changed = int(np.sum(labels != first_labels))
        logger.info("Fine-tuning changed %d of %d labels", n_changed, len(labels))
    else:
        labels = first_labels.copy()

    pruned_labels = None
    if config.prune:
        flags = prune_scores(
            scores,
            tuning_scores=tuning_scores,
            labels=labels,
            nmads=pruning.nmads,
            min_diff_med=pruning.min_diff_med,
            min_diff_next=pruning.min_diff_next,
        )
        pruned_labels = np.where(flags, None, labels).astype(object)
        logger.info("Pruned %d of %d samples", int(flags.sum()), len(flags))

    return PredictionResult(
        scores=scores,
        first_labels=first_labels,
        labels=labels,
        tuning_scores=tuning_scores,
        pruned_labels=pruned_labels,
    )


class ClassificationEngine:
    """Train-and-classify engine driven by a ReferenceConfig.

    Example:
        >>> engine = ClassificationEngine(ReferenceConfig.from_yaml("ref.yaml"))
        >>> result = engine.run(test, ref, labels, output_dir=Path("out/"))
        >>> result.to_frame()["pruned_labels"].value_counts()
    """

    def __init__(
        self,
        config: Optional[ReferenceConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize classification engine.

        Args:
            config: Master configuration (uses defaults if None)
            logger: Logger instance
        """
        self.config = config or ReferenceConfig.default()
        self.logger = logger or logging.getLogger(__name__)

    def train(
        self,
        ref: Any,
        labels: Any,
        genes: Any = None,
    ) -> TrainedReference:
        """Train a reference using the training and neighbor configuration.

        Args:
            ref: genes x samples DataFrame or AnnData
            labels: One label per reference sample
            genes: Gene specification (overrides config.training.genes),
                e.g. a marker mapping
        """
        training = self.config.training
        if genes is None:
            genes = training.genes
        trained = train_reference(
            ref,
            labels,
            genes=genes,
            config=training,
            neighbor_config=self.config.neighbors,
            logger=self.logger,
        )
        self.logger.info(
            "  Labels: %d, common genes: %d, mode: %s",
            len(trained.labels),
            len(trained.common_genes),
            trained.mode,
        )
        return trained

    def classify(
        self,
        test: Any,
        trained: TrainedReference,
        output_dir: Optional[Path] = None,
    ) -> PredictionResult:
        """Classify a test set and optionally export the result."""
        result = classify_samples(
            test,
            trained,
            config=self.config.classification,
            pruning=self.config.pruning,
            logger=self.logger,
        )
        if output_dir:
            paths = result.write(output_dir)
            for path in paths.values():
                self.logger.info("Wrote %s", path.name)
        return result

    def run(
        self,
        test: Any,
        ref: Any,
        labels: Any,
        genes: Any = None,
        output_dir: Optional[Path] = None,
    ) -> PredictionResult:
        """Run training and classification in one call.

        Args:
            test: Test genes x samples DataFrame or AnnData
            ref: Reference genes x samples DataFrame or AnnData
            labels: One label per reference sample
            genes: Gene specification (overrides config.training.genes)
            output_dir: Where to write CSVs (None = don't write)

        Returns:
            PredictionResult
        """
        self.logger.info("=" * 70)
        self.logger.info("CLASSIFICATION ENGINE")
        self.logger.info("=" * 70)
        log_yaml(None, self.config.to_dict(), logger=self.logger)
        self.logger.info("")

        self.logger.info("Phase 1: Training reference...")
        trained = self.train(ref, labels, genes=genes)

        self.logger.info("Phase 2: Classifying test samples...")
        result = self.classify(test, trained, output_dir=output_dir)

        self.logger.info("")
        self.logger.info("Classification complete!")
        self.logger.info(
            "  Samples: %d, labels assigned: %d, pruned: %d",
            len(result.labels),
            len(pd.unique(result.labels)),
            result.n_pruned(),
        )
        return result
