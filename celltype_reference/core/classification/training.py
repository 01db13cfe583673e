"""Training a reference for classification.

Training selects features, keeps each label's raw reference block for
fine-tuning, and builds one nearest-neighbor index per label over the
common genes. The resulting TrainedReference can be reused across many
test datasets.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd

from ...io.matrix import coerce_labels, to_clean_matrix
from .config import NeighborConfig, TrainingConfig
from .features import FeatureSelection, MarkerSet, select_features
from .indexing import LabelIndex, build_reference_indices


@dataclass(frozen=True)
class TrainedReference:
    """Immutable trained reference.

    Attributes:
        common_genes: Genes used for coarse scoring; every gene any
            fine-tuning step may need is drawn from the reference genes
        labels: Unique labels in order of first appearance
        original_exprs: Label -> raw genes x samples block (all genes)
        nn_indices: Label -> neighbor index over ``common_genes``
        search: Feature selection structure reused during fine-tuning
        neighbor_config: Index configuration used at training time
    """

    common_genes: Tuple[str, ...]
    labels: Tuple[str, ...]
    original_exprs: Dict[str, pd.DataFrame] = field(repr=False)
    nn_indices: Dict[str, LabelIndex] = field(repr=False)
    search: FeatureSelection = field(repr=False)
    neighbor_config: NeighborConfig = field(default_factory=NeighborConfig)

    @property
    def mode(self) -> str:
        """Fine-tuning mode: "de" (pairwise markers) or "sd"."""
        return self.search.mode

    @property
    def markers(self) -> Optional[MarkerSet]:
        return self.search.markers

    @property
    def gene_index(self) -> pd.Index:
        """Reference genes shared by every label block."""
        return self.original_exprs[self.labels[0]].index

    def n_samples(self) -> Dict[str, int]:
        """Number of reference samples per label."""
        return {label: block.shape[1] for label, block in self.original_exprs.items()}

    def summary(self) -> Dict[str, Any]:
        """Plain-dict summary for logging."""
        return {
            "labels": list(self.labels),
            "n_labels": len(self.labels),
            "n_common_genes": len(self.common_genes),
            "n_reference_genes": len(self.gene_index),
            "mode": self.mode,
            "source": self.search.source,
            "args": dict(self.search.args),
            "n_samples": self.n_samples(),
        }


def train_reference(
    ref: Any,
    labels: Any,
    genes: Any = "de",
    sd_thresh: Optional[float] = None,
    de_n: Optional[int] = None,
    config: Optional[TrainingConfig] = None,
    neighbor_config: Optional[NeighborConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> TrainedReference:
    """Train a classifier on a labelled reference dataset.

    Args:
        ref: genes x samples DataFrame or AnnData of log-expression values
        labels: One label per reference sample
        genes: "de", "sd", "all", or marker mappings (pairwise or per label)
        sd_thresh: Override of config.sd_thresh
        de_n: Override of config.de_n
        config: Training configuration (uses defaults if None)
        neighbor_config: Index configuration (uses defaults if None)
        logger: Optional logger instance

    Returns:
        TrainedReference

    Raises:
        ValueError: For configuration errors (missing row names, label
            length mismatch, malformed markers, non-Euclidean metric,
            empty gene selection)
    """
    if logger is None:
        logger = logging.getLogger(__name__)
    config = config or TrainingConfig()
    neighbor_config = neighbor_config or NeighborConfig()
    if sd_thresh is None:
        sd_thresh = config.sd_thresh
    if de_n is None:
        de_n = config.de_n

    # Fatal configuration errors are raised before any work starts
    neighbor_config.validate()

    ref = to_clean_matrix(ref, layer=config.layer, check_missing=config.check_missing, name="ref")
    label_array = coerce_labels(labels, ref.shape[1])
    logger.info(
        "Training on %d genes x %d samples with %d labels",
        ref.shape[0],
        ref.shape[1],
        len(pd.unique(label_array)),
    )

    selection = select_features(
        ref,
        label_array,
        genes=genes,
        sd_thresh=sd_thresh,
        de_n=de_n,
        logger=logger,
    )
    if not selection.common_genes:
        raise ValueError(
            "No genes were selected for training; "
            "lower 'sd_thresh' or supply marker genes"
        )

    # Blocks keep all genes so fine-tuning can use any gene subset
    ulabels = tuple(str(u) for u in pd.unique(label_array))
    original: Dict[str, pd.DataFrame] = {
        u: ref.loc[:, label_array == u].astype(np.float64) for u in ulabels
    }

    indices = build_reference_indices(
        original,
        selection.common_genes,
        config=neighbor_config,
        n_workers=config.n_workers,
        logger=logger,
    )

    return TrainedReference(
        common_genes=selection.common_genes,
        labels=ulabels,
        original_exprs=original,
        nn_indices=indices,
        search=selection,
        neighbor_config=neighbor_config,
    )
