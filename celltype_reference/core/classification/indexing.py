"""Per-label nearest-neighbor indices in scaled rank space.

Each label's reference samples are rank-transformed over the common genes
and indexed with sklearn's NearestNeighbors. Index construction is
independent across labels and runs in parallel via joblib.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.neighbors import NearestNeighbors

from .config import NeighborConfig
from .ranking import distance_to_correlation, quantile_rank, scaled_colranks


@dataclass
class LabelIndex:
    """Neighbor search structure for the reference samples of one label.

    Attributes:
        label: Label name
        n_samples: Number of reference samples indexed
        n_genes: Number of genes (dimensions) of the indexed vectors
        neighbors: Fitted NearestNeighbors over samples x genes scaled ranks
    """

    label: str
    n_samples: int
    n_genes: int
    neighbors: NearestNeighbors

    def kth_distance(self, queries: np.ndarray, k: int) -> np.ndarray:
        """Distance from each query (rows) to its k-th nearest reference sample."""
        distances, _ = self.neighbors.kneighbors(
            queries, n_neighbors=k, return_distance=True
        )
        return distances[:, k - 1]

    def quantile_correlation(self, queries: np.ndarray, quantile: float) -> np.ndarray:
        """Correlation of each query at the requested upper quantile."""
        k = quantile_rank(self.n_samples, quantile)
        return distance_to_correlation(self.kth_distance(queries, k))


def build_label_index(
    label: str,
    values: np.ndarray,
    config: NeighborConfig,
) -> LabelIndex:
    """Rank-transform one label's reference block and index it.

    Parameters
    ----------
    label : str
        Label name
    values : np.ndarray
        genes x samples expression over the common genes
    config : NeighborConfig
        Index configuration (must be Euclidean)

    Returns
    -------
    LabelIndex
        Fitted index for this label
    """
    config.validate()
    ranked = scaled_colranks(values)
    neighbors = NearestNeighbors(
        algorithm=config.algorithm,
        metric=config.metric,
        leaf_size=config.leaf_size,
    )
    neighbors.fit(ranked.T)
    return LabelIndex(
        label=label,
        n_samples=ranked.shape[1],
        n_genes=ranked.shape[0],
        neighbors=neighbors,
    )


def _build_index_item(label: str, values: np.ndarray, config: NeighborConfig) -> Tuple[str, LabelIndex]:
    return label, build_label_index(label, values, config)


def build_reference_indices(
    original: Dict[str, pd.DataFrame],
    genes: Sequence[str],
    config: Optional[NeighborConfig] = None,
    n_workers: int = 1,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, LabelIndex]:
    """Build one index per label over the given genes.

    Args:
        original: Label -> genes x samples reference block (all genes)
        genes: Genes to index on (the common gene set)
        config: Neighbor index configuration
        n_workers: Number of parallel workers (1=sequential)
        logger: Optional logger instance

    Returns:
        Dict mapping label -> LabelIndex, in the order of ``original``

    Raises:
        ValueError: If the configured metric is not Euclidean
    """
    if logger is None:
        logger = logging.getLogger(__name__)
    config = config or NeighborConfig()
    config.validate()

    genes = list(genes)
    work: List[Tuple[str, np.ndarray]] = [
        (label, block.loc[genes].to_numpy(dtype=np.float64))
        for label, block in original.items()
    ]

    start_time = time.time()
    if n_workers <= 1 or len(work) <= 1:
        results = [_build_index_item(label, values, config) for label, values in work]
    else:
        logger.info("Building %d label indices with %d workers", len(work), n_workers)
        results = Parallel(n_jobs=n_workers, backend="loky", verbose=0)(
            delayed(_build_index_item)(label, values, config) for label, values in work
        )

    indices = dict(results)
    for label, index in indices.items():
        logger.debug(
            "Index for '%s': %d samples x %d genes", label, index.n_samples, index.n_genes
        )
    logger.info(
        "Built %d label indices over %d genes in %.2f sec",
        len(indices),
        len(genes),
        time.time() - start_time,
    )
    return indices
