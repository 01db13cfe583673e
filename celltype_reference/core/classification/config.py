"""Configuration classes for reference-based classification.

All training, classification and pruning parameters are configurable via
YAML so that the same reference can be reused across datasets.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


EUCLIDEAN = "euclidean"


@dataclass
class NeighborConfig:
    """Configuration for the per-label nearest-neighbor indices.

    Attributes
    ----------
    algorithm : str
        Index construction strategy passed to sklearn NearestNeighbors
        ("auto", "ball_tree", "kd_tree" or "brute")
    metric : str
        Distance metric. Only "euclidean" is valid, because distances are
        converted back to rank correlations.
    leaf_size : int
        Leaf size for tree-based indices
    """

    algorithm: str = "auto"
    metric: str = EUCLIDEAN
    leaf_size: int = 30

    def validate(self) -> None:
        """Raise ValueError if the index cannot yield rank correlations."""
        if self.metric != EUCLIDEAN:
            raise ValueError(
                f"Neighbor metric must be '{EUCLIDEAN}', got '{self.metric}'"
            )


@dataclass
class TrainingConfig:
    """Configuration for training a reference.

    Attributes
    ----------
    genes : str
        Feature selection mode: "de", "sd" or "all"
    sd_thresh : float
        Minimum standard deviation of label medians (genes="sd" or "all")
    de_n : int, optional
        Number of markers per label pair (genes="de").
        None uses round(500 * (2/3) ** log2(n_labels)).
    layer : str, optional
        AnnData layer holding log-expression values (None = X)
    check_missing : bool
        Drop genes with missing values before training
    n_workers : int
        Parallel workers for per-label index construction
    """

    genes: str = "de"
    sd_thresh: float = 1.0
    de_n: Optional[int] = None
    layer: Optional[str] = None
    check_missing: bool = True
    n_workers: int = 1


@dataclass
class ClassificationConfig:
    """Configuration for classifying test samples.

    Attributes
    ----------
    quantile : float
        Quantile of the per-label correlation distribution used as score
    fine_tune : bool
        Run iterative fine-tuning after the coarse scoring
    tune_thresh : float
        Labels within this distance of the best score stay candidates
    sd_thresh : float, optional
        Override of the trained sd_thresh for sd/all fine-tuning
    prune : bool
        Compute pruned labels after classification
    layer : str, optional
        AnnData layer holding log-expression values (None = X)
    check_missing : bool
        Drop genes with missing values from the test matrix
    n_workers : int
        Parallel workers (1 = sequential)
    batch_size : int
        Test samples per worker batch
    """

    quantile: float = 0.8
    fine_tune: bool = True
    tune_thresh: float = 0.05
    sd_thresh: Optional[float] = None
    prune: bool = True
    layer: Optional[str] = None
    check_missing: bool = True
    n_workers: int = 1
    batch_size: int = 500

    def validate(self) -> None:
        """Raise ValueError for out-of-range parameters."""
        if not 0.0 < self.quantile <= 1.0:
            raise ValueError(f"quantile must be in (0, 1], got {self.quantile}")
        if self.tune_thresh < 0:
            raise ValueError(f"tune_thresh must be non-negative, got {self.tune_thresh}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")


@dataclass
class PruningConfig:
    """Configuration for pruning low-quality labels.

    Attributes
    ----------
    nmads : float
        Number of MADs below the per-label median that flags a sample
    min_diff_med : float, optional
        Minimum gap between a sample's top score and its median score.
        None derives a threshold from the score matrix; a non-positive
        value disables the check.
    min_diff_next : float
        Minimum gap between the best and second-best fine-tuning scores
    """

    nmads: float = 3.0
    min_diff_med: Optional[float] = None
    min_diff_next: float = 0.05


@dataclass
class ReferenceConfig:
    """Master configuration for training, classification and pruning.

    Attributes
    ----------
    training : TrainingConfig
        Training configuration
    neighbors : NeighborConfig
        Nearest-neighbor index configuration
    classification : ClassificationConfig
        Classification configuration
    pruning : PruningConfig
        Pruning configuration
    """

    training: TrainingConfig = field(default_factory=TrainingConfig)
    neighbors: NeighborConfig = field(default_factory=NeighborConfig)
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    pruning: PruningConfig = field(default_factory=PruningConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> "ReferenceConfig":
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested reference section
        if "reference" in data:
            data = data["reference"] or {}

        return cls(
            training=TrainingConfig(**data.get("training", {})),
            neighbors=NeighborConfig(**data.get("neighbors", {})),
            classification=ClassificationConfig(**data.get("classification", {})),
            pruning=PruningConfig(**data.get("pruning", {})),
        )

    @classmethod
    def default(cls) -> "ReferenceConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "training": {
                "genes": self.training.genes,
                "sd_thresh": self.training.sd_thresh,
                "de_n": self.training.de_n,
                "layer": self.training.layer,
                "check_missing": self.training.check_missing,
                "n_workers": self.training.n_workers,
            },
            "neighbors": {
                "algorithm": self.neighbors.algorithm,
                "metric": self.neighbors.metric,
                "leaf_size": self.neighbors.leaf_size,
            },
            "classification": {
                "quantile": self.classification.quantile,
                "fine_tune": self.classification.fine_tune,
                "tune_thresh": self.classification.tune_thresh,
                "sd_thresh": self.classification.sd_thresh,
                "prune": self.classification.prune,
                "layer": self.classification.layer,
                "check_missing": self.classification.check_missing,
                "n_workers": self.classification.n_workers,
                "batch_size": self.classification.batch_size,
            },
            "pruning": {
                "nmads": self.pruning.nmads,
                "min_diff_med": self.pruning.min_diff_med,
                "min_diff_next": self.pruning.min_diff_next,
            },
        }
