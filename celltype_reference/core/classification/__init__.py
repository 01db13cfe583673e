"""Classification module for reference-based labelling.

Provides training on a labelled reference, rank-correlation scoring with
per-label neighbor indices, iterative fine-tuning, and pruning.
"""

from .config import (
    ClassificationConfig,
    NeighborConfig,
    PruningConfig,
    ReferenceConfig,
    TrainingConfig,
)
from .engine import ClassificationEngine, PredictionResult, classify_samples
from .features import (
    FeatureMode,
    FeatureSelection,
    MarkerSet,
    PairwiseMarkers,
    PerLabelMarkers,
    median_by_label,
    resolve_feature_spec,
    select_features,
)
from .fine_tuning import FineTuner, TuningOutcome, TuningState, fine_tune_samples
from .indexing import LabelIndex, build_label_index, build_reference_indices
from .pruning import default_min_diff_med, prune_scores
from .ranking import distance_to_correlation, quantile_rank, scaled_colranks
from .scoring import first_pass_labels, score_ranked, score_samples
from .training import TrainedReference, train_reference

__all__ = [
    # Config
    "ClassificationConfig",
    "NeighborConfig",
    "PruningConfig",
    "ReferenceConfig",
    "TrainingConfig",
    # Engine
    "ClassificationEngine",
    "PredictionResult",
    "classify_samples",
    # Features
    "FeatureMode",
    "FeatureSelection",
    "MarkerSet",
    "PairwiseMarkers",
    "PerLabelMarkers",
    "median_by_label",
    "resolve_feature_spec",
    "select_features",
    # Ranking
    "distance_to_correlation",
    "quantile_rank",
    "scaled_colranks",
    # Indexing
    "LabelIndex",
    "build_label_index",
    "build_reference_indices",
    # Scoring
    "first_pass_labels",
    "score_ranked",
    "score_samples",
    # Fine-tuning
    "FineTuner",
    "TuningOutcome",
    "TuningState",
    "fine_tune_samples",
    # Pruning
    "default_min_diff_med",
    "prune_scores",
    # Training
    "TrainedReference",
    "train_reference",
]
