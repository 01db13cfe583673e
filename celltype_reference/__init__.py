"""CellType-Reference: reference-based cell-type classification.

This package assigns labels to single-cell (or bulk) expression profiles
by correlating them against a labelled reference dataset:
- Feature selection by pairwise median differences, variability, or
  user-supplied marker lists
- Per-label nearest-neighbor indices built in scaled rank space
- Quantile-based Spearman scoring of every test sample against every label
- Iterative fine-tuning restricted to discriminating marker genes
- Post-hoc pruning of low-confidence assignments

Example usage:
    >>> from celltype_reference.core.classification import (
    ...     train_reference, classify_samples, prune_scores,
    ... )
    >>>
    >>> trained = train_reference(ref, labels, genes="de")
    >>> result = classify_samples(test, trained)
    >>> flags = prune_scores(result)
"""

__version__ = "0.1.0"
