"""Feature selection for reference-based classification.

This module turns the user's gene specification into a single canonical
structure before training:

- ``FeatureMode.DE``: pairwise markers from differences in label medians
- ``FeatureMode.SD``: genes with variable medians across labels
- ``FeatureMode.ALL``: every gene
- ``PairwiseMarkers``: user-supplied markers for every ordered label pair
- ``PerLabelMarkers``: user-supplied markers per label, stored on the
  diagonal of the pairwise structure
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd


class FeatureMode(Enum):
    """Built-in feature selection modes."""

    DE = "de"
    SD = "sd"
    ALL = "all"


@dataclass(frozen=True)
class PairwiseMarkers:
    """Markers for label A against label B, for every ordered pair."""

    markers: Mapping[str, Mapping[str, Sequence[str]]]


@dataclass(frozen=True)
class PerLabelMarkers:
    """Markers upregulated in each label against some or all others."""

    markers: Mapping[str, Sequence[str]]


FeatureSpec = Union[FeatureMode, PairwiseMarkers, PerLabelMarkers]


def _ordered_unique(genes: Iterable[str]) -> Tuple[str, ...]:
    """Deduplicate while keeping first occurrence order."""
    return tuple(dict.fromkeys(genes))


def _as_gene_tuple(value: Any) -> Tuple[str, ...]:
    """Normalize a single gene or a gene collection to a unique tuple."""
    if isinstance(value, str):
        return (value,)
    return _ordered_unique(str(g) for g in value)


@dataclass(frozen=True)
class MarkerSet:
    """Pairwise marker genes indexed by (label, other label).

    ``markers[a][b]`` holds genes upregulated in ``a`` compared to ``b``.
    Every label has an entry for every label, including itself.

    Attributes:
        labels: Labels in reference order
        markers: Nested mapping label -> other label -> gene tuple
    """

    labels: Tuple[str, ...]
    markers: Dict[str, Dict[str, Tuple[str, ...]]] = field(repr=False)

    def __post_init__(self) -> None:
        validate_pairwise_markers(self.markers, self.labels)

    def get(self, label: str, other: str) -> Tuple[str, ...]:
        """Markers for ``label`` against ``other``."""
        return self.markers[label][other]

    def union(self, labels: Optional[Sequence[str]] = None) -> Tuple[str, ...]:
        """Ordered union of markers between all pairs drawn from ``labels``."""
        if labels is None:
            labels = self.labels
        genes: List[str] = []
        for a in labels:
            row = self.markers[a]
            for b in labels:
                genes.extend(row[b])
        return _ordered_unique(genes)

    def n_markers(self) -> pd.DataFrame:
        """Marker counts as a labels x labels DataFrame."""
        counts = [[len(self.markers[a][b]) for b in self.labels] for a in self.labels]
        return pd.DataFrame(counts, index=list(self.labels), columns=list(self.labels))


def validate_pairwise_markers(
    markers: Mapping[str, Mapping[str, Sequence[str]]],
    labels: Sequence[str],
) -> None:
    """Check that markers exist for every ordered pair of labels.

    Raises
    ------
    ValueError
        If a label or a label pair has no entry.
    """
    missing_labels = [u for u in labels if u not in markers]
    if missing_labels:
        raise ValueError(
            f"need marker gene information for each label (missing: {missing_labels})"
        )
    for u in labels:
        inner = markers[u]
        if not isinstance(inner, Mapping):
            raise ValueError(f"markers for label '{u}' must map every label to genes")
        missing_pairs = [v for v in labels if v not in inner]
        if missing_pairs:
            raise ValueError(
                f"need marker genes between each pair of labels "
                f"(label '{u}' is missing: {missing_pairs})"
            )


def resolve_feature_spec(genes: Any) -> FeatureSpec:
    """Resolve a user gene specification into a FeatureSpec.

    Accepts a mode string ("de", "sd", "all"), a FeatureMode, a mapping of
    label -> list of genes (per-label markers), a mapping of label ->
    mapping of label -> list of genes (pairwise markers), or an already
    resolved PairwiseMarkers / PerLabelMarkers.

    Raises
    ------
    ValueError
        If the mode is unknown or the mapping mixes nested and flat entries.
    """
    if isinstance(genes, (FeatureMode, PairwiseMarkers, PerLabelMarkers)):
        return genes
    if isinstance(genes, str):
        try:
            return FeatureMode(genes.lower())
        except ValueError:
            valid = [m.value for m in FeatureMode]
            raise ValueError(f"'genes' must be one of {valid}, got '{genes}'") from None
    if isinstance(genes, Mapping):
        is_nested = [isinstance(v, Mapping) for v in genes.values()]
        if is_nested and all(is_nested):
            return PairwiseMarkers(genes)
        if any(is_nested):
            raise ValueError(
                "'genes' must be a mapping of gene lists or a mapping of mappings of gene lists"
            )
        for label, value in genes.items():
            if not isinstance(value, (str, Iterable)):
                raise ValueError(f"markers for label '{label}' must be a list of genes")
        return PerLabelMarkers(genes)
    raise ValueError(f"Unsupported 'genes' specification of type {type(genes).__name__}")


def convert_per_label_markers(
    markers: Mapping[str, Sequence[str]],
) -> Dict[str, Dict[str, Tuple[str, ...]]]:
    """Convert per-label markers into the pairwise layout.

    Each label's markers are placed on the diagonal so they are included
    whenever that label takes part in a comparison.
    """
    all_labels = list(markers)
    converted: Dict[str, Dict[str, Tuple[str, ...]]] = {}
    for a in all_labels:
        converted[a] = {b: () for b in all_labels}
        converted[a][a] = _as_gene_tuple(markers[a])
    return converted


def median_by_label(ref: pd.DataFrame, labels: np.ndarray) -> pd.DataFrame:
    """Per-gene median expression within each label.

    Returns
    -------
    pd.DataFrame
        genes x labels, labels in order of first appearance.
    """
    ulabels = pd.unique(labels)
    values = ref.to_numpy()
    output = np.zeros((values.shape[0], len(ulabels)), dtype=np.float64)
    for i, u in enumerate(ulabels):
        output[:, i] = np.median(values[:, labels == u], axis=1)
    return pd.DataFrame(output, index=ref.index, columns=list(ulabels))


def default_de_n(n_labels: int) -> int:
    """Default number of markers per label pair.

    Fewer genes per pair as the label count grows, so the union over all
    pairs stays manageable.
    """
    return int(round(500 * (2.0 / 3.0) ** math.log2(max(n_labels, 1))))


def genes_by_de(
    medians: pd.DataFrame,
    de_n: Optional[int] = None,
) -> Dict[str, Dict[str, Tuple[str, ...]]]:
    """Top genes by positive median difference for each ordered label pair."""
    ulabels = list(medians.columns)
    if de_n is None:
        de_n = default_de_n(len(ulabels))
    genes = medians.index.to_numpy()
    values = medians.to_numpy()

    collected: Dict[str, Dict[str, Tuple[str, ...]]] = {}
    for i, a in enumerate(ulabels):
        subcollected: Dict[str, Tuple[str, ...]] = {}
        for j, b in enumerate(ulabels):
            diff = values[:, i] - values[:, j]
            order = np.argsort(-diff, kind="stable")
            order = order[diff[order] > 0][:de_n]
            subcollected[b] = tuple(str(g) for g in genes[order])
        collected[a] = subcollected
    return collected


def sd_across_medians(medians: pd.DataFrame, labels: Optional[Sequence[str]] = None) -> np.ndarray:
    """Per-gene standard deviation of label medians (ddof=1)."""
    values = medians.to_numpy() if labels is None else medians.loc[:, list(labels)].to_numpy()
    if values.shape[1] < 2:
        return np.full(values.shape[0], np.nan)
    return np.std(values, axis=1, ddof=1)


def genes_by_sd(
    medians: pd.DataFrame,
    sd_thresh: float = 1.0,
    labels: Optional[Sequence[str]] = None,
) -> Tuple[str, ...]:
    """Genes whose label medians vary by more than ``sd_thresh``."""
    sd = sd_across_medians(medians, labels)
    with np.errstate(invalid="ignore"):
        keep = sd > sd_thresh
    return tuple(str(g) for g in medians.index[keep])


@dataclass(frozen=True)
class FeatureSelection:
    """Outcome of feature selection, echoed into the trained reference.

    Attributes:
        mode: "de" for pairwise structures, "sd" for variability-based
            selection (also used for genes="all")
        common_genes: Every gene needed for training and fine-tuning
        markers: Pairwise markers (mode "de")
        medians: Label medians over all genes (mode "sd")
        args: Mode-specific parameters such as sd_thresh
        source: The requested specification ("de", "sd", "all",
            "pairwise" or "per_label")
    """

    mode: str
    common_genes: Tuple[str, ...]
    markers: Optional[MarkerSet] = None
    medians: Optional[pd.DataFrame] = None
    args: Dict[str, Any] = field(default_factory=dict)
    source: str = "de"


def select_features(
    ref: pd.DataFrame,
    labels: np.ndarray,
    genes: Any = "de",
    sd_thresh: float = 1.0,
    de_n: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
) -> FeatureSelection:
    """Select the genes used for training and fine-tuning.

    Args:
        ref: Clean genes x samples reference matrix
        labels: One label per reference sample
        genes: Mode string, FeatureSpec, or marker mapping
        sd_thresh: Threshold for genes="sd"/"all"
        de_n: Markers per pair for genes="de" (None = default)
        logger: Optional logger instance

    Returns:
        FeatureSelection with the common gene set and marker structure

    Raises:
        ValueError: For malformed marker structures or markers absent
            from the reference
    """
    if logger is None:
        logger = logging.getLogger(__name__)

    spec = resolve_feature_spec(genes)
    ulabels = tuple(str(u) for u in pd.unique(labels))

    if isinstance(spec, (PairwiseMarkers, PerLabelMarkers)):
        if isinstance(spec, PerLabelMarkers):
            source = "per_label"
            raw = convert_per_label_markers(spec.markers)
        else:
            source = "pairwise"
            raw = {
                str(a): {str(b): _as_gene_tuple(v) for b, v in inner.items()}
                for a, inner in spec.markers.items()
            }
        validate_pairwise_markers(raw, ulabels)
        marker_set = MarkerSet(
            labels=ulabels,
            markers={a: {b: raw[a][b] for b in ulabels} for a in ulabels},
        )
        common = marker_set.union()
        absent = [g for g in common if g not in ref.index]
        if absent:
            raise ValueError(
                f"{len(absent)} marker genes are not present in 'ref': {absent[:5]}"
            )
        logger.info(
            "Using %s markers: %d common genes across %d labels",
            source.replace("_", "-"),
            len(common),
            len(ulabels),
        )
        return FeatureSelection(
            mode="de", common_genes=common, markers=marker_set, source=source
        )

    medians = median_by_label(ref, labels)

    if spec is FeatureMode.DE:
        if de_n is None:
            de_n = default_de_n(len(ulabels))
        marker_set = MarkerSet(labels=ulabels, markers=genes_by_de(medians, de_n=de_n))
        common = marker_set.union()
        if len(ulabels) == 1:
            # No pairs to separate; score the label on every gene
            common = tuple(str(g) for g in ref.index)
            logger.info("Single label: using all %d genes", len(common))
            return FeatureSelection(
                mode="de",
                common_genes=common,
                markers=marker_set,
                args={"de_n": de_n},
                source="de",
            )
        logger.info(
            "Selected %d common genes by pairwise median differences (de_n=%d)",
            len(common),
            de_n,
        )
        return FeatureSelection(
            mode="de",
            common_genes=common,
            markers=marker_set,
            args={"de_n": de_n},
            source="de",
        )

    if spec is FeatureMode.SD:
        common = genes_by_sd(medians, sd_thresh=sd_thresh)
        logger.info(
            "Selected %d genes with median SD above %.3f", len(common), sd_thresh
        )
        source = "sd"
    else:
        common = tuple(str(g) for g in ref.index)
        logger.info("Using all %d genes", len(common))
        source = "all"

    return FeatureSelection(
        mode="sd",
        common_genes=common,
        medians=medians,
        args={"sd_thresh": sd_thresh},
        source=source,
    )
