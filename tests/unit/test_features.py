"""Unit tests for feature selection."""

import pytest
import numpy as np
import pandas as pd

from celltype_reference.core.classification.features import (
    FeatureMode,
    MarkerSet,
    PairwiseMarkers,
    PerLabelMarkers,
    convert_per_label_markers,
    default_de_n,
    genes_by_de,
    genes_by_sd,
    median_by_label,
    resolve_feature_spec,
    select_features,
    validate_pairwise_markers,
)


@pytest.fixture
def small_ref():
    """4 genes x 6 samples over labels A, B, C."""
    values = np.array([
        [5.0, 6.0, 0.0, 1.0, 0.0, 0.0],
        [0.0, 0.0, 4.0, 5.0, 0.0, 1.0],
        [1.0, 1.0, 1.0, 1.0, 7.0, 8.0],
        [2.0, 2.0, 2.0, 2.0, 2.0, 2.0],
    ])
    ref = pd.DataFrame(values, index=["g1", "g2", "g3", "g4"],
                       columns=[f"s{i}" for i in range(6)])
    labels = np.array(["A", "A", "B", "B", "C", "C"])
    return ref, labels


class TestResolveFeatureSpec:
    """Tests for resolve_feature_spec."""

    def test_mode_strings(self):
        """Test mode strings resolve case-insensitively."""
        assert resolve_feature_spec("de") is FeatureMode.DE
        assert resolve_feature_spec("SD") is FeatureMode.SD
        assert resolve_feature_spec("all") is FeatureMode.ALL

    def test_unknown_mode(self):
        """Test an unknown mode is rejected."""
        with pytest.raises(ValueError, match="must be one of"):
            resolve_feature_spec("wilcox")

    def test_flat_mapping(self):
        """Test label -> genes resolves to per-label markers."""
        spec = resolve_feature_spec({"A": ["g1"], "B": ["g2"]})
        assert isinstance(spec, PerLabelMarkers)

    def test_nested_mapping(self):
        """Test label -> label -> genes resolves to pairwise markers."""
        spec = resolve_feature_spec({"A": {"A": [], "B": ["g1"]}, "B": {"A": ["g2"], "B": []}})
        assert isinstance(spec, PairwiseMarkers)

    def test_mixed_mapping(self):
        """Test mixing nested and flat entries is rejected."""
        with pytest.raises(ValueError):
            resolve_feature_spec({"A": {"B": ["g1"]}, "B": ["g2"]})

    def test_unsupported_type(self):
        """Test unsupported specification types are rejected."""
        with pytest.raises(ValueError):
            resolve_feature_spec(42)


class TestPairwiseValidation:
    """Tests for marker structure validation."""

    def test_missing_label(self):
        """Test a label without an entry is rejected."""
        with pytest.raises(ValueError, match="each label"):
            validate_pairwise_markers({"A": {"A": [], "B": []}}, ["A", "B"])

    def test_missing_pair(self):
        """Test a missing ordered pair is rejected."""
        markers = {"A": {"A": [], "B": ["g1"]}, "B": {"A": ["g2"]}}
        with pytest.raises(ValueError, match="each pair"):
            validate_pairwise_markers(markers, ["A", "B"])

    def test_missing_self_entry(self):
        """Test a missing diagonal entry is rejected."""
        markers = {"A": {"B": ["g1"]}, "B": {"A": ["g2"], "B": []}}
        with pytest.raises(ValueError, match="each pair"):
            validate_pairwise_markers(markers, ["A", "B"])

    def test_marker_set_validates(self):
        """Test MarkerSet construction validates its markers."""
        with pytest.raises(ValueError):
            MarkerSet(labels=("A", "B"), markers={"A": {"A": (), "B": ()}})


class TestMarkerSet:
    """Tests for MarkerSet."""

    def test_union_includes_diagonal(self):
        """Test unions include diagonal entries in first-seen order."""
        markers = MarkerSet(
            labels=("A", "B", "C"),
            markers=convert_per_label_markers({"A": ["g1", "g2"], "B": ["g2", "g3"], "C": ["g4"]}),
        )
        assert markers.union(["A", "B"]) == ("g1", "g2", "g3")
        assert markers.union() == ("g1", "g2", "g3", "g4")

    def test_n_markers(self):
        """Test marker counts per ordered pair."""
        markers = MarkerSet(
            labels=("A", "B"),
            markers={"A": {"A": (), "B": ("g1", "g2")}, "B": {"A": ("g3",), "B": ()}},
        )
        counts = markers.n_markers()
        assert counts.loc["A", "B"] == 2
        assert counts.loc["B", "A"] == 1
        assert counts.loc["A", "A"] == 0


class TestDefaultDeN:
    """Tests for default_de_n."""

    def test_values(self):
        """Test fewer markers are kept as the label count grows."""
        assert default_de_n(1) == 500
        assert default_de_n(2) == 333
        assert default_de_n(4) == 222
        assert default_de_n(8) > default_de_n(16)


class TestMedianDifferences:
    """Tests for de and sd gene selection."""

    def test_median_by_label_order(self, small_ref):
        """Test medians use first-appearance label order."""
        ref, labels = small_ref
        medians = median_by_label(ref, labels)
        assert list(medians.columns) == ["A", "B", "C"]
        assert medians.loc["g1", "A"] == pytest.approx(5.5)

    def test_de_markers_positive_only(self, small_ref):
        """Test pairwise markers have strictly positive median differences."""
        ref, labels = small_ref
        medians = median_by_label(ref, labels)
        collected = genes_by_de(medians, de_n=10)
        for a in medians.columns:
            for b in medians.columns:
                for gene in collected[a][b]:
                    assert medians.loc[gene, a] - medians.loc[gene, b] > 0
        assert collected["A"]["A"] == ()
        assert collected["A"]["B"][0] == "g1"

    def test_de_n_limits_markers(self, small_ref):
        """Test de_n caps the markers per pair, largest difference first."""
        ref, labels = small_ref
        collected = genes_by_de(median_by_label(ref, labels), de_n=1)
        assert collected["C"]["A"] == ("g3",)

    def test_sd_selection(self, small_ref):
        """Test genes with variable medians are selected."""
        ref, labels = small_ref
        medians = median_by_label(ref, labels)
        assert genes_by_sd(medians, sd_thresh=1.0) == ("g1", "g2", "g3")
        assert genes_by_sd(medians, sd_thresh=100.0) == ()

    def test_sd_single_label(self, small_ref):
        """Test a single label selects no gene."""
        ref, labels = small_ref
        medians = median_by_label(ref, labels)
        assert genes_by_sd(medians, sd_thresh=0.0, labels=["A"]) == ()


class TestSelectFeatures:
    """Tests for select_features."""

    def test_de_common_is_union(self, small_ref):
        """Test the common set equals the union of pairwise lists."""
        ref, labels = small_ref
        selection = select_features(ref, labels, genes="de")
        assert selection.mode == "de"
        expected = set()
        for a in selection.markers.labels:
            for b in selection.markers.labels:
                expected.update(selection.markers.get(a, b))
        assert set(selection.common_genes) == expected
        assert "g4" not in selection.common_genes

    def test_de_single_label_uses_every_gene(self, small_ref):
        """Test a single label in de mode keeps every reference gene."""
        ref, labels = small_ref
        mask = labels == "A"
        selection = select_features(ref.loc[:, mask], labels[mask], genes="de")
        assert selection.mode == "de"
        assert selection.common_genes == tuple(ref.index)
        assert selection.markers.union() == ()

    def test_all_keeps_every_gene(self, small_ref):
        """Test genes='all' keeps every gene and records sd mode."""
        ref, labels = small_ref
        selection = select_features(ref, labels, genes="all")
        assert selection.common_genes == tuple(ref.index)
        assert selection.mode == "sd"
        assert selection.source == "all"
        assert selection.medians is not None

    def test_per_label_markers(self, small_ref):
        """Test per-label markers are placed on the diagonal."""
        ref, labels = small_ref
        selection = select_features(ref, labels, genes={"A": ["g1"], "B": ["g2"], "C": "g3"})
        assert selection.source == "per_label"
        assert selection.markers.get("A", "A") == ("g1",)
        assert selection.markers.get("A", "B") == ()
        assert selection.markers.get("C", "C") == ("g3",)
        assert selection.common_genes == ("g1", "g2", "g3")

    def test_per_label_missing_label(self, small_ref):
        """Test per-label markers must cover every label."""
        ref, labels = small_ref
        with pytest.raises(ValueError, match="each label"):
            select_features(ref, labels, genes={"A": ["g1"], "B": ["g2"]})

    def test_pairwise_markers(self, small_ref):
        """Test user pairwise markers are used as given."""
        ref, labels = small_ref
        markers = {
            a: {b: ([] if a == b else ["g4"]) for b in "ABC"} for a in "ABC"
        }
        markers["A"]["B"] = ["g1", "g4"]
        selection = select_features(ref, labels, genes=markers)
        assert selection.source == "pairwise"
        assert selection.markers.get("A", "B") == ("g1", "g4")
        assert set(selection.common_genes) == {"g1", "g4"}

    def test_markers_absent_from_reference(self, small_ref):
        """Test marker genes missing from the reference are rejected."""
        ref, labels = small_ref
        with pytest.raises(ValueError, match="not present"):
            select_features(ref, labels, genes={"A": ["nope"], "B": ["g2"], "C": ["g3"]})
