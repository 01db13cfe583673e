"""Unit tests for reference training and index construction."""

import pytest
import numpy as np
import pandas as pd

from celltype_reference.core.classification import (
    NeighborConfig,
    TrainingConfig,
    build_label_index,
    train_reference,
)


class TestTrainReference:
    """Tests for train_reference."""

    def test_de_training(self, trained_de, ref_expr):
        """Test de training builds one index per label."""
        assert trained_de.labels == ("B_cell", "T_cell", "Monocyte")
        assert set(trained_de.nn_indices) == set(trained_de.labels)
        assert trained_de.mode == "de"
        assert trained_de.markers is not None
        assert set(trained_de.common_genes) <= set(ref_expr.index)

    def test_original_blocks_keep_all_genes(self, trained_de, ref_expr):
        """Test per-label raw blocks keep every reference gene."""
        for label, block in trained_de.original_exprs.items():
            assert block.shape == (ref_expr.shape[0], 10)
            assert block.dtypes.eq(np.float64).all()

    def test_index_dimensions(self, trained_de):
        """Test indices are built over the common genes."""
        for index in trained_de.nn_indices.values():
            assert index.n_genes == len(trained_de.common_genes)
            assert index.n_samples == 10

    def test_all_genes(self, ref_expr, ref_labels):
        """Test genes='all' keeps every gene in the common set."""
        trained = train_reference(ref_expr, ref_labels, genes="all")
        assert len(trained.common_genes) == ref_expr.shape[0]
        assert trained.mode == "sd"

    def test_sd_training(self, trained_sd):
        """Test sd training keeps only the label-specific marker genes."""
        assert trained_sd.mode == "sd"
        assert len(trained_sd.common_genes) == 24
        assert trained_sd.search.args["sd_thresh"] == 1.0

    def test_config_values_used(self, ref_expr, ref_labels):
        """Test TrainingConfig supplies defaults for omitted arguments."""
        trained = train_reference(
            ref_expr, ref_labels, genes="de", config=TrainingConfig(de_n=2)
        )
        assert trained.search.args["de_n"] == 2
        counts = trained.markers.n_markers().to_numpy()
        assert counts.max() <= 2

    def test_non_euclidean_metric(self, ref_expr, ref_labels):
        """Test a non-Euclidean metric is rejected."""
        with pytest.raises(ValueError, match="euclidean"):
            train_reference(
                ref_expr, ref_labels, neighbor_config=NeighborConfig(metric="manhattan")
            )

    def test_missing_row_names(self, ref_expr, ref_labels):
        """Test a matrix without gene identifiers is rejected."""
        with pytest.raises(ValueError, match="must have row names"):
            train_reference(ref_expr.reset_index(drop=True), ref_labels)
        with pytest.raises(ValueError, match="must have row names"):
            train_reference(ref_expr.to_numpy(), ref_labels)

    def test_duplicate_genes(self, ref_expr, ref_labels):
        """Test duplicated gene identifiers are rejected."""
        dup = ref_expr.copy()
        dup.index = ["Gene_0"] + list(dup.index[1:-1]) + ["Gene_0"]
        with pytest.raises(ValueError, match="duplicated"):
            train_reference(dup, ref_labels)

    def test_label_length_mismatch(self, ref_expr, ref_labels):
        """Test the label count must match the sample count."""
        with pytest.raises(ValueError):
            train_reference(ref_expr, ref_labels[:-1])

    def test_missing_values_dropped(self, ref_expr, ref_labels):
        """Test rows with missing values are dropped with a warning."""
        ref = ref_expr.copy()
        ref.iloc[59, 0] = np.nan
        with pytest.warns(UserWarning, match="missing values"):
            trained = train_reference(ref, ref_labels, genes="all")
        assert len(trained.common_genes) == 59
        assert "Gene_59" not in trained.gene_index

    def test_no_genes_selected(self, ref_expr, ref_labels):
        """Test an empty gene selection is an error."""
        with pytest.raises(ValueError, match="No genes"):
            train_reference(ref_expr, ref_labels, genes="sd", sd_thresh=100.0)

    def test_anndata_input(self, ref_adata, ref_labels):
        """Test AnnData input is transposed and the layer is honoured."""
        trained = train_reference(
            ref_adata, ref_labels, genes="sd", config=TrainingConfig(layer="logcounts")
        )
        assert len(trained.common_genes) == 24

    def test_parallel_matches_sequential(self, ref_expr, ref_labels):
        """Test index construction with workers gives the same scores."""
        sequential = train_reference(ref_expr, ref_labels, genes="sd")
        parallel = train_reference(
            ref_expr, ref_labels, genes="sd", config=TrainingConfig(n_workers=2)
        )
        queries = np.random.RandomState(0).normal(size=(3, len(sequential.common_genes)))
        for label in sequential.labels:
            np.testing.assert_allclose(
                sequential.nn_indices[label].kth_distance(queries, 2),
                parallel.nn_indices[label].kth_distance(queries, 2),
            )

    def test_summary(self, trained_de):
        """Test the summary lists labels and sample counts."""
        summary = trained_de.summary()
        assert summary["n_labels"] == 3
        assert summary["n_samples"] == {"B_cell": 10, "T_cell": 10, "Monocyte": 10}
        assert summary["mode"] == "de"


class TestBuildLabelIndex:
    """Tests for build_label_index."""

    def test_self_query(self):
        """Test querying a reference sample returns correlation 1."""
        values = np.random.RandomState(5).normal(size=(30, 8))
        index = build_label_index("A", values, NeighborConfig(algorithm="brute"))
        from celltype_reference.core.classification import scaled_colranks

        queries = scaled_colranks(values).T
        np.testing.assert_allclose(index.quantile_correlation(queries, 1.0), 1.0)

    def test_rejects_non_euclidean(self):
        """Test the index refuses non-Euclidean metrics."""
        with pytest.raises(ValueError):
            build_label_index("A", np.ones((5, 3)), NeighborConfig(metric="cosine"))
