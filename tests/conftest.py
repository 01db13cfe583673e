"""Pytest configuration and shared fixtures for CellType-Reference tests."""

import sys
from pathlib import Path

import pytest
import numpy as np
import pandas as pd

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Import mock data generators
from tests.fixtures import (
    create_mock_adata,
    create_mock_reference,
    create_mock_test,
)


# ============================================================================
# Mock Data Fixtures
# ============================================================================


@pytest.fixture
def reference_data():
    """Labelled reference: 60 genes x 30 samples over 3 labels."""
    return create_mock_reference(n_per_label=10)


@pytest.fixture
def test_data():
    """Test set sharing the reference structure: 60 genes x 15 samples."""
    return create_mock_test(n_per_label=5)


@pytest.fixture
def ref_expr(reference_data) -> pd.DataFrame:
    return reference_data[0]


@pytest.fixture
def ref_labels(reference_data) -> np.ndarray:
    return reference_data[1]


@pytest.fixture
def test_expr(test_data) -> pd.DataFrame:
    return test_data[0]


@pytest.fixture
def true_labels(test_data) -> np.ndarray:
    return test_data[1]


@pytest.fixture
def ref_adata(ref_expr, ref_labels):
    """Reference as cells x genes AnnData with a logcounts layer."""
    return create_mock_adata(ref_expr, ref_labels)


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


# ============================================================================
# Trained Reference Fixtures
# ============================================================================


@pytest.fixture
def trained_de(ref_expr, ref_labels):
    """Reference trained with pairwise median-difference markers."""
    from celltype_reference.core.classification import train_reference

    return train_reference(ref_expr, ref_labels, genes="de")


@pytest.fixture
def trained_sd(ref_expr, ref_labels):
    """Reference trained with variability-based gene selection."""
    from celltype_reference.core.classification import train_reference

    return train_reference(ref_expr, ref_labels, genes="sd", sd_thresh=1.0)


# ============================================================================
# Score Matrix Fixtures
# ============================================================================


@pytest.fixture
def staircase_scores() -> pd.DataFrame:
    """5 x 5 scores where row i has i + 1 trailing ones."""
    values = np.array([
        [0, 0, 0, 0, 1],
        [0, 0, 0, 1, 1],
        [0, 0, 1, 1, 1],
        [0, 1, 1, 1, 1],
        [1, 1, 1, 1, 1],
    ], dtype=float)
    return pd.DataFrame(values, columns=list("ABCDE"))


@pytest.fixture
def stacked_diagonal_scores() -> pd.DataFrame:
    """Identity matrix stacked with copies scaled by 0.9, 0.8 and 0.1."""
    eye = np.eye(5)
    values = np.vstack([eye, eye * 0.9, eye * 0.8, eye * 0.1])
    return pd.DataFrame(values, columns=list("ABCDE"))


@pytest.fixture
def sample_config_yaml(tmp_path) -> Path:
    """Create a sample configuration file."""
    import yaml

    config = {
        "reference": {
            "training": {"genes": "sd", "sd_thresh": 0.5},
            "neighbors": {"algorithm": "brute"},
            "classification": {"quantile": 0.9, "tune_thresh": 0.1},
            "pruning": {"nmads": 2.5},
        }
    }
    path = tmp_path / "config.yaml"
    with open(path, "w") as f:
        yaml.safe_dump(config, f)
    return path
