"""Test fixtures for CellType-Reference.

Provides mock data generators and test utilities.
"""

from .mock_reference import (
    DEFAULT_LABELS,
    create_labelled_matrix,
    create_mock_adata,
    create_mock_reference,
    create_mock_test,
    gene_structure,
)

__all__ = [
    "DEFAULT_LABELS",
    "create_labelled_matrix",
    "create_mock_adata",
    "create_mock_reference",
    "create_mock_test",
    "gene_structure",
]
