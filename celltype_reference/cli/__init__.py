"""Command-line interface for CellType-Reference.

Example Usage
-------------
    # From command line:
    celltype-reference --help
    celltype-reference train --ref ref.csv --labels labels.csv --out ref/
    celltype-reference classify --test test.h5ad --reference ref/reference.joblib --out pred/
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
