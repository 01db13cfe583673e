"""Utility functions for CellType-Reference.

Provides statistical helpers used across modules.
"""

from .stats import (
    lower_outlier_threshold,
    median_mad,
)

__all__ = [
    "lower_outlier_threshold",
    "median_mad",
]
