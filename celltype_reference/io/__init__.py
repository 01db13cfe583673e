"""I/O utilities for CellType-Reference.

Provides logging, expression matrix I/O, and reference persistence.
"""

from .logging import get_logger, get_timestamped_log_path, log_json, log_yaml, run_record
from .matrix import (
    coerce_labels,
    ensure_output_dir,
    load_expression_matrix,
    load_labels,
    to_clean_matrix,
    write_dataframe,
)
from .reference import load_reference, save_reference

__all__ = [
    # Logging
    "get_logger",
    "get_timestamped_log_path",
    "log_json",
    "log_yaml",
    "run_record",
    # Matrix I/O
    "coerce_labels",
    "ensure_output_dir",
    "load_expression_matrix",
    "load_labels",
    "to_clean_matrix",
    "write_dataframe",
    # Reference persistence
    "load_reference",
    "save_reference",
]
