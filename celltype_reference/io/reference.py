"""Persistence of trained references.

A TrainedReference is stored with joblib so it can be trained once and
reused across many classification runs.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Union

import joblib

if TYPE_CHECKING:
    from ..core.classification.training import TrainedReference

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def save_reference(trained: "TrainedReference", path: PathLike, compress: int = 3) -> Path:
    """Write a trained reference to ``path``.

    Parameters
    ----------
    trained : TrainedReference
        Reference returned by ``train_reference``.
    path : PathLike
        Output file, conventionally ``reference.joblib``.
    compress : int
        joblib compression level (0-9).

    Returns
    -------
    Path
        The output path.
    """
    from ..core.classification.training import TrainedReference

    if not isinstance(trained, TrainedReference):
        raise TypeError(f"Expected TrainedReference, got {type(trained).__name__}")
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    joblib.dump(trained, output_path, compress=compress)
    logger.info(
        "Saved reference with %d labels and %d common genes to %s",
        len(trained.labels),
        len(trained.common_genes),
        output_path,
    )
    return output_path


def load_reference(path: PathLike) -> "TrainedReference":
    """Load a trained reference written by ``save_reference``.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    TypeError
        If the file does not hold a TrainedReference.
    """
    from ..core.classification.training import TrainedReference

    input_path = Path(path)
    if not input_path.exists():
        raise FileNotFoundError(f"Reference not found: {input_path}")
    trained = joblib.load(input_path)
    if not isinstance(trained, TrainedReference):
        raise TypeError(
            f"{input_path} does not contain a TrainedReference "
            f"(found {type(trained).__name__})"
        )
    logger.info("Loaded reference with %d labels from %s", len(trained.labels), input_path)
    return trained
