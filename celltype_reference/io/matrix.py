"""Expression matrix I/O utilities for CellType-Reference.

Provides coercion of DataFrames and AnnData objects into clean
genes x samples matrices, plus loaders for expression tables and labels.
"""

from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Any, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import sparse

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def ensure_output_dir(path: PathLike) -> Path:
    """Create the directory at path if it does not exist and return it.

    Parameters
    ----------
    path : PathLike
        Directory path to create.

    Returns
    -------
    Path
        The created/existing directory path.
    """
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _is_anndata(x: Any) -> bool:
    """Check for an AnnData object without importing anndata eagerly."""
    return hasattr(x, "obs_names") and hasattr(x, "var_names") and hasattr(x, "X")


def _anndata_to_frame(adata: Any, layer: Optional[str], name: str) -> pd.DataFrame:
    """Transpose a cells x genes AnnData into a genes x cells DataFrame."""
    if layer is not None:
        if layer not in adata.layers:
            available = list(adata.layers.keys())
            raise ValueError(
                f"Layer '{layer}' not found in '{name}' (available: {available})"
            )
        matrix = adata.layers[layer]
    else:
        matrix = adata.X
    matrix = matrix.toarray() if sparse.issparse(matrix) else np.asarray(matrix)
    return pd.DataFrame(
        matrix.T,
        index=pd.Index(adata.var_names.astype(str)),
        columns=pd.Index(adata.obs_names.astype(str)),
    )


def _validate_identifiers(df: pd.DataFrame, name: str) -> None:
    """Validate gene and sample identifiers of an expression frame.

    Raises
    ------
    ValueError
        If row names are absent or identifiers are not unique.
    """
    if isinstance(df.index, pd.RangeIndex):
        raise ValueError(f"'{name}' must have row names")
    if not df.index.is_unique:
        dupes = df.index[df.index.duplicated()].unique().tolist()
        raise ValueError(f"'{name}' has duplicated row names: {dupes[:5]}")
    if not df.columns.is_unique:
        dupes = df.columns[df.columns.duplicated()].unique().tolist()
        raise ValueError(f"'{name}' has duplicated column names: {dupes[:5]}")


def to_clean_matrix(
    x: Any,
    layer: Optional[str] = None,
    check_missing: bool = True,
    name: str = "x",
) -> pd.DataFrame:
    """Coerce input into a clean genes x samples float matrix.

    Parameters
    ----------
    x : pd.DataFrame or AnnData
        Expression values. DataFrames are genes x samples with gene
        identifiers as the index. AnnData objects are cells x genes and
        are transposed.
    layer : str, optional
        AnnData layer to use (None = adata.X). Ignored for DataFrames.
    check_missing : bool
        If True, drop genes with any missing value and warn.
    name : str
        Name used in error and warning messages.

    Returns
    -------
    pd.DataFrame
        Float64 genes x samples matrix with unique string identifiers.

    Raises
    ------
    ValueError
        If row names are missing or identifiers are duplicated.
    """
    if _is_anndata(x):
        df = _anndata_to_frame(x, layer, name)
    elif isinstance(x, pd.DataFrame):
        df = x
    else:
        raise ValueError(f"'{name}' must have row names")

    _validate_identifiers(df, name)
    df = df.astype(np.float64)
    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)

    if check_missing:
        discard = df.isna().any(axis=1).to_numpy()
        if discard.any():
            message = f"'{name}' contains rows with missing values"
            logger.warning("%s (%d dropped)", message, int(discard.sum()))
            warnings.warn(message, UserWarning, stacklevel=2)
            df = df.loc[~discard]

    return df


def coerce_labels(labels: Any, n_samples: int, name: str = "labels") -> np.ndarray:
    """Convert a label vector to a string array of the expected length.

    Raises
    ------
    ValueError
        If the number of labels differs from the number of samples or a
        label is missing.
    """
    if isinstance(labels, (pd.Series, pd.Categorical, pd.Index)):
        values = pd.Series(labels)
    else:
        values = pd.Series(list(labels))
    if values.isna().any():
        raise ValueError(f"'{name}' contains missing values")
    if len(values) != n_samples:
        raise ValueError(
            f"'{name}' has {len(values)} entries but the matrix has {n_samples} samples"
        )
    return values.astype(str).to_numpy()


def load_expression_matrix(
    path: PathLike,
    layer: Optional[str] = None,
) -> Any:
    """Read an expression matrix from CSV or h5ad.

    CSV files are genes x samples with gene identifiers in the first
    column. h5ad files are returned as AnnData (cells x genes); use
    ``to_clean_matrix`` to transpose.

    Parameters
    ----------
    path : PathLike
        CSV or .h5ad file.
    layer : str, optional
        For h5ad input, copy this layer into ``adata.X`` so downstream
        code reads it by default. Ignored for CSV input.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If ``layer`` is not a layer of the h5ad file.
    """
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Expression matrix not found: {file_path}")

    if file_path.suffix == ".h5ad":
        import scanpy as sc

        adata = sc.read_h5ad(file_path)
        if layer is not None:
            if layer not in adata.layers:
                raise ValueError(
                    f"Layer '{layer}' not found in {file_path.name} "
                    f"(available: {list(adata.layers.keys())})"
                )
            adata.X = adata.layers[layer].copy()
        logger.info(
            "Loaded %s: %d cells, %d genes", file_path.name, adata.n_obs, adata.n_vars
        )
        return adata

    if layer is not None:
        logger.debug("Ignoring layer '%s' for CSV input %s", layer, file_path.name)
    df = pd.read_csv(file_path, index_col=0)
    df.index = df.index.astype(str)
    logger.info("Loaded %s: %d genes, %d samples", file_path.name, *df.shape)
    return df


def load_labels(
    path: PathLike,
    column: Optional[str] = None,
    sample_ids: Optional[Sequence[str]] = None,
) -> np.ndarray:
    """Read a label vector from a CSV file.

    Parameters
    ----------
    path : PathLike
        CSV with sample identifiers in the first column.
    column : str, optional
        Label column. Defaults to the first non-index column.
    sample_ids : Sequence[str], optional
        If given, labels are reordered to match these samples.

    Returns
    -------
    np.ndarray
        String labels.
    """
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Label file not found: {file_path}")
    df = pd.read_csv(file_path, index_col=0)
    if df.empty or len(df.columns) == 0:
        raise ValueError(f"Label file {file_path} is empty")
    if column is None:
        column = df.columns[0]
    if column not in df.columns:
        raise ValueError(f"Label column '{column}' not found in {file_path}")

    series = df[column]
    series.index = series.index.astype(str)
    if sample_ids is not None:
        missing = [s for s in sample_ids if s not in series.index]
        if missing:
            raise ValueError(f"No label for samples: {missing[:5]}")
        series = series.loc[list(sample_ids)]
    return series.astype(str).to_numpy()


def write_dataframe(df: pd.DataFrame, path: PathLike, *, index: bool = False) -> Path:
    """Write DataFrame to path ensuring the parent directory exists.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame to write.
    path : PathLike
        Output path.
    index : bool
        Whether to write row index (default: False).

    Returns
    -------
    Path
        The output path.
    """
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=index)
    return output_path
