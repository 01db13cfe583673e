"""Statistical utilities for CellType-Reference.

Provides robust statistics (median, MAD, lower-outlier thresholds) used
when flagging low-quality label assignments.
"""

from __future__ import annotations

from typing import Iterable, Tuple, Union

import numpy as np
from scipy.stats import median_abs_deviation

ArrayLike = Union[Iterable[float], np.ndarray]


def _to_clean_array(values: ArrayLike) -> np.ndarray:
    """Convert input to clean numpy array, removing non-finite values.

    Parameters
    ----------
    values : ArrayLike
        Input values (list, iterable, or array).

    Returns
    -------
    np.ndarray
        Clean array with only finite values.
    """
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return arr
    return arr[np.isfinite(arr)]


def median_mad(values: ArrayLike) -> Tuple[float, float]:
    """Median and normal-consistent MAD of the finite values.

    The MAD is scaled by 1.4826 so that it estimates the standard
    deviation for normally distributed data.

    Parameters
    ----------
    values : ArrayLike
        Input values.

    Returns
    -------
    Tuple[float, float]
        (median, scaled MAD). Both NaN if no finite value is present.
    """
    arr = _to_clean_array(values)
    if arr.size == 0:
        return float("nan"), float("nan")
    return float(np.median(arr)), float(median_abs_deviation(arr, scale="normal"))


def lower_outlier_threshold(values: ArrayLike, nmads: float = 3.0) -> float:
    """Lower outlier bound ``median - nmads * MAD``.

    Parameters
    ----------
    values : ArrayLike
        Input values.
    nmads : float
        Number of scaled MADs below the median.

    Returns
    -------
    float
        Threshold; values strictly below it are outliers. NaN if fewer
        than two finite values are available.
    """
    arr = _to_clean_array(values)
    if arr.size < 2:
        return float("nan")
    median, mad = median_mad(arr)
    return median - nmads * mad

