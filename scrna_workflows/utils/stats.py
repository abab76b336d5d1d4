"""Statistical utilities for scRNA-Workflows.

Provides robust outlier bounds, p-value combination and multiple-testing
correction, and small numeric helpers shared by the stages.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import stats
from statsmodels.stats.multitest import multipletests

ArrayLike = Union[Iterable[float], np.ndarray]

# Scale factor making the MAD consistent with the SD of a normal distribution
MAD_SCALE = 1.4826


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


def compute_percentiles(values: ArrayLike, percentiles: Sequence[float]) -> np.ndarray:
    """Compute percentile values ignoring NaNs.

    Parameters
    ----------
    values : ArrayLike
        Input values.
    percentiles : Sequence[float]
        Percentiles to compute (0-100).

    Returns
    -------
    np.ndarray
        Computed percentile values. Returns NaN array if input is empty.
    """
    arr = _to_clean_array(values)
    if arr.size == 0:
        return np.full(len(percentiles), np.nan)
    return np.percentile(arr, percentiles)


def outlier_bounds(
    values: ArrayLike,
    nmads: float = 3.0,
    *,
    log: bool = False,
    lower: bool = True,
    upper: bool = True,
    min_diff: Optional[float] = None,
) -> Tuple[float, float]:
    """Compute MAD-based outlier bounds around the median.

    Bounds are ``median -/+ nmads * MAD`` where the MAD is scaled by
    1.4826. With ``log=True`` the bounds are derived on ``log1p`` values
    and transformed back. ``min_diff`` sets a floor on the distance of a
    bound from the median (in the transformed scale).

    Parameters
    ----------
    values : ArrayLike
        Metric values for one batch.
    nmads : float
        Number of MADs from the median.
    log : bool
        Compute on log1p scale.
    lower, upper : bool
        Which sides to report; a disabled side is returned as -inf / +inf.
    min_diff : float, optional
        Minimum distance between a bound and the median.

    Returns
    -------
    Tuple[float, float]
        (lower_bound, upper_bound). NaN bounds if no finite values.
    """
    arr = _to_clean_array(values)
    if arr.size == 0:
        return float("nan"), float("nan")

    raw = arr
    if log:
        arr = np.log1p(np.maximum(arr, 0.0))

    median = float(np.median(arr))
    mad = float(np.median(np.abs(arr - median))) * MAD_SCALE
    diff = nmads * mad
    if min_diff is not None:
        diff = max(diff, float(min_diff))

    if diff == 0:
        # Zero spread: the bound is the median itself, in the original units
        centre = float(np.median(raw))
        return (centre if lower else -np.inf), (centre if upper else np.inf)

    lo = median - diff if lower else -np.inf
    hi = median + diff if upper else np.inf

    if log:
        lo = float(np.expm1(lo)) if np.isfinite(lo) else lo
        hi = float(np.expm1(hi)) if np.isfinite(hi) else hi
    return float(lo), float(hi)


def stouffer_combine(
    pvalues: np.ndarray,
    weights: Optional[Sequence[float]] = None,
) -> np.ndarray:
    """Combine one-sided p-values across blocks with weighted Stouffer Z.

    Parameters
    ----------
    pvalues : np.ndarray
        Array of shape (n_blocks, n_genes).
    weights : Sequence[float], optional
        Per-block weights (default: equal).

    Returns
    -------
    np.ndarray
        Combined p-values of shape (n_genes,).
    """
    pvalues = np.atleast_2d(np.asarray(pvalues, dtype=float))
    if pvalues.shape[0] == 1:
        return pvalues[0].copy()

    if weights is None:
        w = np.ones(pvalues.shape[0])
    else:
        w = np.asarray(weights, dtype=float)

    clipped = np.clip(pvalues, 1e-300, 1.0)
    z = stats.norm.isf(clipped)
    combined_z = (w[:, None] * z).sum(axis=0) / np.sqrt(np.sum(w**2))
    return stats.norm.sf(combined_z)


def benjamini_hochberg(pvalues: ArrayLike) -> np.ndarray:
    """Benjamini-Hochberg adjusted p-values (NaNs preserved)."""
    arr = np.asarray(list(pvalues), dtype=float)
    out = np.full_like(arr, np.nan)
    mask = np.isfinite(arr)
    if mask.any():
        out[mask] = multipletests(arr[mask], method="fdr_bh")[1]
    return out


def find_elbow_point(values: ArrayLike) -> int:
    """Return the elbow of a decreasing curve.

    The elbow is the point with the largest perpendicular distance from
    the straight line joining the first and last points. The returned
    value is a count (1-based position), i.e. the number of leading
    entries up to and including the elbow.

    Parameters
    ----------
    values : ArrayLike
        Decreasing values, e.g. variance explained per component.

    Returns
    -------
    int
        Number of leading entries to keep.
    """
    y = _to_clean_array(values)
    n = y.size
    if n <= 2:
        return n

    x = np.arange(n, dtype=float)
    start = np.array([x[0], y[0]])
    end = np.array([x[-1], y[-1]])
    line = end - start
    norm = np.linalg.norm(line)
    if norm == 0:
        return 1

    points = np.column_stack([x, y]) - start
    dist = np.abs(line[0] * points[:, 1] - line[1] * points[:, 0]) / norm
    return int(np.argmax(dist)) + 1
