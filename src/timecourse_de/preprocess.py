"""
Data preprocessing utilities.

This module provides sequencing-depth normalization and simple gene
filters applied to a wide count matrix (genes x samples) before model
fitting.

Functions
---------
estimate_size_factors
    Median-of-ratios size factors per sample.
normalized_counts
    Counts divided by per-sample size factors.
base_mean
    Mean normalized count per gene.
filter_genes_by_total_counts
    Filter genes by minimum total counts.
"""
from __future__ import annotations

from typing import Literal, Optional, Sequence

import numpy as np
import pandas as pd

from .exceptions import InputValidationError


def estimate_size_factors(
    counts_wide: pd.DataFrame,
    method: Literal["ratio", "poscounts"] = "ratio",
) -> pd.Series:
    """Estimate per-sample size factors with the median-of-ratios method.

    For every gene a pseudo-reference is formed from the geometric mean of
    its counts across samples. A sample's size factor is the median, over
    genes, of its count divided by that reference. Using the median keeps
    a handful of very highly expressed genes from dominating the estimate.

    Parameters
    ----------
    counts_wide : pd.DataFrame
        Count matrix with genes as rows and samples as columns.
    method : {"ratio", "poscounts"}, default "ratio"
        ``"ratio"`` uses only genes with a positive count in every sample.
        ``"poscounts"`` builds the geometric mean from positive counts only
        (so genes with zeros still contribute) and rescales the factors to
        a geometric mean of 1.

    Returns
    -------
    pd.Series
        Size factors indexed by sample.

    Raises
    ------
    InputValidationError
        With ``method="ratio"``, if every gene has at least one zero count.

    Examples
    --------
    >>> counts = pd.DataFrame({"S1": [10, 20, 30], "S2": [20, 40, 60]})
    >>> estimate_size_factors(counts).round(3).tolist()
    [0.707, 1.414]
    """
    k = counts_wide.to_numpy(dtype=float)
    if k.ndim != 2 or k.shape[0] == 0:
        raise InputValidationError("Size factor estimation needs at least one gene.")

    with np.errstate(divide="ignore"):
        log_k = np.log(k)

    if method == "ratio":
        log_geo = log_k.mean(axis=1)
        usable = np.isfinite(log_geo)
        if not usable.any():
            raise InputValidationError(
                "Every gene contains at least one zero; cannot compute median-of-ratios "
                "size factors. Use method='poscounts'."
            )
        ratios = log_k[usable] - log_geo[usable, None]
        sf = np.exp(np.median(ratios, axis=0))
    elif method == "poscounts":
        pos = np.where(k > 0, log_k, 0.0)
        log_geo = pos.sum(axis=1) / k.shape[1]
        usable = (k > 0).any(axis=1)
        if not usable.any():
            raise InputValidationError("No gene has positive counts; cannot compute size factors.")
        sf = np.empty(k.shape[1])
        for j in range(k.shape[1]):
            ok = usable & (k[:, j] > 0)
            sf[j] = np.exp(np.median(log_k[ok, j] - log_geo[ok])) if ok.any() else np.nan
        if not np.all(np.isfinite(sf)):
            raise InputValidationError("A sample has no positive counts; cannot compute size factors.")
        sf = sf / np.exp(np.mean(np.log(sf)))
    else:
        raise ValueError(f"Unknown method='{method}'. Use 'ratio' or 'poscounts'.")

    return pd.Series(sf, index=counts_wide.columns, name="size_factor")


def check_size_factors(size_factors: Sequence[float] | pd.Series, samples: Sequence[str]) -> pd.Series:
    """Align caller-supplied size factors to ``samples`` and validate them."""
    if isinstance(size_factors, pd.Series):
        missing = [s for s in samples if s not in size_factors.index]
        if missing:
            raise InputValidationError(f"No size factor for samples: {missing}")
        sf = size_factors.loc[list(samples)].astype(float)
    else:
        arr = np.asarray(size_factors, dtype=float)
        if arr.shape != (len(samples),):
            raise InputValidationError(
                f"Expected {len(samples)} size factors, got shape {arr.shape}."
            )
        sf = pd.Series(arr, index=list(samples))
    if not np.all(np.isfinite(sf.values)) or (sf.values <= 0).any():
        raise InputValidationError("Size factors must be finite and positive.")
    sf.name = "size_factor"
    return sf


def normalized_counts(counts_wide: pd.DataFrame, size_factors: pd.Series) -> pd.DataFrame:
    """Divide each sample's counts by its size factor."""
    return counts_wide.astype(float).div(size_factors.loc[counts_wide.columns], axis=1)


def base_mean(counts_wide: pd.DataFrame, size_factors: pd.Series) -> pd.Series:
    """Mean of normalized counts across samples, per gene."""
    return normalized_counts(counts_wide, size_factors).mean(axis=1).rename("baseMean")


def filter_genes_by_total_counts(
    counts_wide: pd.DataFrame,
    min_total: int = 10,
    keep: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Filter genes by minimum total counts across all samples.

    Removes genes (rows) with fewer than ``min_total`` counts summed across
    samples. Genes listed in ``keep`` are retained regardless.

    Examples
    --------
    >>> counts = pd.DataFrame(
    ...     {"S1": [1, 100], "S2": [2, 200]},
    ...     index=["low", "high"]
    ... )
    >>> list(filter_genes_by_total_counts(counts, min_total=10).index)
    ['high']
    """
    totals = counts_wide.sum(axis=1)
    mask = totals >= min_total
    if keep is not None:
        mask |= counts_wide.index.isin(list(keep))
    return counts_wide.loc[mask]
