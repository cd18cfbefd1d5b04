"""
Moment-based dispersion estimates and count-matrix diagnostics.

The moment estimators give cheap starting values for the likelihood-based
dispersion fit in :mod:`timecourse_de.dispersion`; the per-sample summaries
are logged by the pipeline as a quality check.

Functions
---------
moments_dispersion
    Per-gene moment dispersion from normalized counts.
rough_dispersion
    Per-gene dispersion from a least-squares fit of normalized counts.
sample_summary
    Library size, zero fraction and variance-to-mean ratio per sample.
zero_fraction
    Fraction of zero counts per sample.
"""
from __future__ import annotations

import numpy as np
import pandas as pd


def moments_dispersion(normed: np.ndarray, size_factors: np.ndarray) -> np.ndarray:
    """Per-gene moment estimate ignoring the design.

    With normalized counts q_ij = k_ij / s_j, Var(q) = mean(q) * mean(1/s)
    + alpha * mean(q)^2, so alpha = (var - xim * mean) / mean^2.
    Can be negative; callers clip.
    """
    xim = np.mean(1.0 / np.asarray(size_factors, dtype=float))
    mean = normed.mean(axis=1)
    var = normed.var(axis=1, ddof=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        return (var - xim * mean) / mean**2


def rough_dispersion(normed: np.ndarray, X: np.ndarray) -> np.ndarray:
    """Per-gene dispersion from residuals of a least-squares fit.

    Fits normalized counts on the design matrix by ordinary least squares,
    then averages ((q - mu)^2 - mu) / mu^2 over the residual degrees of
    freedom (NB2 variance mu + alpha * mu^2).
    """
    m, p = X.shape
    beta, *_ = np.linalg.lstsq(X, normed.T, rcond=None)
    mu = np.clip((X @ beta).T, 1.0, None)
    est = (((normed - mu) ** 2 - mu) / mu**2).sum(axis=1) / max(m - p, 1)
    return np.clip(est, 0.0, None)


def sample_summary(counts_wide: pd.DataFrame) -> pd.DataFrame:
    """Per-sample library summary used as a quality check.

    Parameters
    ----------
    counts_wide : pd.DataFrame
        Count matrix, genes x samples.

    Returns
    -------
    pd.DataFrame
        Indexed by sample, with columns:
        - total: library size
        - zero_fraction: share of genes with a zero count
        - mean: mean count across genes
        - var_over_mean: variance-to-mean ratio across genes; far above 1
          for RNA-seq, NaN for an empty library
    """
    means = counts_wide.mean(axis=0)
    vars_ = counts_wide.var(axis=0, ddof=1)
    return pd.DataFrame(
        {
            "total": counts_wide.sum(axis=0),
            "zero_fraction": zero_fraction(counts_wide),
            "mean": means,
            "var_over_mean": vars_ / means.replace(0, np.nan),
        }
    )


def zero_fraction(counts_wide: pd.DataFrame) -> pd.Series:
    """Fraction of genes with a zero count, per sample.

    Examples
    --------
    >>> counts = pd.DataFrame({"ctrl_1": [0, 10, 0, 5], "stim_1": [1, 0, 3, 0]})
    >>> zero_fraction(counts)
    ctrl_1    0.5
    stim_1    0.5
    dtype: float64
    """
    return (counts_wide == 0).mean(axis=0)
