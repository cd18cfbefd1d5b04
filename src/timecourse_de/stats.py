"""
Multiple comparison correction.

Functions
---------
bh_fdr
    Benjamini-Hochberg FDR adjustment.
independent_filtering
    Mean-count filter that drops low-power genes from the correction set.
"""
from __future__ import annotations

import logging

import numpy as np

from .exceptions import EmptyInputError

logger = logging.getLogger(__name__)


def bh_fdr(pvals: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg FDR adjustment.

    Adjusts p-values to control the false discovery rate using the
    Benjamini-Hochberg procedure. Non-finite p-values (genes not tested)
    are left out of the number of tests and stay NaN.

    Parameters
    ----------
    pvals : array-like
        Raw p-values.

    Returns
    -------
    qvals : np.ndarray
        BH-adjusted p-values, same shape as pvals.

    Raises
    ------
    EmptyInputError
        If no p-value is finite.

    Notes
    -----
    The procedure ranks p-values and computes q_i = p_i * m / rank_i,
    then enforces monotonicity (q_i >= q_{i-1} for sorted p-values).
    Ties are ranked with a stable sort, so the adjusted set does not
    depend on input order. Adjusting already adjusted values again is
    not a no-op.

    Examples
    --------
    >>> bh_fdr(np.array([0.01, 0.02, 0.03, 0.5]))
    array([0.04, 0.04, 0.04, 0.5 ])
    """
    pvals = np.asarray(pvals, dtype=float)

    ok = np.isfinite(pvals)
    if ok.sum() == 0:
        raise EmptyInputError("No genes are eligible for multiple testing correction.")

    p = pvals[ok]
    order = np.argsort(p, kind="mergesort")
    ranks = np.arange(1, p.size + 1)

    q = p[order] * p.size / ranks
    # enforce monotonicity
    q = np.minimum.accumulate(q[::-1])[::-1]
    q = np.clip(q, 0.0, 1.0)

    out = np.full_like(pvals, np.nan, dtype=float)
    out_idx = np.where(ok)[0][order]
    out[out_idx] = q
    return out


def independent_filtering(
    base_mean: np.ndarray,
    pvals: np.ndarray,
    alpha: float = 0.1,
    quantiles: np.ndarray | None = None,
) -> tuple[np.ndarray, float]:
    """BH adjustment after removing genes with low mean counts.

    Thresholds at a series of base-mean quantiles are tried; for each, genes
    below the threshold are removed from the correction set and the number
    of rejections at ``alpha`` is counted. The smallest threshold reaching
    90% of the best rejection count is used.

    Parameters
    ----------
    base_mean : array-like
        Mean normalized count per gene; the filter statistic.
    pvals : array-like
        Raw p-values; NaN for untested genes.
    alpha : float, default 0.1
        Target FDR for counting rejections.
    quantiles : array-like or None
        Quantiles of ``base_mean`` to try; defaults to 0 .. 0.95.

    Returns
    -------
    padj : np.ndarray
        Adjusted p-values; NaN for filtered genes.
    threshold : float
        Base-mean cutoff that was applied.
    """
    base_mean = np.asarray(base_mean, dtype=float)
    pvals = np.asarray(pvals, dtype=float)
    if quantiles is None:
        quantiles = np.linspace(0.0, 0.95, 50)

    ok = np.isfinite(pvals) & np.isfinite(base_mean)
    if ok.sum() == 0:
        raise EmptyInputError("No genes are eligible for multiple testing correction.")

    cutoffs = np.quantile(base_mean[ok], quantiles)
    n_rej = []
    adjusted = []
    for cut in cutoffs:
        p = np.where(base_mean >= cut, pvals, np.nan)
        q = bh_fdr(p)
        adjusted.append(q)
        n_rej.append(int(np.sum(q[np.isfinite(q)] < alpha)))

    n_rej = np.asarray(n_rej)
    if n_rej.max() == 0:
        best = 0
    else:
        best = int(np.argmax(n_rej >= 0.9 * n_rej.max()))

    threshold = float(cutoffs[best])
    logger.info(
        f"Independent filtering: baseMean >= {threshold:.4g} "
        f"({int(np.sum(base_mean[ok] >= threshold))} of {int(ok.sum())} genes kept)"
    )
    return adjusted[best], threshold
