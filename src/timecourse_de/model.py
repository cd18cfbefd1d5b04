"""
Per-gene negative binomial GLM fitting.

This module builds the treatment-coded design matrix for a contrast and
fits one negative binomial GLM per gene with a fixed, previously estimated
dispersion, by ridge-penalized IRLS over the statsmodels NB2 family. The
per-gene fits are independent and can be mapped over a process pool.

Functions
---------
build_design_matrix
    Construct the patsy design matrix and locate the contrast term.
fit_gene
    Fit a single gene and test the contrast.
fit_genes
    Fit every gene, sequentially or over a process pool.

Classes
-------
GeneFit
    Container for one gene's contrast estimate.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from multiprocessing import Pool, cpu_count
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from scipy import optimize

from .contrasts import wald_contrast
from .dispersion import MIN_MU
from .exceptions import InvalidDesign
from .metadata_setup import Contrast

logger = logging.getLogger(__name__)

#: Ridge penalty on coefficients, on the log2 scale.
RIDGE_LAMBDA = 1e-6
#: Bound on |coefficient| (log2 scale) before the fit is redone by L-BFGS-B.
LARGE_LOG2FC = 30.0


@dataclass
class GeneFit:
    """Contrast estimate for one gene, on the natural-log scale."""

    effect: float = np.nan
    se: float = np.nan
    statistic: float = np.nan
    pvalue: float = np.nan
    converged: bool = False
    #: Largest Cook's distance over the samples checked for outliers.
    max_cooks: float = np.nan
    #: Why the fit was rejected, if it was.
    error: Optional[str] = None


def build_design_matrix(
    design: pd.DataFrame,
    contrast: Contrast,
    covariates: Sequence[str] = (),
) -> tuple[pd.DataFrame, str]:
    """Construct the design matrix for ``contrast`` with additive covariates.

    The model is::

        ~ 1 + C(covariate_1) + ... + C(factor, Treatment(reference=denominator))

    so the contrast term's coefficients are log fold changes against the
    denominator level.

    Parameters
    ----------
    design : pd.DataFrame
        Design table indexed by sample, in count-matrix column order.
    contrast : Contrast
        Factor and levels to compare.
    covariates : sequence of str
        Additional categorical design columns (e.g. ``"time_point"``).

    Returns
    -------
    X : pd.DataFrame
        Design matrix, samples x coefficients.
    term : str
        patsy term name of the contrast factor.

    Raises
    ------
    InvalidDesign
        If the design matrix is not full rank or leaves no residual
        degrees of freedom for dispersion estimation.

    Examples
    --------
    >>> X, term = build_design_matrix(design, Contrast("group", "stim", "ctrl"))
    >>> term
    "C(Q('group'), Treatment(reference='ctrl'))"
    """
    factors = [str(c) for c in covariates if c != contrast.factor]
    data = design[[*factors, contrast.factor]].astype(str)

    terms = [f"C(Q({c!r}))" for c in factors]
    terms.append(f"C(Q({contrast.factor!r}), Treatment(reference={str(contrast.denominator)!r}))")
    formula = "~ 1 + " + " + ".join(terms)

    X = patsy.dmatrix(formula, data=data, return_type="dataframe")
    X.index = design.index

    marker = f"Q({contrast.factor!r})"
    term = next(t for t in X.design_info.term_names if marker in t)

    m, p = X.shape
    rank = np.linalg.matrix_rank(X.to_numpy())
    if rank < p:
        raise InvalidDesign(
            f"Design matrix '{formula}' is not full rank ({rank} < {p}); "
            "a covariate is confounded with the contrast factor."
        )
    if m <= p:
        raise InvalidDesign(
            f"{m} samples for {p} coefficients leaves no residual degrees of freedom "
            "for dispersion estimation; add replicates."
        )
    return X, term


def _irls_ridge(
    y: np.ndarray,
    X: np.ndarray,
    nf: np.ndarray,
    family,
    ridge: np.ndarray,
    large: float,
    maxiter: int,
    tol: float,
) -> tuple[np.ndarray, bool]:
    """Ridge-penalized IRLS with fitted means floored at ``MIN_MU``.

    Starts from least squares on log normalized counts. Stops when the
    relative change in deviance falls below ``tol``; reports failure when
    a coefficient leaves ``[-large, large]``.
    """
    beta, *_ = np.linalg.lstsq(X, np.log(y / nf + 0.1), rcond=None)
    mu = np.maximum(nf * np.exp(X @ beta), MIN_MU)
    dev = -2.0 * family.loglike(y, mu)
    for _ in range(maxiter):
        w = family.weights(mu)
        z = np.log(mu / nf) + (y - mu) / mu
        XtW = X.T * w
        beta = np.linalg.solve(XtW @ X + ridge, XtW @ z)
        if not np.all(np.isfinite(beta)) or np.any(np.abs(beta) > large):
            return beta, False
        mu = np.maximum(nf * np.exp(X @ beta), MIN_MU)
        dev_new = -2.0 * family.loglike(y, mu)
        if abs(dev_new - dev) / (abs(dev_new) + 0.1) < tol:
            return beta, True
        dev = dev_new
    return beta, False


def _optim_ridge(
    y: np.ndarray,
    X: np.ndarray,
    nf: np.ndarray,
    family,
    lam: np.ndarray,
    large: float,
    start: np.ndarray,
) -> tuple[np.ndarray, bool]:
    """Penalized likelihood maximised by L-BFGS-B within ``[-large, large]``."""

    def objective(beta: np.ndarray) -> float:
        with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
            ll = family.loglike(y, nf * np.exp(X @ beta))
        if not np.isfinite(ll):
            return np.inf
        return -ll + 0.5 * np.sum(lam * beta**2)

    start = np.clip(np.where(np.isfinite(start), start, 0.0), -large, large)
    res = optimize.minimize(objective, start, method="L-BFGS-B", bounds=[(-large, large)] * len(start))
    return res.x, bool(res.success)


def fit_gene(
    y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    alpha: float,
    L: np.ndarray,
    cooks_samples: Optional[np.ndarray] = None,
    maxiter: int = 100,
    tol: float = 1e-8,
) -> GeneFit:
    """Fit a negative binomial GLM to one gene and test the contrast ``L``.

    The NB2 variance function is: Var(Y) = mu + alpha * mu^2, with
    ``alpha`` held fixed. Coefficients carry a small ridge penalty
    (``RIDGE_LAMBDA`` on the log2 scale) and IRLS weights use fitted means
    floored at ``MIN_MU``, so a group with all-zero counts gets a finite
    fold change and an informative standard error. When IRLS does not
    converge, or a coefficient passes ``LARGE_LOG2FC``, the fit is redone
    by bounded L-BFGS-B.

    The covariance is the sandwich over the penalized information,
    ``(X'WX + R)^-1 X'WX (X'WX + R)^-1``. Failures (no convergence by
    either route, singular information matrix, non-finite estimates) are
    returned as a :class:`GeneFit` with ``error`` set rather than raised.
    """
    y = np.asarray(y, dtype=float)
    X = np.asarray(X, dtype=float)
    p = X.shape[1]
    family = sm.families.NegativeBinomial(alpha=float(alpha))
    nf = np.exp(np.asarray(offset, dtype=float))
    lam = np.full(p, RIDGE_LAMBDA / np.log(2) ** 2)
    ridge = np.diag(lam)
    large = LARGE_LOG2FC * np.log(2)

    try:
        beta, converged = _irls_ridge(y, X, nf, family, ridge, large, maxiter, tol)
        if not converged:
            beta, converged = _optim_ridge(y, X, nf, family, lam, large, beta)
    except (ValueError, np.linalg.LinAlgError) as e:
        return GeneFit(error=f"GLM fit failed: {e}")
    if not converged:
        return GeneFit(error=f"IRLS did not converge in {maxiter} iterations and the bounded refit failed")

    mu = nf * np.exp(X @ beta)
    w = family.weights(np.maximum(mu, MIN_MU))
    XtWX = (X.T * w) @ X
    try:
        inv = np.linalg.inv(XtWX + ridge)
    except np.linalg.LinAlgError as e:
        return GeneFit(error=f"Wald test failed: {e}")
    cov = inv @ XtWX @ inv

    est, se, stat, pval = wald_contrast(beta, cov, L)
    if not np.all(np.isfinite([est, se, stat, pval])):
        return GeneFit(error="non-finite coefficient or standard error")

    max_cooks = np.nan
    if cooks_samples is not None and cooks_samples.any():
        hat = w * np.einsum("ij,jk,ik->i", X, inv, X)
        r2 = (y - mu) ** 2 / family.variance(mu)
        with np.errstate(divide="ignore", invalid="ignore"):
            cooks = r2 / p * hat / (1.0 - hat) ** 2
        max_cooks = float(np.nanmax(cooks[cooks_samples]))

    return GeneFit(effect=est, se=se, statistic=stat, pvalue=pval, converged=True, max_cooks=max_cooks)


def resolve_n_jobs(n_jobs: Optional[int]) -> int:
    # None: all available cores but two
    if n_jobs is None:
        if hasattr(os, "sched_getaffinity"):
            return max(1, len(os.sched_getaffinity(0)) - 2)
        return max(1, cpu_count() - 2)
    return max(1, int(n_jobs))


def fit_genes(
    counts: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    dispersions: np.ndarray,
    L: np.ndarray,
    cooks_samples: Optional[np.ndarray] = None,
    n_jobs: Optional[int] = 1,
) -> list[GeneFit]:
    """Fit every gene (row of ``counts``) with its own dispersion.

    With ``n_jobs > 1`` the fits are mapped over a process pool. Each
    result is stored in the slot of its gene, so the sequential and
    parallel paths return the same list.
    """
    counts = np.asarray(counts, dtype=float)
    X = np.asarray(X, dtype=float)
    n_genes = counts.shape[0]
    n_jobs = resolve_n_jobs(n_jobs)

    arguments = [
        (counts[i], X, offset, float(dispersions[i]), L, cooks_samples)
        for i in range(n_genes)
    ]
    fits: list[Optional[GeneFit]] = [None] * n_genes

    if n_jobs > 1 and n_genes > 1:
        logger.info(f"Fitting {n_genes} genes on {n_jobs} processes")
        chunksize = max(1, n_genes // (4 * n_jobs))
        with Pool(processes=n_jobs) as pool:
            for i, fit in enumerate(pool.starmap(fit_gene, arguments, chunksize=chunksize)):
                fits[i] = fit
    else:
        logger.info(f"Fitting {n_genes} genes")
        for i, args in enumerate(arguments):
            fits[i] = fit_gene(*args)

    return fits
