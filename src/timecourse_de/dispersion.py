"""
Negative binomial dispersion estimation with trend shrinkage.

Dispersions are estimated in three passes over the genes:

1. Gene-wise maximum of the Cox-Reid adjusted profile likelihood.
2. A smooth trend of dispersion against mean expression, fitted across
   all genes (parametric ``asymptDisp + extraPois / mean``, or a constant).
3. Per-gene maximum a posteriori estimates under a log-normal prior
   centred on the trend, which pulls noisy gene-wise estimates from few
   replicates toward the trend.

Genes whose gene-wise estimate sits far above the trend are flagged as
dispersion outliers and keep their gene-wise value.

Functions
---------
estimate_dispersions
    Run all three passes and return a :class:`DispersionModel`.
estimate_genewise
    Gene-wise Cox-Reid maximum likelihood dispersions.
fit_dispersion_trend
    Fit the mean-dispersion trend.
estimate_map
    Trend-shrunk dispersions.

Classes
-------
DispersionModel
    Immutable container for per-gene dispersion estimates.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Literal, Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import optimize, special, stats
from statsmodels.tools.sm_exceptions import DomainWarning

from .diagnostics import moments_dispersion, rough_dispersion

logger = logging.getLogger(__name__)

MIN_DISP = 1e-8
MIN_MU = 0.5


@dataclass(frozen=True)
class DispersionModel:
    """Per-gene dispersion estimates, aligned to the count matrix rows.

    All arrays have one entry per gene of the input matrix; genes with no
    counts in any sample hold NaN.
    """

    #: Mean of normalized counts.
    base_mean: np.ndarray
    #: Gene-wise Cox-Reid maximum likelihood estimates.
    genewise: np.ndarray
    #: Fitted trend evaluated at each gene's mean.
    trend: np.ndarray
    #: Maximum a posteriori estimates under the trend prior.
    map: np.ndarray
    #: Dispersions used for the GLM fit.
    final: np.ndarray
    #: Genes that kept their gene-wise estimate.
    outlier: np.ndarray
    #: "parametric" or "mean".
    fit_type: str
    #: (asymptDisp, extraPois) for a parametric trend, (mean,) otherwise.
    trend_coefs: tuple
    #: Variance of the log-normal prior.
    prior_var: float
    #: Residual variance of log(genewise / trend).
    var_log_disp: float

    def __post_init__(self):
        for name in ("base_mean", "genewise", "trend", "map", "final", "outlier"):
            arr = np.array(getattr(self, name), copy=True)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)

    def trend_function(self, mean: np.ndarray) -> np.ndarray:
        mean = np.asarray(mean, dtype=float)
        if self.fit_type == "parametric":
            asympt, extra = self.trend_coefs
            return asympt + extra / mean
        return np.full_like(mean, self.trend_coefs[0], dtype=float)

    def to_frame(self, index) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "baseMean": self.base_mean,
                "dispGeneEst": self.genewise,
                "dispFit": self.trend,
                "dispMAP": self.map,
                "dispersion": self.final,
                "dispOutlier": self.outlier,
            },
            index=pd.Index(index, name="gene_id"),
        )


def nb_log_likelihood(y: np.ndarray, mu: np.ndarray, alpha: float) -> float:
    """Negative binomial (NB2) log-likelihood of counts ``y`` with means ``mu``."""
    r = 1.0 / alpha
    am = alpha * mu
    return float(
        np.sum(
            special.gammaln(y + r)
            - special.gammaln(r)
            - special.gammaln(y + 1.0)
            - r * np.log1p(am)
            + y * (np.log(am) - np.log1p(am))
        )
    )


def cox_reid_log_likelihood(
    y: np.ndarray,
    mu: np.ndarray,
    X: np.ndarray,
    log_alpha: float,
    prior_mean: Optional[float] = None,
    prior_var: Optional[float] = None,
) -> float:
    """Cox-Reid adjusted profile log-likelihood of ``log_alpha``.

    The adjustment ``-0.5 * log det(X' W X)`` accounts for the coefficients
    estimated from the same counts. When ``prior_mean`` (on the log scale)
    and ``prior_var`` are given, a log-normal prior term is added.
    """
    alpha = np.exp(log_alpha)
    ll = nb_log_likelihood(y, mu, alpha)
    w = mu / (1.0 + alpha * mu)
    _, logdet = np.linalg.slogdet(X.T @ (w[:, None] * X))
    ll -= 0.5 * logdet
    if prior_mean is not None:
        ll -= (log_alpha - prior_mean) ** 2 / (2.0 * prior_var)
    return ll


def _maximize_log_alpha(
    y: np.ndarray,
    mu: np.ndarray,
    X: np.ndarray,
    bounds: tuple[float, float],
    start: float,
    prior_mean: Optional[float] = None,
    prior_var: Optional[float] = None,
    n_grid: int = 15,
) -> float:
    """Bounded maximisation over log dispersion.

    A coarse grid (plus ``start``) brackets the optimum, then Brent's
    bounded method refines it between the neighbouring grid points.
    """
    lo, hi = bounds

    def neg(a: float) -> float:
        return -cox_reid_log_likelihood(y, mu, X, a, prior_mean, prior_var)

    grid = np.linspace(lo, hi, n_grid)
    if np.isfinite(start):
        grid = np.unique(np.append(grid, np.clip(start, lo, hi)))
    vals = np.array([neg(a) for a in grid])
    best = int(np.nanargmin(vals))

    left = grid[max(best - 1, 0)]
    right = grid[min(best + 1, len(grid) - 1)]
    if right <= left:
        return float(grid[best])

    res = optimize.minimize_scalar(neg, bounds=(left, right), method="bounded", options={"xatol": 1e-6})
    if res.success and res.fun <= vals[best]:
        return float(res.x)
    return float(grid[best])


def linear_model_mu(normed: np.ndarray, X: np.ndarray, size_factors: np.ndarray) -> np.ndarray:
    """Fitted means from least squares on normalized counts, floored at ``MIN_MU``."""
    beta, *_ = np.linalg.lstsq(X, normed.T, rcond=None)
    mu = (X @ beta).T * size_factors[None, :]
    return np.clip(mu, MIN_MU, None)


def estimate_genewise(
    counts: np.ndarray,
    size_factors: np.ndarray,
    X: np.ndarray,
    min_disp: float = MIN_DISP,
    max_disp: Optional[float] = None,
) -> np.ndarray:
    """Gene-wise Cox-Reid maximum likelihood dispersions.

    Parameters
    ----------
    counts : np.ndarray
        Counts, genes x samples. Genes must not be all zero.
    size_factors : np.ndarray
        Per-sample size factors.
    X : np.ndarray
        Design matrix, samples x coefficients.
    min_disp, max_disp : float
        Bounds for the estimates; ``max_disp`` defaults to
        ``max(10, n_samples)``.

    Returns
    -------
    np.ndarray
        One dispersion per gene, clipped to ``[min_disp, max_disp]``.
    """
    counts = np.asarray(counts, dtype=float)
    sf = np.asarray(size_factors, dtype=float)
    m = counts.shape[1]
    if max_disp is None:
        max_disp = max(10.0, float(m))

    normed = counts / sf[None, :]
    rough = np.fmin(moments_dispersion(normed, sf), rough_dispersion(normed, X))
    rough = np.clip(np.nan_to_num(rough, nan=min_disp), min_disp, max_disp)

    mu = linear_model_mu(normed, X, sf)
    bounds = (np.log(min_disp), np.log(max_disp))

    out = np.empty(counts.shape[0])
    for i in range(counts.shape[0]):
        out[i] = np.exp(_maximize_log_alpha(counts[i], mu[i], X, bounds, np.log(rough[i])))
    return np.clip(out, min_disp, max_disp)


def _fit_parametric(means: np.ndarray, disps: np.ndarray, max_iter: int = 10) -> tuple[float, float]:
    """Gamma-family identity-link GLM of dispersion on 1 / mean.

    Genes with residual ratio outside ``[1e-4, 15]`` are dropped and the
    fit repeated until the coefficients settle.
    """
    coefs = np.array([0.1, 1.0])
    keep = np.ones(len(means), dtype=bool)
    family = sm.families.Gamma(link=sm.families.links.Identity())

    for iteration in range(max_iter):
        if keep.sum() < 3:
            raise ValueError(f"Only {int(keep.sum())} genes left for the parametric trend fit.")
        X = np.column_stack([np.ones(keep.sum()), 1.0 / means[keep]])
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", DomainWarning)
            res = sm.GLM(disps[keep], X, family=family).fit(start_params=coefs, maxiter=100)

        old = coefs
        coefs = np.asarray(res.params, dtype=float)
        if not np.all(coefs > 0):
            raise ValueError(f"Parametric trend coefficients are not all positive: {coefs}")

        ratio = disps / (coefs[0] + coefs[1] / means)
        keep = (ratio > 1e-4) & (ratio < 15)
        if np.sum(np.abs(np.log(coefs / old))) < 1e-6:
            return float(coefs[0]), float(coefs[1])

    raise ValueError(f"Parametric trend fit did not converge in {max_iter} iterations.")


def fit_dispersion_trend(
    base_mean: np.ndarray,
    genewise: np.ndarray,
    fit_type: Literal["parametric", "mean"] = "parametric",
    min_disp: float = MIN_DISP,
) -> tuple[str, tuple]:
    """Fit the mean-dispersion trend.

    Only genes with a gene-wise estimate at least 100 times ``min_disp``
    enter the parametric fit. If that fit fails (too few genes, non-positive
    coefficients, no convergence), a constant trend equal to the mean
    gene-wise dispersion is used instead and a warning is issued.

    Returns
    -------
    (fit_type, coefs)
        The trend actually used and its coefficients.
    """
    base_mean = np.asarray(base_mean, dtype=float)
    genewise = np.asarray(genewise, dtype=float)

    if fit_type == "parametric":
        use = genewise >= 100 * min_disp
        try:
            return "parametric", _fit_parametric(base_mean[use], genewise[use])
        except (ValueError, np.linalg.LinAlgError) as e:
            warnings.warn(f"Parametric dispersion trend failed ({e}); using a constant mean trend.")
    elif fit_type != "mean":
        raise ValueError(f"Unknown fit_type='{fit_type}'. Use 'parametric' or 'mean'.")

    use = genewise > 10 * min_disp
    if not use.any():
        use = np.ones_like(genewise, dtype=bool)
    mean_disp = float(stats.trim_mean(genewise[use], 0.001))
    return "mean", (max(mean_disp, min_disp),)


def prior_variance(
    genewise: np.ndarray,
    trend: np.ndarray,
    df_resid: int,
    min_disp: float = MIN_DISP,
) -> tuple[float, float]:
    """Variance of the log-normal dispersion prior.

    The observed spread of ``log(genewise / trend)`` (squared normal-scaled
    MAD) minus the sampling variance expected for a scaled chi-square with
    ``df_resid`` degrees of freedom, floored at 0.25.

    Returns
    -------
    (prior_var, var_log_disp)
    """
    above = genewise >= 100 * min_disp
    if above.sum() < 2:
        return 0.25, 0.25
    resid = np.log(genewise[above]) - np.log(trend[above])
    var_log_disp = float(stats.median_abs_deviation(resid, scale="normal") ** 2)
    expected = float(special.polygamma(1, df_resid / 2.0))
    return max(var_log_disp - expected, 0.25), var_log_disp


def estimate_map(
    counts: np.ndarray,
    size_factors: np.ndarray,
    X: np.ndarray,
    genewise: np.ndarray,
    trend: np.ndarray,
    prior_var: float,
    min_disp: float = MIN_DISP,
    max_disp: Optional[float] = None,
) -> np.ndarray:
    """Maximum a posteriori dispersions under a log-normal trend prior."""
    counts = np.asarray(counts, dtype=float)
    sf = np.asarray(size_factors, dtype=float)
    if max_disp is None:
        max_disp = max(10.0, float(counts.shape[1]))

    mu = linear_model_mu(counts / sf[None, :], X, sf)
    bounds = (np.log(min_disp), np.log(max_disp))
    log_trend = np.log(trend)

    out = np.empty(counts.shape[0])
    for i in range(counts.shape[0]):
        out[i] = np.exp(
            _maximize_log_alpha(
                counts[i], mu[i], X, bounds, np.log(genewise[i]),
                prior_mean=log_trend[i], prior_var=prior_var,
            )
        )
    return np.clip(out, min_disp, max_disp)


def estimate_dispersions(
    counts: np.ndarray,
    size_factors: np.ndarray,
    X: np.ndarray,
    fit_type: Literal["parametric", "mean"] = "parametric",
    min_disp: float = MIN_DISP,
) -> DispersionModel:
    """Estimate gene-wise, trend and shrunk dispersions for every gene.

    Parameters
    ----------
    counts : np.ndarray
        Counts, genes x samples. All-zero genes are skipped and get NaN.
    size_factors : np.ndarray
        Per-sample size factors.
    X : np.ndarray
        Design matrix, samples x coefficients, with fewer columns than rows.
    fit_type : {"parametric", "mean"}, default "parametric"
        Trend shape.
    min_disp : float, default 1e-8
        Lower bound for all estimates.

    Returns
    -------
    DispersionModel
    """
    counts = np.asarray(counts, dtype=float)
    sf = np.asarray(size_factors, dtype=float)
    X = np.asarray(X, dtype=float)
    n_genes, m = counts.shape
    p = X.shape[1]
    max_disp = max(10.0, float(m))

    tested = counts.sum(axis=1) > 0
    base_mean = np.full(n_genes, np.nan)
    base_mean[tested] = (counts[tested] / sf[None, :]).mean(axis=1)

    logger.info(f"Estimating gene-wise dispersions for {int(tested.sum())} genes")
    gw = estimate_genewise(counts[tested], sf, X, min_disp, max_disp)

    used_type, coefs = fit_dispersion_trend(base_mean[tested], gw, fit_type, min_disp)
    if used_type == "parametric":
        tr = coefs[0] + coefs[1] / base_mean[tested]
        logger.info(f"Dispersion trend: asymptDisp={coefs[0]:.4g}, extraPois={coefs[1]:.4g}")
    else:
        tr = np.full(gw.shape, coefs[0])
        logger.info(f"Dispersion trend: constant {coefs[0]:.4g}")
    tr = np.clip(tr, min_disp, max_disp)

    prior_var, var_log_disp = prior_variance(gw, tr, m - p, min_disp)
    logger.info(f"Dispersion prior variance: {prior_var:.4g}")

    mp = estimate_map(counts[tested], sf, X, gw, tr, prior_var, min_disp, max_disp)
    outlier = np.log(gw) > np.log(tr) + 2.0 * np.sqrt(var_log_disp)
    final = np.clip(np.where(outlier, gw, mp), min_disp, max_disp)
    if outlier.any():
        logger.info(f"{int(outlier.sum())} genes flagged as dispersion outliers")

    def scatter(values, fill=np.nan, dtype=float):
        full = np.full(n_genes, fill, dtype=dtype)
        full[tested] = values
        return full

    return DispersionModel(
        base_mean=base_mean,
        genewise=scatter(gw),
        trend=scatter(tr),
        map=scatter(mp),
        final=scatter(final),
        outlier=scatter(outlier, fill=False, dtype=bool),
        fit_type=used_type,
        trend_coefs=tuple(coefs),
        prior_var=float(prior_var),
        var_log_disp=float(var_log_disp),
    )
