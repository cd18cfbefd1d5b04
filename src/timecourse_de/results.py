"""
Differential expression results for a single contrast.

:func:`run_differential_expression` chains size factors, dispersion
estimation, per-gene GLM fits, Wald tests, Cook's distance outlier
filtering and BH correction into one table with a row per gene.

Functions
---------
run_differential_expression
    Fit the model and test one contrast.

Classes
-------
DEResult
    Result table plus the fitted quantities behind it.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Literal, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from .contrasts import level_contrast
from .dispersion import DispersionModel, estimate_dispersions
from .exceptions import ConvergenceFailure, EmptyInputError, InputValidationError
from .metadata_setup import Contrast, validate_design
from .model import build_design_matrix, fit_genes
from .preprocess import check_size_factors, estimate_size_factors
from .stats import bh_fdr, independent_filtering

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ["gene_id", "baseMean", "log2FoldChange", "lfcSE", "statistic", "pvalue", "padj"]


@dataclass
class DEResult:
    """Differential expression output for one contrast."""

    #: One row per gene with columns :data:`RESULT_COLUMNS`.
    table: pd.DataFrame
    contrast: Contrast
    size_factors: pd.Series
    dispersion: DispersionModel
    #: Design matrix column names.
    design_columns: list[str]
    #: Genes whose fit was rejected; their rows are NaN.
    failures: list[ConvergenceFailure] = field(default_factory=list)
    #: Genes whose p-value was removed for an extreme Cook's distance.
    cooks_outliers: list[str] = field(default_factory=list)
    #: Base-mean cutoff applied by independent filtering, if any.
    filter_threshold: Optional[float] = None

    def dispersion_frame(self) -> pd.DataFrame:
        return self.dispersion.to_frame(self.table["gene_id"].values)


def _cooks_samples(design: pd.DataFrame, cells: Sequence[str], min_replicates: int) -> np.ndarray:
    # samples in a design cell with enough replicates to judge an outlier
    key = design[list(cells)].astype(str).agg("|".join, axis=1)
    sizes = key.map(key.value_counts())
    return (sizes >= min_replicates).to_numpy()


def run_differential_expression(
    counts: pd.DataFrame,
    design: pd.DataFrame,
    contrast: Contrast,
    covariates: Sequence[str] = (),
    *,
    size_factors: Optional[Sequence[float] | pd.Series] = None,
    size_factor_method: Literal["ratio", "poscounts"] = "ratio",
    fit_type: Literal["parametric", "mean"] = "parametric",
    cooks_cutoff: Optional[float | bool] = True,
    independent_filter: bool = False,
    alpha: float = 0.1,
    n_jobs: Optional[int] = 1,
) -> DEResult:
    """Test ``contrast`` for every gene of ``counts``.

    Parameters
    ----------
    counts : pd.DataFrame
        Count matrix, genes x samples, non-negative integers. Not modified.
    design : pd.DataFrame
        Design table indexed by sample_id (see :func:`design_frame`).
    contrast : Contrast
        Factor and the two levels to compare.
    covariates : sequence of str
        Additional categorical design columns, e.g. ``["time_point"]``.
    size_factors : sequence or pd.Series, optional
        Use these instead of estimating median-of-ratios size factors.
    size_factor_method : {"ratio", "poscounts"}
        Estimator when ``size_factors`` is not given.
    fit_type : {"parametric", "mean"}
        Shape of the dispersion trend.
    cooks_cutoff : float, bool or None, default True
        True uses the 0.99 quantile of F(p, m - p); a float sets the
        cutoff; False/None disables the outlier filter. Only samples in
        design cells with at least 3 replicates are checked.
    independent_filter : bool, default False
        Remove low-mean genes from the correction set before BH.
    alpha : float, default 0.1
        Target FDR used by independent filtering.
    n_jobs : int or None, default 1
        Processes for the per-gene fits; None uses all cores but two.

    Returns
    -------
    DEResult

    Raises
    ------
    InvalidDesign
        If the design cannot support the contrast: fewer than two groups,
        a missing contrast level, a confounded covariate, or no residual
        degrees of freedom (e.g. one sample per group). Raised before fitting.
    InputValidationError
        If counts are negative or non-integer.
    EmptyInputError
        If no gene yields a p-value.

    Examples
    --------
    >>> res = run_differential_expression(
    ...     counts, design, Contrast("group", "stim", "ctrl")
    ... )
    >>> res.table.sort_values("padj").head()
    """
    design = validate_design(counts, design, contrast, covariates)

    values = counts.to_numpy()
    if values.size == 0:
        raise InputValidationError("Count matrix is empty.")
    if not np.issubdtype(values.dtype, np.number):
        raise InputValidationError("Count matrix must be numeric.")
    values = values.astype(float)
    if (values < 0).any() or not np.all(values == np.round(values)):
        raise InputValidationError("Count matrix must hold non-negative integer counts.")

    tested = values.sum(axis=1) > 0
    if not tested.any():
        raise EmptyInputError("Every gene has zero counts in every sample; nothing to test.")

    X, term = build_design_matrix(design, contrast, covariates)
    L, name = level_contrast(
        X.columns, term, str(contrast.numerator), str(contrast.denominator),
        reference=str(contrast.denominator),
    )
    m, p = X.shape
    logger.info(f"Testing {name} on {values.shape[0]} genes x {m} samples ({p} coefficients)")

    samples = [str(c) for c in counts.columns]
    if size_factors is None:
        sf = estimate_size_factors(counts, method=size_factor_method)
    else:
        sf = check_size_factors(size_factors, samples)
    sf_arr = sf.to_numpy(dtype=float)
    logger.info("Size factors: " + ", ".join(f"{s}={v:.3f}" for s, v in zip(samples, sf_arr)))

    disp = estimate_dispersions(values, sf_arr, X.to_numpy(), fit_type=fit_type)

    n_zero = int((~tested).sum())
    if n_zero:
        logger.info(f"{n_zero} genes with zero counts in every sample are not tested")

    cooks_samples = None
    cutoff = None
    if cooks_cutoff is not None and cooks_cutoff is not False:
        cells = [*[c for c in covariates if c != contrast.factor], contrast.factor]
        cooks_samples = _cooks_samples(design, cells, min_replicates=3)
        cutoff = stats.f.ppf(0.99, p, m - p) if cooks_cutoff is True else float(cooks_cutoff)
        if not cooks_samples.any():
            cooks_samples = None

    idx = np.where(tested)[0]
    fits = fit_genes(
        values[idx], X.to_numpy(), np.log(sf_arr), disp.final[idx], L,
        cooks_samples=cooks_samples, n_jobs=n_jobs,
    )

    n_genes = values.shape[0]
    effect = np.full(n_genes, np.nan)
    se = np.full(n_genes, np.nan)
    stat = np.full(n_genes, np.nan)
    pval = np.full(n_genes, np.nan)
    max_cooks = np.full(n_genes, np.nan)

    gene_ids = [str(g) for g in counts.index]
    failures = []
    for i, fit in zip(idx, fits):
        if not fit.converged:
            failures.append(ConvergenceFailure(gene_ids[i], fit.error or "fit failed"))
            continue
        effect[i], se[i], stat[i], pval[i], max_cooks[i] = (
            fit.effect, fit.se, fit.statistic, fit.pvalue, fit.max_cooks,
        )
    for f in failures:
        logger.warning(f"Convergence failure: {f}")

    cooks_outliers = []
    if cutoff is not None and cooks_samples is not None:
        flagged = np.isfinite(max_cooks) & (max_cooks > cutoff)
        cooks_outliers = [gene_ids[i] for i in np.where(flagged)[0]]
        pval[flagged] = np.nan
        if cooks_outliers:
            logger.info(f"{len(cooks_outliers)} genes with Cook's distance > {cutoff:.3g} set to NA")

    threshold = None
    if independent_filter:
        padj, threshold = independent_filtering(disp.base_mean, pval, alpha=alpha)
    else:
        padj = bh_fdr(pval)

    base = np.where(tested, disp.base_mean, 0.0)
    ln2 = math.log(2.0)
    table = pd.DataFrame(
        {
            "gene_id": gene_ids,
            "baseMean": base,
            "log2FoldChange": effect / ln2,
            "lfcSE": se / ln2,
            "statistic": stat,
            "pvalue": pval,
            "padj": padj,
        },
        columns=RESULT_COLUMNS,
    )

    return DEResult(
        table=table,
        contrast=contrast,
        size_factors=sf,
        dispersion=disp,
        design_columns=list(X.columns),
        failures=failures,
        cooks_outliers=cooks_outliers,
        filter_threshold=threshold,
    )
