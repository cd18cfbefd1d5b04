from __future__ import annotations

import numpy as np
from scipy import stats
from typing import Sequence, Tuple


def coef_name_for_level(column_names: Sequence[str], term: str, level: str) -> str:
    # patsy names treatment-coded columns "<term>[T.<level>]"
    name = f"{term}[T.{level}]"
    if name not in column_names:
        raise KeyError(f"Missing coefficient: {name}")
    return name


def level_contrast(
    column_names: Sequence[str],
    term: str,
    numerator: str,
    denominator: str,
    reference: str,
) -> Tuple[np.ndarray, str]:
    """
    Build contrast vector for (beta_numerator - beta_denominator) within a
    treatment-coded term whose reference level has no column of its own.
    """
    cols = list(column_names)
    L = np.zeros((1, len(cols)))

    if numerator != reference:
        L[0, cols.index(coef_name_for_level(cols, term, numerator))] += 1.0
    if denominator != reference:
        L[0, cols.index(coef_name_for_level(cols, term, denominator))] -= 1.0

    if not L.any():
        raise KeyError(f"Contrast {numerator} - {denominator} selects no coefficient.")
    name = f"{term}: {numerator} - {denominator}"
    return L, name


def wald_contrast(params: np.ndarray, cov: np.ndarray, L: np.ndarray) -> Tuple[float, float, float, float]:
    """
    Returns (estimate, standard error, statistic, pvalue) for linear contrast L' beta.

    The statistic is a Wald z, referred to the standard normal.
    """
    w = np.asarray(L, dtype=float).ravel()
    est = float(w @ params)
    se = float(np.sqrt(max(float(w @ cov @ w), 0.0)))
    stat = est / se if se > 0 else np.nan
    p = float(2 * stats.norm.sf(abs(stat)))
    return est, se, stat, p
