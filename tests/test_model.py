import numpy as np
import pandas as pd
import pytest

from timecourse_de.contrasts import coef_name_for_level, level_contrast, wald_contrast
from timecourse_de.exceptions import InvalidDesign
from timecourse_de.metadata_setup import Contrast
from timecourse_de.model import build_design_matrix, fit_gene, fit_genes, resolve_n_jobs


@pytest.fixture
def design():
    return pd.DataFrame(
        {"group": ["ctrl", "ctrl", "ctrl", "stim", "stim", "stim", "lps", "lps", "lps"]},
        index=[f"s{i}" for i in range(9)],
    )


def test_design_matrix_uses_denominator_as_reference(design):
    X, term = build_design_matrix(design, Contrast("group", "stim", "lps"))
    assert X.shape == (9, 3)
    assert list(X.index) == list(design.index)
    assert f"{term}[T.stim]" in X.columns
    assert f"{term}[T.ctrl]" in X.columns
    assert f"{term}[T.lps]" not in X.columns


def test_level_contrast_between_non_reference_levels(design):
    X, term = build_design_matrix(design, Contrast("group", "stim", "ctrl"))
    X_lps, term_lps = build_design_matrix(design, Contrast("group", "stim", "lps"))
    L, name = level_contrast(X_lps.columns, term_lps, "stim", "ctrl", reference="lps")
    assert L.tolist()[0].count(1.0) == 1 and L.tolist()[0].count(-1.0) == 1
    assert "stim - ctrl" in name
    with pytest.raises(KeyError):
        coef_name_for_level(X.columns, term, "knockdown")


def test_fit_gene_recovers_fold_change(design):
    X, term = build_design_matrix(design, Contrast("group", "stim", "ctrl"))
    L, _ = level_contrast(X.columns, term, "stim", "ctrl", reference="ctrl")
    y = np.array([100, 104, 96, 25, 26, 24, 50, 51, 49], dtype=float)

    fit = fit_gene(y, X.to_numpy(), np.zeros(9), 0.01, L)

    assert fit.converged and fit.error is None
    assert fit.effect == pytest.approx(np.log(25 / 100), abs=1e-4)
    assert fit.se > 0
    assert fit.statistic == pytest.approx(fit.effect / fit.se)
    assert fit.pvalue < 1e-6
    assert np.isnan(fit.max_cooks)


def test_fit_gene_offset_absorbs_depth(design):
    X, term = build_design_matrix(design, Contrast("group", "stim", "ctrl"))
    L, _ = level_contrast(X.columns, term, "stim", "ctrl", reference="ctrl")
    sf = np.array([1, 1, 1, 2, 2, 2, 1, 1, 1], dtype=float)
    y = 50.0 * sf
    fit = fit_gene(y, X.to_numpy(), np.log(sf), 0.01, L, cooks_samples=np.ones(9, dtype=bool))
    assert fit.effect == pytest.approx(0.0, abs=1e-4)
    assert fit.max_cooks == pytest.approx(0.0, abs=1e-6)


def test_rank_deficient_design():
    design = pd.DataFrame(
        {"group": ["a", "a", "b", "b"], "batch": ["x", "x", "y", "y"]}, index=list("pqrs")
    )
    with pytest.raises(InvalidDesign, match="full rank"):
        build_design_matrix(design, Contrast("group", "b", "a"), covariates=["batch"])


def test_fit_genes_keeps_gene_order(design):
    X, term = build_design_matrix(design, Contrast("group", "stim", "ctrl"))
    L, _ = level_contrast(X.columns, term, "stim", "ctrl", reference="ctrl")
    counts = np.array(
        [
            [10, 10, 10, 40, 40, 40, 10, 10, 10],
            [40, 40, 40, 10, 10, 10, 40, 40, 40],
            [20, 20, 20, 20, 20, 20, 20, 20, 20],
        ]
    )
    fits = fit_genes(counts, X.to_numpy(), np.zeros(9), np.full(3, 0.01), L)
    assert [f.effect / np.log(4) for f in fits] == pytest.approx([1.0, -1.0, 0.0], abs=1e-4)


def test_resolve_n_jobs():
    assert resolve_n_jobs(3) == 3
    assert resolve_n_jobs(0) == 1
    assert resolve_n_jobs(None) >= 1


def test_group_with_all_zero_counts_is_significant():
    design = pd.DataFrame({"group": ["ctrl"] * 3 + ["stim"] * 3}, index=[f"s{i}" for i in range(6)])
    X, term = build_design_matrix(design, Contrast("group", "stim", "ctrl"))
    L, _ = level_contrast(X.columns, term, "stim", "ctrl", reference="ctrl")
    y = np.array([900, 1000, 1200, 0, 0, 0], dtype=float)

    fit = fit_gene(y, X.to_numpy(), np.zeros(6), 0.05, L, cooks_samples=np.ones(6, dtype=bool))

    assert fit.converged and fit.error is None
    assert -30 <= fit.effect / np.log(2) < -5
    assert fit.se / np.log(2) < 5
    assert fit.pvalue < 1e-6
    assert np.isfinite(fit.max_cooks)


def test_bounded_refit_matches_irls(design):
    X, term = build_design_matrix(design, Contrast("group", "stim", "ctrl"))
    L, _ = level_contrast(X.columns, term, "stim", "ctrl", reference="ctrl")
    y = np.array([100, 104, 96, 25, 26, 24, 50, 51, 49], dtype=float)

    irls = fit_gene(y, X.to_numpy(), np.zeros(9), 0.01, L)
    refit = fit_gene(y, X.to_numpy(), np.zeros(9), 0.01, L, maxiter=1)

    assert refit.converged
    assert refit.effect == pytest.approx(irls.effect, abs=1e-2)
    assert refit.se == pytest.approx(irls.se, rel=1e-2)


def test_wald_contrast():
    params = np.array([2.0, -1.0, 0.5])
    cov = np.diag([0.04, 0.09, 0.16])
    est, se, stat, p = wald_contrast(params, cov, np.array([[0.0, 1.0, -1.0]]))
    assert est == pytest.approx(-1.5)
    assert se == pytest.approx(0.5)
    assert stat == pytest.approx(-3.0)
    assert p == pytest.approx(0.0026998, rel=1e-4)
