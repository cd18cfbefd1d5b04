"""Shared fixtures: simulated negative binomial count data."""
import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from timecourse_de.metadata_setup import Contrast, GroupLayout, build_sample_design, design_frame


def simulate_counts(
    n_genes=200,
    n_per_group=3,
    n_down=20,
    fold=4.0,
    dispersion=0.05,
    seed=0,
):
    """NB2 counts for a control vs stimulus experiment.

    The first ``n_down`` genes are ``fold`` times lower under stimulus.
    Returns (counts, design, is_down).
    """
    rng = np.random.default_rng(seed)
    base = rng.lognormal(np.log(300.0), 0.8, n_genes)
    sf = np.linspace(0.8, 1.25, 2 * n_per_group)

    mu = np.tile(base[:, None], (1, 2 * n_per_group))
    mu[:n_down, n_per_group:] /= fold
    mu = mu * sf[None, :]

    r = 1.0 / dispersion
    y = rng.negative_binomial(r, r / (r + mu))

    samples = [f"ctrl_0h_r{i + 1}" for i in range(n_per_group)]
    samples += [f"stim_6h_r{i + 1}" for i in range(n_per_group)]
    genes = [f"gene{i:04d}" for i in range(n_genes)]
    counts = pd.DataFrame(y, index=pd.Index(genes, name="gene_id"), columns=samples)

    design = design_frame(
        build_sample_design(
            samples,
            [GroupLayout("ctrl", n_per_group, "0h"), GroupLayout("stim", n_per_group, "6h")],
        )
    )
    is_down = np.zeros(n_genes, dtype=bool)
    is_down[:n_down] = True
    return counts, design, is_down


@pytest.fixture
def contrast():
    return Contrast("group", "stim", "ctrl")


@pytest.fixture
def simulated():
    return simulate_counts()


@pytest.fixture
def small_simulated():
    return simulate_counts(n_genes=40, n_down=5, seed=3)
