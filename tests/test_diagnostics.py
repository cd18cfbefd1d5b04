import numpy as np
import pandas as pd
import pytest

from timecourse_de.diagnostics import moments_dispersion, rough_dispersion, sample_summary, zero_fraction


def test_zero_fraction():
    counts = pd.DataFrame({"ctrl_1": [0, 10, 0, 5], "stim_1": [1, 0, 3, 0]})
    assert zero_fraction(counts).tolist() == [0.5, 0.5]


def test_sample_summary():
    counts = pd.DataFrame({"a": [0, 10, 20], "b": [0, 0, 0]})
    summary = sample_summary(counts)
    assert summary.loc["a", "total"] == 30
    assert summary.loc["a", "zero_fraction"] == pytest.approx(1 / 3)
    assert summary.loc["a", "var_over_mean"] == pytest.approx(100.0 / 10.0)
    assert np.isnan(summary.loc["b", "var_over_mean"])


def test_moment_estimators_track_overdispersion():
    rng = np.random.default_rng(3)
    alpha, mu = 0.2, 500.0
    r = 1.0 / alpha
    normed = rng.negative_binomial(r, r / (r + mu), size=(400, 12)).astype(float)
    X = np.column_stack([np.ones(12), np.repeat([0.0, 1.0], 6)])

    mom = moments_dispersion(normed, np.ones(12))
    rough = rough_dispersion(normed, X)

    assert np.median(mom) == pytest.approx(alpha, rel=0.3)
    assert np.median(rough) == pytest.approx(alpha, rel=0.3)
    assert np.all(rough >= 0)
