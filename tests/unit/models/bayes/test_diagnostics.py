"""Tests for convergence diagnostics.

Tests cover:
- split_rhat: known values, mixing vs stuck chains, degenerate input
- compute_diagnostics: thresholds, warning emission, summary frame
- get_divergence_info: counts and locations
"""

import warnings

import numpy as np
import pytest

from hdcurve.errors import SamplerNonConvergenceError
from hdcurve.models.bayes.diagnostics import (
    ConvergenceDiagnostics,
    compute_diagnostics,
    get_divergence_info,
    split_rhat,
)
from hdcurve.models.bayes.posterior import PosteriorTable
from tests.conftest import make_posterior


def _table(sigma: np.ndarray, diverging: np.ndarray | None = None) -> PosteriorTable:
    stats = {} if diverging is None else {"diverging": diverging}
    return PosteriorTable({"sigma": sigma}, stats, (), ())


# =============================================================================
# split_rhat
# =============================================================================


class TestSplitRhat:
    """Tests for the split-chain R-hat estimator."""

    def test_iid_chains_near_one(self):
        draws = np.random.default_rng(0).standard_normal((4, 1000))
        assert split_rhat(draws) == pytest.approx(1.0, abs=0.01)

    def test_offset_chains_large(self):
        draws = np.random.default_rng(1).standard_normal((4, 500))
        draws[0] += 5.0
        assert split_rhat(draws) > 1.5

    def test_trending_chain_detected_by_split(self):
        # A single chain drifting upward; splitting exposes the trend
        draws = np.linspace(0, 10, 400)[None, :] + 0.1 * np.random.default_rng(2).standard_normal(
            (1, 400)
        )
        assert split_rhat(draws) > 1.1

    def test_hand_computed_value(self):
        draws = np.array([[1.0, 2.0, 3.0, 4.0], [2.0, 3.0, 4.0, 5.0]])
        # Split chains: [1,2] [3,4] [2,3] [4,5]; n = 2
        means = np.array([1.5, 3.5, 2.5, 4.5])
        within = 0.5
        between = 2 * means.var(ddof=1)
        expected = np.sqrt(((1 / 2) * within + between / 2) / within)
        assert split_rhat(draws) == pytest.approx(expected)

    def test_constant_draws(self):
        assert split_rhat(np.full((2, 10), 3.0)) == 1.0

    def test_constant_but_disagreeing(self):
        draws = np.vstack([np.full(10, 1.0), np.full(10, 2.0)])
        assert split_rhat(draws) == float("inf")

    def test_too_few_draws(self):
        assert np.isnan(split_rhat(np.zeros((2, 3))))

    def test_requires_2d(self):
        with pytest.raises(ValueError):
            split_rhat(np.zeros(10))


# =============================================================================
# compute_diagnostics
# =============================================================================


class TestComputeDiagnostics:
    """Tests for compute_diagnostics."""

    def test_well_mixed_passes(self):
        sigma = 1.0 + 0.1 * np.random.default_rng(0).standard_normal((4, 500))
        diags = compute_diagnostics(_table(sigma))
        assert isinstance(diags, ConvergenceDiagnostics)
        assert diags.passed
        assert diags.failing_params == []
        assert diags.warnings == ()
        assert diags.ess["sigma"] > 400

    def test_stuck_chain_fails_and_warns(self):
        sigma = 1.0 + 0.1 * np.random.default_rng(0).standard_normal((4, 500))
        sigma[2] += 3.0
        with pytest.warns(SamplerNonConvergenceError):
            diags = compute_diagnostics(_table(sigma))
        assert not diags.passed
        assert diags.failing_params == ["sigma"]
        assert diags.rhat_max > 1.01
        assert isinstance(diags.warnings[0], SamplerNonConvergenceError)

    def test_warning_kept_when_not_emitted(self):
        sigma = np.abs(np.random.default_rng(0).standard_normal((2, 20))) + 1
        with warnings.catch_warnings():
            warnings.simplefilter("error", SamplerNonConvergenceError)
            diags = compute_diagnostics(_table(sigma), emit_warning=False)
        assert not diags.passed
        assert len(diags.warnings) == 1

    def test_ess_threshold_configurable(self):
        sigma = 1.0 + 0.1 * np.random.default_rng(3).standard_normal((2, 100))
        diags = compute_diagnostics(
            _table(sigma), rhat_threshold=1.1, ess_threshold=50, emit_warning=False
        )
        assert diags.passed
        assert diags.ess_threshold == 50

    def test_nan_rhat_fails(self):
        sigma = 1.0 + 0.1 * np.random.default_rng(0).standard_normal((2, 3))
        diags = compute_diagnostics(_table(sigma), ess_threshold=0, emit_warning=False)
        assert not diags.passed
        assert "sigma" in diags.failing_params

    def test_every_scalar_reported(self, posterior):
        diags = compute_diagnostics(posterior, emit_warning=False)
        assert set(diags.rhat) == set(posterior.scalar_names)
        assert list(diags.summary_df.columns) == ["mean", "sd", "q2.5", "q97.5", "ess", "r_hat"]

    def test_single_draw_per_chain_fails_without_raising(self):
        sigma = np.array([[1.0], [1.2]])
        diags = compute_diagnostics(_table(sigma), emit_warning=False)
        assert np.isnan(diags.ess["sigma"])
        assert np.isnan(diags.rhat["sigma"])
        assert diags.failing_params == ["sigma"]
        assert not diags.passed

    def test_summary_values(self, posterior):
        diags = compute_diagnostics(posterior, emit_warning=False)
        flat = posterior.flat("r_a")[:, 1]
        row = diags.summary_df.loc["r_a[red alder]"]
        assert row["mean"] == pytest.approx(flat.mean())
        assert row["sd"] == pytest.approx(flat.std(ddof=1))
        assert row["q97.5"] == pytest.approx(np.quantile(flat, 0.975))
        assert row["r_hat"] == diags.rhat["r_a[red alder]"]
        assert not diags.summary_df.isna().any().any()

    def test_divergences_counted(self):
        sigma = 1.0 + 0.1 * np.random.default_rng(0).standard_normal((2, 50))
        diverging = np.zeros((2, 50), dtype=bool)
        diverging[1, [3, 9]] = True
        diags = compute_diagnostics(_table(sigma, diverging), emit_warning=False)
        assert diags.divergences == 2

    def test_to_dict_serializable(self, posterior):
        d = compute_diagnostics(posterior, emit_warning=False).to_dict()
        assert set(d) >= {"passed", "rhat_max", "ess_min", "divergences", "rhat", "ess"}
        assert all(isinstance(w, str) for w in d["warnings"])

    def test_repr(self, posterior):
        text = repr(compute_diagnostics(posterior, emit_warning=False))
        assert text.startswith("ConvergenceDiagnostics(")


class TestDivergenceInfo:
    """Tests for get_divergence_info."""

    def test_locations(self):
        diverging = np.zeros((3, 10), dtype=bool)
        diverging[0, 2] = True
        diverging[2, [5, 7]] = True
        info = get_divergence_info(_table(np.ones((3, 10)), diverging))
        assert info["total"] == 3
        assert info["per_chain"] == [1, 0, 2]
        assert info["rate"] == pytest.approx(0.1)
        assert info["locations"] == {0: [2], 2: [5, 7]}

    def test_missing_stat(self):
        info = get_divergence_info(_table(np.ones((2, 10))))
        assert info["total"] == 0

    def test_from_fixture(self):
        info = get_divergence_info(make_posterior())
        assert info["total"] == 0
        assert info["per_chain"] == [0, 0]
