"""End-to-end fitting, projection and summary tests.

These run the full sampler at production settings and take minutes.
Deselect with: pytest -m "not slow"
"""

import numpy as np
import pandas as pd
import pytest

from hdcurve.data.observations import ObservationSet
from hdcurve.evaluation import compute_coverage, summarize_projection
from hdcurve.models.bayes import (
    MCMCConfig,
    ModelSpec,
    ParameterStructure,
    PosteriorProjector,
    Prior,
    default_model_spec,
    fit_model,
    load_fit,
    save_fit,
)

pytestmark = pytest.mark.slow

# height = exp((a + r_a[g]) + (b + r_b[g]) / diameter) + Normal(0, 5)
TRUE_A = 4.4
TRUE_B = -5.0
TRUE_SIGMA = 5.0
GROUP_OFFSETS = {
    "Douglas-fir": (0.2, -1.0),
    "western hemlock": (0.0, 0.5),
    "red alder": (-0.2, 1.5),
}


def make_end_to_end_frame(n_obs: int = 200, seed: int = 2024) -> pd.DataFrame:
    """n_obs trees spread as evenly as possible over the three groups."""
    rng = np.random.default_rng(seed)
    groups = list(GROUP_OFFSETS)
    labels = np.array([groups[i % len(groups)] for i in range(n_obs)], dtype=object)
    r_a = np.array([GROUP_OFFSETS[g][0] for g in labels])
    r_b = np.array([GROUP_OFFSETS[g][1] for g in labels])
    diameter = np.round(rng.uniform(5.0, 45.0, size=n_obs), 1)
    mean = np.exp((TRUE_A + r_a) + (TRUE_B + r_b) / diameter)
    height = mean + rng.normal(0.0, TRUE_SIGMA, size=n_obs)
    return pd.DataFrame(
        {
            "common": labels,
            "diameter": diameter,
            "height": np.maximum(height, 0.0),
            "tree_id": np.arange(1, n_obs + 1),
        }
    )


@pytest.fixture(scope="module")
def end_to_end_observations() -> ObservationSet:
    return ObservationSet.from_dataframe(
        make_end_to_end_frame(), group_col="common", predictor_col="diameter", response_col="height"
    )


@pytest.fixture(scope="module")
def full_fit(end_to_end_observations):
    config = MCMCConfig(
        num_warmup=1000,
        num_samples=1000,
        num_chains=4,
        chain_method="parallel",
        target_accept_prob=0.95,
        seed=7,
    )
    return fit_model(end_to_end_observations, default_model_spec(), config)


# =============================================================================
# Hierarchical fit on 200 observations / 3 groups
# =============================================================================


class TestHierarchicalFit:
    """Convergence and parameter recovery at 4 x 2000 iterations."""

    def test_shape(self, full_fit):
        assert full_fit.posterior.num_chains == 4
        assert full_fit.posterior.num_draws == 1000

    def test_rhat_below_threshold(self, full_fit):
        rhat = full_fit.diagnostics.rhat
        assert max(rhat.values()) < 1.01, {k: v for k, v in rhat.items() if v >= 1.01}

    def test_population_a_recovered(self, full_fit):
        a_mean = float(full_fit.posterior.population_values("a").mean())
        assert abs(a_mean - TRUE_A) < 0.5

    def test_sigma_recovered(self, full_fit):
        sigma_mean = float(full_fit.posterior.sigma().mean())
        assert sigma_mean == pytest.approx(TRUE_SIGMA, rel=0.25)

    def test_divergences_rare(self, full_fit):
        # sd_a and sd_b are weakly identified by three groups; the neck of
        # that funnel gave 67 of 4000 divergent draws at target_accept_prob=0.8
        total_draws = full_fit.posterior.num_chains * full_fit.posterior.num_draws
        assert full_fit.diagnostics.divergences < 0.02 * total_draws

    def test_predictive_coverage(self, full_fit, end_to_end_observations):
        projector = PosteriorProjector(full_fit.posterior, full_fit.spec)
        predicted = projector.project(
            end_to_end_observations, mode="predicted", max_draws=400, seed=3
        )
        bands = summarize_projection(predicted, interval=0.9)
        coverage = compute_coverage(bands, end_to_end_observations.frame)
        assert coverage.n_obs == 200
        assert coverage.empirical == pytest.approx(0.9, abs=0.07)

    def test_unseen_group_uses_population(self, full_fit):
        projector = PosteriorProjector(full_fit.posterior, full_fit.spec)
        rows = pd.DataFrame({"group": ["grand fir"], "x": [30.0]})
        fitted = projector.project(rows, mode="fitted")
        posterior = full_fit.posterior
        expected = np.exp(posterior.population_values("a") + posterior.population_values("b") / 30.0)
        np.testing.assert_allclose(fitted["value"].to_numpy(), expected)

    def test_save_load_projection_identical(self, full_fit, end_to_end_observations, tmp_path):
        nc_path, _ = save_fit(full_fit, tmp_path, stem="e2e")
        loaded = load_fit(nc_path)
        original = PosteriorProjector(full_fit.posterior, full_fit.spec).project(
            end_to_end_observations, mode="predicted", max_draws=50, seed=9
        )
        restored = PosteriorProjector(loaded.posterior, loaded.spec).project(
            end_to_end_observations, mode="predicted", max_draws=50, seed=9
        )
        np.testing.assert_allclose(original["value"], restored["value"])


# =============================================================================
# Single-parameter recovery
# =============================================================================


def _pooled_observations(n: int, true_k: float, seed: int) -> ObservationSet:
    rng = np.random.default_rng(seed)
    x = rng.uniform(5.0, 40.0, size=n)
    y = np.maximum(true_k * x + rng.normal(0.0, 2.0, size=n), 0.0)
    return ObservationSet.from_dataframe(
        pd.DataFrame({"g": "fir", "x": x, "y": y}), "g", "x", "y"
    )


class TestSingleParameterRecovery:
    """Posterior mean approaches the generative value as data grow."""

    TRUE_K = 1.3

    @pytest.fixture(scope="class")
    def spec(self) -> ModelSpec:
        return ModelSpec(
            mean_function="k * x",
            parameters={"k": ParameterStructure(population_intercept=True, group_effect=False)},
            priors={"k": Prior("normal", 1.2, 0.2), "sigma": Prior("half_normal", scale=5.0)},
        )

    def test_error_shrinks_with_sample_size(self, spec):
        config = MCMCConfig(num_warmup=500, num_samples=1000, num_chains=4, seed=1)
        errors = []
        for n in (20, 500):
            result = fit_model(_pooled_observations(n, self.TRUE_K, seed=n), spec, config)
            assert result.diagnostics.rhat["k"] < 1.01
            errors.append(abs(float(result.posterior.population_values("k").mean()) - self.TRUE_K))
        assert errors[1] < 0.01
        assert errors[1] <= errors[0] + 0.005

    def test_deterministic_means(self, spec):
        obs = _pooled_observations(100, self.TRUE_K, seed=0)
        config = MCMCConfig(num_warmup=300, num_samples=300, num_chains=2, seed=4)
        first = fit_model(obs, spec, config).posterior.posterior_means()
        second = fit_model(obs, spec, config).posterior.posterior_means()
        assert first == pytest.approx(second, rel=1e-12)
