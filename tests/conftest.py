"""Pytest configuration and shared fixtures.

The sys.path manipulation below lets the suite run from a checkout without
`pip install -e .`.

Shared fixtures build synthetic height-diameter data from the generative
model the package fits:

    height = exp(a_g + b_g / diameter) + Normal(0, sigma)
"""
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from hdcurve.data.observations import ObservationSet  # noqa: E402
from hdcurve.models.bayes.posterior import PosteriorTable  # noqa: E402

GROUP_PARAMS = {
    "Douglas-fir": (4.6, -6.0),
    "western hemlock": (4.4, -4.5),
    "red alder": (4.2, -3.5),
}


def make_hd_frame(
    n_per_group: int = 20,
    group_params: dict[str, tuple[float, float]] | None = None,
    sigma: float = 5.0,
    seed: int = 0,
) -> pd.DataFrame:
    """Synthetic tree table with `common`, `diameter`, `height`, `plot` columns.

    Diameters are drawn from U(5, 40) so the mean height is far above the
    noise and responses stay positive.
    """
    if group_params is None:
        group_params = GROUP_PARAMS
    rng = np.random.default_rng(seed)
    frames = []
    for group, (a, b) in group_params.items():
        diameter = np.round(rng.uniform(5.0, 40.0, size=n_per_group), 1)
        height = np.exp(a + b / diameter) + rng.normal(0.0, sigma, size=n_per_group)
        frames.append(
            pd.DataFrame(
                {
                    "common": group,
                    "diameter": diameter,
                    "height": np.maximum(height, 0.0),
                    "plot": rng.integers(1, 10, size=n_per_group),
                }
            )
        )
    return pd.concat(frames, ignore_index=True)


def make_posterior(
    n_chains: int = 2,
    n_draws: int = 50,
    groups: tuple[str, ...] = ("Douglas-fir", "red alder"),
    seed: int = 0,
) -> PosteriorTable:
    """Hand-built posterior for the default exp(a + b / x) spec."""
    rng = np.random.default_rng(seed)
    shape = (n_chains, n_draws)
    n_groups = len(groups)
    samples = {
        "a": 4.5 + 0.05 * rng.standard_normal(shape),
        "sd_a": np.abs(0.2 + 0.02 * rng.standard_normal(shape)),
        "r_a": 0.1 * rng.standard_normal(shape + (n_groups,)),
        "b": -5.0 + 0.2 * rng.standard_normal(shape),
        "sd_b": np.abs(1.0 + 0.1 * rng.standard_normal(shape)),
        "r_b": 0.5 * rng.standard_normal(shape + (n_groups,)),
        "sigma": np.abs(5.0 + 0.3 * rng.standard_normal(shape)),
    }
    stats = {
        "diverging": np.zeros(shape, dtype=bool),
        "acceptance_rate": np.full(shape, 0.85),
        "tree_depth": np.full(shape, 3),
    }
    return PosteriorTable(samples, stats, groups, ("a", "b"))


@pytest.fixture
def hd_frame() -> pd.DataFrame:
    return make_hd_frame()


@pytest.fixture
def observations(hd_frame) -> ObservationSet:
    return ObservationSet.from_dataframe(
        hd_frame, group_col="common", predictor_col="diameter", response_col="height"
    )


@pytest.fixture
def posterior() -> PosteriorTable:
    return make_posterior()
