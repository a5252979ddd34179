"""Posterior draw table.

PosteriorTable holds the retained draws of every chain as read-only numpy
arrays of shape (chain, draw, ...) per site, plus per-draw sampler stats.
It is created once by fit_model and never mutated, so projections and
summaries can read it concurrently without locking.

Flat draw ids run chain-major: draw_id = chain * num_draws + iteration.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType

import arviz as az
import numpy as np
import pandas as pd

from hdcurve.models.bayes.spec import RESIDUAL_SITE

__all__ = ["Draw", "PosteriorTable"]

SAMPLE_STAT_FIELDS = (
    "diverging",
    "acceptance_rate",
    "tree_depth",
    "n_steps",
    "energy",
    "energy_error",
    "step_size",
)


@dataclass(frozen=True)
class Draw:
    """One retained posterior draw.

    Attributes:
        draw_id: Flat chain-major index into the table.
        chain_id: Chain the draw came from.
        iteration_index: Post-warmup iteration within the chain.
        parameter_values: Flattened scalar values, e.g. "a", "sd_a",
            "r_a[Douglas-fir]".
        sigma: Residual standard deviation.
        divergent: Whether the transition producing this draw diverged.
    """

    draw_id: int
    chain_id: int
    iteration_index: int
    parameter_values: Mapping[str, float] = field(repr=False)
    sigma: float
    divergent: bool = False


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, copy=True)
    arr.setflags(write=False)
    return arr


class PosteriorTable:
    """Immutable posterior draws across chains.

    Args:
        samples: Site name -> array of shape (chain, draw) or
            (chain, draw, n_groups) for group-effect sites (names "r_<p>").
        sample_stats: Stat name -> array of shape (chain, draw).
        groups: Group labels, in the order of the last axis of "r_" sites.
        parameters: Mean-function parameter names in declaration order.

    Example:
        >>> table = result.posterior
        >>> table.num_chains, table.num_draws
        (4, 1000)
        >>> draw = table.draw(0)
        >>> draw.parameter_values["a"]
        4.47...
    """

    def __init__(
        self,
        samples: Mapping[str, np.ndarray],
        sample_stats: Mapping[str, np.ndarray],
        groups: tuple[str, ...],
        parameters: tuple[str, ...],
    ):
        if RESIDUAL_SITE not in samples:
            raise ValueError(f"samples must include {RESIDUAL_SITE!r}")
        shape = np.shape(samples[RESIDUAL_SITE])
        if len(shape) != 2:
            raise ValueError(f"{RESIDUAL_SITE!r} must have shape (chain, draw), got {shape}")
        for name, arr in samples.items():
            if np.shape(arr)[:2] != shape:
                raise ValueError(f"Site {name!r} has shape {np.shape(arr)}, expected {shape}+")

        self._samples = MappingProxyType({k: _readonly(v) for k, v in samples.items()})
        self._stats = MappingProxyType({k: _readonly(v) for k, v in sample_stats.items()})
        self.groups = tuple(groups)
        self.parameters = tuple(parameters)
        self.num_chains, self.num_draws = shape
        self._group_lookup = {g: i for i, g in enumerate(self.groups)}

    # -- shape ---------------------------------------------------------------

    def __len__(self) -> int:
        return self.num_chains * self.num_draws

    @property
    def site_names(self) -> tuple[str, ...]:
        return tuple(self._samples)

    @property
    def sample_stats(self) -> Mapping[str, np.ndarray]:
        return self._stats

    @property
    def scalar_names(self) -> list[str]:
        names = []
        for site, arr in self._samples.items():
            if arr.ndim == 3:
                names.extend(f"{site}[{g}]" for g in self.groups)
            else:
                names.append(site)
        return names

    def __getitem__(self, site: str) -> np.ndarray:
        return self._samples[site]

    def __contains__(self, site: object) -> bool:
        return site in self._samples

    def flat(self, site: str) -> np.ndarray:
        """Site values with chains stacked: shape (len(self), ...)."""
        arr = self._samples[site]
        return arr.reshape((len(self),) + arr.shape[2:])

    def split_draw_id(self, draw_id: int) -> tuple[int, int]:
        if not 0 <= draw_id < len(self):
            raise IndexError(f"draw_id {draw_id} out of range [0, {len(self)})")
        return divmod(int(draw_id), self.num_draws)

    # -- parameter views -------------------------------------------------------

    def has_group(self, group: str) -> bool:
        return group in self._group_lookup

    def group_position(self, group: str) -> int | None:
        return self._group_lookup.get(group)

    def population_values(self, name: str) -> np.ndarray:
        """Population-level values of a parameter, shape (len(self),).

        Parameters declared without a population intercept return zeros.
        """
        if name in self._samples:
            return self.flat(name)
        if name not in self.parameters:
            raise KeyError(f"Unknown parameter {name!r}")
        return np.zeros(len(self))

    def group_effects(self, name: str) -> np.ndarray | None:
        """Group effects r_<name>, shape (len(self), n_groups), or None."""
        site = f"r_{name}"
        if site not in self._samples:
            return None
        return self.flat(site)

    def sigma(self) -> np.ndarray:
        return self.flat(RESIDUAL_SITE)

    # -- draws ---------------------------------------------------------------

    def draw(self, draw_id: int) -> Draw:
        chain, iteration = self.split_draw_id(draw_id)
        values: dict[str, float] = {}
        for site, arr in self._samples.items():
            if arr.ndim == 3:
                for g, label in enumerate(self.groups):
                    values[f"{site}[{label}]"] = float(arr[chain, iteration, g])
            else:
                values[site] = float(arr[chain, iteration])
        divergent = False
        if "diverging" in self._stats:
            divergent = bool(self._stats["diverging"][chain, iteration])
        return Draw(
            draw_id=int(draw_id),
            chain_id=chain,
            iteration_index=iteration,
            parameter_values=MappingProxyType(values),
            sigma=values[RESIDUAL_SITE],
            divergent=divergent,
        )

    def __iter__(self) -> Iterator[Draw]:
        for draw_id in range(len(self)):
            yield self.draw(draw_id)

    # -- summaries and conversion ----------------------------------------------

    def posterior_means(self) -> dict[str, float]:
        """Mean of every scalar quantity across all chains and draws."""
        means: dict[str, float] = {}
        for site, arr in self._samples.items():
            if arr.ndim == 3:
                site_mean = arr.mean(axis=(0, 1))
                for g, label in enumerate(self.groups):
                    means[f"{site}[{label}]"] = float(site_mean[g])
            else:
                means[site] = float(arr.mean())
        return means

    def scalar_draws(self) -> dict[str, np.ndarray]:
        """Every scalar quantity as a (chain, draw) array."""
        out: dict[str, np.ndarray] = {}
        for site, arr in self._samples.items():
            if arr.ndim == 3:
                for g, label in enumerate(self.groups):
                    out[f"{site}[{label}]"] = arr[:, :, g]
            else:
                out[site] = arr
        return out

    def to_dataframe(self) -> pd.DataFrame:
        """Wide draw table: one row per draw with .chain, .iteration, .draw."""
        chain_idx, iter_idx = np.meshgrid(
            np.arange(self.num_chains), np.arange(self.num_draws), indexing="ij"
        )
        data: dict[str, np.ndarray] = {
            ".chain": chain_idx.ravel(),
            ".iteration": iter_idx.ravel(),
            ".draw": np.arange(len(self)),
        }
        for name, arr in self.scalar_draws().items():
            data[name] = arr.ravel()
        if "diverging" in self._stats:
            data["divergent"] = self._stats["diverging"].ravel()
        return pd.DataFrame(data)

    def to_inference_data(self) -> az.InferenceData:
        """Convert to ArviZ InferenceData (posterior + sample_stats groups)."""
        posterior = {name: np.asarray(arr) for name, arr in self._samples.items()}
        dims = {name: ["group"] for name, arr in self._samples.items() if arr.ndim == 3}
        idata = az.from_dict(
            posterior=posterior,
            sample_stats={name: np.asarray(arr) for name, arr in self._stats.items()},
            coords={"group": list(self.groups)},
            dims=dims,
        )
        # from_dict attrs land on the InferenceData root, not the posterior group
        idata.posterior.attrs["parameters"] = ",".join(self.parameters)
        return idata

    @classmethod
    def from_inference_data(
        cls, idata: az.InferenceData, parameters: Sequence[str] | None = None
    ) -> PosteriorTable:
        """Rebuild a table from InferenceData written by to_inference_data.

        `parameters` is used only when the posterior group carries no
        "parameters" attribute (e.g. files written by other tools).
        """
        posterior = idata.posterior
        samples = {name: posterior[name].values for name in posterior.data_vars}
        stats = {}
        if "sample_stats" in idata.groups():
            stats = {name: idata.sample_stats[name].values for name in idata.sample_stats.data_vars}
        groups = ()
        if "group" in posterior.coords:
            groups = tuple(str(g) for g in posterior.coords["group"].values)
        stored = posterior.attrs.get("parameters")
        if stored is not None:
            names = tuple(str(stored).split(","))
        elif parameters is not None:
            names = tuple(parameters)
        else:
            raise ValueError("InferenceData posterior is missing the 'parameters' attribute")
        return cls(samples, stats, groups, names)

    def __repr__(self) -> str:
        return (
            f"PosteriorTable(chains={self.num_chains}, draws={self.num_draws}, "
            f"sites={list(self.site_names)})"
        )
