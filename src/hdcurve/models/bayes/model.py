"""Log density of the hierarchical nonlinear curve model.

The sampler works on a flat unconstrained vector. ParameterLayout is the
explicit ownership map between that vector and the model's sites:

    for each parameter p (declaration order):
        p        population intercept      real        (if declared)
        sd_p     between-group scale       positive    (if group effect)
        z_p      standardized effects      real[G]     (if group effect)
    sigma        residual scale            positive

Group effects use the non-centered parameterization r_p = sd_p * z_p with
z_p ~ Normal(0, 1), which avoids funnel geometry when sd_p is small.
Positive sites are mapped through numpyro's biject_to(positive), and the
log-Jacobian of that transform is included in the density.

Stored (constrained) quantities per draw:
    p, sd_p, r_p[group] for every group, sigma
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import jax
import jax.numpy as jnp
import numpy as np
import numpyro
import numpyro.distributions as dist
from numpyro.distributions import constraints
from numpyro.distributions.transforms import biject_to

from hdcurve.data.observations import ObservationSet
from hdcurve.models.bayes.spec import RESIDUAL_SITE, ModelSpec

__all__ = [
    "Site",
    "ParameterBlock",
    "ParameterLayout",
    "make_log_density",
    "make_potential_and_grad",
]

# Sampler arithmetic is float64; gradients must match
numpyro.enable_x64()

_POSITIVE = biject_to(constraints.positive)


@dataclass(frozen=True)
class Site:
    """A contiguous slice of the unconstrained vector.

    Attributes:
        name: Site name (e.g. "a", "sd_a", "z_a", "sigma").
        offset: Start index in the flat vector.
        size: Number of entries.
        positive: Whether the site is mapped through the positive bijection.
    """

    name: str
    offset: int
    size: int
    positive: bool = False

    @property
    def slice(self) -> slice:
        return slice(self.offset, self.offset + self.size)


@dataclass(frozen=True)
class ParameterBlock:
    """Ownership record for one mean-function parameter."""

    name: str
    population: Site | None
    scale: Site | None
    effects: Site | None

    @property
    def effect_name(self) -> str:
        return f"r_{self.name}"


class ParameterLayout:
    """Map between the flat unconstrained vector and named model sites.

    Args:
        spec: Validated model specification.
        groups: Group labels in index order (ObservationSet.groups).

    Example:
        >>> layout = ParameterLayout(default_model_spec(), ("fir", "pine"))
        >>> layout.dim  # a, sd_a, z_a[2], b, sd_b, z_b[2], sigma
        9
        >>> layout.scalar_names[:4]
        ['a', 'sd_a', 'r_a[fir]', 'r_a[pine]']
    """

    def __init__(self, spec: ModelSpec, groups: tuple[str, ...]):
        self.spec = spec
        self.groups = tuple(groups)
        n_groups = len(self.groups)

        blocks = []
        offset = 0
        for name, structure in spec.parameters.items():
            population = scale = effects = None
            if structure.population_intercept:
                population = Site(name, offset, 1)
                offset += 1
            if structure.group_effect:
                scale = Site(f"sd_{name}", offset, 1, positive=True)
                offset += 1
                effects = Site(f"z_{name}", offset, n_groups)
                offset += n_groups
            blocks.append(ParameterBlock(name, population, scale, effects))

        self.blocks: tuple[ParameterBlock, ...] = tuple(blocks)
        self.sigma = Site(RESIDUAL_SITE, offset, 1, positive=True)
        self.dim = offset + 1

    @property
    def sites(self) -> list[Site]:
        out = []
        for block in self.blocks:
            out.extend(s for s in (block.population, block.scale, block.effects) if s)
        out.append(self.sigma)
        return out

    @property
    def site_shapes(self) -> dict[str, tuple[int, ...]]:
        """Shapes of stored (constrained) sites, per draw."""
        shapes: dict[str, tuple[int, ...]] = {}
        for block in self.blocks:
            if block.population is not None:
                shapes[block.name] = ()
            if block.scale is not None:
                shapes[block.scale.name] = ()
                shapes[block.effect_name] = (len(self.groups),)
        shapes[RESIDUAL_SITE] = ()
        return shapes

    @property
    def scalar_names(self) -> list[str]:
        """Flattened column names of the stored quantities."""
        names = []
        for site, shape in self.site_shapes.items():
            if shape:
                names.extend(f"{site}[{g}]" for g in self.groups)
            else:
                names.append(site)
        return names

    def constrain(self, samples: np.ndarray) -> dict[str, np.ndarray]:
        """Map unconstrained samples to stored quantities.

        Args:
            samples: Array of shape (..., dim).

        Returns:
            Site name -> array of shape (...,) or (..., n_groups).
        """
        samples = np.asarray(samples, dtype=np.float64)
        out: dict[str, np.ndarray] = {}
        for block in self.blocks:
            if block.population is not None:
                out[block.name] = samples[..., block.population.offset]
            if block.scale is not None:
                sd = np.exp(samples[..., block.scale.offset])
                out[block.scale.name] = sd
                out[block.effect_name] = sd[..., None] * samples[..., block.effects.slice]
        out[RESIDUAL_SITE] = np.exp(samples[..., self.sigma.offset])
        return out

    def initial_bounds(self) -> tuple[float, float]:
        """Uniform range for random initialization on the unconstrained scale."""
        return (-2.0, 2.0)


def make_log_density(
    spec: ModelSpec,
    observations: ObservationSet,
    layout: ParameterLayout,
) -> Callable[[jnp.ndarray], jnp.ndarray]:
    """Build the unnormalized log posterior on the unconstrained space.

    Args:
        spec: Validated model specification.
        observations: Training data.
        layout: Layout built from spec and observations.groups.

    Returns:
        JAX-traceable function theta -> log density (scalar).
    """
    x = jnp.asarray(observations.x)
    y = jnp.asarray(observations.y)
    group_idx = jnp.asarray(observations.group_index)
    expr = spec.expression

    population_priors = {
        b.name: spec.priors[b.name].to_distribution()
        for b in layout.blocks
        if b.population is not None
    }
    scale_priors = {
        b.name: spec.priors[b.scale.name].to_distribution()
        for b in layout.blocks
        if b.scale is not None
    }
    sigma_prior = spec.priors[RESIDUAL_SITE].to_distribution()
    std_normal = dist.Normal(0.0, 1.0)

    def _positive(u: jnp.ndarray, prior: dist.Distribution) -> tuple[jnp.ndarray, jnp.ndarray]:
        value = _POSITIVE(u)
        return value, prior.log_prob(value) + _POSITIVE.log_abs_det_jacobian(u, value)

    def log_density(theta: jnp.ndarray) -> jnp.ndarray:
        lp = 0.0
        env = {spec.predictor: x}
        for block in layout.blocks:
            value = 0.0
            if block.population is not None:
                intercept = theta[block.population.offset]
                lp = lp + population_priors[block.name].log_prob(intercept)
                value = intercept
            if block.scale is not None:
                sd, lp_sd = _positive(theta[block.scale.offset], scale_priors[block.name])
                z = theta[block.effects.slice]
                lp = lp + lp_sd + jnp.sum(std_normal.log_prob(z))
                value = value + (sd * z)[group_idx]
            env[block.name] = value

        sigma, lp_sigma = _positive(theta[layout.sigma.offset], sigma_prior)
        mu = expr.evaluate(env, jnp)
        lp = lp + lp_sigma + jnp.sum(dist.Normal(mu, sigma).log_prob(y))
        return lp

    return log_density


def make_potential_and_grad(
    spec: ModelSpec,
    observations: ObservationSet,
    layout: ParameterLayout,
) -> Callable[[np.ndarray], tuple[float, np.ndarray]]:
    """Compile potential energy (negative log density) and its gradient.

    The returned function takes and returns numpy float64 values so the
    sampler loop stays in numpy. Non-finite results are passed through
    unchanged; the sampler decides how to treat them.
    """
    log_density = make_log_density(spec, observations, layout)
    value_and_grad = jax.jit(jax.value_and_grad(lambda theta: -log_density(theta)))

    def potential_and_grad(theta: np.ndarray) -> tuple[float, np.ndarray]:
        value, grad = value_and_grad(jnp.asarray(theta, dtype=jnp.float64))
        return float(value), np.asarray(grad, dtype=np.float64)

    return potential_and_grad
