"""Declarative model specification.

A ModelSpec names the nonlinear mean function, decides for each parameter
whether it has a population-level intercept and/or a group-level random
effect, and carries one prior per sampled quantity:

    <param>      population intercept (if declared)
    sd_<param>   between-group standard deviation (if group effect declared)
    sigma        Gaussian residual standard deviation

The hierarchical structure is:

    y_i ~ Normal(mu_i, sigma)
    mu_i = f(x_i; theta_1[g_i], ..., theta_k[g_i])
    theta_k[g] = <param_k> + r_<param_k>[g]
    r_<param_k>[g] ~ Normal(0, sd_<param_k>)

which is the brms formula ``y ~ f(x, a, b), a + b ~ 1 + (1 | group)`` for the
default spec.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from functools import cached_property
from types import MappingProxyType
from typing import Any

from hdcurve.errors import ModelSpecError
from hdcurve.models.bayes.expression import FUNCTIONS, MeanExpression
from hdcurve.models.bayes.priors import Prior, get_default_priors

__all__ = [
    "ParameterStructure",
    "ModelSpec",
    "validate_model_spec",
    "default_model_spec",
    "RESIDUAL_SITE",
]

RESIDUAL_SITE = "sigma"
_RESERVED_PREFIXES = ("sd_", "r_", "z_", ".")


@dataclass(frozen=True)
class ParameterStructure:
    """How one mean-function parameter decomposes.

    Attributes:
        population_intercept: Parameter has a population-level value with
            its own prior. If False the population value is fixed at 0.
        group_effect: Parameter varies by group through a random effect
            with a sampled between-group standard deviation.
    """

    population_intercept: bool = True
    group_effect: bool = False


@dataclass(frozen=True)
class ModelSpec:
    """Hierarchical nonlinear regression model.

    Attributes:
        mean_function: Expression over the parameters and predictor.
        parameters: Parameter name -> ParameterStructure, in declaration order.
        priors: Site name -> Prior (see module docstring for site names).
        predictor: Name the predictor takes inside mean_function.
        residual_family: Only "gaussian" is supported.
        min_group_observations: Minimum distinct responses a group needs
            when the spec has group effects.

    Example:
        >>> spec = default_model_spec()
        >>> spec.grouped_parameters
        ('a', 'b')
    """

    mean_function: str
    parameters: Mapping[str, ParameterStructure]
    priors: Mapping[str, Prior]
    predictor: str = "x"
    residual_family: str = "gaussian"
    min_group_observations: int = 3

    def __post_init__(self) -> None:
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))
        object.__setattr__(self, "priors", MappingProxyType(dict(self.priors)))

    @cached_property
    def expression(self) -> MeanExpression:
        return MeanExpression(self.mean_function)

    @property
    def parameter_names(self) -> tuple[str, ...]:
        return tuple(self.parameters)

    @property
    def population_parameters(self) -> tuple[str, ...]:
        return tuple(n for n, s in self.parameters.items() if s.population_intercept)

    @property
    def grouped_parameters(self) -> tuple[str, ...]:
        return tuple(n for n, s in self.parameters.items() if s.group_effect)

    @property
    def has_group_effects(self) -> bool:
        return bool(self.grouped_parameters)

    def required_prior_sites(self) -> tuple[str, ...]:
        sites = list(self.population_parameters)
        sites.extend(f"sd_{n}" for n in self.grouped_parameters)
        sites.append(RESIDUAL_SITE)
        return tuple(sites)

    def validate(self) -> ModelSpec:
        validate_model_spec(self)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "mean_function": self.mean_function,
            "predictor": self.predictor,
            "parameters": {
                name: {
                    "population_intercept": s.population_intercept,
                    "group_effect": s.group_effect,
                }
                for name, s in self.parameters.items()
            },
            "priors": {name: p.to_string() for name, p in self.priors.items()},
            "residual_family": self.residual_family,
            "min_group_observations": self.min_group_observations,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ModelSpec:
        """Build from the to_dict form. Priors may be strings or Prior objects."""
        parameters = {
            name: s if isinstance(s, ParameterStructure) else ParameterStructure(**s)
            for name, s in data["parameters"].items()
        }
        priors = {
            name: p if isinstance(p, Prior) else Prior.parse(p)
            for name, p in data["priors"].items()
        }
        return cls(
            mean_function=data["mean_function"],
            parameters=parameters,
            priors=priors,
            predictor=data.get("predictor", "x"),
            residual_family=data.get("residual_family", "gaussian"),
            min_group_observations=data.get("min_group_observations", 3),
        )


def validate_model_spec(spec: ModelSpec) -> None:
    """Check a ModelSpec for structural errors.

    Checks:
    1. The mean function parses and every free variable is the predictor
       or a declared parameter; every declared parameter is used.
    2. Every sampled site has exactly one prior and there are no priors
       for undeclared sites. Scale sites need positive-support priors.
    3. Every declared parameter has a population intercept, a group
       effect, or both.

    Raises:
        ModelSpecError: On the first failed check.
    """
    if spec.residual_family != "gaussian":
        raise ModelSpecError(
            f"Unsupported residual family {spec.residual_family!r}; only 'gaussian'"
        )
    if spec.min_group_observations < 1:
        raise ModelSpecError(
            f"min_group_observations must be >= 1, got {spec.min_group_observations}"
        )
    if not spec.parameters:
        raise ModelSpecError("Model declares no parameters")

    if not spec.predictor.isidentifier():
        raise ModelSpecError(f"Predictor name {spec.predictor!r} is not an identifier")

    for name, structure in spec.parameters.items():
        if not name.isidentifier():
            raise ModelSpecError(f"Parameter name {name!r} is not an identifier")
        if name == spec.predictor:
            raise ModelSpecError(f"Parameter {name!r} collides with the predictor name")
        if name == RESIDUAL_SITE or name in FUNCTIONS or name.startswith(_RESERVED_PREFIXES):
            raise ModelSpecError(f"Parameter name {name!r} is reserved")
        if not (structure.population_intercept or structure.group_effect):
            raise ModelSpecError(
                f"Parameter {name!r} has neither a population intercept nor a group effect"
            )

    # Parses the expression (raises ModelSpecError on malformed input)
    free = spec.expression.free_variables
    declared = set(spec.parameters) | {spec.predictor}
    unknown = sorted(free - declared)
    if unknown:
        raise ModelSpecError(
            f"Mean function {spec.mean_function!r} references undeclared "
            f"parameter(s) {unknown}"
        )
    unused = sorted(set(spec.parameters) - free)
    if unused:
        raise ModelSpecError(
            f"Declared parameter(s) {unused} do not appear in {spec.mean_function!r}"
        )

    required = spec.required_prior_sites()
    missing = [site for site in required if site not in spec.priors]
    if missing:
        raise ModelSpecError(f"Missing prior(s) for {missing}")
    extra = sorted(set(spec.priors) - set(required))
    if extra:
        raise ModelSpecError(
            f"Prior(s) given for undeclared site(s) {extra}; a group-level scale "
            f"prior is only valid for parameters with group_effect=True"
        )

    for site in required:
        prior = spec.priors[site]
        prior.check(site)
        is_scale = site == RESIDUAL_SITE or site.startswith("sd_")
        if is_scale and not prior.positive_support:
            raise ModelSpecError(
                f"Scale site {site!r} needs a positive-support prior "
                f"(half_normal, half_cauchy, exponential), got {prior.family!r}"
            )


def default_model_spec() -> ModelSpec:
    """The height-diameter model ``height ~ exp(a + b / diameter)``.

    Both a and b get a population intercept and a group (species) effect.
    """
    return ModelSpec(
        mean_function="exp(a + b / x)",
        parameters={
            "a": ParameterStructure(population_intercept=True, group_effect=True),
            "b": ParameterStructure(population_intercept=True, group_effect=True),
        },
        priors=get_default_priors(),
    )
