"""Prior configuration for the hierarchical curve model.

Prior roles (default model ``exp(a + b / x)`` with group effects on a and b):
- a: Population intercept of the log-scale asymptote. exp(a) is the
  height approached at large diameter.
- b: Population curvature. Negative values bend the curve up from zero.
- sd_a, sd_b: Between-group standard deviations of the group effects
  r_a, r_b. Large values mean less pooling across groups.
- sigma: Residual (observation) noise on the response scale.

Priors are written as short strings in configuration files, e.g.
``"normal(4.5, 1)"`` or ``"half_cauchy(5)"``, and parsed into Prior objects.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass

import numpyro.distributions as dist

from hdcurve.errors import ModelSpecError

__all__ = [
    "Prior",
    "PRIOR_FAMILIES",
    "POSITIVE_FAMILIES",
    "get_default_priors",
]

PRIOR_FAMILIES = ("normal", "student_t", "half_normal", "half_cauchy", "exponential")
POSITIVE_FAMILIES = ("half_normal", "half_cauchy", "exponential")

_PRIOR_PATTERN = re.compile(r"^\s*([a-z_]+)\s*\((.*)\)\s*$")


@dataclass(frozen=True)
class Prior:
    """A single prior distribution.

    Attributes:
        family: One of PRIOR_FAMILIES.
        loc: Location. Ignored by the positive (half/exponential) families.
        scale: Scale. For exponential this is the mean (rate = 1/scale).
        df: Degrees of freedom, student_t only.
    """

    family: str
    loc: float = 0.0
    scale: float = 1.0
    df: float = 3.0

    @property
    def positive_support(self) -> bool:
        return self.family in POSITIVE_FAMILIES

    def check(self, name: str) -> None:
        """Raise ModelSpecError if the prior is malformed."""
        if self.family not in PRIOR_FAMILIES:
            raise ModelSpecError(
                f"Prior for {name!r} has unknown family {self.family!r}; "
                f"expected one of {list(PRIOR_FAMILIES)}"
            )
        if not self.scale > 0:
            raise ModelSpecError(f"Prior for {name!r} needs a positive scale, got {self.scale}")
        if self.family == "student_t" and not self.df > 0:
            raise ModelSpecError(f"Prior for {name!r} needs positive df, got {self.df}")

    def to_distribution(self) -> dist.Distribution:
        """Build the numpyro distribution used in the log density."""
        if self.family == "normal":
            return dist.Normal(self.loc, self.scale)
        if self.family == "student_t":
            return dist.StudentT(self.df, self.loc, self.scale)
        if self.family == "half_normal":
            return dist.HalfNormal(self.scale)
        if self.family == "half_cauchy":
            return dist.HalfCauchy(self.scale)
        if self.family == "exponential":
            return dist.Exponential(1.0 / self.scale)
        raise ModelSpecError(f"Unknown prior family {self.family!r}")

    def to_string(self) -> str:
        if self.family == "student_t":
            return f"student_t({self.df:g}, {self.loc:g}, {self.scale:g})"
        if self.positive_support:
            return f"{self.family}({self.scale:g})"
        return f"{self.family}({self.loc:g}, {self.scale:g})"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def parse(cls, text: str) -> Prior:
        """Parse a prior string.

        Forms:
            normal(loc, scale)
            student_t(df, loc, scale)
            half_normal(scale), half_cauchy(scale), exponential(scale)

        Example:
            >>> Prior.parse("normal(4.5, 1)")
            Prior(family='normal', loc=4.5, scale=1.0, df=3.0)
        """
        match = _PRIOR_PATTERN.match(text)
        if match is None:
            raise ModelSpecError(f"Cannot parse prior {text!r}")
        family, arg_text = match.group(1), match.group(2)
        try:
            args = [float(a) for a in arg_text.split(",") if a.strip()]
        except ValueError:
            raise ModelSpecError(f"Prior arguments must be numbers: {text!r}") from None

        expected = {"normal": 2, "student_t": 3}.get(family, 1)
        if family not in PRIOR_FAMILIES:
            raise ModelSpecError(f"Unknown prior family {family!r} in {text!r}")
        if len(args) != expected:
            raise ModelSpecError(
                f"{family} prior takes {expected} argument(s), got {len(args)}: {text!r}"
            )

        if family == "normal":
            return cls(family, loc=args[0], scale=args[1])
        if family == "student_t":
            return cls(family, loc=args[1], scale=args[2], df=args[0])
        return cls(family, scale=args[0])


def get_default_priors() -> dict[str, Prior]:
    """Return default priors for the ``exp(a + b / x)`` height model.

    The defaults are weakly informative on the scale of tree heights in
    feet and diameters in inches:
    - a ~ normal(4.5, 1): asymptote exp(4.5) ~ 90 ft, within a factor e
    - b ~ normal(-5, 5): curvature centered on a typical bend
    - sd_a, sd_b ~ half_normal(1): moderate between-group spread
    - sigma ~ half_cauchy(5): residual noise of a few feet

    Example:
        >>> priors = get_default_priors()
        >>> priors["a"].loc
        4.5
    """
    return {
        "a": Prior("normal", loc=4.5, scale=1.0),
        "b": Prior("normal", loc=-5.0, scale=5.0),
        "sd_a": Prior("half_normal", scale=1.0),
        "sd_b": Prior("half_normal", scale=1.0),
        "sigma": Prior("half_cauchy", scale=5.0),
    }
