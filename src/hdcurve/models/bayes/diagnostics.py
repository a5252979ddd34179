"""Convergence diagnostics for posterior draw tables.

Thresholds follow current practice:
- split R-hat <= 1.01
- total ESS >= 400
- zero divergent transitions (reported, never fatal)

Split R-hat is the classic Gelman-Rubin statistic on half-chains,
R-hat = sqrt(((n - 1) / n * W + B / n) / W) with B = n * var(split means),
from numpyro.diagnostics.split_gelman_rubin. ESS uses numpyro's
autocorrelation-based estimator. The per-quantity summary table comes
from az.summary.

Usage:
    >>> diags = compute_diagnostics(posterior)
    >>> if not diags.passed:
    ...     print(f"Failing params: {diags.failing_params}")

References:
    - Gelman et al. (2013) "Bayesian Data Analysis", 3rd ed., sec. 11.4
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from functools import partial

import arviz as az
import numpy as np
import pandas as pd
from numpyro.diagnostics import effective_sample_size, split_gelman_rubin

from hdcurve.errors import SamplerNonConvergenceError
from hdcurve.models.bayes.posterior import PosteriorTable

__all__ = [
    "ConvergenceDiagnostics",
    "split_rhat",
    "summarize_posterior",
    "compute_diagnostics",
    "get_divergence_info",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConvergenceDiagnostics:
    """Diagnostic record that accompanies every PosteriorTable.

    The `warnings` field is required: a result with convergence problems
    always carries its SamplerNonConvergenceError here.

    Attributes:
        rhat: Split R-hat per scalar quantity.
        ess: Bulk effective sample size per scalar quantity.
        rhat_max: Largest R-hat.
        ess_min: Smallest ESS.
        divergences: Number of divergent transitions across chains.
        passed: True if every R-hat and ESS threshold is met.
        failing_params: Quantities failing R-hat or ESS thresholds.
        warnings: Convergence warnings raised for this fit.
        summary_df: Per-quantity mean, sd, 2.5%/97.5% quantiles, ESS, R-hat.
        rhat_threshold: Threshold used for R-hat.
        ess_threshold: Threshold used for ESS.
    """

    rhat: dict[str, float]
    ess: dict[str, float]
    rhat_max: float
    ess_min: float
    divergences: int
    passed: bool
    failing_params: list[str]
    warnings: tuple[SamplerNonConvergenceError, ...]
    summary_df: pd.DataFrame
    rhat_threshold: float
    ess_threshold: float

    def __repr__(self) -> str:
        status = "PASSED" if self.passed else "FAILED"
        return (
            f"ConvergenceDiagnostics({status}: "
            f"rhat_max={self.rhat_max:.4f}, "
            f"ess_min={self.ess_min:.0f}, "
            f"divergences={self.divergences})"
        )

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "rhat_max": self.rhat_max,
            "ess_min": self.ess_min,
            "divergences": self.divergences,
            "failing_params": list(self.failing_params),
            "warnings": [str(w) for w in self.warnings],
            "rhat_threshold": self.rhat_threshold,
            "ess_threshold": self.ess_threshold,
            "rhat": dict(self.rhat),
            "ess": dict(self.ess),
        }


# Columns of the per-quantity summary, ahead of ess and r_hat
SUMMARY_STATS = {
    "mean": np.mean,
    "sd": partial(np.std, ddof=1),
    "q2.5": partial(np.quantile, q=0.025),
    "q97.5": partial(np.quantile, q=0.975),
}


def split_rhat(draws: np.ndarray) -> float:
    """Split-chain potential scale reduction for one scalar quantity.

    Args:
        draws: Array of shape (chain, draw).

    Returns:
        R-hat. NaN when there are fewer than 4 draws per chain. 1.0 when
        every draw is identical, inf when split chains are constant but
        disagree.
    """
    draws = np.asarray(draws, dtype=np.float64)
    if draws.ndim != 2:
        raise ValueError(f"draws must have shape (chain, draw), got {draws.shape}")
    if draws.shape[1] < 4:
        return float("nan")
    if np.ptp(draws) == 0:
        return 1.0
    # Zero within-chain variance gives inf
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(split_gelman_rubin(draws))


def _ess(draws: np.ndarray) -> float:
    # numpyro needs at least 2 draws per chain
    if draws.shape[1] < 2:
        return float("nan")
    if np.ptp(draws) == 0:
        return float(draws.size)
    return float(effective_sample_size(np.asarray(draws, dtype=np.float64)))


def summarize_posterior(
    posterior: PosteriorTable,
    rhat: dict[str, float],
    ess: dict[str, float],
) -> pd.DataFrame:
    """Per-quantity mean, sd, 2.5%/97.5% quantiles, ESS and R-hat.

    Rows are labelled the way az.summary labels them, e.g. "r_a[red alder]",
    which matches PosteriorTable.scalar_names.
    """
    summary = az.summary(
        posterior.to_inference_data(),
        kind="stats",
        stat_funcs=SUMMARY_STATS,
        extend=False,
        round_to="none",
    )
    summary = summary.reindex(posterior.scalar_names)
    summary.index.name = "param"
    summary["ess"] = pd.Series(ess)
    summary["r_hat"] = pd.Series(rhat)
    return summary


def compute_diagnostics(
    posterior: PosteriorTable,
    rhat_threshold: float = 1.01,
    ess_threshold: float = 400,
    emit_warning: bool = True,
) -> ConvergenceDiagnostics:
    """Compute R-hat, ESS and divergence counts for every scalar quantity.

    Parameters
    ----------
    posterior : PosteriorTable
        Draws from all chains.
    rhat_threshold : float, default 1.01
        Quantities with R-hat above this fail.
    ess_threshold : float, default 400
        Quantities with total bulk ESS below this fail.
    emit_warning : bool, default True
        Emit the SamplerNonConvergenceError through warnings.warn when
        the thresholds fail. It is stored on the record either way.

    Returns
    -------
    ConvergenceDiagnostics
        Never raises for convergence failures.
    """
    rhat: dict[str, float] = {}
    ess: dict[str, float] = {}
    for name, draws in posterior.scalar_draws().items():
        rhat[name] = split_rhat(draws)
        ess[name] = _ess(draws)
    summary = summarize_posterior(posterior, rhat, ess)

    # NaN (too few draws) fails both checks
    failing_rhat = [n for n, r in rhat.items() if not r <= rhat_threshold]
    failing_ess = [n for n, e in ess.items() if not e >= ess_threshold]
    failing_params = sorted(set(failing_rhat) | set(failing_ess))

    finite_rhat = [r for r in rhat.values() if not np.isnan(r)]
    rhat_max = float(max(finite_rhat)) if finite_rhat else float("nan")
    finite_ess = [e for e in ess.values() if not np.isnan(e)]
    ess_min = float(min(finite_ess)) if finite_ess else float("nan")

    divergences = 0
    if "diverging" in posterior.sample_stats:
        divergences = int(np.sum(posterior.sample_stats["diverging"]))

    passed = not failing_params
    issued: tuple[SamplerNonConvergenceError, ...] = ()
    if not passed:
        warning = SamplerNonConvergenceError(failing_params, rhat_max, ess_min)
        issued = (warning,)
        logger.warning(str(warning))
        if emit_warning:
            warnings.warn(warning, stacklevel=2)

    if divergences > 0:
        logger.warning(
            f"Found {divergences} divergent transitions. "
            "Consider increasing target_accept_prob or reparameterizing the model."
        )

    return ConvergenceDiagnostics(
        rhat=rhat,
        ess=ess,
        rhat_max=rhat_max,
        ess_min=ess_min,
        divergences=divergences,
        passed=passed,
        failing_params=failing_params,
        warnings=issued,
        summary_df=summary,
        rhat_threshold=rhat_threshold,
        ess_threshold=ess_threshold,
    )


def get_divergence_info(posterior: PosteriorTable) -> dict:
    """Total, per-chain and located divergent transitions.

    Returns
    -------
    dict
        Keys: total, per_chain, rate, locations (chain -> draw indices).
    """
    if "diverging" not in posterior.sample_stats:
        return {"total": 0, "per_chain": [], "rate": 0.0, "locations": {}}

    diverging = np.asarray(posterior.sample_stats["diverging"], dtype=bool)
    total = int(diverging.sum())
    per_chain = [int(row.sum()) for row in diverging]
    rate = total / diverging.size if diverging.size > 0 else 0.0
    locations = {
        c: np.flatnonzero(row).tolist() for c, row in enumerate(diverging) if row.any()
    }
    return {"total": total, "per_chain": per_chain, "rate": rate, "locations": locations}
