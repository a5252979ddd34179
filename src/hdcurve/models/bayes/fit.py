"""MCMC fitting orchestration.

This module runs the NUTS sampler over independent chains and assembles
the posterior draw table. Key features:
- Structural checks (model spec, data sufficiency) before any sampling
- chain_method "sequential" (default) or "parallel" (thread pool)
- Per-chain random streams derived from (seed, chain_index), so results
  do not depend on chain_method or scheduling
- Cooperative cancellation between iterations
- Divergences recorded per draw, logged, never fatal
- Convergence diagnostics attached to every result
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass

import numpy as np

from hdcurve.data.observations import ObservationSet
from hdcurve.data.validation import check_group_support
from hdcurve.errors import (
    ChainAbortedError,
    DivergentTransitionError,
    SamplingCancelled,
)
from hdcurve.models.bayes.chain import ChainResult, ProgressCallback, run_chain
from hdcurve.models.bayes.diagnostics import ConvergenceDiagnostics, compute_diagnostics
from hdcurve.models.bayes.model import ParameterLayout, make_potential_and_grad
from hdcurve.models.bayes.posterior import PosteriorTable
from hdcurve.models.bayes.spec import ModelSpec, validate_model_spec

__all__ = [
    "MCMCConfig",
    "FitResult",
    "fit_model",
    "check_fit_inputs",
    "assemble_posterior",
]

logger = logging.getLogger(__name__)

CHAIN_METHODS = ("sequential", "parallel")


@dataclass(frozen=True)
class MCMCConfig:
    """MCMC configuration for reproducibility.

    All parameters are frozen to ensure immutability during model fitting.

    Attributes:
        num_warmup: Adaptation iterations per chain, excluded from inference.
        num_samples: Retained iterations per chain. iterations_per_chain
            is num_warmup + num_samples.
        num_chains: Number of independent chains.
        chain_method: "sequential" runs chains one at a time; "parallel"
            runs them on a thread pool. Output is identical either way.
        seed: Master seed; chain c uses the stream derived from (seed, c).
        max_tree_depth: Maximum NUTS tree depth.
        target_accept_prob: Dual averaging target during warmup.
        max_step_retries: Step-size halvings allowed per iteration after a
            numerical error before the chain aborts.
        rhat_threshold: Split R-hat above this is a convergence failure.
        ess_threshold: Total bulk ESS below this is a convergence failure.
    """

    num_warmup: int = 1000
    num_samples: int = 1000
    num_chains: int = 4
    chain_method: str = "sequential"
    seed: int = 0
    max_tree_depth: int = 10
    target_accept_prob: float = 0.8
    max_step_retries: int = 5
    rhat_threshold: float = 1.01
    ess_threshold: float = 400

    def __post_init__(self) -> None:
        if self.num_chains < 1:
            raise ValueError(f"num_chains must be >= 1, got {self.num_chains}")
        if self.num_warmup < 0:
            raise ValueError(f"num_warmup must be >= 0, got {self.num_warmup}")
        if self.num_samples < 1:
            raise ValueError(f"num_samples must be >= 1, got {self.num_samples}")
        if not 0.0 < self.target_accept_prob < 1.0:
            raise ValueError(
                f"target_accept_prob must be in (0, 1), got {self.target_accept_prob}"
            )
        if self.chain_method not in CHAIN_METHODS:
            raise ValueError(
                f"chain_method must be one of {CHAIN_METHODS}, got {self.chain_method!r}"
            )
        if self.max_tree_depth < 1:
            raise ValueError(f"max_tree_depth must be >= 1, got {self.max_tree_depth}")
        if self.seed < 0:
            raise ValueError(f"seed must be non-negative, got {self.seed}")
        if self.max_step_retries < 0:
            raise ValueError(f"max_step_retries must be >= 0, got {self.max_step_retries}")

    @property
    def iterations_per_chain(self) -> int:
        return self.num_warmup + self.num_samples

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass(frozen=True)
class FitResult:
    """Result container for MCMC fitting.

    Attributes:
        posterior: Immutable table of retained draws.
        diagnostics: Convergence diagnostics. Always present; check
            `diagnostics.passed` and `diagnostics.warnings`.
        divergences: One DivergentTransitionError record per divergent draw.
        runtime_seconds: Total wall-clock time for sampling.
        spec: Model specification that was fit.
        config: MCMC configuration that was used.
        step_sizes: Adapted step size per chain.
    """

    posterior: PosteriorTable
    diagnostics: ConvergenceDiagnostics
    divergences: tuple[DivergentTransitionError, ...]
    runtime_seconds: float
    spec: ModelSpec
    config: MCMCConfig
    step_sizes: tuple[float, ...] = ()

    @property
    def converged(self) -> bool:
        return self.diagnostics.passed


def check_fit_inputs(observations: ObservationSet, spec: ModelSpec) -> None:
    """Structural checks that must pass before any sampling.

    Raises:
        ModelSpecError: If the spec is malformed.
        InsufficientDataError: If the data cannot identify the model.
    """
    validate_model_spec(spec)
    check_group_support(
        observations.distinct_response_counts(),
        min_distinct=spec.min_group_observations,
        require_per_group=spec.has_group_effects,
    )


def assemble_posterior(
    chains: list[ChainResult],
    layout: ParameterLayout,
    spec: ModelSpec,
) -> PosteriorTable:
    """Stack chain results (ordered by chain id) into a PosteriorTable."""
    chains = sorted(chains, key=lambda c: c.chain_id)
    stacked = np.stack([c.samples for c in chains])
    samples = layout.constrain(stacked)
    stats = {
        "diverging": np.stack([c.diverging for c in chains]),
        "acceptance_rate": np.stack([c.accept_prob for c in chains]),
        "tree_depth": np.stack([c.tree_depth for c in chains]),
        "n_steps": np.stack([c.num_steps for c in chains]),
        "energy": np.stack([c.energy for c in chains]),
        "energy_error": np.stack([c.energy_error for c in chains]),
        "step_size": np.stack(
            [np.full(c.num_samples, c.step_size) for c in chains]
        ),
    }
    return PosteriorTable(samples, stats, layout.groups, spec.parameter_names)


def _collect_divergences(chains: list[ChainResult]) -> tuple[DivergentTransitionError, ...]:
    records = []
    for chain in sorted(chains, key=lambda c: c.chain_id):
        for i in np.flatnonzero(chain.diverging):
            records.append(
                DivergentTransitionError(chain.chain_id, int(i), float(chain.energy_error[i]))
            )
    return tuple(records)


def fit_model(
    observations: ObservationSet,
    spec: ModelSpec,
    config: MCMCConfig | None = None,
    cancel_event: threading.Event | None = None,
    progress: ProgressCallback | None = None,
) -> FitResult:
    """Fit the hierarchical model with NUTS.

    Parameters
    ----------
    observations : ObservationSet
        Training data, already filtered.
    spec : ModelSpec
        Model specification. Validated here before sampling.
    config : MCMCConfig, optional
        Sampler configuration. If None, uses default MCMCConfig().
    cancel_event : threading.Event, optional
        When set, every running chain stops at its next iteration.
    progress : callable, optional
        progress(chain_id, iteration, total), called once per iteration.
        With chain_method="parallel" it is called from worker threads.

    Returns
    -------
    FitResult
        Posterior table plus diagnostics. Convergence failures are
        reported in diagnostics, not raised.

    Raises
    ------
    ModelSpecError, InsufficientDataError
        Before any sampling.
    ChainAbortedError
        A chain exhausted its numerical retries. Raised after the remaining
        chains finish.
    SamplingCancelled
        cancel_event was set. Carries the chains that completed.

    Example
    -------
    >>> config = MCMCConfig(num_warmup=500, num_samples=500, seed=1)
    >>> result = fit_model(observations, default_model_spec(), config)
    >>> result.diagnostics.passed
    True
    """
    if config is None:
        config = MCMCConfig()

    check_fit_inputs(observations, spec)

    layout = ParameterLayout(spec, observations.groups)
    potential_fn = make_potential_and_grad(spec, observations, layout)

    logger.info(
        f"Starting MCMC: {config.num_chains} chains, {config.num_warmup} warmup, "
        f"{config.num_samples} samples, {layout.dim} unconstrained dims, "
        f"{len(observations)} observations in {observations.n_groups} groups"
    )
    start_time = time.perf_counter()

    def _run(chain_id: int) -> ChainResult:
        return run_chain(
            chain_id,
            potential_fn,
            layout.dim,
            num_warmup=config.num_warmup,
            num_samples=config.num_samples,
            seed=config.seed,
            target_accept_prob=config.target_accept_prob,
            max_tree_depth=config.max_tree_depth,
            max_step_retries=config.max_step_retries,
            init_bounds=layout.initial_bounds(),
            cancel_event=cancel_event,
            progress=progress,
        )

    completed: list[ChainResult] = []
    aborted: list[ChainAbortedError] = []
    cancelled = False

    if config.chain_method == "parallel":
        with ThreadPoolExecutor(max_workers=config.num_chains) as pool:
            futures = [pool.submit(_run, c) for c in range(config.num_chains)]
            for future in futures:
                try:
                    completed.append(future.result())
                except ChainAbortedError as exc:
                    aborted.append(exc)
                except SamplingCancelled:
                    cancelled = True
    else:
        for chain_id in range(config.num_chains):
            try:
                completed.append(_run(chain_id))
            except ChainAbortedError as exc:
                aborted.append(exc)
            except SamplingCancelled:
                cancelled = True
                break

    runtime_seconds = time.perf_counter() - start_time

    if cancelled:
        logger.warning(
            f"Sampling cancelled after {runtime_seconds:.1f}s; "
            f"{len(completed)} of {config.num_chains} chains completed"
        )
        raise SamplingCancelled(
            f"fit cancelled; {len(completed)} of {config.num_chains} chains completed",
            completed_chains=sorted(completed, key=lambda c: c.chain_id),
        )
    if aborted:
        for exc in aborted:
            logger.error(str(exc))
        raise aborted[0]

    posterior = assemble_posterior(completed, layout, spec)
    divergences = _collect_divergences(completed)

    logger.info(f"MCMC completed in {runtime_seconds:.1f}s")
    logger.info(f"Divergences: {len(divergences)}")

    diagnostics = compute_diagnostics(
        posterior,
        rhat_threshold=config.rhat_threshold,
        ess_threshold=config.ess_threshold,
    )
    logger.info(repr(diagnostics))

    return FitResult(
        posterior=posterior,
        diagnostics=diagnostics,
        divergences=divergences,
        runtime_seconds=runtime_seconds,
        spec=spec,
        config=config,
        step_sizes=tuple(c.step_size for c in sorted(completed, key=lambda c: c.chain_id)),
    )
