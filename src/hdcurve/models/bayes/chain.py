"""Single-chain sampling loop.

One chain owns its Generator, its kernel state and its adaptation state.
Nothing here is shared across chains except the read-only potential
function, so chains can run on separate threads.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np

from hdcurve.errors import ChainAbortedError, SamplerNumericalError, SamplingCancelled
from hdcurve.models.bayes.nuts import (
    DualAveraging,
    HMCState,
    NUTSKernel,
    WelfordVariance,
    build_adaptation_schedule,
    find_reasonable_step_size,
)
from hdcurve.utils.random import chain_rng

__all__ = ["ChainResult", "ProgressCallback", "run_chain"]

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, int], None]

_MAX_INIT_ATTEMPTS = 100


@dataclass(frozen=True)
class ChainResult:
    """Retained (post-warmup) output of one chain.

    Attributes:
        chain_id: Zero-based chain index.
        samples: Unconstrained draws, shape (num_samples, dim).
        accept_prob: Mean acceptance statistic per draw.
        tree_depth: Tree depth per draw.
        num_steps: Leapfrog steps per draw.
        diverging: Divergence flag per draw.
        energy: Starting Hamiltonian per draw.
        energy_error: Largest absolute energy error per draw.
        step_size: Adapted step size used for all retained draws.
        inv_mass: Adapted diagonal inverse mass matrix.
        numerical_retries: Total step-size retries taken over the run.
    """

    chain_id: int
    samples: np.ndarray
    accept_prob: np.ndarray
    tree_depth: np.ndarray
    num_steps: np.ndarray
    diverging: np.ndarray
    energy: np.ndarray
    energy_error: np.ndarray
    step_size: float
    inv_mass: np.ndarray
    numerical_retries: int = 0

    @property
    def num_samples(self) -> int:
        return self.samples.shape[0]


def _initialize(
    kernel: NUTSKernel,
    dim: int,
    bounds: tuple[float, float],
    rng: np.random.Generator,
    chain_id: int,
) -> HMCState:
    low, high = bounds
    for _ in range(_MAX_INIT_ATTEMPTS):
        state = kernel.init_state(rng.uniform(low, high, size=dim))
        if state.is_finite:
            return state
    raise ChainAbortedError(
        f"chain {chain_id}: no finite starting point in {_MAX_INIT_ATTEMPTS} attempts",
        chain_id=chain_id,
        iteration=0,
    )


def run_chain(
    chain_id: int,
    potential_fn: Callable[[np.ndarray], tuple[float, np.ndarray]],
    dim: int,
    *,
    num_warmup: int,
    num_samples: int,
    seed: int,
    target_accept_prob: float = 0.8,
    max_tree_depth: int = 10,
    max_step_retries: int = 5,
    init_bounds: tuple[float, float] = (-2.0, 2.0),
    cancel_event: threading.Event | None = None,
    progress: ProgressCallback | None = None,
) -> ChainResult:
    """Run warmup and sampling for one chain.

    Args:
        chain_id: Zero-based chain index; with seed, determines the stream.
        potential_fn: theta -> (potential, gradient).
        dim: Dimension of the unconstrained space.
        num_warmup: Adaptation iterations (not retained).
        num_samples: Retained iterations.
        seed: Master seed of the fit.
        target_accept_prob: Dual averaging target.
        max_tree_depth: NUTS maximum tree depth.
        max_step_retries: Step-size halvings allowed per iteration after a
            SamplerNumericalError before the chain is aborted.
        init_bounds: Uniform initialization range (unconstrained scale).
        cancel_event: Checked once per iteration; when set the chain stops.
        progress: Called as progress(chain_id, iteration, total) per iteration.

    Returns:
        ChainResult with num_samples retained draws.

    Raises:
        ChainAbortedError: Initialization failed or retries were exhausted.
        SamplingCancelled: cancel_event was set before the chain finished.
    """
    rng = chain_rng(seed, chain_id)
    kernel = NUTSKernel(potential_fn, max_tree_depth=max_tree_depth)
    state = _initialize(kernel, dim, init_bounds, rng, chain_id)

    inv_mass = np.ones(dim)
    step_size = find_reasonable_step_size(kernel, state, 1.0, inv_mass, rng)
    adapter = DualAveraging(target_accept_prob=target_accept_prob)
    adapter.restart(step_size)
    welford = WelfordVariance(dim)
    windows = build_adaptation_schedule(num_warmup)
    window_ends = {end: start for start, end in windows}

    samples = np.empty((num_samples, dim))
    accept_prob = np.empty(num_samples)
    tree_depth = np.empty(num_samples, dtype=np.int64)
    num_steps = np.empty(num_samples, dtype=np.int64)
    diverging = np.zeros(num_samples, dtype=bool)
    energy = np.empty(num_samples)
    energy_error = np.empty(num_samples)

    total = num_warmup + num_samples
    retries_total = 0
    logger.debug(f"chain {chain_id}: dim={dim}, initial step size {step_size:.4g}")

    for iteration in range(total):
        if cancel_event is not None and cancel_event.is_set():
            raise SamplingCancelled(f"chain {chain_id} cancelled at iteration {iteration}")

        warming_up = iteration < num_warmup
        eps = step_size
        for attempt in range(max_step_retries + 1):
            try:
                new_state, info = kernel.transition(state, eps, inv_mass, rng)
                break
            except SamplerNumericalError as exc:
                if attempt == max_step_retries:
                    raise ChainAbortedError(
                        f"chain {chain_id}: {exc.message} after {max_step_retries} "
                        f"step-size retries at iteration {iteration}",
                        chain_id=chain_id,
                        iteration=iteration,
                    ) from exc
                retries_total += 1
                eps *= 0.5
                logger.debug(
                    f"chain {chain_id}: numerical error at iteration {iteration}, "
                    f"retrying with step size {eps:.3g}"
                )
        state = new_state

        if warming_up:
            step_size = adapter.update(info.accept_prob)
            if any(s <= iteration < e for s, e in windows):
                welford.update(state.theta)
            if iteration + 1 in window_ends:
                inv_mass = welford.variance()
                welford.reset()
                step_size = find_reasonable_step_size(kernel, state, step_size, inv_mass, rng)
                adapter.restart(step_size)
            if iteration + 1 == num_warmup:
                step_size = adapter.final_step_size
                logger.debug(f"chain {chain_id}: adapted step size {step_size:.4g}")
        else:
            i = iteration - num_warmup
            samples[i] = state.theta
            accept_prob[i] = info.accept_prob
            tree_depth[i] = info.tree_depth
            num_steps[i] = info.num_steps
            diverging[i] = info.diverging
            energy[i] = info.energy
            energy_error[i] = info.energy_error

        if progress is not None:
            progress(chain_id, iteration + 1, total)

    return ChainResult(
        chain_id=chain_id,
        samples=samples,
        accept_prob=accept_prob,
        tree_depth=tree_depth,
        num_steps=num_steps,
        diverging=diverging,
        energy=energy,
        energy_error=energy_error,
        step_size=float(step_size),
        inv_mass=inv_mass,
        numerical_retries=retries_total,
    )
