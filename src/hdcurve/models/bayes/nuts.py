"""No-U-Turn sampler kernel and warmup adaptation.

This module implements one NUTS transition and the building blocks of
warmup adaptation. It operates on numpy float64 vectors and calls a
compiled potential_and_grad function for the log density.

Algorithm:
- Leapfrog integration with a diagonal inverse mass matrix.
- Trajectory built by recursive doubling in a random direction until the
  generalized U-turn criterion fires (checked on every merged subtree,
  including the two cross-subtree checks), the maximum tree depth is
  reached, or the trajectory diverges.
- Multinomial sampling of the proposal: uniform within subtrees, biased
  progressive sampling toward the newest subtree at the top level.

Adaptation:
- DualAveraging tunes the step size toward a target acceptance statistic.
- WelfordVariance accumulates the diagonal inverse mass matrix.
- build_adaptation_schedule lays out Stan-style slow windows.

References:
    - Hoffman & Gelman (2014) "The No-U-Turn Sampler"
    - Betancourt (2017) "A Conceptual Introduction to Hamiltonian Monte Carlo"
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np

from hdcurve.errors import SamplerNumericalError

__all__ = [
    "HMCState",
    "TransitionInfo",
    "NUTSKernel",
    "DualAveraging",
    "WelfordVariance",
    "build_adaptation_schedule",
    "find_reasonable_step_size",
]

PotentialFn = Callable[[np.ndarray], tuple[float, np.ndarray]]


@dataclass(frozen=True)
class HMCState:
    """Position on the unconstrained space with cached potential and gradient."""

    theta: np.ndarray
    potential: float
    grad: np.ndarray

    @property
    def is_finite(self) -> bool:
        return math.isfinite(self.potential) and bool(np.all(np.isfinite(self.grad)))


@dataclass(frozen=True)
class TransitionInfo:
    """Per-transition sampler statistics.

    Attributes:
        accept_prob: Mean Metropolis acceptance over the trajectory.
        tree_depth: Number of doublings performed.
        num_steps: Number of leapfrog steps taken.
        diverging: Energy error exceeded the divergence threshold.
        energy: Hamiltonian at the start of the transition.
        energy_error: Largest absolute energy error seen in the trajectory.
    """

    accept_prob: float
    tree_depth: int
    num_steps: int
    diverging: bool
    energy: float
    energy_error: float


@dataclass
class _Point:
    state: HMCState
    p: np.ndarray


@dataclass
class _Tree:
    left: _Point
    right: _Point
    proposal: HMCState
    log_weight: float
    rho: np.ndarray
    sum_accept: float
    num_steps: int
    num_nonfinite: int
    max_energy_error: float
    turning: bool = False
    diverging: bool = False


class NUTSKernel:
    """Multinomial No-U-Turn transition kernel.

    Args:
        potential_fn: theta -> (potential energy, gradient of potential).
        max_tree_depth: Maximum number of trajectory doublings.
        max_delta_energy: Energy error above which a step is divergent.
    """

    def __init__(
        self,
        potential_fn: PotentialFn,
        max_tree_depth: int = 10,
        max_delta_energy: float = 1000.0,
    ):
        self.potential_fn = potential_fn
        self.max_tree_depth = max_tree_depth
        self.max_delta_energy = max_delta_energy

    def init_state(self, theta: np.ndarray) -> HMCState:
        theta = np.asarray(theta, dtype=np.float64)
        potential, grad = self.potential_fn(theta)
        return HMCState(theta, potential, grad)

    # -- integration ---------------------------------------------------------

    def leapfrog(
        self,
        state: HMCState,
        p: np.ndarray,
        step_size: float,
        inv_mass: np.ndarray,
    ) -> tuple[HMCState, np.ndarray]:
        p_half = p - 0.5 * step_size * state.grad
        theta = state.theta + step_size * inv_mass * p_half
        potential, grad = self.potential_fn(theta)
        p_new = p_half - 0.5 * step_size * grad
        return HMCState(theta, potential, grad), p_new

    @staticmethod
    def kinetic(p: np.ndarray, inv_mass: np.ndarray) -> float:
        return 0.5 * float(np.dot(p, inv_mass * p))

    def _hamiltonian(self, state: HMCState, p: np.ndarray, inv_mass: np.ndarray) -> float:
        energy = state.potential + self.kinetic(p, inv_mass)
        if not math.isfinite(energy) or not np.all(np.isfinite(state.grad)):
            return math.inf
        return energy

    # -- U-turn criterion ----------------------------------------------------

    @staticmethod
    def _is_turning(
        p_left: np.ndarray,
        p_right: np.ndarray,
        rho: np.ndarray,
        inv_mass: np.ndarray,
    ) -> bool:
        return not (
            float(np.dot(inv_mass * p_left, rho)) > 0
            and float(np.dot(inv_mass * p_right, rho)) > 0
        )

    def _merge_turning(self, early: _Tree, late: _Tree, inv_mass: np.ndarray) -> bool:
        """U-turn checks for two adjacent subtrees ordered in time."""
        rho = early.rho + late.rho
        if self._is_turning(early.left.p, late.right.p, rho, inv_mass):
            return True
        if self._is_turning(early.left.p, late.left.p, early.rho + late.left.p, inv_mass):
            return True
        return self._is_turning(early.right.p, late.right.p, late.rho + early.right.p, inv_mass)

    # -- tree building -------------------------------------------------------

    def _leaf(
        self,
        start: _Point,
        direction: int,
        step_size: float,
        inv_mass: np.ndarray,
        energy0: float,
    ) -> _Tree:
        state, p = self.leapfrog(start.state, start.p, direction * step_size, inv_mass)
        energy = self._hamiltonian(state, p, inv_mass)
        delta = energy - energy0
        nonfinite = not math.isfinite(delta)
        if nonfinite:
            delta = math.inf
        point = _Point(state, p)
        return _Tree(
            left=point,
            right=point,
            proposal=state,
            log_weight=-delta,
            rho=p.copy(),
            sum_accept=min(1.0, math.exp(-delta)) if delta > -700 else 1.0,
            num_steps=1,
            num_nonfinite=int(nonfinite),
            max_energy_error=abs(delta),
            diverging=delta > self.max_delta_energy,
        )

    def _build_tree(
        self,
        start: _Point,
        direction: int,
        depth: int,
        step_size: float,
        inv_mass: np.ndarray,
        energy0: float,
        rng: np.random.Generator,
    ) -> _Tree:
        if depth == 0:
            return self._leaf(start, direction, step_size, inv_mass, energy0)

        first = self._build_tree(start, direction, depth - 1, step_size, inv_mass, energy0, rng)
        if first.diverging or first.turning:
            return first

        frontier = first.right if direction > 0 else first.left
        second = self._build_tree(frontier, direction, depth - 1, step_size, inv_mass, energy0, rng)

        early, late = (first, second) if direction > 0 else (second, first)
        merged = _Tree(
            left=early.left,
            right=late.right,
            proposal=first.proposal,
            log_weight=np.logaddexp(first.log_weight, second.log_weight),
            rho=first.rho + second.rho,
            sum_accept=first.sum_accept + second.sum_accept,
            num_steps=first.num_steps + second.num_steps,
            num_nonfinite=first.num_nonfinite + second.num_nonfinite,
            max_energy_error=max(first.max_energy_error, second.max_energy_error),
            diverging=second.diverging,
            turning=second.turning,
        )
        if merged.diverging or merged.turning:
            return merged

        # Uniform multinomial sampling within the subtree
        if math.log(rng.random()) < second.log_weight - merged.log_weight:
            merged.proposal = second.proposal
        merged.turning = self._merge_turning(early, late, inv_mass)
        return merged

    def transition(
        self,
        state: HMCState,
        step_size: float,
        inv_mass: np.ndarray,
        rng: np.random.Generator,
    ) -> tuple[HMCState, TransitionInfo]:
        """Run one NUTS transition.

        Raises:
            SamplerNumericalError: If the starting state is not finite, or
                every leapfrog step of the trajectory produced non-finite
                values (the step size is too large for this region).
        """
        if not state.is_finite:
            raise SamplerNumericalError("non-finite potential or gradient at transition start")

        p0 = rng.standard_normal(state.theta.shape) / np.sqrt(inv_mass)
        energy0 = state.potential + self.kinetic(p0, inv_mass)
        start = _Point(state, p0)
        tree = _Tree(
            left=start,
            right=start,
            proposal=state,
            log_weight=0.0,
            rho=p0.copy(),
            sum_accept=0.0,
            num_steps=0,
            num_nonfinite=0,
            max_energy_error=0.0,
        )

        depth = 0
        diverging = False
        while depth < self.max_tree_depth:
            direction = 1 if rng.random() < 0.5 else -1
            frontier = tree.right if direction > 0 else tree.left
            subtree = self._build_tree(
                frontier, direction, depth, step_size, inv_mass, energy0, rng
            )
            depth += 1

            tree.sum_accept += subtree.sum_accept
            tree.num_steps += subtree.num_steps
            tree.num_nonfinite += subtree.num_nonfinite
            tree.max_energy_error = max(tree.max_energy_error, subtree.max_energy_error)

            if subtree.diverging:
                diverging = True
                break
            if subtree.turning:
                break

            # Biased progressive sampling toward the new subtree
            if math.log(rng.random()) < subtree.log_weight - tree.log_weight:
                tree.proposal = subtree.proposal

            early, late = (tree, subtree) if direction > 0 else (subtree, tree)
            turning = self._merge_turning(early, late, inv_mass)
            tree.left, tree.right = early.left, late.right
            tree.log_weight = float(np.logaddexp(tree.log_weight, subtree.log_weight))
            tree.rho = tree.rho + subtree.rho
            if turning:
                break

        if tree.num_steps > 0 and tree.num_nonfinite == tree.num_steps:
            raise SamplerNumericalError(
                f"all {tree.num_steps} leapfrog steps were non-finite at step size {step_size:.3g}"
            )

        info = TransitionInfo(
            accept_prob=tree.sum_accept / max(tree.num_steps, 1),
            tree_depth=depth,
            num_steps=tree.num_steps,
            diverging=diverging,
            energy=energy0,
            energy_error=tree.max_energy_error,
        )
        return tree.proposal, info


# -- adaptation --------------------------------------------------------------


class DualAveraging:
    """Nesterov dual averaging of log step size (Hoffman & Gelman 2014, Alg. 5).

    Args:
        target_accept_prob: Target mean acceptance statistic.
        gamma: Adaptation regularization scale.
        t0: Iteration offset that damps early iterations.
        kappa: Decay exponent of the averaging weights.
    """

    def __init__(
        self,
        target_accept_prob: float = 0.8,
        gamma: float = 0.05,
        t0: float = 10.0,
        kappa: float = 0.75,
    ):
        self.target_accept_prob = target_accept_prob
        self.gamma = gamma
        self.t0 = t0
        self.kappa = kappa
        self.restart(1.0)

    def restart(self, step_size: float) -> None:
        self.mu = math.log(10.0 * step_size)
        self.log_step_size = math.log(step_size)
        self.log_step_size_avg = 0.0
        self.h_bar = 0.0
        self.t = 0

    def update(self, accept_prob: float) -> float:
        """Feed one acceptance statistic; return the next step size."""
        self.t += 1
        eta = 1.0 / (self.t + self.t0)
        accept_prob = accept_prob if math.isfinite(accept_prob) else 0.0
        self.h_bar = (1.0 - eta) * self.h_bar + eta * (self.target_accept_prob - accept_prob)
        self.log_step_size = self.mu - math.sqrt(self.t) / self.gamma * self.h_bar
        weight = self.t ** (-self.kappa)
        self.log_step_size_avg = (
            weight * self.log_step_size + (1.0 - weight) * self.log_step_size_avg
        )
        return math.exp(self.log_step_size)

    @property
    def step_size(self) -> float:
        return math.exp(self.log_step_size)

    @property
    def final_step_size(self) -> float:
        """Averaged step size used after warmup."""
        return math.exp(self.log_step_size_avg)


class WelfordVariance:
    """Streaming per-coordinate variance (Welford's algorithm)."""

    def __init__(self, dim: int):
        self.dim = dim
        self.reset()

    def reset(self) -> None:
        self.n = 0
        self.mean = np.zeros(self.dim)
        self.m2 = np.zeros(self.dim)

    def update(self, x: np.ndarray) -> None:
        self.n += 1
        delta = x - self.mean
        self.mean = self.mean + delta / self.n
        self.m2 = self.m2 + delta * (x - self.mean)

    def variance(self, regularize: bool = True) -> np.ndarray:
        """Sample variance, shrunk toward 1e-3 as in Stan's diag_e metric."""
        if self.n < 2:
            return np.ones(self.dim)
        var = self.m2 / (self.n - 1)
        if regularize:
            var = (self.n / (self.n + 5.0)) * var + 1e-3 * (5.0 / (self.n + 5.0))
        return var


def build_adaptation_schedule(
    num_warmup: int,
    init_buffer: int = 75,
    term_buffer: int = 50,
    base_window: int = 25,
) -> list[tuple[int, int]]:
    """Lay out the slow (mass matrix) adaptation windows.

    Windows are half-open [start, end) warmup iteration ranges. The first
    init_buffer and last term_buffer iterations adapt only the step size.
    Window sizes double; a window whose successor would overrun the slow
    phase is stretched to its end.

    Short warmups (where the default buffers do not fit) use 15% / 75% / 10%
    splits. Fewer than 20 warmup iterations get no mass matrix adaptation.

    Example:
        >>> build_adaptation_schedule(1000)
        [(75, 100), (100, 150), (150, 250), (250, 450), (450, 950)]
    """
    if num_warmup < 20:
        return []
    if init_buffer + base_window + term_buffer > num_warmup:
        init_buffer = int(0.15 * num_warmup)
        term_buffer = int(0.1 * num_warmup)
        base_window = num_warmup - init_buffer - term_buffer

    end_slow = num_warmup - term_buffer
    windows = []
    start = init_buffer
    size = base_window
    while start < end_slow:
        end = start + size
        if end + 2 * size > end_slow:
            end = end_slow
        windows.append((start, end))
        start = end
        size *= 2
    return windows


def find_reasonable_step_size(
    kernel: NUTSKernel,
    state: HMCState,
    step_size: float,
    inv_mass: np.ndarray,
    rng: np.random.Generator,
    max_iterations: int = 100,
) -> float:
    """Heuristic initial step size (Hoffman & Gelman 2014, Alg. 4).

    Doubles or halves the step size until the acceptance of a single
    leapfrog step crosses 0.8.
    """
    p = rng.standard_normal(state.theta.shape) / np.sqrt(inv_mass)
    energy0 = state.potential + kernel.kinetic(p, inv_mass)
    log_threshold = math.log(0.8)

    def _delta(eps: float) -> float:
        new_state, new_p = kernel.leapfrog(state, p, eps, inv_mass)
        energy = kernel._hamiltonian(new_state, new_p, inv_mass)
        delta = energy0 - energy
        return delta if math.isfinite(delta) else -math.inf

    direction = 1 if _delta(step_size) > log_threshold else -1
    for _ in range(max_iterations):
        step_size = step_size * (2.0**direction)
        delta = _delta(step_size)
        if direction == 1 and not delta > log_threshold:
            break
        if direction == -1 and not delta < log_threshold:
            break
    return step_size
