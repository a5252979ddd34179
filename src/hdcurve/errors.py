"""Exception hierarchy for model fitting, projection, and summarization.

Every structural failure carries a stage label and an exit code so the CLI
can map it onto a process exit status. Two members of the taxonomy are not
raised in the usual sense:

- DivergentTransitionError is a record. The sampler keeps divergent draws
  and attaches one instance per divergence to the fit result.
- SamplerNonConvergenceError is a warning. It is emitted via warnings.warn
  and stored on the diagnostics record, never raised by the sampler.
"""

from __future__ import annotations


class HdcurveError(Exception):
    """Base exception for hdcurve failures.

    Attributes:
        message: Human-readable error description.
        stage: Name of the stage where the error occurred (optional).
        exit_code: Process exit code for CLI integration.

    Example:
        >>> raise HdcurveError("Something went wrong", stage="fit")
        HdcurveError: [fit] Something went wrong
    """

    def __init__(
        self,
        message: str,
        stage: str = "",
        exit_code: int = 1,
    ) -> None:
        self.message = message
        self.stage = stage
        self.exit_code = exit_code
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class ModelSpecError(HdcurveError):
    """Malformed model specification.

    Raised before any sampling when:
    - The mean function cannot be parsed or uses unsupported syntax
    - The expression references an undeclared parameter
    - A parameter is missing its prior, or a prior is malformed
    - A group effect is declared on a parameter that cannot carry one

    Exit code: 3
    """

    def __init__(self, message: str, stage: str = "model_spec") -> None:
        super().__init__(message, stage=stage, exit_code=3)


class InsufficientDataError(HdcurveError):
    """Observation set cannot support the requested model.

    Raised before any sampling when the data has no usable groups or a
    group has too few distinct responses for its random effect to be
    identifiable.

    Exit code: 3
    """

    def __init__(self, message: str, stage: str = "data") -> None:
        super().__init__(message, stage=stage, exit_code=3)


class InsufficientDrawsError(HdcurveError):
    """Too few projected values to summarize a key.

    Exit code: 3
    """

    def __init__(self, message: str, stage: str = "summary") -> None:
        super().__init__(message, stage=stage, exit_code=3)


class UnknownGroupError(HdcurveError):
    """Projection requested for a group absent from training data.

    Only raised when the projector's unseen-group policy is "error".

    Exit code: 3
    """

    def __init__(self, message: str, stage: str = "projection") -> None:
        super().__init__(message, stage=stage, exit_code=3)


class SamplerNumericalError(HdcurveError):
    """Non-finite log density or gradient at the start of a transition.

    The sampler recovers from this locally by retrying with a smaller step
    size. It only escapes as the cause of a ChainAbortedError.

    Exit code: 4
    """

    def __init__(self, message: str, stage: str = "sampling") -> None:
        super().__init__(message, stage=stage, exit_code=4)


class ChainAbortedError(HdcurveError):
    """A chain exhausted its numerical retries and was aborted.

    Attributes:
        chain_id: Index of the aborted chain.
        iteration: Iteration at which the chain gave up.

    Exit code: 4
    """

    def __init__(
        self,
        message: str,
        chain_id: int,
        iteration: int,
        stage: str = "sampling",
    ) -> None:
        self.chain_id = chain_id
        self.iteration = iteration
        super().__init__(message, stage=stage, exit_code=4)


class SamplingCancelled(HdcurveError):
    """Fit was cancelled cooperatively between iterations.

    Attributes:
        completed_chains: ChainResult objects for every chain that finished
            before cancellation was observed. May be empty.

    Exit code: 130
    """

    def __init__(
        self,
        message: str,
        completed_chains: tuple = (),
        stage: str = "sampling",
    ) -> None:
        self.completed_chains = tuple(completed_chains)
        super().__init__(message, stage=stage, exit_code=130)


class DivergentTransitionError(HdcurveError):
    """Record of one divergent transition.

    The sampler never raises this. The flagged draw is kept in the
    posterior and one instance is collected per divergence.

    Attributes:
        chain_id: Chain the divergence occurred in.
        iteration: Post-warmup draw index within the chain.
        energy_error: Hamiltonian error that triggered the flag.
    """

    def __init__(self, chain_id: int, iteration: int, energy_error: float) -> None:
        self.chain_id = chain_id
        self.iteration = iteration
        self.energy_error = energy_error
        super().__init__(
            f"divergent transition in chain {chain_id} at draw {iteration} "
            f"(energy error {energy_error:.3g})",
            stage="sampling",
            exit_code=4,
        )

    def __reduce__(self):
        return (type(self), (self.chain_id, self.iteration, self.energy_error))


class SamplerNonConvergenceError(UserWarning):
    """Convergence diagnostics failed their thresholds.

    Sampling succeeded mechanically but the posterior may be unreliable.

    Attributes:
        failing_params: Names of sites whose R-hat or ESS failed.
        rhat_max: Largest split R-hat observed.
        ess_min: Smallest effective sample size observed.
    """

    def __init__(
        self,
        failing_params: list[str],
        rhat_max: float,
        ess_min: float,
    ) -> None:
        self.failing_params = list(failing_params)
        self.rhat_max = rhat_max
        self.ess_min = ess_min
        super().__init__(
            f"sampler did not converge: rhat_max={rhat_max:.4f}, "
            f"ess_min={ess_min:.0f}, failing={self.failing_params}"
        )
