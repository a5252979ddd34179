"""Bayesian hierarchical nonlinear regression with a NUTS sampler."""

from hdcurve.models.bayes.diagnostics import (
    ConvergenceDiagnostics,
    compute_diagnostics,
    get_divergence_info,
    split_rhat,
)
from hdcurve.models.bayes.fit import (
    FitResult,
    MCMCConfig,
    fit_model,
)
from hdcurve.models.bayes.io import (
    FitManifest,
    LoadedFit,
    load_fit,
    save_fit,
)
from hdcurve.models.bayes.posterior import Draw, PosteriorTable
from hdcurve.models.bayes.predict import PosteriorProjector
from hdcurve.models.bayes.priors import Prior, get_default_priors
from hdcurve.models.bayes.spec import (
    ModelSpec,
    ParameterStructure,
    default_model_spec,
    validate_model_spec,
)

__all__ = [
    # Specification
    "ModelSpec",
    "ParameterStructure",
    "Prior",
    "get_default_priors",
    "default_model_spec",
    "validate_model_spec",
    # Fitting
    "fit_model",
    "MCMCConfig",
    "FitResult",
    # Posterior
    "Draw",
    "PosteriorTable",
    "PosteriorProjector",
    # Diagnostics
    "ConvergenceDiagnostics",
    "compute_diagnostics",
    "get_divergence_info",
    "split_rhat",
    # I/O
    "FitManifest",
    "LoadedFit",
    "save_fit",
    "load_fit",
]
