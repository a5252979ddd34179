"""Posterior save/load for reproducibility.

A fit is persisted as two files sharing a stem:
- <stem>.nc: NetCDF via ArviZ InferenceData.to_netcdf() (posterior and
  sample_stats groups)
- <stem>.json: FitManifest sidecar with the model spec, MCMC config,
  diagnostics, data hash and git commit

load_fit() rebuilds the PosteriorTable and ModelSpec from the pair, so a
saved fit can be projected and summarized without refitting.
"""

from __future__ import annotations

import hashlib
import json
import subprocess
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import arviz as az
import pandas as pd
import structlog

from hdcurve.models.bayes.posterior import PosteriorTable
from hdcurve.models.bayes.spec import ModelSpec

if TYPE_CHECKING:
    from hdcurve.models.bayes.fit import FitResult

logger = structlog.get_logger(__name__)

__all__ = [
    "FitManifest",
    "LoadedFit",
    "generate_fit_stem",
    "get_git_commit",
    "hash_frame",
    "load_fit",
    "save_fit",
]

MANIFEST_VERSION = "1.0"


@dataclass(frozen=True)
class FitManifest:
    """Sidecar metadata for one saved fit.

    Attributes:
        version: Manifest schema version.
        created_at: ISO timestamp of the save.
        netcdf_file: Name of the NetCDF file next to the sidecar.
        model_spec: ModelSpec.to_dict() output.
        mcmc_config: MCMCConfig.to_dict() output.
        diagnostics: ConvergenceDiagnostics.to_dict() output.
        data_hash: SHA256 of the training observations, or "".
        git_commit: Commit hash at save time, or "unknown".
        runtime_seconds: Sampling wall-clock time.
        divergences: Number of divergent transitions.
    """

    version: str
    created_at: str
    netcdf_file: str
    model_spec: dict
    mcmc_config: dict
    diagnostics: dict
    data_hash: str
    git_commit: str
    runtime_seconds: float
    divergences: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "FitManifest":
        return cls(**d)


@dataclass(frozen=True)
class LoadedFit:
    """A fit restored from disk."""

    posterior: PosteriorTable
    spec: ModelSpec
    manifest: FitManifest


def generate_fit_stem(prefix: str = "fit") -> str:
    """Timestamped file stem, e.g. fit_20260119_143052."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return f"{prefix}_{timestamp}"


def get_git_commit() -> str:
    """Current git commit hash, or "unknown" outside a repository."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except FileNotFoundError as e:
        logger.debug("git_commit_lookup_failed", error=str(e), reason="git_not_found")
    except subprocess.TimeoutExpired as e:
        logger.debug("git_commit_lookup_failed", error=str(e), reason="timeout")
    except OSError as e:
        logger.debug("git_commit_lookup_failed", error=str(e), reason="os_error")
    return "unknown"


def hash_frame(df: pd.DataFrame) -> str:
    """SHA256 of a DataFrame's contents (index excluded)."""
    row_hashes = pd.util.hash_pandas_object(df, index=False).to_numpy()
    return hashlib.sha256(row_hashes.tobytes()).hexdigest()


def save_fit(
    fit_result: FitResult,
    output_dir: Path = Path("outputs"),
    stem: str | None = None,
    data_hash: str = "",
) -> tuple[Path, FitManifest]:
    """Save a fit as NetCDF plus JSON sidecar.

    Parameters
    ----------
    fit_result : FitResult
        Result from fit_model().
    output_dir : Path, default Path("outputs")
        Directory for both files. Created if missing.
    stem : str, optional
        File stem. Defaults to a timestamped "fit_YYYYMMDD_HHMMSS".
    data_hash : str, default ""
        Hash of the training data, e.g. hash_frame(observations.frame).

    Returns
    -------
    tuple[Path, FitManifest]
        Path to the NetCDF file and the written manifest.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    stem = stem or generate_fit_stem()
    nc_path = output_dir / f"{stem}.nc"

    fit_result.posterior.to_inference_data().to_netcdf(str(nc_path))

    manifest = FitManifest(
        version=MANIFEST_VERSION,
        created_at=datetime.now(timezone.utc).isoformat(),
        netcdf_file=nc_path.name,
        model_spec=fit_result.spec.to_dict(),
        mcmc_config=fit_result.config.to_dict(),
        diagnostics=fit_result.diagnostics.to_dict(),
        data_hash=data_hash,
        git_commit=get_git_commit(),
        runtime_seconds=fit_result.runtime_seconds,
        divergences=len(fit_result.divergences),
    )
    manifest_path = output_dir / f"{stem}.json"
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(manifest.to_dict(), f, indent=2, default=float)

    logger.info("fit_saved", netcdf=str(nc_path), manifest=str(manifest_path))
    return nc_path, manifest


def load_fit(path: Path) -> LoadedFit:
    """Load a fit saved by save_fit().

    Parameters
    ----------
    path : Path
        Either the .nc file or the .json sidecar.

    Raises
    ------
    FileNotFoundError
        If either file of the pair is missing.
    """
    path = Path(path)
    manifest_path = path.with_suffix(".json")
    if not manifest_path.exists():
        raise FileNotFoundError(f"Fit manifest not found: {manifest_path}")

    with open(manifest_path, "r", encoding="utf-8") as f:
        manifest = FitManifest.from_dict(json.load(f))

    nc_path = manifest_path.parent / manifest.netcdf_file
    if not nc_path.exists():
        raise FileNotFoundError(f"Posterior NetCDF not found: {nc_path}")

    idata = az.from_netcdf(str(nc_path))
    spec = ModelSpec.from_dict(manifest.model_spec)
    posterior = PosteriorTable.from_inference_data(idata, parameters=spec.parameter_names)
    logger.info("fit_loaded", netcdf=str(nc_path), chains=posterior.num_chains)
    return LoadedFit(posterior=posterior, spec=spec, manifest=manifest)
