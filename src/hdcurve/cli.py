"""Command-line interface for height-diameter curve fitting.

Two commands:
- `hdcurve fit`: CSV -> posterior draws CSV, diagnostics JSON, NetCDF fit
  and summary bands CSV
- `hdcurve summarize`: saved fit + covariate CSV -> summary bands CSV

Usage:
    hdcurve fit --config configs/default.yaml
    hdcurve fit --data trees.csv --num-chains 2 --num-samples 500 --verbose
    hdcurve summarize outputs/fit.nc --data new_trees.csv --mode fitted
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Annotated, Any, Optional

import structlog
import typer
from pydantic import ValidationError
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from hdcurve.errors import HdcurveError, SamplingCancelled
from hdcurve.utils.logging import is_interactive, setup_logging

log = structlog.get_logger()

__version__ = "0.1.0"

EXIT_CONFIG_ERROR = 2

app = typer.Typer(
    add_completion=False,
    help="Bayesian hierarchical height-diameter curves with a NUTS sampler.",
    invoke_without_command=True,
)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit.",
    ),
) -> None:
    """Bayesian hierarchical height-diameter curves."""
    if version:
        typer.echo(f"hdcurve version {__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _build_overrides(**sections: dict[str, Any]) -> dict[str, Any]:
    """Drop unset (None) CLI values so they do not override config files."""
    overrides: dict[str, Any] = {}
    for section, values in sections.items():
        kept = {k: v for k, v in values.items() if v is not None}
        if kept:
            overrides[section] = kept
    return overrides


def _fit_with_progress(observations, spec, mcmc_config):
    """Run fit_model on a worker thread behind a Rich progress display.

    Ctrl-C sets the cancel event; chains stop at their next iteration and
    fit_model raises SamplingCancelled.
    """
    from hdcurve.models.bayes.fit import fit_model

    cancel_event = threading.Event()
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        disable=not is_interactive(),
    ) as progress:
        tasks = {
            chain_id: progress.add_task(
                f"[cyan]chain {chain_id}", total=mcmc_config.iterations_per_chain
            )
            for chain_id in range(mcmc_config.num_chains)
        }

        def on_iteration(chain_id: int, iteration: int, total: int) -> None:
            progress.update(tasks[chain_id], completed=iteration)

        with ThreadPoolExecutor(max_workers=1) as runner:
            future = runner.submit(
                fit_model,
                observations,
                spec,
                mcmc_config,
                cancel_event=cancel_event,
                progress=on_iteration,
            )
            try:
                return future.result()
            except KeyboardInterrupt:
                log.warning("cancel_requested")
                cancel_event.set()
                return future.result()


def _run_and_exit(fn, *args, **kwargs) -> None:
    """Call fn and map failures onto process exit codes."""
    try:
        fn(*args, **kwargs)
    except SamplingCancelled as e:
        log.error("sampling_cancelled", completed_chains=len(e.completed_chains))
        raise typer.Exit(code=e.exit_code) from e
    except HdcurveError as e:
        log.error("run_failed", stage=e.stage, error=e.message, exit_code=e.exit_code)
        raise typer.Exit(code=e.exit_code) from e
    except ValidationError as e:
        log.error("invalid_config", error=str(e))
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from e
    except ValueError as e:
        log.error("invalid_argument", error=str(e))
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from e
    except KeyError as e:
        log.error("missing_column", error=str(e))
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from e
    except FileNotFoundError as e:
        log.error("file_not_found", error=str(e))
        raise typer.Exit(code=1) from e


@app.command("fit")
def fit(
    config: Annotated[Optional[list[Path]], typer.Option(
        "--config",
        "-c",
        help="YAML config file(s); later files override earlier ones",
    )] = None,
    data: Annotated[Optional[str], typer.Option(
        "--data",
        "-d",
        help="CSV path or URL (overrides dataset.source)",
    )] = None,
    output_dir: Annotated[Optional[Path], typer.Option(
        "--output-dir",
        "-o",
        help="Directory for all outputs (overrides outputs.output_dir)",
    )] = None,
    min_distinct: Annotated[Optional[int], typer.Option(
        min=1,
        help="Minimum distinct responses per group to keep it (default 25)",
    )] = None,
    # MCMC Configuration
    num_chains: Annotated[Optional[int], typer.Option(
        min=1,
        help="Number of MCMC chains (default 4)",
    )] = None,
    num_samples: Annotated[Optional[int], typer.Option(
        min=1,
        help="Post-warmup samples per chain (default 1000)",
    )] = None,
    num_warmup: Annotated[Optional[int], typer.Option(
        min=0,
        help="Warmup iterations per chain (default 1000)",
    )] = None,
    chain_method: Annotated[Optional[str], typer.Option(
        help="'sequential' or 'parallel' (thread pool)",
    )] = None,
    seed: Annotated[Optional[int], typer.Option(
        min=0,
        help="Master random seed",
    )] = None,
    target_accept: Annotated[Optional[float], typer.Option(
        min=0.5,
        max=0.999,
        help="Target acceptance probability (default 0.8, raise if divergences)",
    )] = None,
    # Summaries
    interval: Annotated[Optional[float], typer.Option(
        min=0.01,
        max=0.99,
        help="Summary interval width (default 0.95)",
    )] = None,
    max_draws: Annotated[Optional[int], typer.Option(
        min=1,
        help="Project only this many posterior draws",
    )] = None,
    bands: bool = typer.Option(
        True,
        " /--no-bands",
        help="Skip writing per-observation summary bands",
    ),
    strict: bool = typer.Option(
        False,
        "--strict",
        help="Exit with code 4 when convergence diagnostics fail",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable DEBUG logging",
    ),
) -> None:
    """Fit the hierarchical model to a CSV of grouped observations.

    Writes into the output directory:
    draws.csv (one row per posterior draw), diagnostics.json, fit.nc + fit.json
    (reloadable by `hdcurve summarize`) and bands.csv.

    Examples:
        # Defaults from the bundled config
        hdcurve fit --config configs/default.yaml

        # Local file, quick exploratory run
        hdcurve fit --data trees.csv --num-chains 2 --num-warmup 300 --num-samples 300
    """
    overrides = _build_overrides(
        dataset={"source": data, "min_distinct": min_distinct},
        mcmc={
            "num_chains": num_chains,
            "num_samples": num_samples,
            "num_warmup": num_warmup,
            "chain_method": chain_method,
            "seed": seed,
            "target_accept_prob": target_accept,
        },
        summary={"interval": interval, "max_draws": max_draws},
        outputs={"output_dir": str(output_dir) if output_dir else None},
    )
    setup_logging(verbose=verbose)
    _run_and_exit(_fit_command, config or [], overrides, bands, strict, verbose)


def _fit_command(
    config_paths: list[Path],
    overrides: dict[str, Any],
    write_bands: bool,
    strict: bool,
    verbose: bool,
) -> None:
    from hdcurve.config.loader import load_config
    from hdcurve.config.schema import AppConfig
    from hdcurve.data.ingest import load_observations
    from hdcurve.evaluation.summary import summarize_projection
    from hdcurve.io.writers import write_csv, write_json
    from hdcurve.models.bayes.io import hash_frame, save_fit
    from hdcurve.models.bayes.predict import PosteriorProjector

    if config_paths:
        cfg = load_config(config_paths, overrides)
    else:
        cfg = AppConfig(**overrides)

    out_dir = Path(cfg.outputs.output_dir)
    if cfg.outputs.log_file:
        setup_logging(verbose=verbose, log_file=cfg.outputs.log_file)

    spec = cfg.to_model_spec()
    mcmc_config = cfg.to_mcmc_config()

    observations = load_observations(
        cfg.dataset.source,
        group_col=cfg.dataset.group_col,
        predictor_col=cfg.dataset.predictor_col,
        response_col=cfg.dataset.response_col,
        min_distinct=cfg.dataset.min_distinct,
        dropna=cfg.dataset.dropna,
        encoding=cfg.dataset.encoding,
    )

    result = _fit_with_progress(observations, spec, mcmc_config)

    write_csv(result.posterior.to_dataframe(), out_dir / cfg.outputs.draws_csv)
    write_json(
        {
            "diagnostics": result.diagnostics.to_dict(),
            "divergences": len(result.divergences),
            "step_sizes": list(result.step_sizes),
            "runtime_seconds": result.runtime_seconds,
        },
        out_dir / cfg.outputs.diagnostics_json,
    )
    write_csv(
        result.diagnostics.summary_df.reset_index(),
        out_dir / "parameter_summary.csv",
    )
    if cfg.outputs.save_netcdf:
        save_fit(result, out_dir, stem="fit", data_hash=hash_frame(observations.frame))

    if write_bands:
        projector = PosteriorProjector(
            result.posterior, spec, unseen_group=cfg.summary.unseen_group
        )
        projected = projector.project(
            observations,
            mode=cfg.summary.mode,
            max_draws=cfg.summary.max_draws,
            seed=cfg.summary.seed,
        )
        band_frame = summarize_projection(
            projected,
            by=cfg.summary.by,
            interval=cfg.summary.interval,
            min_draws=cfg.summary.min_draws,
        )
        write_csv(band_frame, out_dir / cfg.outputs.bands_csv)

    log.info(
        "fit_completed",
        output_dir=str(out_dir),
        draws=len(result.posterior),
        divergences=len(result.divergences),
        passed=result.diagnostics.passed,
        runtime=f"{result.runtime_seconds:.1f}s",
    )
    if strict and not result.diagnostics.passed:
        log.error("convergence_failed", failing=result.diagnostics.failing_params)
        raise typer.Exit(code=4)


@app.command("summarize")
def summarize(
    fit_path: Annotated[Path, typer.Argument(
        help="Saved fit (.nc or its .json sidecar) written by `hdcurve fit`",
    )],
    data: Annotated[str, typer.Option(
        "--data",
        "-d",
        help="CSV path or URL of covariate rows to project",
    )],
    output: Annotated[Path, typer.Option(
        "--output",
        "-o",
        help="Bands CSV to write",
    )] = Path("bands.csv"),
    group_col: Annotated[str, typer.Option(help="Group column in --data")] = "common",
    predictor_col: Annotated[str, typer.Option(help="Predictor column in --data")] = "diameter",
    mode: Annotated[str, typer.Option(help="'fitted' or 'predicted'")] = "predicted",
    by: Annotated[str, typer.Option(help="Key column: '.row' or 'group'")] = ".row",
    interval: Annotated[float, typer.Option(min=0.01, max=0.99)] = 0.95,
    max_draws: Annotated[Optional[int], typer.Option(min=1)] = None,
    seed: Annotated[int, typer.Option(min=0)] = 0,
    unseen_group: Annotated[str, typer.Option(
        help="'population' (new groups get population values) or 'error'",
    )] = "population",
    draws_output: Annotated[Optional[Path], typer.Option(
        help="Also write the long-format projected draws here",
    )] = None,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable DEBUG logging"),
) -> None:
    """Project a saved fit onto covariate rows and write summary bands.

    Rows in --data are numbered 1..n in file order; that number is the
    `.row` key of the output.
    """
    setup_logging(verbose=verbose)
    _run_and_exit(
        _summarize_command,
        fit_path,
        data,
        output,
        group_col=group_col,
        predictor_col=predictor_col,
        mode=mode,
        by=by,
        interval=interval,
        max_draws=max_draws,
        seed=seed,
        unseen_group=unseen_group,
        draws_output=draws_output,
    )


def _summarize_command(
    fit_path: Path,
    data: str,
    output: Path,
    *,
    group_col: str,
    predictor_col: str,
    mode: str,
    by: str,
    interval: float,
    max_draws: int | None,
    seed: int,
    unseen_group: str,
    draws_output: Path | None,
) -> None:
    from hdcurve.evaluation.summary import summarize_projection
    from hdcurve.io.readers import read_csv
    from hdcurve.io.writers import write_csv
    from hdcurve.models.bayes.io import load_fit
    from hdcurve.models.bayes.predict import PosteriorProjector

    loaded = load_fit(fit_path)
    raw = read_csv(data, required=[group_col, predictor_col])
    rows = raw.rename(columns={group_col: "group", predictor_col: "x"})

    projector = PosteriorProjector(loaded.posterior, loaded.spec, unseen_group=unseen_group)
    projected = projector.project(rows, mode=mode, max_draws=max_draws, seed=seed)
    band_frame = summarize_projection(projected, by=by, interval=interval)
    write_csv(band_frame, output)
    if draws_output is not None:
        write_csv(projected, draws_output)

    log.info("summary_written", output=str(output), keys=len(band_frame), mode=mode)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
