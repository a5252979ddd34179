"""Quantile summaries of projected posterior values.

Reduces the draws for each key (an observation row, a group, or a grid
point) to a median and an equal-tailed interval. For interval=0.95:
- lower = 2.5th percentile
- upper = 97.5th percentile

Quantiles use linear interpolation between order statistics, so all three
values lie within [min(values), max(values)] and lower <= median <= upper.

Usage:
    >>> fitted = projector.project(observations, mode="fitted")
    >>> bands = summarize_projection(fitted, by=".row", interval=0.9)
"""

from __future__ import annotations

from collections.abc import Hashable, Sequence
from dataclasses import asdict, dataclass

import numpy as np
import pandas as pd

from hdcurve.errors import InsufficientDrawsError

__all__ = [
    "SummaryBand",
    "summarize_values",
    "summarize_projection",
    "bands_to_frame",
    "CoverageResult",
    "compute_coverage",
]

DEFAULT_MIN_DRAWS = 2


@dataclass(frozen=True)
class SummaryBand:
    """Median and equal-tailed interval for one key.

    Attributes:
        key: Row index, group label, or tuple of keys.
        median: 50th percentile.
        lower: (1 - interval) / 2 quantile.
        upper: (1 + interval) / 2 quantile.
        n_draws: Number of values summarized.
        interval: Nominal interval width.
    """

    key: Hashable
    median: float
    lower: float
    upper: float
    n_draws: int
    interval: float

    @property
    def width(self) -> float:
        return self.upper - self.lower


def _check_interval(interval: float) -> None:
    if not 0.0 < interval < 1.0:
        raise ValueError(f"interval must be in (0, 1), got {interval}")


def summarize_values(
    values: Sequence[float] | np.ndarray,
    interval: float = 0.95,
    key: Hashable = None,
    min_draws: int = DEFAULT_MIN_DRAWS,
) -> SummaryBand:
    """Summarize one key's values.

    Args:
        values: Projected values (one per draw).
        interval: Nominal interval width in (0, 1).
        key: Label carried onto the band.
        min_draws: Fewer values than this raise InsufficientDrawsError.

    Returns:
        SummaryBand for the key.

    Raises:
        InsufficientDrawsError: Too few values.
        ValueError: interval outside (0, 1) or non-finite values.
    """
    _check_interval(interval)
    arr = np.asarray(values, dtype=np.float64).ravel()
    if arr.size < min_draws:
        raise InsufficientDrawsError(
            f"Key {key!r} has {arr.size} draw(s); at least {min_draws} required"
        )
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"Key {key!r} has non-finite projected values")

    alpha = 1.0 - interval
    lower, median, upper = np.quantile(
        arr, [alpha / 2, 0.5, 1 - alpha / 2], method="linear"
    )
    return SummaryBand(
        key=key,
        median=float(median),
        lower=float(lower),
        upper=float(upper),
        n_draws=int(arr.size),
        interval=interval,
    )


def summarize_projection(
    projected: pd.DataFrame,
    by: str | Sequence[str] = ".row",
    interval: float = 0.95,
    value_col: str = "value",
    min_draws: int = DEFAULT_MIN_DRAWS,
) -> pd.DataFrame:
    """Summarize a long-format projection frame per key.

    Parameters
    ----------
    projected : pd.DataFrame
        Output of PosteriorProjector.project (or any long frame).
    by : str or list of str, default ".row"
        Key column(s). Use "group" for per-group bands, or
        ["group", "x"] for curve grids.
    interval : float, default 0.95
        Nominal interval width.
    value_col : str, default "value"
        Column holding projected values.
    min_draws : int, default 2
        Minimum values per key.

    Returns
    -------
    pd.DataFrame
        One row per key, key columns first, then median, lower, upper,
        n_draws, interval.

    Raises
    ------
    InsufficientDrawsError
        If any key has fewer than min_draws values.
    """
    _check_interval(interval)
    keys = [by] if isinstance(by, str) else list(by)
    missing = [c for c in [*keys, value_col] if c not in projected.columns]
    if missing:
        raise ValueError(f"Projection frame is missing columns {missing}")

    records = []
    for key, chunk in projected.groupby(keys, sort=True):
        key = key if len(keys) > 1 else (key[0] if isinstance(key, tuple) else key)
        band = summarize_values(
            chunk[value_col].to_numpy(), interval=interval, key=key, min_draws=min_draws
        )
        record = dict(zip(keys, key if len(keys) > 1 else (key,)))
        record.update(
            median=band.median,
            lower=band.lower,
            upper=band.upper,
            n_draws=band.n_draws,
            interval=band.interval,
        )
        records.append(record)
    return pd.DataFrame.from_records(
        records, columns=[*keys, "median", "lower", "upper", "n_draws", "interval"]
    )


def bands_to_frame(bands: Sequence[SummaryBand]) -> pd.DataFrame:
    return pd.DataFrame([asdict(b) for b in bands])


@dataclass
class CoverageResult:
    """Empirical coverage of summary bands against observed responses.

    Attributes:
        nominal: Nominal interval width.
        empirical: Fraction of observations inside their band.
        n_obs: Number of observations compared.
        n_covered: Number inside their band.
        interval_width: Mean band width (sharpness).
    """

    nominal: float
    empirical: float
    n_obs: int
    n_covered: int
    interval_width: float


def compute_coverage(
    bands: pd.DataFrame,
    observed: pd.DataFrame,
    response_col: str = "y",
    key: str = ".row",
) -> CoverageResult:
    """Fraction of observed responses inside their predictive band.

    For predictive bands from a well-calibrated model, empirical coverage
    should be close to the nominal interval.

    Args:
        bands: Output of summarize_projection(..., by=key) on predicted values.
        observed: Frame with key and response columns (e.g. ObservationSet.frame).
        response_col: Observed response column.
        key: Join column.
    """
    merged = bands.merge(observed[[key, response_col]], on=key, how="inner")
    if len(merged) == 0:
        raise ValueError("No observations matched the bands")
    y = merged[response_col].to_numpy(np.float64)
    covered = (y >= merged["lower"].to_numpy()) & (y <= merged["upper"].to_numpy())
    n_covered = int(covered.sum())
    return CoverageResult(
        nominal=float(merged["interval"].iloc[0]),
        empirical=n_covered / len(merged),
        n_obs=len(merged),
        n_covered=n_covered,
        interval_width=float((merged["upper"] - merged["lower"]).mean()),
    )
