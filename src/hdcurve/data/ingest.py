"""Tabular data ingestion and group filtering.

These are thin helpers around pandas for the input boundary. The fitting
engine only consumes the resulting ObservationSet.
"""

from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd

from hdcurve.data.observations import ObservationSet
from hdcurve.errors import InsufficientDataError
from hdcurve.io.readers import read_csv

logger = logging.getLogger(__name__)

ARROWHEAD_URL = "https://s3.amazonaws.com/silviaterra-biometrics-public/arrowhead-height-data.csv"


def filter_groups(
    df: pd.DataFrame,
    group_col: str,
    response_col: str,
    min_distinct: int = 25,
) -> pd.DataFrame:
    """Drop groups with fewer than min_distinct unique responses.

    Args:
        df: Source frame.
        group_col: Column holding the group label.
        response_col: Column whose distinct values are counted.
        min_distinct: Threshold. Groups strictly below it are dropped.

    Returns:
        Filtered frame with the original row order preserved.
    """
    counts = df.groupby(group_col)[response_col].nunique()
    keep = counts[counts >= min_distinct].index
    dropped = sorted(set(counts.index) - set(keep))
    if dropped:
        logger.info(
            f"Dropping {len(dropped)} groups with < {min_distinct} distinct "
            f"{response_col} values: {dropped}"
        )
    return df[df[group_col].isin(keep)].reset_index(drop=True)


def load_observations(
    source: str | Path,
    group_col: str = "common",
    predictor_col: str = "diameter",
    response_col: str = "height",
    min_distinct: int | None = 25,
    dropna: bool = True,
    encoding: str = "utf-8-sig",
) -> ObservationSet:
    """Read a delimited file (local path or URL) into an ObservationSet.

    Rows are numbered 1..n after filtering, so `.row` indexes the filtered
    set that the model is fit on.

    Args:
        source: Local path or http(s) URL of the CSV.
        group_col: Column holding the group label.
        predictor_col: Column holding the predictor.
        response_col: Column holding the response.
        min_distinct: Minimum distinct responses per group. None disables
            filtering.
        dropna: Drop rows with missing values in the three typed columns.
        encoding: File encoding passed to the reader.

    Returns:
        Validated ObservationSet with all other columns as payload.

    Raises:
        InsufficientDataError: If no rows survive filtering.
    """
    df = read_csv(source, encoding=encoding, required=[group_col, predictor_col, response_col])
    logger.info(f"Loaded {len(df)} rows from {source}")

    if dropna:
        before = len(df)
        df = df.dropna(subset=[group_col, predictor_col, response_col])
        if len(df) < before:
            logger.info(f"Dropped {before - len(df)} rows with missing values")

    if min_distinct is not None:
        df = filter_groups(df, group_col, response_col, min_distinct=min_distinct)

    if len(df) == 0:
        raise InsufficientDataError(f"No rows left in {source} after filtering")

    obs = ObservationSet.from_dataframe(
        df.reset_index(drop=True),
        group_col=group_col,
        predictor_col=predictor_col,
        response_col=response_col,
    )
    logger.info(f"Observation set: {len(obs)} rows across {obs.n_groups} groups")
    return obs
