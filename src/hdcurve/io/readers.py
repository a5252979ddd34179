"""Readers for tabular tree data."""

from pathlib import Path

import pandas as pd


def read_csv(
    source: str | Path,
    encoding: str = "utf-8-sig",
    required: list[str] | None = None,
    **kwargs,
) -> pd.DataFrame:
    """
    Read a CSV from a local path or URL.

    pandas handles http/https/s3 sources directly. Header names are
    stripped of surrounding whitespace; the default encoding drops a BOM.

    Args:
        source: Path or URL of the CSV file
        encoding: Text encoding
        required: Columns that must be present after header cleanup
        **kwargs: Passed through to pd.read_csv

    Returns:
        DataFrame with cleaned column names

    Raises:
        KeyError: If any required column is missing
    """
    df = pd.read_csv(source, encoding=encoding, **kwargs)
    df.columns = [str(col).strip() for col in df.columns]
    if required:
        missing = [col for col in required if col not in df.columns]
        if missing:
            raise KeyError(f"{source} is missing columns {missing}; found {list(df.columns)}")
    return df
