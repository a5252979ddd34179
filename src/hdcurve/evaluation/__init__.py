"""Summaries of projected posterior values.

Key capabilities:
- Summary bands: median and equal-tailed interval per row, group or grid point
- Coverage: fraction of observed responses inside their predictive band

Usage:
    >>> from hdcurve.evaluation import summarize_projection, compute_coverage
    >>> bands = summarize_projection(predicted, by=".row", interval=0.9)
    >>> coverage = compute_coverage(bands, observations.frame)
"""

from .summary import (
    CoverageResult,
    SummaryBand,
    bands_to_frame,
    compute_coverage,
    summarize_projection,
    summarize_values,
)

__all__ = [
    "SummaryBand",
    "summarize_values",
    "summarize_projection",
    "bands_to_frame",
    "CoverageResult",
    "compute_coverage",
]
