"""Schema validation for observation frames."""

import numpy as np
import pandas as pd
import pandera.pandas as pa

from hdcurve.errors import InsufficientDataError

CANONICAL_COLUMNS = [".row", "group", "x", "y"]


# Predictor divides the default mean function, so it must be strictly positive
ObservationSchema = pa.DataFrameSchema(
    {
        ".row": pa.Column(int, pa.Check.ge(1), unique=True, nullable=False),
        "group": pa.Column(str, nullable=False),
        "x": pa.Column(
            float,
            [pa.Check.gt(0), pa.Check(np.isfinite, element_wise=True)],
            nullable=False,
        ),
        "y": pa.Column(
            float,
            [pa.Check.ge(0), pa.Check(np.isfinite, element_wise=True)],
            nullable=False,
        ),
    },
    strict=False,  # Passthrough payload columns are allowed
    coerce=True,
)


def validate_observation_frame(df: pd.DataFrame, lazy: bool = True) -> pd.DataFrame:
    """Validate a canonical observation frame.

    Args:
        df: Frame with `.row`, `group`, `x`, `y` columns plus any payload.
        lazy: If True, collect all errors before raising.

    Returns:
        Validated frame with types coerced.

    Raises:
        pa.errors.SchemaErrors: If validation fails (lazy mode).
        pa.errors.SchemaError: If validation fails (eager mode).
    """
    missing = [col for col in CANONICAL_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"Missing required observation columns: {missing}")
    return ObservationSchema.validate(df, lazy=lazy)


def check_group_support(
    distinct_counts: pd.Series,
    min_distinct: int,
    require_per_group: bool,
) -> None:
    """Check that the grouped data can identify the requested model.

    Args:
        distinct_counts: Distinct response count per group label.
        min_distinct: Minimum distinct responses a group needs for its
            random effect to be identifiable.
        require_per_group: Whether the model has group-level effects. When
            False only the overall count is checked.

    Raises:
        InsufficientDataError: If there are no groups, or a group falls
            below min_distinct while group effects are requested.
    """
    if len(distinct_counts) == 0:
        raise InsufficientDataError("Observation set contains no groups")

    if not require_per_group:
        if int(distinct_counts.sum()) < min_distinct:
            raise InsufficientDataError(
                f"Need at least {min_distinct} distinct responses, "
                f"got {int(distinct_counts.sum())}"
            )
        return

    too_small = distinct_counts[distinct_counts < min_distinct]
    if len(too_small) > 0:
        details = ", ".join(f"{g!r}={int(n)}" for g, n in too_small.items())
        raise InsufficientDataError(
            f"Groups with fewer than {min_distinct} distinct responses cannot "
            f"identify a group-level effect: {details}"
        )
