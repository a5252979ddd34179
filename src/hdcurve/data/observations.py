"""Immutable grouped observation set.

Observations carry three typed fields (group, predictor, response), a stable
1-based `.row` index, and an opaque payload of passthrough columns that is
never inspected, only carried through for join-back.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from hdcurve.data.validation import CANONICAL_COLUMNS, validate_observation_frame

__all__ = ["Observation", "ObservationSet"]

# Prefix for passthrough columns whose names clash with the typed columns
PAYLOAD_PREFIX = "payload_"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Observation:
    """One measurement.

    Attributes:
        row: Stable 1-based index into the source ObservationSet.
        group: Group label (e.g. species).
        x: Predictor value (e.g. diameter). Strictly positive.
        y: Response value (e.g. height). Non-negative. May be NaN for
            synthetic rows built only for projection.
        payload: Passthrough columns, carried unchanged.
    """

    row: int
    group: str
    x: float
    y: float = float("nan")
    payload: Mapping[str, Any] = field(default_factory=dict)


class ObservationSet:
    """Validated, immutable set of grouped observations.

    Build with from_dataframe or from_observations. The backing frame is
    private; the `frame` property returns a copy.

    Example:
        >>> obs = ObservationSet.from_dataframe(
        ...     df, group_col="common", predictor_col="diameter", response_col="height"
        ... )
        >>> obs.groups
        ('Douglas-fir', 'western hemlock')
    """

    def __init__(self, frame: pd.DataFrame):
        validated = validate_observation_frame(frame.reset_index(drop=True))
        validated = validated.sort_values(".row", kind="stable").reset_index(drop=True)
        self._frame = validated
        self._groups = tuple(sorted(validated["group"].unique()))
        lookup = {g: i for i, g in enumerate(self._groups)}

        self._group_index = _readonly(validated["group"].map(lookup).to_numpy(np.int64))
        self._x = _readonly(validated["x"].to_numpy(np.float64))
        self._y = _readonly(validated["y"].to_numpy(np.float64))
        self._rows = _readonly(validated[".row"].to_numpy(np.int64))

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        group_col: str,
        predictor_col: str,
        response_col: str,
        row_col: str | None = None,
    ) -> ObservationSet:
        """Build from an arbitrary frame by naming the three typed columns.

        Args:
            df: Source frame. Columns other than the three named ones become
                passthrough payload.
            group_col: Column holding the group label.
            predictor_col: Column holding the predictor.
            response_col: Column holding the response.
            row_col: Optional column with an existing 1-based row index. If
                omitted, rows are numbered 1..n in frame order.

        Payload columns named `.row`, `group`, `x` or `y` are kept under a
        `payload_` prefix (e.g. `payload_group`) and a warning is logged.

        Returns:
            Validated ObservationSet.
        """
        missing = [c for c in (group_col, predictor_col, response_col) if c not in df.columns]
        if missing:
            raise ValueError(f"Missing columns: {missing}")

        canonical = pd.DataFrame(
            {
                ".row": (
                    df[row_col].to_numpy()
                    if row_col is not None
                    else np.arange(1, len(df) + 1)
                ),
                "group": df[group_col].astype(str).to_numpy(),
                "x": df[predictor_col].to_numpy(),
                "y": df[response_col].to_numpy(),
            }
        )
        used = {group_col, predictor_col, response_col}
        if row_col is not None:
            used.add(row_col)
        payload = df[[c for c in df.columns if c not in used]].reset_index(drop=True)
        payload = _rename_reserved(payload)
        return cls(pd.concat([canonical, payload], axis=1))

    @classmethod
    def from_observations(cls, observations: Iterable[Observation]) -> ObservationSet:
        records = []
        for obs in observations:
            record = dict(obs.payload)
            record.update({".row": obs.row, "group": obs.group, "x": obs.x, "y": obs.y})
            records.append(record)
        if not records:
            raise ValueError("Cannot build an ObservationSet from zero observations")
        return cls(pd.DataFrame.from_records(records))

    @property
    def frame(self) -> pd.DataFrame:
        return self._frame.copy()

    @property
    def groups(self) -> tuple[str, ...]:
        """Sorted unique group labels. Position is the group's index."""
        return self._groups

    @property
    def n_groups(self) -> int:
        return len(self._groups)

    @property
    def group_index(self) -> np.ndarray:
        return self._group_index

    @property
    def x(self) -> np.ndarray:
        return self._x

    @property
    def y(self) -> np.ndarray:
        return self._y

    @property
    def rows(self) -> np.ndarray:
        return self._rows

    @property
    def payload_columns(self) -> list[str]:
        return [c for c in self._frame.columns if c not in CANONICAL_COLUMNS]

    def __len__(self) -> int:
        return len(self._frame)

    def __iter__(self) -> Iterator[Observation]:
        payload_cols = self.payload_columns
        for record in self._frame.to_dict(orient="records"):
            yield Observation(
                row=int(record[".row"]),
                group=str(record["group"]),
                x=float(record["x"]),
                y=float(record["y"]),
                payload={c: record[c] for c in payload_cols},
            )

    def observation(self, row: int) -> Observation:
        """Look up a single observation by its 1-based row index."""
        matches = np.flatnonzero(self._rows == row)
        if len(matches) == 0:
            raise KeyError(f"No observation with row {row}")
        record = self._frame.iloc[int(matches[0])]
        return Observation(
            row=int(record[".row"]),
            group=str(record["group"]),
            x=float(record["x"]),
            y=float(record["y"]),
            payload={c: record[c] for c in self.payload_columns},
        )

    def subset(self, rows: Iterable[int]) -> ObservationSet:
        """Return a new set restricted to the given rows (row indices kept)."""
        keep = self._frame[".row"].isin(list(rows))
        return ObservationSet(self._frame[keep])

    def distinct_response_counts(self) -> pd.Series:
        """Number of distinct response values per group, indexed by label."""
        return self._frame.groupby("group")["y"].nunique().reindex(list(self._groups))

    def __repr__(self) -> str:
        return f"ObservationSet(n_obs={len(self)}, n_groups={self.n_groups})"


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, copy=True)
    arr.setflags(write=False)
    return arr


def _rename_reserved(payload: pd.DataFrame) -> pd.DataFrame:
    """Prefix payload columns named like a typed column so they survive."""
    taken = set(payload.columns) | set(CANONICAL_COLUMNS)
    renames = {}
    for col in payload.columns:
        if col not in CANONICAL_COLUMNS:
            continue
        new = PAYLOAD_PREFIX + str(col).lstrip(".")
        while new in taken:
            new = PAYLOAD_PREFIX + new
        taken.add(new)
        renames[col] = new
    if renames:
        logger.warning(f"Renamed payload columns that clash with typed columns: {renames}")
    return payload.rename(columns=renames)
