"""Posterior projection onto covariate rows.

Maps every posterior draw to a concrete outcome for a covariate row:

- fitted: the mean function evaluated at the draw's population values
  plus the row group's effects. Deterministic.
- predicted: the fitted value plus one Normal(0, sigma) residual draw.

Out-of-sample groups: a row whose group was absent from training has no
group effect. With unseen_group="population" (default) its parameters are
the population values alone, i.e. the prediction for a new group at the
center of the group distribution. With unseen_group="error" such rows
raise UnknownGroupError.

Reproducibility: draw subsets are chosen by a Generator seeded with the
caller's seed. Predictive noise for (draw, row) is the draw_id-th standard
normal of a stream seeded by (seed, row), so a row's noise for a given draw
is the same whichever other rows or draws are projected alongside it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

import numpy as np
import pandas as pd

from hdcurve.data.observations import Observation, ObservationSet
from hdcurve.errors import UnknownGroupError
from hdcurve.models.bayes.posterior import Draw, PosteriorTable
from hdcurve.models.bayes.spec import ModelSpec
from hdcurve.utils.random import projection_rng

__all__ = ["PosteriorProjector", "UNSEEN_GROUP_POLICIES", "rows_to_frame"]

logger = logging.getLogger(__name__)

UNSEEN_GROUP_POLICIES = ("population", "error")
MODES = ("fitted", "predicted")

RowsLike = ObservationSet | pd.DataFrame | Iterable[Observation]


def rows_to_frame(rows: RowsLike) -> pd.DataFrame:
    """Normalize covariate rows to a frame with `.row`, `group`, `x` columns.

    Accepts an ObservationSet, an iterable of Observation, or a DataFrame
    with `group` and `x` columns (and optionally `.row`; rows are numbered
    1..n when it is absent). Extra frame columns are kept as payload.
    """
    if isinstance(rows, ObservationSet):
        return rows.frame
    if isinstance(rows, pd.DataFrame):
        missing = [c for c in ("group", "x") if c not in rows.columns]
        if missing:
            raise ValueError(f"Projection rows are missing columns {missing}")
        frame = rows.reset_index(drop=True).copy()
        if ".row" not in frame.columns:
            frame.insert(0, ".row", np.arange(1, len(frame) + 1))
        frame["group"] = frame["group"].astype(str)
        return frame
    records = []
    for obs in rows:
        record = dict(obs.payload)
        record.update({".row": obs.row, "group": obs.group, "x": obs.x, "y": obs.y})
        records.append(record)
    return pd.DataFrame.from_records(records, columns=None if records else [".row", "group", "x"])


class PosteriorProjector:
    """Project posterior draws onto covariate rows.

    Args:
        posterior: Fitted draw table. Only read, never modified.
        spec: Model specification the table was fit with.
        unseen_group: Policy for groups absent from training data,
            "population" or "error".

    Example:
        >>> projector = PosteriorProjector(result.posterior, result.spec)
        >>> fitted = projector.project(observations, mode="fitted", max_draws=50, seed=1)
        >>> fitted.columns.tolist()
        ['.row', '.draw', 'group', 'x', 'value']
    """

    def __init__(
        self,
        posterior: PosteriorTable,
        spec: ModelSpec,
        unseen_group: str = "population",
    ):
        if unseen_group not in UNSEEN_GROUP_POLICIES:
            raise ValueError(
                f"unseen_group must be one of {UNSEEN_GROUP_POLICIES}, got {unseen_group!r}"
            )
        missing = set(spec.parameter_names) - set(posterior.parameters)
        if missing:
            raise ValueError(f"Posterior has no draws for parameter(s) {sorted(missing)}")
        self.posterior = posterior
        self.spec = spec
        self.unseen_group = unseen_group
        self._warned_groups: set[str] = set()

    # -- single values -------------------------------------------------------

    def _resolve_group(self, group: str) -> int | None:
        position = self.posterior.group_position(group)
        if position is None:
            if self.unseen_group == "error":
                raise UnknownGroupError(
                    f"Group {group!r} was not in the training data; known groups: "
                    f"{list(self.posterior.groups)}"
                )
            if group not in self._warned_groups:
                self._warned_groups.add(group)
                logger.info(f"Group {group!r} unseen in training; using population-level values")
        return position

    def parameter_values(self, draw: Draw | int, group: str) -> dict[str, float]:
        """Per-parameter values for one draw and group (population + effect)."""
        draw_id = draw.draw_id if isinstance(draw, Draw) else int(draw)
        position = self._resolve_group(str(group))
        values = {}
        for name in self.spec.parameter_names:
            value = float(self.posterior.population_values(name)[draw_id])
            effects = self.posterior.group_effects(name)
            if effects is not None and position is not None:
                value += float(effects[draw_id, position])
            values[name] = value
        return values

    def fitted_value(self, draw: Draw | int, row: Observation | Mapping[str, Any]) -> float:
        """Deterministic model mean for one draw and covariate row."""
        group, x = _row_fields(row)
        env: dict[str, Any] = self.parameter_values(draw, group)
        env[self.spec.predictor] = x
        return float(self.spec.expression.evaluate(env, np))

    def predicted_value(
        self,
        draw: Draw | int,
        row: Observation | Mapping[str, Any],
        rng: np.random.Generator,
    ) -> float:
        """Fitted value plus one Normal(0, sigma) draw from the caller's rng."""
        draw_id = draw.draw_id if isinstance(draw, Draw) else int(draw)
        sigma = float(self.posterior.sigma()[draw_id])
        return self.fitted_value(draw_id, row) + sigma * float(rng.standard_normal())

    # -- vectorized projection -----------------------------------------------

    def select_draws(self, max_draws: int | None = None, seed: int = 0) -> np.ndarray:
        """Draw ids to project: all of them, or a uniform subsample.

        Subsampling is without replacement and reproducible given seed.
        Returned ids are sorted.
        """
        n_total = len(self.posterior)
        if max_draws is None or max_draws >= n_total:
            return np.arange(n_total)
        if max_draws < 1:
            raise ValueError(f"max_draws must be >= 1, got {max_draws}")
        rng = np.random.default_rng(seed)
        return np.sort(rng.choice(n_total, size=max_draws, replace=False))

    def _fitted_matrix(self, frame: pd.DataFrame, draw_ids: np.ndarray) -> np.ndarray:
        """Fitted values, shape (len(draw_ids), len(frame))."""
        positions = np.array([self._resolve_group(g) for g in frame["group"]], dtype=object)
        seen = np.array([p is not None for p in positions], dtype=bool)
        safe_pos = np.array([p if p is not None else 0 for p in positions], dtype=np.int64)

        env: dict[str, Any] = {}
        for name in self.spec.parameter_names:
            value = self.posterior.population_values(name)[draw_ids][:, None]
            effects = self.posterior.group_effects(name)
            if effects is not None:
                value = value + np.where(seen[None, :], effects[draw_ids][:, safe_pos], 0.0)
            env[name] = value
        env[self.spec.predictor] = frame["x"].to_numpy(np.float64)[None, :]
        fitted = self.spec.expression.evaluate(env, np)
        return np.broadcast_to(fitted, (len(draw_ids), len(frame)))

    def _noise_matrix(self, frame: pd.DataFrame, draw_ids: np.ndarray, seed: int) -> np.ndarray:
        n_total = len(self.posterior)
        noise = np.empty((len(draw_ids), len(frame)))
        for j, row in enumerate(frame[".row"].to_numpy()):
            noise[:, j] = projection_rng(seed, int(row)).standard_normal(n_total)[draw_ids]
        return noise

    def project(
        self,
        rows: RowsLike,
        mode: str = "fitted",
        max_draws: int | None = None,
        seed: int = 0,
        include_payload: bool = False,
    ) -> pd.DataFrame:
        """Project draws onto rows.

        Parameters
        ----------
        rows : ObservationSet, DataFrame or iterable of Observation
            Covariate rows. Groups may be unseen.
        mode : {"fitted", "predicted"}
            Deterministic mean, or mean plus residual noise.
        max_draws : int, optional
            Project only a uniform subsample of this many draws.
        seed : int, default 0
            Seeds the subsample and the predictive noise.
        include_payload : bool, default False
            Join the rows' passthrough columns onto the output.

        Returns
        -------
        pd.DataFrame
            Long format, ordered by row then draw, with columns
            `.row`, `.draw`, `group`, `x`, `value` (plus payload).
        """
        if mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {mode!r}")
        frame = rows_to_frame(rows)
        draw_ids = self.select_draws(max_draws, seed)

        if len(frame) == 0:
            return pd.DataFrame({".row": [], ".draw": [], "group": [], "x": [], "value": []})

        values = self._fitted_matrix(frame, draw_ids)
        if mode == "predicted":
            sigma = self.posterior.sigma()[draw_ids][:, None]
            values = values + sigma * self._noise_matrix(frame, draw_ids, seed)

        n_draws, n_rows = values.shape
        out = pd.DataFrame(
            {
                ".row": np.repeat(frame[".row"].to_numpy(), n_draws),
                ".draw": np.tile(draw_ids, n_rows),
                "group": np.repeat(frame["group"].to_numpy(), n_draws),
                "x": np.repeat(frame["x"].to_numpy(np.float64), n_draws),
                "value": values.T.ravel(),
            }
        )
        if include_payload:
            payload_cols = [c for c in frame.columns if c not in (".row", "group", "x", "y")]
            if payload_cols:
                out = out.merge(frame[[".row", *payload_cols]], on=".row", how="left")
        return out

    def curve_grid(
        self,
        groups: Sequence[str] | None = None,
        x_grid: Sequence[float] | np.ndarray | None = None,
        num_points: int = 50,
        x_range: tuple[float, float] | None = None,
        mode: str = "fitted",
        max_draws: int | None = None,
        seed: int = 0,
    ) -> pd.DataFrame:
        """Project over a predictor grid for each group.

        Used for drawing per-group fitted curves (e.g. one line per draw).

        Args:
            groups: Groups to project. Defaults to every training group.
            x_grid: Explicit predictor values. Overrides num_points/x_range.
            num_points: Grid size when x_grid is not given.
            x_range: (low, high) of the grid. Required when x_grid is None.
            mode: "fitted" or "predicted".
            max_draws: Optional draw subsample size.
            seed: Seed for subsampling and noise.

        Returns:
            Long-format frame as from project(); `.row` numbers the
            synthetic grid rows.
        """
        if groups is None:
            groups = list(self.posterior.groups)
        if x_grid is None:
            if x_range is None:
                raise ValueError("Provide x_grid or x_range")
            low, high = x_range
            if not 0 < low < high:
                raise ValueError(f"x_range must satisfy 0 < low < high, got {x_range}")
            x_grid = np.linspace(low, high, num_points)
        x_grid = np.asarray(x_grid, dtype=np.float64)

        frame = pd.DataFrame(
            {
                "group": np.repeat(np.asarray(groups, dtype=object), len(x_grid)),
                "x": np.tile(x_grid, len(groups)),
            }
        )
        return self.project(frame, mode=mode, max_draws=max_draws, seed=seed)


def _row_fields(row: Observation | Mapping[str, Any]) -> tuple[str, float]:
    if isinstance(row, Observation):
        return row.group, row.x
    return str(row["group"]), float(row["x"])
