"""Unit tests for Observation and ObservationSet."""

import numpy as np
import pandas as pd
import pandera.pandas as pa
import pytest

from hdcurve.data.observations import Observation, ObservationSet
from hdcurve.data.validation import check_group_support
from hdcurve.errors import InsufficientDataError


# =============================================================================
# Construction
# =============================================================================


class TestFromDataFrame:
    """Tests for ObservationSet.from_dataframe."""

    def test_canonical_columns(self, observations):
        frame = observations.frame
        assert list(frame.columns[:4]) == [".row", "group", "x", "y"]
        assert "plot" in frame.columns

    def test_groups_sorted(self, observations):
        assert observations.groups == ("Douglas-fir", "red alder", "western hemlock")
        assert observations.n_groups == 3

    def test_group_index_matches_labels(self, observations):
        frame = observations.frame
        labels = np.array(observations.groups)[observations.group_index]
        np.testing.assert_array_equal(labels, frame["group"].to_numpy())

    def test_rows_numbered_from_one(self, observations, hd_frame):
        assert observations.rows.tolist() == list(range(1, len(hd_frame) + 1))

    def test_explicit_row_column(self, hd_frame):
        hd_frame = hd_frame.assign(tree_id=np.arange(100, 100 + len(hd_frame)))
        obs = ObservationSet.from_dataframe(
            hd_frame, "common", "diameter", "height", row_col="tree_id"
        )
        assert obs.rows[0] == 100
        assert "tree_id" not in obs.payload_columns

    def test_missing_column(self, hd_frame):
        with pytest.raises(ValueError, match="Missing columns"):
            ObservationSet.from_dataframe(hd_frame, "species", "diameter", "height")

    def test_clashing_payload_columns_renamed(self, hd_frame, caplog):
        hd_frame = hd_frame.assign(group="stand A", x=1.5, y=-2.0)
        with caplog.at_level("WARNING", logger="hdcurve.data.observations"):
            obs = ObservationSet.from_dataframe(hd_frame, "common", "diameter", "height")
        assert set(obs.payload_columns) >= {"plot", "payload_group", "payload_x", "payload_y"}
        frame = obs.frame
        assert (frame["payload_group"] == "stand A").all()
        assert (frame["payload_y"] == -2.0).all()
        np.testing.assert_array_equal(frame["x"].to_numpy(), hd_frame["diameter"].to_numpy())
        assert "payload_group" in caplog.text

    def test_from_observations(self):
        obs = ObservationSet.from_observations(
            [
                Observation(row=1, group="fir", x=10.0, y=50.0, payload={"plot": 3}),
                Observation(row=2, group="pine", x=12.0, y=40.0, payload={"plot": 4}),
            ]
        )
        assert len(obs) == 2
        assert obs.observation(2).payload == {"plot": 4}

    def test_from_zero_observations(self):
        with pytest.raises(ValueError):
            ObservationSet.from_observations([])


# =============================================================================
# Validation
# =============================================================================


class TestValidation:
    """Schema checks on the typed columns."""

    @pytest.mark.parametrize(
        "column, value",
        [("diameter", 0.0), ("diameter", -1.0), ("diameter", np.inf), ("height", -0.5)],
    )
    def test_rejects_out_of_domain(self, hd_frame, column, value):
        hd_frame.loc[3, column] = value
        with pytest.raises((pa.errors.SchemaErrors, pa.errors.SchemaError)):
            ObservationSet.from_dataframe(hd_frame, "common", "diameter", "height")

    def test_rejects_duplicate_rows(self, hd_frame):
        hd_frame["tree_id"] = 1
        with pytest.raises((pa.errors.SchemaErrors, pa.errors.SchemaError)):
            ObservationSet.from_dataframe(
                hd_frame, "common", "diameter", "height", row_col="tree_id"
            )

    def test_zero_height_allowed(self, hd_frame):
        hd_frame.loc[0, "height"] = 0.0
        obs = ObservationSet.from_dataframe(hd_frame, "common", "diameter", "height")
        assert obs.y[0] == 0.0


# =============================================================================
# Access
# =============================================================================


class TestAccess:
    """Read-only access and iteration."""

    def test_arrays_read_only(self, observations):
        with pytest.raises(ValueError):
            observations.x[0] = 1.0
        with pytest.raises(ValueError):
            observations.y[0] = 1.0

    def test_frame_is_copy(self, observations):
        frame = observations.frame
        frame.loc[0, "x"] = 999.0
        assert observations.x[0] != 999.0

    def test_iteration_yields_observations(self, observations):
        items = list(observations)
        assert len(items) == len(observations)
        first = items[0]
        assert isinstance(first, Observation)
        assert first.row == 1
        assert set(first.payload) == {"plot"}

    def test_observation_lookup(self, observations):
        obs = observations.observation(5)
        assert obs.row == 5
        assert obs.x == observations.x[4]

    def test_observation_missing(self, observations):
        with pytest.raises(KeyError):
            observations.observation(10_000)

    def test_subset_keeps_row_ids(self, observations):
        sub = observations.subset([2, 4, 6])
        assert sub.rows.tolist() == [2, 4, 6]

    def test_distinct_response_counts(self):
        df = pd.DataFrame(
            {"g": ["a", "a", "a", "b", "b"], "x": [1.0, 2.0, 3.0, 1.0, 2.0],
             "y": [5.0, 5.0, 6.0, 7.0, 8.0]}
        )
        obs = ObservationSet.from_dataframe(df, "g", "x", "y")
        counts = obs.distinct_response_counts()
        assert counts.to_dict() == {"a": 2, "b": 2}


# =============================================================================
# Group support
# =============================================================================


class TestCheckGroupSupport:
    """Tests for check_group_support."""

    def test_passes(self):
        check_group_support(pd.Series({"a": 5, "b": 3}), min_distinct=3, require_per_group=True)

    def test_single_group_too_few_distinct(self):
        """One group with 2 distinct responses cannot carry a group effect."""
        with pytest.raises(InsufficientDataError, match="'a'=2"):
            check_group_support(pd.Series({"a": 2}), min_distinct=3, require_per_group=True)

    def test_no_groups(self):
        with pytest.raises(InsufficientDataError, match="no groups"):
            check_group_support(pd.Series(dtype=int), min_distinct=3, require_per_group=True)

    def test_pooled_model_checks_total(self):
        check_group_support(pd.Series({"a": 2, "b": 2}), min_distinct=3, require_per_group=False)
        with pytest.raises(InsufficientDataError):
            check_group_support(pd.Series({"a": 1}), min_distinct=3, require_per_group=False)
