"""Tests for the PosteriorTable draw container."""

import numpy as np
import pytest

from hdcurve.models.bayes.posterior import PosteriorTable
from tests.conftest import make_posterior


class TestPosteriorTableConstruction:
    """Tests for shape validation."""

    def test_requires_sigma(self):
        with pytest.raises(ValueError, match="sigma"):
            PosteriorTable({"a": np.zeros((2, 5))}, {}, (), ("a",))

    def test_rejects_mismatched_site(self):
        with pytest.raises(ValueError, match="'a'"):
            PosteriorTable(
                {"a": np.zeros((2, 4)), "sigma": np.ones((2, 5))}, {}, (), ("a",)
            )

    def test_rejects_flat_sigma(self):
        with pytest.raises(ValueError):
            PosteriorTable({"sigma": np.ones(10)}, {}, (), ())


class TestPosteriorTableAccess:
    """Tests for views over the draws."""

    def test_len_and_shape(self, posterior):
        assert posterior.num_chains == 2
        assert posterior.num_draws == 50
        assert len(posterior) == 100

    def test_arrays_read_only(self, posterior):
        with pytest.raises(ValueError):
            posterior["a"][0, 0] = 1.0

    def test_source_arrays_copied(self):
        sigma = np.ones((1, 3))
        table = PosteriorTable({"sigma": sigma}, {}, (), ())
        sigma[0, 0] = 99.0
        assert table["sigma"][0, 0] == 1.0

    def test_flat_is_chain_major(self, posterior):
        flat = posterior.flat("a")
        assert flat[0] == posterior["a"][0, 0]
        assert flat[50] == posterior["a"][1, 0]
        assert posterior.flat("r_a").shape == (100, 2)

    def test_split_draw_id(self, posterior):
        assert posterior.split_draw_id(0) == (0, 0)
        assert posterior.split_draw_id(57) == (1, 7)
        with pytest.raises(IndexError):
            posterior.split_draw_id(100)

    def test_scalar_names(self, posterior):
        names = posterior.scalar_names
        assert names[:4] == ["a", "sd_a", "r_a[Douglas-fir]", "r_a[red alder]"]
        assert names[-1] == "sigma"

    def test_population_values_without_intercept(self):
        table = PosteriorTable(
            {"r_b": np.ones((1, 4, 2)), "sd_b": np.ones((1, 4)), "sigma": np.ones((1, 4))},
            {},
            ("x1", "x2"),
            ("b",),
        )
        np.testing.assert_array_equal(table.population_values("b"), np.zeros(4))
        with pytest.raises(KeyError):
            table.population_values("c")

    def test_group_effects(self, posterior):
        assert posterior.group_effects("a").shape == (100, 2)
        assert posterior.group_effects("missing") is None

    def test_group_position(self, posterior):
        assert posterior.group_position("red alder") == 1
        assert posterior.group_position("grand fir") is None
        assert posterior.has_group("Douglas-fir")


class TestDraw:
    """Tests for single draw records."""

    def test_draw_fields(self, posterior):
        draw = posterior.draw(57)
        assert draw.chain_id == 1
        assert draw.iteration_index == 7
        assert draw.sigma == pytest.approx(posterior["sigma"][1, 7])
        assert draw.parameter_values["r_b[red alder]"] == pytest.approx(posterior["r_b"][1, 7, 1])
        assert draw.divergent is False

    def test_draw_values_immutable(self, posterior):
        draw = posterior.draw(0)
        with pytest.raises(TypeError):
            draw.parameter_values["a"] = 0.0

    def test_iteration_covers_all(self, posterior):
        ids = [d.draw_id for d in posterior]
        assert ids == list(range(100))


class TestConversion:
    """Tests for frame and InferenceData conversion."""

    def test_posterior_means(self, posterior):
        means = posterior.posterior_means()
        assert means["a"] == pytest.approx(float(posterior["a"].mean()))
        assert "r_a[Douglas-fir]" in means

    def test_to_dataframe(self, posterior):
        df = posterior.to_dataframe()
        assert len(df) == 100
        assert list(df.columns[:3]) == [".chain", ".iteration", ".draw"]
        assert "r_b[red alder]" in df.columns
        assert "divergent" in df.columns
        assert df.loc[57, ".chain"] == 1
        assert df.loc[57, ".iteration"] == 7

    def test_inference_data_round_trip(self, posterior):
        idata = posterior.to_inference_data()
        assert "group" in idata.posterior.coords
        assert idata.posterior.attrs["parameters"] == "a,b"
        restored = PosteriorTable.from_inference_data(idata)
        assert restored.groups == posterior.groups
        assert restored.parameters == posterior.parameters
        np.testing.assert_array_equal(restored["r_a"], posterior["r_a"])
        np.testing.assert_array_equal(
            restored.sample_stats["diverging"], posterior.sample_stats["diverging"]
        )

    def test_from_inference_data_requires_parameters(self, posterior):
        idata = posterior.to_inference_data()
        del idata.posterior.attrs["parameters"]
        with pytest.raises(ValueError, match="parameters"):
            PosteriorTable.from_inference_data(idata)

    def test_from_inference_data_parameters_fallback(self, posterior):
        idata = posterior.to_inference_data()
        del idata.posterior.attrs["parameters"]
        restored = PosteriorTable.from_inference_data(idata, parameters=("a", "b"))
        assert restored.parameters == ("a", "b")

    def test_repr(self):
        assert "chains=3" in repr(make_posterior(n_chains=3))
