"""Tests for prior parsing and construction."""

import numpyro.distributions as dist
import pytest

from hdcurve.errors import ModelSpecError
from hdcurve.models.bayes.priors import Prior, get_default_priors


class TestPriorParse:
    """Tests for Prior.parse."""

    def test_normal(self):
        prior = Prior.parse("normal(4.5, 1)")
        assert prior == Prior("normal", loc=4.5, scale=1.0)

    def test_student_t(self):
        prior = Prior.parse("student_t(3, 0, 2.5)")
        assert (prior.df, prior.loc, prior.scale) == (3.0, 0.0, 2.5)

    @pytest.mark.parametrize("family", ["half_normal", "half_cauchy", "exponential"])
    def test_positive_families(self, family):
        prior = Prior.parse(f"{family}(2)")
        assert prior.family == family
        assert prior.scale == 2.0
        assert prior.positive_support

    def test_whitespace_tolerated(self):
        assert Prior.parse("  normal ( -5 , 5 ) ") == Prior("normal", loc=-5.0, scale=5.0)

    @pytest.mark.parametrize(
        "text",
        ["normal", "normal(1)", "half_normal(1, 2)", "gamma(1, 1)", "normal(a, b)", "Normal(0, 1)"],
    )
    def test_malformed(self, text):
        with pytest.raises(ModelSpecError):
            Prior.parse(text)

    def test_round_trip_string(self):
        for prior in get_default_priors().values():
            assert Prior.parse(prior.to_string()) == prior


class TestPriorCheck:
    """Tests for Prior.check."""

    def test_rejects_nonpositive_scale(self):
        with pytest.raises(ModelSpecError, match="positive scale"):
            Prior("normal", scale=0.0).check("a")

    def test_rejects_unknown_family(self):
        with pytest.raises(ModelSpecError, match="unknown family"):
            Prior("gamma").check("a")

    def test_rejects_nonpositive_df(self):
        with pytest.raises(ModelSpecError, match="df"):
            Prior("student_t", df=0.0).check("a")


class TestToDistribution:
    """Tests for numpyro distribution construction."""

    def test_families(self):
        assert isinstance(Prior("normal").to_distribution(), dist.Normal)
        assert isinstance(Prior("student_t").to_distribution(), dist.StudentT)
        assert isinstance(Prior("half_normal").to_distribution(), dist.HalfNormal)
        assert isinstance(Prior("half_cauchy").to_distribution(), dist.HalfCauchy)
        assert isinstance(Prior("exponential").to_distribution(), dist.Exponential)

    def test_exponential_rate_is_inverse_scale(self):
        d = Prior("exponential", scale=4.0).to_distribution()
        assert float(d.mean) == pytest.approx(4.0)


class TestDefaultPriors:
    def test_sites(self):
        assert set(get_default_priors()) == {"a", "b", "sd_a", "sd_b", "sigma"}

    def test_scale_sites_positive(self):
        priors = get_default_priors()
        for site in ("sd_a", "sd_b", "sigma"):
            assert priors[site].positive_support
