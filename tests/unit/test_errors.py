"""Tests for the hdcurve exception hierarchy."""

import pickle

import pytest

from hdcurve.errors import (
    ChainAbortedError,
    DivergentTransitionError,
    HdcurveError,
    InsufficientDataError,
    InsufficientDrawsError,
    ModelSpecError,
    SamplerNonConvergenceError,
    SamplerNumericalError,
    SamplingCancelled,
    UnknownGroupError,
)


class TestHdcurveError:
    """Tests for the base exception."""

    def test_str_includes_stage(self):
        err = HdcurveError("Something went wrong", stage="fit")
        assert str(err) == "[fit] Something went wrong"

    def test_str_without_stage(self):
        err = HdcurveError("Something went wrong")
        assert str(err) == "Something went wrong"

    def test_default_exit_code(self):
        assert HdcurveError("x").exit_code == 1


class TestExitCodes:
    """Every structural error carries the exit code the CLI returns."""

    @pytest.mark.parametrize(
        "exc, code",
        [
            (ModelSpecError("bad"), 3),
            (InsufficientDataError("bad"), 3),
            (InsufficientDrawsError("bad"), 3),
            (UnknownGroupError("bad"), 3),
            (SamplerNumericalError("bad"), 4),
            (ChainAbortedError("bad", chain_id=1, iteration=10), 4),
            (SamplingCancelled("bad"), 130),
        ],
    )
    def test_exit_code(self, exc, code):
        assert exc.exit_code == code
        assert isinstance(exc, HdcurveError)

    def test_default_stages(self):
        assert ModelSpecError("bad").stage == "model_spec"
        assert InsufficientDataError("bad").stage == "data"
        assert InsufficientDrawsError("bad").stage == "summary"
        assert UnknownGroupError("bad").stage == "projection"


class TestRecordTypes:
    """Divergence records and convergence warnings."""

    def test_chain_aborted_carries_location(self):
        err = ChainAbortedError("gave up", chain_id=2, iteration=17)
        assert err.chain_id == 2
        assert err.iteration == 17

    def test_sampling_cancelled_carries_chains(self):
        err = SamplingCancelled("stop", completed_chains=["c0", "c1"])
        assert err.completed_chains == ("c0", "c1")

    def test_divergence_record_fields(self):
        rec = DivergentTransitionError(chain_id=0, iteration=5, energy_error=1234.5)
        assert rec.chain_id == 0
        assert rec.iteration == 5
        assert "chain 0" in str(rec)

    def test_divergence_record_pickles(self):
        rec = DivergentTransitionError(chain_id=1, iteration=3, energy_error=2000.0)
        restored = pickle.loads(pickle.dumps(rec))
        assert (restored.chain_id, restored.iteration, restored.energy_error) == (1, 3, 2000.0)

    def test_nonconvergence_is_warning(self):
        warning = SamplerNonConvergenceError(["a"], rhat_max=1.2, ess_min=50.0)
        assert isinstance(warning, UserWarning)
        assert warning.failing_params == ["a"]
        with pytest.warns(SamplerNonConvergenceError):
            import warnings

            warnings.warn(warning)
