"""Tests for CLI logging setup."""

import json
import logging

import pytest
import structlog

from hdcurve.utils.logging import setup_logging


@pytest.fixture(autouse=True)
def _restore_root():
    root = logging.getLogger()
    saved_handlers = root.handlers[:]
    saved_level = root.level
    yield
    for handler in root.handlers[:]:
        if handler not in saved_handlers:
            root.removeHandler(handler)
            handler.close()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    logging.captureWarnings(False)
    structlog.reset_defaults()


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_console_only(self):
        setup_logging()
        handlers = logging.getLogger().handlers
        assert len(handlers) == 1
        assert handlers[0].level == logging.INFO

    def test_verbose_console(self):
        setup_logging(verbose=True)
        assert logging.getLogger().handlers[0].level == logging.DEBUG

    def test_repeat_call_replaces_handlers(self, tmp_path):
        setup_logging()
        setup_logging(log_file=tmp_path / "run.log.json")
        assert len(logging.getLogger().handlers) == 2

    def test_json_file_receives_both_logger_kinds(self, tmp_path):
        log_file = tmp_path / "logs" / "run.log.json"
        setup_logging(log_file=log_file)

        logging.getLogger("hdcurve.models.bayes.chain").debug("chain 0 warmup done")
        structlog.get_logger("hdcurve.cli").info("fit_started", num_chains=4)
        for handler in logging.getLogger().handlers:
            handler.flush()

        records = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
        events = {r["event"]: r for r in records}
        assert events["chain 0 warmup done"]["level"] == "debug"
        assert events["fit_started"]["num_chains"] == 4
        assert events["fit_started"]["logger"] == "hdcurve.cli"
        assert "timestamp" in events["fit_started"]

    def test_jax_quieted(self):
        setup_logging(verbose=True)
        assert logging.getLogger("jax").level == logging.WARNING
