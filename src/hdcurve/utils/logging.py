"""Logging setup for hdcurve command-line runs.

Two sinks share one structlog processor chain:
- stderr, rendered for humans, INFO (DEBUG with --verbose)
- an optional JSON-lines file that always receives DEBUG

Library modules use plain ``logging.getLogger(__name__)``; the CLI and the
fit serializer use structlog. ProcessorFormatter renders both the same way.
"""

import logging
import sys
from pathlib import Path

import structlog

# Loggers that are too chatty below WARNING during sampling
QUIET_LOGGERS = ("jax", "jax._src", "absl")


def _stamping_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]


def _handler(
    handler: logging.Handler,
    level: int,
    renderer,
) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=_stamping_processors(),
        )
    )
    return handler


def setup_logging(
    verbose: bool = False,
    log_file: Path | str | None = None,
) -> None:
    """Route structlog and stdlib logging to stderr and, optionally, a file.

    Replaces any handlers already on the root logger, so calling it a
    second time (e.g. once the config has named a log file) is safe.
    Python warnings such as SamplerNonConvergenceError are captured into
    the ``py.warnings`` logger.

    Args:
        verbose: Show DEBUG records on the console.
        log_file: JSON-lines destination; parent directories are created.

    Example:
        >>> setup_logging(verbose=True, log_file="outputs/fit.log.json")
    """
    structlog.configure(
        processors=[
            *_stamping_processors(),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers = [
        _handler(
            logging.StreamHandler(sys.stderr),
            logging.DEBUG if verbose else logging.INFO,
            structlog.dev.ConsoleRenderer(colors=is_interactive()),
        )
    ]
    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            _handler(
                logging.FileHandler(path, encoding="utf-8"),
                logging.DEBUG,
                structlog.processors.JSONRenderer(),
            )
        )

    root = logging.getLogger()
    for old in root.handlers[:]:
        root.removeHandler(old)
        if isinstance(old, logging.FileHandler):
            old.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(logging.DEBUG)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.captureWarnings(True)


def is_interactive() -> bool:
    """True when stdout is a TTY; colors and progress bars are off otherwise."""
    return sys.stdout.isatty()
