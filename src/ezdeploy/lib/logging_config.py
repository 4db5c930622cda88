"""Logging configuration for ezdeploy.

Provides a single place to configure the ``ezdeploy`` logger hierarchy and
to obtain module loggers. User-facing progress output goes through click;
these logs carry the remote command trace.
"""

from __future__ import annotations

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that are too chatty at INFO/DEBUG
_NOISY_LOGGERS = ("paramiko", "paramiko.transport")

_ENV_LOG_LEVEL = "EZDEPLOY_LOG_LEVEL"
_ENV_VERBOSE = "EZDEPLOY_VERBOSE"


def _level_from_env() -> int | None:
    level_name = os.environ.get(_ENV_LOG_LEVEL)
    if level_name:
        level = logging.getLevelName(level_name.upper())
        if isinstance(level, int):
            return level
    if os.environ.get(_ENV_VERBOSE, "").lower() in ("true", "1", "yes", "on"):
        return logging.DEBUG
    return None


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure logging for the ezdeploy package.

    Resolution order for the level: ``EZDEPLOY_LOG_LEVEL``, then
    ``EZDEPLOY_VERBOSE``, then the ``verbose``/``quiet`` arguments, then
    WARNING.

    Args:
        verbose: Enable DEBUG logging
        quiet: Only log errors
    """
    level = _level_from_env()
    if level is None:
        if verbose:
            level = logging.DEBUG
        elif quiet:
            level = logging.ERROR
        else:
            level = logging.WARNING

    root = logging.getLogger("ezdeploy")
    root.setLevel(level)

    # Avoid stacking handlers when called more than once (tests, CliRunner)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.propagate = False

    noisy_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)


def get_logger(name: str) -> logging.Logger:
    """Return a logger for the given module name."""
    return logging.getLogger(name)
