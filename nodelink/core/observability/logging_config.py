"""
Logging configuration for the CLI.

Called once at startup by main.py.  Every module that does
``logger = logging.getLogger(__name__)`` inherits this config.

Two streams go to stderr:

    linker messages    nodelink.*          level from flags / env
    script output      nodelink.scripts    DEBUG lines, shown on their own
                                           with --script-output

Levels are resolved in precedence order:
    --debug  >  --verbose  >  --quiet  >  NODELINK_LOG_LEVEL  >  WARNING

Optional file output via NODELINK_LOG_FILE / NODELINK_LOG_FILE_LEVEL.
The file always receives script output at its own level.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping

ENV_LOG_LEVEL = "NODELINK_LOG_LEVEL"
ENV_LOG_FILE = "NODELINK_LOG_FILE"
ENV_LOG_FILE_LEVEL = "NODELINK_LOG_FILE_LEVEL"
ENV_SCRIPT_OUTPUT = "NODELINK_SCRIPT_OUTPUT"

# Lifecycle script stdout/stderr lines, "<stream>::<package>::<event>: <line>"
SCRIPT_LOGGER = "nodelink.scripts"

_FMT_MINIMAL = "%(message)s"
_FMT_VERBOSE = "%(asctime)s [%(name)s] %(message)s"
_FMT_DEBUG = "%(asctime)s %(levelname)-5s %(threadName)s %(name)s:%(lineno)d: %(message)s"
_FMT_FILE = "%(asctime)s %(levelname)-5s %(threadName)s %(name)s: %(message)s"
_FMT_SCRIPT = "  │ %(message)s"
_DATEFMT_SHORT = "%H:%M:%S"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"

_TRUTHY = {"1", "true", "yes", "on"}


def resolve_level(
    debug: bool = False,
    verbose: bool = False,
    quiet: bool = False,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Console level name from the CLI flags, falling back to the env."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    env = os.environ if environ is None else environ
    return env.get(ENV_LOG_LEVEL) or "WARNING"


def script_output_requested(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return env.get(ENV_SCRIPT_OUTPUT, "").strip().lower() in _TRUTHY


def _console_formatter(numeric_level: int) -> logging.Formatter:
    if numeric_level <= logging.DEBUG:
        return logging.Formatter(_FMT_DEBUG, datefmt=_DATEFMT_SHORT)
    if numeric_level <= logging.INFO:
        return logging.Formatter(_FMT_VERBOSE, datefmt=_DATEFMT_SHORT)
    return logging.Formatter(_FMT_MINIMAL)


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    script_output: bool = False,
) -> None:
    """Configure Python logging for the entire process.

    Args:
        level: Console level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional path to a log file.
        log_file_level: Optional separate level for the log file.
            Defaults to the same as ``level``.
        script_output: Stream lifecycle script output to stderr even when
            the console level is above DEBUG.
    """
    numeric_level = _parse_level(level)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(_console_formatter(numeric_level))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)

    scripts = logging.getLogger(SCRIPT_LOGGER)
    scripts.handlers.clear()
    scripts.propagate = True
    scripts.setLevel(logging.NOTSET)

    effective_level = numeric_level
    file_handler: logging.FileHandler | None = None
    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else numeric_level
        effective_level = min(effective_level, file_level)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(file_level)
        file_handler.setFormatter(logging.Formatter(_FMT_FILE, datefmt=_DATEFMT_FILE))
        root.addHandler(file_handler)

    root.setLevel(effective_level)

    # At DEBUG the root console already shows script lines
    if script_output and numeric_level > logging.DEBUG:
        script_console = logging.StreamHandler(sys.stderr)
        script_console.setLevel(logging.DEBUG)
        script_console.setFormatter(logging.Formatter(_FMT_SCRIPT))
        scripts.addHandler(script_console)
        if file_handler is not None:
            scripts.addHandler(file_handler)
        scripts.setLevel(logging.DEBUG)
        scripts.propagate = False

    # Don't propagate exceptions from logging itself
    logging.raiseExceptions = False


def _parse_level(level: str | None) -> int:
    """Convert a level name string to its numeric constant."""
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.WARNING
    return numeric
