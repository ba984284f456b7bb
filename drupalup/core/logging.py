"""structlog setup. JSON lines go to the log file, or stderr when it is not writable."""

import sys
from pathlib import Path
from typing import TextIO

import structlog

_NAME_TO_LEVEL = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "warn": 30,
    "error": 40,
    "critical": 50,
}

LOG_FILE_NAME = "drupalup.log"


def level_number(name: str) -> int:
    return _NAME_TO_LEVEL.get(name.lower(), 20)


def open_log_file(log_dir: str | Path | None) -> tuple[Path | None, TextIO]:
    """Open ``<log_dir>/drupalup.log`` for appending, falling back to stderr."""
    if not log_dir:
        return None, sys.stderr
    path = Path(log_dir).expanduser() / LOG_FILE_NAME
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return path, path.open("a", encoding="utf-8")
    except OSError:
        return None, sys.stderr


def configure_logging(level: str = "info", log_dir: str | Path | None = None) -> Path | None:
    """Configure structlog once per process.

    Returns the log file in use, or None when entries go to stderr. On stderr
    only warnings and above are emitted so they don't drown the console output.
    """
    log_file, stream = open_log_file(log_dir)
    min_level = level_number(level)
    if log_file is None:
        min_level = max(min_level, _NAME_TO_LEVEL["warning"])

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )
    return log_file
