"""
Logging setup for pipeline runs.

Run output goes to syslog at a configurable facility, or to a log
file when one is set. Errors are always echoed to stderr so the
scheduler that started the run sees them.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from typing import Optional

from .errors import ConfigError
from .models import LoggingConfig

VERBOSITY_LEVELS = {0: logging.ERROR, 1: logging.INFO, 2: logging.DEBUG}

_FILE_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_SYSLOG_FORMAT = "skarchive[%(process)d]: %(levelname)s: %(message)s"


def level_for(verbosity: int) -> int:
    """Map a 0-2 verbosity to a logging level. Values above 2 mean debug."""
    return VERBOSITY_LEVELS.get(max(0, min(verbosity, 2)), logging.DEBUG)


def _syslog_handler(facility: str, address: str) -> logging.Handler:
    code = logging.handlers.SysLogHandler.facility_names.get(facility.lower())
    if code is None:
        raise ConfigError(f"unknown syslog facility: {facility}")
    return logging.handlers.SysLogHandler(address=address, facility=code)


def configure_logging(
    config: LoggingConfig,
    verbosity: Optional[int] = None,
    stderr: bool = True,
) -> logging.Logger:
    """Attach handlers to the ``skarchive`` logger.

    Args:
        config: Logging section of the archive config.
        verbosity: Overrides config.verbosity when given.
        stderr: Also echo errors to stderr.

    Returns:
        The configured package logger.
    """
    level = level_for(config.verbosity if verbosity is None else verbosity)
    root = logging.getLogger("skarchive")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if config.file is not None:
        config.file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(config.file)
        handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        root.addHandler(handler)
    elif config.syslog_facility:
        try:
            handler = _syslog_handler(config.syslog_facility, config.syslog_address)
        except OSError as exc:
            raise ConfigError(f"cannot open syslog at {config.syslog_address}: {exc}") from exc
        handler.setFormatter(logging.Formatter(_SYSLOG_FORMAT))
        root.addHandler(handler)

    if stderr:
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.ERROR)
        console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        root.addHandler(console)

    root.setLevel(level)
    root.propagate = False
    return root
