"""Simple logging utilities for loopguard.

Library modules use the standard pattern:

    import logging
    logger = logging.getLogger(__name__)

and leave handler setup to the application. ``configure_logging`` is what
the CLI calls for its --verbose/--quiet flags.
"""

import logging
import os
import sys
from typing import Optional

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _stderr_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
    return handler


def resolve_level(verbose: bool = False, quiet: bool = False, default: Optional[str] = None) -> int:
    """Map CLI flags (and LOOPGUARD_LOG_LEVEL) to a logging level."""
    if verbose:
        return logging.DEBUG
    if quiet:
        return logging.ERROR
    name = (default or os.environ.get("LOOPGUARD_LOG_LEVEL") or "WARNING").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.WARNING


def configure_logging(verbose: bool = False, quiet: bool = False) -> logging.Logger:
    """Attach a single stderr handler to the ``loopguard`` logger.

    Safe to call more than once; the level is updated in place.
    """
    level = resolve_level(verbose, quiet)
    logger = logging.getLogger("loopguard")
    if not logger.handlers:
        logger.addHandler(_stderr_handler(level))
    for handler in logger.handlers:
        handler.setLevel(level)
    logger.setLevel(level)
    return logger
