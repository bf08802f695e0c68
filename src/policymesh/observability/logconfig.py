"""
Logging setup.

Modules log through ``logging.getLogger(__name__)``; this only wires the
root ``policymesh`` logger to a stream handler.
"""

import logging
import sys
from typing import Optional, TextIO

from policymesh.config import PolicyMeshConfig

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DEBUG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(filename)s:%(lineno)d]: %(message)s"


def configure_logging(
    debug: bool = False,
    level: Optional[str] = None,
    stream: Optional[TextIO] = None,
    config: Optional[PolicyMeshConfig] = None,
) -> logging.Logger:
    """
    Configure the ``policymesh`` logger.

    Args:
        debug: Log at DEBUG level and include file/line of the caller.
        level: Explicit level name; ignored when ``debug`` is set.
        stream: Output stream (default: stderr).
        config: Take ``debug`` and ``log_level`` from this config instead.

    Returns:
        The configured ``policymesh`` logger.
    """
    if config is not None:
        debug, level = config.debug, config.log_level

    logger = logging.getLogger("policymesh")
    for handler in list(logger.handlers):
        if getattr(handler, "_policymesh", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(DEBUG_FORMAT if debug else DEFAULT_FORMAT))
    handler._policymesh = True  # type: ignore[attr-defined]
    logger.addHandler(handler)

    if debug:
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(getattr(logging, (level or "INFO").upper(), logging.INFO))
    return logger
