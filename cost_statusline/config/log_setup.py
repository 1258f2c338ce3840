"""
Logging configuration.

Statusline output owns stdout, so diagnostics only ever go to stderr.
"""

import logging
import sys

PACKAGE_LOGGER = "cost_statusline"


def configure_logging(level: str = "WARNING") -> logging.Logger:
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.WARNING))

    # Rebind to the current stderr on every call
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s'))
    logger.addHandler(handler)
    logger.propagate = False

    return logger
