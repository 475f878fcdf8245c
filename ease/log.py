"""Logging helpers.

Components never configure logging themselves. Each one accepts an
optional ``logging.Logger`` and falls back to its module logger, so a
caller can route every component of one run to a dedicated logger.
"""

import logging

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
DEBUG_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s:%(lineno)d - %(message)s"


def get_logger(logger: logging.Logger | None, name: str) -> logging.Logger:
    """Return *logger* if given, otherwise the logger called *name*."""
    if logger is not None:
        return logger
    return logging.getLogger(name)


def setup_logging(debug: bool = False) -> None:
    """Configure the root logger for an entry point.

    Info level is always on; debug adds command lines, captured tool
    output and source locations.
    """
    if debug:
        logging.basicConfig(level=logging.DEBUG, format=DEBUG_LOG_FORMAT, force=True)
    else:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, force=True)
