"""Logging setup for storefront."""

import logging
import sys

LOGGER_NAME = "storefront"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Attach a single stream handler to the package logger.

    Safe to call more than once: later calls update the level and rebind the
    handler to the current sys.stderr.
    """
    log = logging.getLogger(LOGGER_NAME)
    log.setLevel(level)
    for handler in log.handlers:
        if getattr(handler, "_storefront", False):
            handler.setStream(sys.stderr)
            break
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._storefront = True  # type: ignore[attr-defined]
        log.addHandler(handler)
    return log
