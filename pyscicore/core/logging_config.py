"""Logging configuration for pyscicore loggers."""

import logging
import sys

_PACKAGE_LOGGER = "pyscicore"
_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def configure_logging(log_level: str | None = None, stream=None) -> logging.Logger:
    """Attach a stream handler to the package logger and set its level.

    With no log_level, PYSCICORE_LOG_LEVEL (RuntimeSettings.log_level) is used.

    Calling this more than once replaces the previously installed handler,
    so repeated configuration never duplicates output.
    """
    if log_level is None:
        from pyscicore.core.config import get_settings
        log_level = get_settings().log_level
    normalized_level = log_level.upper()
    if normalized_level not in _VALID_LEVELS:
        logging.getLogger(_PACKAGE_LOGGER).warning(
            "Invalid log level %r, defaulting to WARNING. Valid levels: %s",
            log_level,
            ", ".join(sorted(_VALID_LEVELS)),
        )
        normalized_level = "WARNING"

    logger = logging.getLogger(_PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        if getattr(handler, "_pyscicore_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )
    handler._pyscicore_handler = True
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, normalized_level))
    return logger

