import logging
import os
import sys

from utils.config import config

PACKAGE_LOGGER = "stat_kernels"
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def configure_logging():
    """Attach a stdout handler to the package logger, once.

    The level comes from ``LOG_LEVEL`` in the YAML config; the
    ``STAT_KERNELS_LOG_LEVEL`` environment variable wins when set.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    if logger.handlers:
        return

    level_name = os.getenv("STAT_KERNELS_LOG_LEVEL", config.log_level).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT))
    logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the package namespace after configuring it."""
    configure_logging()
    if name != PACKAGE_LOGGER and not name.startswith(PACKAGE_LOGGER + "."):
        name = f"{PACKAGE_LOGGER}.{name}"
    return logging.getLogger(name)
