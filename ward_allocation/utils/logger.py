"""Package logging: one stdout handler on the ``ward_allocation`` logger."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from ward_allocation.utils.config import get_settings


PACKAGE_LOGGER = "ward_allocation"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Attach the package handler once and apply the configured level.

    The root logger is left alone so uvicorn keeps its own handlers; package
    records do not propagate to it.
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    resolved_level = (level or get_settings().log_level).upper()
    package_logger.setLevel(resolved_level)

    if not any(getattr(handler, "_ward_allocation", False) for handler in package_logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._ward_allocation = True  # type: ignore[attr-defined]
        package_logger.addHandler(handler)
        package_logger.propagate = False
    return package_logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the package hierarchy for ``name``.

    Root modules such as ``app`` are nested as ``ward_allocation.app``.
    """
    if not logging.getLogger(PACKAGE_LOGGER).handlers:
        configure_logging()
    if name != PACKAGE_LOGGER and not name.startswith(PACKAGE_LOGGER + "."):
        name = f"{PACKAGE_LOGGER}.{name}"
    return logging.getLogger(name)
