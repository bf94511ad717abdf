"""
Logging setup for applications embedding tabledb.

The library itself only creates module loggers; applications call
setup_logging() once at startup to route them.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import TableDbSettings


def setup_logging(settings: TableDbSettings) -> None:
    """Configure logging based on settings.

    Args:
        settings: tabledb settings (log_level, log_format)
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Engine internals are chatty at DEBUG
    logging.getLogger("tabledb.engine").setLevel(max(level, logging.INFO))
