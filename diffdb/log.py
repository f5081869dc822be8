"""
Logging setup for applications embedding diffdb.

diffdb modules only create module loggers and pass structured context
through ``extra``; configuring handlers is left to the application, which
can call setup_logging() once at startup.
"""

from __future__ import annotations

import logging
from typing import IO, Optional

from .config import Settings


def setup_logging(settings: Settings, stream: Optional[IO[str]] = None) -> logging.Handler:
    """Replace the root handlers with one configured from settings.

    Args:
        settings: diffdb settings (log_level, log_format)
        stream: Output stream; defaults to stderr

    Returns:
        The installed handler
    """
    handler = logging.StreamHandler(stream)
    handler.setFormatter(settings.log_formatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.logging_level)
    root_logger.handlers = [handler]
    return handler
