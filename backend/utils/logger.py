"""Process-wide logging for the pool service."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from backend.utils.config import Settings, get_settings


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"

_handler: Optional[logging.Handler] = None


def configure_logging(settings: Optional[Settings] = None, level: Optional[str] = None) -> None:
    """Install the stdout handler once and apply the requested level.

    Later calls only change the level, so an app built with its own settings
    can raise or lower verbosity after module loggers already exist.
    """

    global _handler
    resolved_level = (level or (settings or get_settings()).log_level).upper()
    root = logging.getLogger()
    if _handler is None:
        _handler = logging.StreamHandler(sys.stdout)
        _handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(_handler)
    root.setLevel(resolved_level)


def get_logger(name: str) -> logging.Logger:
    if _handler is None:
        configure_logging()
    return logging.getLogger(name)
