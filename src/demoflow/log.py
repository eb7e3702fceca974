# log.py
from __future__ import annotations

import logging

from . import settings


def get_logger(name: str) -> logging.Logger:
    """
    Return a namespaced demoflow logger with a single stderr handler.

    User-facing output goes through ui.console; this is for diagnostics.
    """
    logger = logging.getLogger(f"demoflow.{name}")
    root = logging.getLogger("demoflow")
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        root.addHandler(handler)
        root.setLevel(settings.LOG_LEVEL.upper())
    return logger


def set_level(level: int | str) -> None:
    logging.getLogger("demoflow").setLevel(level)
