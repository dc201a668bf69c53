"""Logging configuration for the carelog_etl CLI."""

from __future__ import annotations

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
DEFAULT_LEVEL = "INFO"


def configure_logging(level: str | None = None) -> logging.Logger:
    """Attach a single stderr handler to the carelog_etl logger tree.

    level falls back to $LOG_LEVEL, then INFO. Safe to call more than once.
    """
    name = (level or os.environ.get("LOG_LEVEL") or DEFAULT_LEVEL).upper()
    numeric = logging.getLevelName(name)
    if not isinstance(numeric, int):
        numeric = logging.INFO

    root = logging.getLogger("carelog_etl")
    root.setLevel(numeric)
    for handler in list(root.handlers):
        if getattr(handler, "_carelog_etl", False):
            root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._carelog_etl = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.propagate = False
    return root
