"""Logging configuration for applications embedding the pool."""
from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger; unknown level names fall back to INFO."""
    numeric = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    if not isinstance(numeric, int):
        numeric = logging.INFO

    root = logging.getLogger()
    root.setLevel(numeric)
    if not any(getattr(h, "_flashpool", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._flashpool = True
        root.addHandler(handler)

    # Hypothesis and asyncio are chatty at DEBUG
    logging.getLogger("hypothesis").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
