"""Stream logging setup for the qabank package logger."""
from __future__ import annotations

import logging
from typing import Union


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level: Union[int, str] = logging.INFO, name: str = "qabank") -> logging.Logger:
    """Attach one stream handler to the package logger; repeated calls only adjust the level."""

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    else:
        for handler in logger.handlers:
            handler.setLevel(level)
    return logger


__all__ = ["LOG_FORMAT", "setup_logging"]
