"""Centralised logging configuration for PrintSentry."""
from __future__ import annotations

import logging
import sys
from typing import Union

LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def parse_level(level: Union[int, str, None]) -> int:
    """Accept ``"debug"``, ``"INFO"``, ``20`` ... and return a logging level."""
    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    if isinstance(value, int):
        return value
    return logging.INFO


def setup_logging(level: Union[int, str] = logging.INFO) -> None:
    """Configure the root ``printsentry`` logger.

    Call once during startup (CLI or agent service).  Subsequent calls only
    adjust the level; the handler is added a single time.
    """
    logger = logging.getLogger("printsentry")
    logger.setLevel(parse_level(level))
    if logger.handlers:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the ``printsentry`` namespace."""
    return logging.getLogger(f"printsentry.{name}")
