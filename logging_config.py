"""
Logging setup for the proxy process.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers and the level they are pinned to.
_LIBRARY_LEVELS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.INFO,
    "uvicorn.error": logging.INFO,
    "httpx": logging.WARNING,
    "aiosqlite": logging.WARNING,
}


def _attach(root: logging.Logger, handler: logging.Handler, level: int, formatter: logging.Formatter) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    root.addHandler(handler)


def configure_logging(log_file: str, log_level: str) -> None:
    """Send every record to stdout and append it to ``log_file``."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    log_path = Path(os.path.expanduser(log_file))
    log_path.parent.mkdir(parents=True, exist_ok=True)

    _attach(root, logging.StreamHandler(sys.stdout), level, formatter)
    _attach(root, logging.FileHandler(log_path, mode="a", encoding="utf-8"), level, formatter)

    for name, library_level in _LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(library_level)

    root.info("Logging at %s to stdout and %s", logging.getLevelName(level), log_path)
