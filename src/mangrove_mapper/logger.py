"""Logging helpers shared by every pipeline module."""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from mangrove_mapper.cste import GeneralPath

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
ROOT_LOGGER_NAME = "mangrove_mapper"


def _default_level() -> int:
    level_name = os.environ.get("MANGROVE_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_name, logging.INFO)


def configure_logging(level: Optional[int] = None, log_to_file: bool = False,
                      log_dir: str = GeneralPath.LOG_PATH) -> logging.Logger:
    """
    Configure the package root logger.

    Args:
        level: Logging level (default: from MANGROVE_LOG_LEVEL, else INFO)
        log_to_file: If True, also write to a rotating file in log_dir
        log_dir: Directory of the log file

    Returns:
        The configured root logger of the package
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level if level is not None else _default_level())

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler)
               for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(console)

    if log_to_file and not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            Path(log_dir) / "mangrove_mapper.log", maxBytes=5_000_000, backupCount=3
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    return root


def get_logger(name: str) -> logging.Logger:
    """Return a child logger of the package root logger."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
