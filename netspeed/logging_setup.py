"""Centralized logging configuration."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from .config import AppConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"

# Chatty third-party loggers that drown out test progress at DEBUG.
QUIET_LOGGERS = ("apscheduler", "urllib3", "werkzeug")


def configure_logging(config: AppConfig) -> None:
    log_dir = config.paths.logs_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "netspeed.log"

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    level = getattr(logging, config.logging.level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    file_handler = RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=5)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    if level <= logging.DEBUG:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.INFO)
