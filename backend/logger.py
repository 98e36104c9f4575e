"""
StudySpark Scheduling Backend - Logging
Coloured console output plus an optional rotating log file
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler

from config import get_log_config

APP_LOGGER_NAME = "studyspark"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class CustomFormatter(logging.Formatter):
    """Level-coloured console formatter. Colours are dropped when output is not a TTY."""

    COLORS = {
        logging.DEBUG: "\x1b[38;20m",
        logging.INFO: "\x1b[34;20m",
        logging.WARNING: "\x1b[33;20m",
        logging.ERROR: "\x1b[31;20m",
        logging.CRITICAL: "\x1b[31;1m",
    }
    RESET = "\x1b[0m"
    CONSOLE_FORMAT = LOG_FORMAT + " (%(filename)s:%(lineno)d)"

    def __init__(self, use_color: bool = True):
        super().__init__(self.CONSOLE_FORMAT, datefmt=DATE_FORMAT)
        self._by_level = {
            level: logging.Formatter(
                f"{color}{self.CONSOLE_FORMAT}{self.RESET}" if use_color else self.CONSOLE_FORMAT,
                datefmt=DATE_FORMAT,
            )
            for level, color in self.COLORS.items()
        }

    def format(self, record):
        formatter = self._by_level.get(record.levelno)
        if formatter is None:
            return super().format(record)
        return formatter.format(record)


def setup_logger(name: str = APP_LOGGER_NAME, level: int = None) -> logging.Logger:
    """Configures and returns the application logger.

    Child loggers created with ``get_logger(__name__)`` propagate here, so
    handlers are attached once on the parent only.
    """
    log_config = get_log_config()
    if level is None:
        level = logging.getLevelName(log_config.level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    app_logger = logging.getLogger(name)
    app_logger.setLevel(level)
    if app_logger.handlers:
        return app_logger

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(CustomFormatter(use_color=sys.stdout.isatty()))
    app_logger.addHandler(console)

    if log_config.file_enabled:
        # 5MB per file, 5 backups
        os.makedirs(log_config.directory, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_config.directory, "scheduling.log"),
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        app_logger.addHandler(file_handler)

    return app_logger


def get_logger(module_name: str) -> logging.Logger:
    """Child logger of the app logger, e.g. ``studyspark.scheduler``."""
    return logging.getLogger(f"{APP_LOGGER_NAME}.{module_name}")


logger = setup_logger()
