"""Logging configuration."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler

FORMAT = '%(asctime)s [%(levelname)s] %(message)s'


def setup_logging(level=None, log_file=None) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Override log level. If None, uses VERBOSE_LOGGING env var.
        log_file: Optional path of a rotating log file.

    Returns:
        The configured root logger.
    """
    if level is None:
        verbose = os.getenv('VERBOSE_LOGGING', 'true').lower() == 'true'
        level = logging.INFO if verbose else logging.WARNING

    root_logger = logging.getLogger()
    # Avoid duplicate handlers when called more than once
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    formatter = logging.Formatter(FORMAT, datefmt='%H:%M:%S')

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=10_000_000, backupCount=5)
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Silence noisy third-party libraries
    logging.getLogger('PIL').setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get logger instance."""
    return logging.getLogger(name)
