"""
Logging Configuration Module
Provides consistent logging across the sync engine.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from jira_sync.config_manager import ConfigManager


def setup_logging(level: str = None) -> None:
    """
    Setup application-wide logging configuration.
    Call this once at application startup.

    Args:
        level: Optional level name overriding the configured one
    """
    config = ConfigManager()
    log_config = config.get_logging_config()

    level_name = (level or log_config.get('level') or 'INFO').upper()
    log_level = getattr(logging, level_name, logging.INFO)
    log_format = log_config.get('format') or '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    log_file = log_config.get('file')
    max_bytes = log_config.get('max_bytes', 10485760)  # 10MB
    backup_count = log_config.get('backup_count', 5)

    formatter = logging.Formatter(log_format)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # An empty file setting disables file output (containers log to stdout only)
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Reduce noise from third-party libraries
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('requests').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for the specified module.

    Args:
        name: Module name (usually __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
