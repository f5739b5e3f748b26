"""
Logging setup driven by LoggingConfig.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .settings import LoggingConfig, get_settings


def configure_logging(config: Optional[LoggingConfig] = None) -> logging.Logger:
    """
    Install handlers on the package logger.

    Args:
        config: Logging configuration (defaults to global settings)

    Returns:
        The configured package logger
    """
    config = config or get_settings().logging
    package_logger = logging.getLogger("medical_docflow")
    package_logger.setLevel(config.level.upper())

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(config.format)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    package_logger.addHandler(stream_handler)

    if config.file_path:
        Path(config.file_path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.file_path,
            maxBytes=config.max_file_size,
            backupCount=config.backup_count,
            encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    return package_logger
