"""
Logging configuration for the Patient Identity Service
"""

import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

from .config import LoggingConfig, get_config
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """
    Configure root logging from LoggingConfig.

    Safe to call more than once; handlers installed by a previous call are
    replaced.
    """
    config = config or get_config().logging

    numeric_level = getattr(logging, config.level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ConfigurationError(f"Invalid log level: {config.level}")

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_patient_identity", False):
            root.removeHandler(handler)

    formatter = logging.Formatter(config.format)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console._patient_identity = True
    root.addHandler(console)

    if config.log_file:
        file_handler = RotatingFileHandler(
            config.log_file,
            maxBytes=config.max_file_size,
            backupCount=config.backup_count
        )
        file_handler.setFormatter(formatter)
        file_handler._patient_identity = True
        root.addHandler(file_handler)

    root.setLevel(numeric_level)
    logger.info(f"Logging configured at level {config.level.upper()}")
