"""
Logging configuration for the canvass sync core.

Modules obtain their logger through ``get_logger(__name__)``; the handlers are
installed once on the package logger by ``configure_logging``.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from canvass.config.settings import LoggingSettings

PACKAGE_LOGGER = "canvass"


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger that propagates to the package logger.

    Args:
        name: Logger name, usually ``__name__``

    Returns:
        logging.Logger: The logger
    """
    return logging.getLogger(name)


def configure_logging(
    config: Optional[LoggingSettings] = None,
    debug_mode: bool = False
) -> logging.Logger:
    """
    Set up console and rotating file handlers on the package logger.

    Calling it again replaces the handlers installed by a previous call.

    Args:
        config: Logging settings (defaults to the global settings)
        debug_mode: Force DEBUG level regardless of the configured level

    Returns:
        logging.Logger: The configured package logger
    """
    if config is None:
        from canvass.config import settings
        config = settings.logging
        debug_mode = debug_mode or settings.debug_mode

    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    log_level = logging.DEBUG if debug_mode else getattr(logging, config.level, logging.INFO)
    logger.setLevel(log_level)

    simple_formatter = logging.Formatter(config.format)
    detailed_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
    )

    # 1. Console handler
    if config.console_enabled:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(simple_formatter)
        console_handler.setLevel(log_level)
        logger.addHandler(console_handler)

    # 2. Combined log file
    if config.file_enabled:
        config.directory.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.directory / "canvass.log",
            maxBytes=10485760,  # 10MB
            backupCount=5,
            encoding="utf-8"
        )
        file_handler.setFormatter(detailed_formatter)
        file_handler.setLevel(log_level)
        logger.addHandler(file_handler)

    return logger
