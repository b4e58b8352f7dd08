"""
FlatPage - Logger Module

This module sets up logging for the command-line host. Engine modules only
create module-level loggers and never configure handlers themselves.
"""

import logging

DEFAULT_LOG_LEVEL = logging.INFO
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_DATE_FORMAT = "%H:%M:%S"
DEFAULT_LOGGER_NAME = "flatpage"


def setup_logger(
    log_level: int | None = None,
    log_format: str | None = None,
    logger_name: str | None = None,
) -> logging.Logger:
    """Set up and configure the application logger.

    Args:
        log_level: Logging level to use (default: INFO)
        log_format: Logging format string (default: standard format)
        logger_name: Name for the logger (default: flatpage)

    Returns:
        A configured Logger instance
    """
    logging.basicConfig(
        level=log_level if log_level is not None else DEFAULT_LOG_LEVEL,
        format=log_format or DEFAULT_LOG_FORMAT,
        datefmt=DEFAULT_DATE_FORMAT,
    )
    return logging.getLogger(logger_name or DEFAULT_LOGGER_NAME)
