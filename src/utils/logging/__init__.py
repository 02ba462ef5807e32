"""
Structured logging configuration for the dump anonymizer

Provides JSON-formatted or colored console logging with contextual fields
(stage, table, column, container) attached through ``extra``.

Usage:
    from src.utils.logging import setup_logging, get_logger

    # Setup logging (call once at application startup)
    setup_logging(level="INFO", log_file="logs/anonymizer.log")

    logger = get_logger(__name__)
    logger.info("Masked column", extra={"table_name": "users", "column": "email"})
"""

from .config import configure_from_env, get_logger, setup_logging, shutdown_logging
from .formatters import ConsoleFormatter, JSONFormatter
from .handlers import ContextLogger

__all__ = [
    "setup_logging",
    "get_logger",
    "configure_from_env",
    "shutdown_logging",
    "JSONFormatter",
    "ConsoleFormatter",
    "ContextLogger",
]
