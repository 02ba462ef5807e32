"""
Logging configuration for the dump anonymizer.

Provides setup functions for configuring application-wide logging with
console output, an optional rotating log file, and JSON formatting.
"""

import logging
import logging.handlers
import os
import sys

from .formatters import ConsoleFormatter, JSONFormatter

APP_NAME = "pg-dump-anonymizer"


def _build_formatter(json_format: bool, app_name: str, console: bool) -> logging.Formatter:
    if json_format:
        return JSONFormatter(
            include_timestamp=True,
            include_hostname=True,
            app_name=app_name,
        )
    if console:
        return ConsoleFormatter(use_colors=True)
    return logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    console_output: bool = True,
    json_format: bool = False,
    app_name: str = APP_NAME,
    max_bytes: int = 50 * 1024 * 1024,  # 50MB
    backup_count: int = 5,
) -> None:
    """
    Configure logging for the application

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (if None, file logging is disabled)
        console_output: Whether to output to stderr
        json_format: Use JSON format for both console and file logs
        app_name: Application name for log context
        max_bytes: Maximum log file size before rotation
        backup_count: Number of rotated log files to keep
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(_build_formatter(json_format, app_name, console=True))
        root_logger.addHandler(console_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(_build_formatter(json_format, app_name, console=False))
        root_logger.addHandler(file_handler)

    # Quiet chatty third-party loggers
    logging.getLogger("opentelemetry").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(
        f"Logging initialized: level={level}, file={log_file or 'none'}, "
        f"console={console_output}, json={json_format}"
    )


def get_logger(name: str) -> logging.Logger:
    """Return the logger for ``name`` (typically ``__name__``)."""
    return logging.getLogger(name)


def shutdown_logging() -> None:
    """
    Flush and close every root handler.

    Releases the rotating log file handle; call during process shutdown.
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        try:
            handler.close()
        except (OSError, ValueError):
            pass
        root_logger.removeHandler(handler)

    logging.shutdown()


def configure_from_env() -> None:
    """
    Configure logging from environment variables

    Environment variables:
        ANON_LOG_LEVEL: Log level (default: INFO)
        ANON_LOG_FILE: Log file path (default: none)
        ANON_LOG_JSON: Use JSON format (default: false)
        ANON_LOG_CONSOLE: Enable console output (default: true)
    """
    level = os.getenv("ANON_LOG_LEVEL", "INFO")
    log_file = os.getenv("ANON_LOG_FILE")
    json_format = os.getenv("ANON_LOG_JSON", "false").lower() in ("true", "1", "yes")
    console_output = os.getenv("ANON_LOG_CONSOLE", "true").lower() in ("true", "1", "yes")

    setup_logging(
        level=level,
        log_file=log_file,
        console_output=console_output,
        json_format=json_format,
    )
