"""
Logger wrapper that carries contextual fields.

ContextLogger merges a fixed context (run id, container name, ...) with the
keyword arguments of each call and passes the result as ``extra``.
"""

import logging
from typing import Any


class ContextLogger:
    """
    Logger wrapper that adds contextual information to all log messages

    Usage:
        logger = ContextLogger("src.anonymizer", run_id="a1b2")
        logger.info("Masked column", table_name="users", column="email")
        # Output includes run_id, table_name and column
    """

    def __init__(self, name: str, **context: Any):
        """
        Initialize context logger

        Args:
            name: Logger name
            **context: Contextual key-value pairs to include in all logs
        """
        self.logger = logging.getLogger(name)
        self.context = context

    def _log(
        self,
        level: int,
        msg: str,
        *args: Any,
        exc_info: Any = None,
        **kwargs: Any,
    ) -> None:
        extra = {**self.context, **kwargs}

        self.logger.log(
            level,
            msg,
            *args,
            exc_info=exc_info,
            extra=extra,
        )

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log debug message with context"""
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log info message with context"""
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log warning message with context"""
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, exc_info: Any = None, **kwargs: Any) -> None:
        """Log error message with context"""
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    def critical(self, msg: str, *args: Any, exc_info: Any = None, **kwargs: Any) -> None:
        """Log critical message with context"""
        self._log(logging.CRITICAL, msg, *args, exc_info=exc_info, **kwargs)

    def bind(self, **context: Any) -> "ContextLogger":
        """Return a new ContextLogger with ``context`` merged into this one's."""
        return ContextLogger(self.logger.name, **{**self.context, **context})

    def update_context(self, **context: Any) -> None:
        """Update the context for this logger in place."""
        self.context.update(context)

    def get_context(self) -> dict[str, Any]:
        """Return a copy of the current context."""
        return self.context.copy()
