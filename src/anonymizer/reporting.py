"""
Progress reporting for pipeline components.

Components never log through a module-level logger for user-facing
progress; they receive a Reporter and call it. The default implementation
forwards to a ContextLogger and, when given, to PipelineMetrics.
"""

from typing import Any, Protocol

from src.utils.logging import ContextLogger
from src.utils.metrics import PipelineMetrics

from .models import TableMaskResult


class Reporter(Protocol):
    """Observer passed into every pipeline component."""

    def debug(self, msg: str, **context: Any) -> None: ...

    def info(self, msg: str, **context: Any) -> None: ...

    def warning(self, msg: str, **context: Any) -> None: ...

    def error(self, msg: str, **context: Any) -> None: ...

    def stage_entered(self, stage: str) -> None: ...

    def stage_finished(self, stage: str, duration: float, success: bool) -> None: ...

    def table_masked(self, result: TableMaskResult) -> None: ...

    def table_skipped(self, table: str, reason: str) -> None: ...

    def cleanup_failed(self, resource: str, error: BaseException) -> None: ...

    def run_finished(self, success: bool) -> None: ...


class LoggingReporter:
    """
    Reporter backed by ContextLogger

    Usage:
        reporter = LoggingReporter(metrics=PipelineMetrics(), run_id="a1b2")
        reporter.info("Importing dump", dump="prod.sql")
    """

    def __init__(
        self,
        name: str = "src.anonymizer",
        metrics: PipelineMetrics | None = None,
        **context: Any,
    ):
        self.logger = ContextLogger(name, **context)
        self.metrics = metrics

    def debug(self, msg: str, **context: Any) -> None:
        self.logger.debug(msg, **context)

    def info(self, msg: str, **context: Any) -> None:
        self.logger.info(msg, **context)

    def warning(self, msg: str, **context: Any) -> None:
        self.logger.warning(msg, **context)

    def error(self, msg: str, **context: Any) -> None:
        self.logger.error(msg, **context)

    def stage_entered(self, stage: str) -> None:
        self.logger.info(f"Entering stage {stage}", stage=stage)

    def stage_finished(self, stage: str, duration: float, success: bool) -> None:
        status = "success" if success else "failed"
        self.logger.info(
            f"Stage {stage} finished: {status} in {duration:.2f}s",
            stage=stage,
            duration_seconds=round(duration, 3),
            status=status,
        )
        if self.metrics:
            self.metrics.record_stage(stage, duration, success)

    def table_masked(self, result: TableMaskResult) -> None:
        self.logger.info(
            f"Masked {len(result.columns)} column(s) of {result.table}",
            table_name=result.table,
            columns=list(result.columns),
            row_count=result.row_count,
        )
        if self.metrics:
            self.metrics.record_table(masked=True, columns=len(result.columns))

    def table_skipped(self, table: str, reason: str) -> None:
        self.logger.warning(f"Skipping table {table}: {reason}", table_name=table)
        if self.metrics:
            self.metrics.record_table(masked=False)

    def cleanup_failed(self, resource: str, error: BaseException) -> None:
        self.logger.error(
            f"Failed to release {resource}: {error}",
            resource=resource,
            error_type=type(error).__name__,
        )
        if self.metrics:
            self.metrics.record_cleanup_error(resource)

    def run_finished(self, success: bool) -> None:
        if self.metrics:
            self.metrics.record_run(success)

    def bind(self, **context: Any) -> "LoggingReporter":
        """Return a reporter sharing the metrics with extra log context."""
        bound = LoggingReporter.__new__(LoggingReporter)
        bound.logger = self.logger.bind(**context)
        bound.metrics = self.metrics
        return bound


class NullReporter:
    """Reporter that discards everything."""

    def debug(self, msg: str, **context: Any) -> None:
        pass

    def info(self, msg: str, **context: Any) -> None:
        pass

    def warning(self, msg: str, **context: Any) -> None:
        pass

    def error(self, msg: str, **context: Any) -> None:
        pass

    def stage_entered(self, stage: str) -> None:
        pass

    def stage_finished(self, stage: str, duration: float, success: bool) -> None:
        pass

    def table_masked(self, result: TableMaskResult) -> None:
        pass

    def table_skipped(self, table: str, reason: str) -> None:
        pass

    def cleanup_failed(self, resource: str, error: BaseException) -> None:
        pass

    def run_finished(self, success: bool) -> None:
        pass
