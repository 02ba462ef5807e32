"""
Metrics for anonymization pipeline runs.

Tracks run outcomes, per-stage durations, rule application results and
cleanup failures.
"""

import logging
from typing import Optional

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    CollectorRegistry,
    REGISTRY,
)

from .registry import get_or_create_metric

logger = logging.getLogger(__name__)


class PipelineMetrics:
    """
    Metrics for the anonymization pipeline

    Every metric is created through get_or_create_metric so several
    pipeline instances in one process share the same collectors.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize pipeline metrics

        Args:
            registry: Custom Prometheus registry (default: global REGISTRY)
        """
        self.registry = registry or REGISTRY

        self.runs_total = get_or_create_metric(
            lambda: Counter(
                "anonymizer_runs",
                "Total number of pipeline runs",
                ["status"],
                registry=self.registry,
            ),
            "anonymizer_runs",
            self.registry,
        )

        self.stage_duration_seconds = get_or_create_metric(
            lambda: Histogram(
                "anonymizer_stage_duration_seconds",
                "Duration of pipeline stages in seconds",
                ["stage", "status"],
                buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 120, 300, 600, 1800),
                registry=self.registry,
            ),
            "anonymizer_stage_duration_seconds",
            self.registry,
        )

        self.tables_total = get_or_create_metric(
            lambda: Counter(
                "anonymizer_tables",
                "Tables processed by rule application",
                ["outcome"],
                registry=self.registry,
            ),
            "anonymizer_tables",
            self.registry,
        )

        self.columns_masked_total = get_or_create_metric(
            lambda: Counter(
                "anonymizer_columns_masked",
                "Columns bound to a mask expression",
                registry=self.registry,
            ),
            "anonymizer_columns_masked",
            self.registry,
        )

        self.cleanup_errors_total = get_or_create_metric(
            lambda: Counter(
                "anonymizer_cleanup_errors",
                "Errors raised while releasing run resources",
                ["resource"],
                registry=self.registry,
            ),
            "anonymizer_cleanup_errors",
            self.registry,
        )

        self.last_run_timestamp = get_or_create_metric(
            lambda: Gauge(
                "anonymizer_last_run_timestamp",
                "Unix timestamp of the last finished run",
                ["status"],
                registry=self.registry,
            ),
            "anonymizer_last_run_timestamp",
            self.registry,
        )

    def record_stage(self, stage: str, duration: float, success: bool) -> None:
        """Record the duration of one pipeline stage."""
        status = "success" if success else "failed"
        self.stage_duration_seconds.labels(stage=stage, status=status).observe(duration)

    def record_run(self, success: bool) -> None:
        """Record the outcome of a whole run."""
        status = "success" if success else "failed"
        self.runs_total.labels(status=status).inc()
        self.last_run_timestamp.labels(status=status).set_to_current_time()
        logger.debug(f"Recorded pipeline run: status={status}")

    def record_table(self, masked: bool, columns: int = 0) -> None:
        """Record one table outcome of rule application."""
        self.tables_total.labels(outcome="masked" if masked else "skipped").inc()
        if columns:
            self.columns_masked_total.inc(columns)

    def record_cleanup_error(self, resource: str) -> None:
        """Record a failure while releasing ``resource``."""
        self.cleanup_errors_total.labels(resource=resource).inc()
