"""
Prometheus metrics for the anonymization pipeline

Usage:
    from src.utils.metrics import MetricsPublisher, PipelineMetrics

    metrics = PipelineMetrics()
    metrics.record_stage("importing", duration=12.5, success=True)
    metrics.record_run(success=True)

    MetricsPublisher(port=9091).start()
"""

import logging
from typing import Any

from prometheus_client import CollectorRegistry

from .pipeline import PipelineMetrics
from .publisher import MetricsPublisher
from .registry import get_or_create_metric

logger = logging.getLogger(__name__)


def initialize_metrics(
    port: int | None = None,
    registry: CollectorRegistry | None = None,
) -> dict[str, Any]:
    """
    Create the pipeline metrics and, when ``port`` is given, serve them

    Args:
        port: Port to expose metrics on (None disables the HTTP server)
        registry: Custom Prometheus registry (default: global REGISTRY)

    Returns:
        Dictionary with ``publisher`` and ``pipeline`` entries
    """
    publisher = MetricsPublisher(port=port or 9091, registry=registry)
    if port is not None:
        logger.info(f"Initializing metrics on port {port}")
        publisher.start()

    return {
        "publisher": publisher,
        "pipeline": PipelineMetrics(registry=registry),
    }


__all__ = [
    "MetricsPublisher",
    "PipelineMetrics",
    "initialize_metrics",
    "get_or_create_metric",
]
