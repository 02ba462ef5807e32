"""
Metrics publishing for Prometheus.

A pipeline run is short-lived, so metrics are either exposed on an HTTP
port for the duration of the run or pushed to a Pushgateway at the end.
"""

import logging
from typing import Optional

from prometheus_client import (
    start_http_server,
    push_to_gateway,
    CollectorRegistry,
    REGISTRY,
)

logger = logging.getLogger(__name__)


class MetricsPublisher:
    """
    Publishes a registry over HTTP (/metrics) or to a Pushgateway
    """

    def __init__(
        self,
        port: int = 9091,
        registry: Optional[CollectorRegistry] = None,
    ):
        """
        Initialize metrics publisher

        Args:
            port: Port to expose metrics on (default: 9091)
            registry: Custom Prometheus registry (default: global REGISTRY)
        """
        self.port = port
        self.registry = registry or REGISTRY
        self._server_started = False

    def start(self) -> None:
        """Start the metrics HTTP server"""
        if self._server_started:
            logger.warning(f"Metrics server already running on port {self.port}")
            return

        try:
            start_http_server(self.port, registry=self.registry)
            self._server_started = True
            logger.info(f"Metrics server started on port {self.port}")
        except OSError as e:
            if "Address already in use" in str(e):
                raise RuntimeError(
                    f"Metrics server port {self.port} is already in use. "
                    f"Stop the conflicting process or choose another --metrics-port."
                ) from e
            raise

    def push(self, gateway: str, job: str = "pg-dump-anonymizer") -> None:
        """
        Push the registry to a Pushgateway.

        Failures are logged; metrics must never fail a finished run.
        """
        try:
            push_to_gateway(gateway, job=job, registry=self.registry)
            logger.info(f"Pushed metrics to {gateway} (job={job})")
        except OSError as e:
            logger.error(f"Failed to push metrics to {gateway}: {e}")

    def is_started(self) -> bool:
        """Check if metrics server is running"""
        return self._server_started
