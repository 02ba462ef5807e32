"""
Base classes and functionality for database connection pooling.

Provides a thread-safe pool with health checks on checkout, connection
recycling by age/idle time, and Prometheus gauges for pool occupancy.
"""

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from queue import Empty, Queue
from typing import Any

from opentelemetry import trace
from prometheus_client import Counter, Gauge, Histogram

from src.utils.tracing import trace_operation

logger = logging.getLogger(__name__)


CONNECTION_POOL_SIZE = Gauge(
    "anonymizer_db_pool_size",
    "Current number of connections owned by the pool",
    ["database_type", "pool_name"],
)

CONNECTION_POOL_IDLE = Gauge(
    "anonymizer_db_pool_idle",
    "Number of idle connections in the pool",
    ["database_type", "pool_name"],
)

CONNECTION_POOL_ERRORS = Counter(
    "anonymizer_db_pool_errors_total",
    "Number of connection pool errors",
    ["database_type", "pool_name", "error_type"],
)

CONNECTION_ACQUIRE_TIME = Histogram(
    "anonymizer_db_pool_acquire_seconds",
    "Time to acquire a connection from the pool",
    ["database_type", "pool_name"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0],
)


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class PooledConnection:
    """Wrapper for a pooled database connection with metadata."""

    connection: Any
    created_at: datetime
    last_used: datetime
    use_count: int = 0
    is_healthy: bool = True

    def mark_used(self) -> None:
        """Mark connection as used and update timestamp."""
        self.last_used = _now()
        self.use_count += 1


class ConnectionPoolError(Exception):
    """Base exception for connection pool errors."""

    pass


class PoolExhaustedError(ConnectionPoolError):
    """Raised when no connection becomes available within the timeout."""

    pass


class PoolClosedError(ConnectionPoolError):
    """Raised when attempting to use a closed pool."""

    pass


class BaseConnectionPool:
    """
    Base class for database connection pools.

    Subclasses implement connection creation, health checking and closing.
    """

    def __init__(
        self,
        min_size: int = 1,
        max_size: int = 4,
        max_idle_time: int = 300,
        max_lifetime: int = 3600,
        health_check_interval: int = 60,
        acquire_timeout: float = 30.0,
        pool_name: str = "default",
    ):
        """
        Initialize connection pool.

        Args:
            min_size: Minimum number of connections to maintain
            max_size: Maximum number of connections allowed
            max_idle_time: Maximum idle time in seconds before recycling
            max_lifetime: Maximum connection lifetime in seconds
            health_check_interval: Interval for background health checks in seconds
            acquire_timeout: Timeout for acquiring connection in seconds
            pool_name: Name of the pool for metrics
        """
        self.min_size = min_size
        self.max_size = max_size
        self.max_idle_time = timedelta(seconds=max_idle_time)
        self.max_lifetime = timedelta(seconds=max_lifetime)
        self.health_check_interval = health_check_interval
        self.acquire_timeout = acquire_timeout
        self.pool_name = pool_name

        self._pool: Queue[PooledConnection] = Queue(maxsize=max_size)
        self._all_connections: list[PooledConnection] = []
        self._lock = threading.RLock()
        self._closed = False
        self._stop_event = threading.Event()

        self._initialize_pool()

        self._health_check_thread = threading.Thread(
            target=self._health_check_worker, daemon=True
        )
        self._health_check_thread.start()

        logger.info(
            f"Initialized {self.__class__.__name__} '{pool_name}' "
            f"(min={min_size}, max={max_size})"
        )

    def _initialize_pool(self) -> None:
        """Open the minimum number of connections."""
        with self._lock:
            for _ in range(self.min_size):
                try:
                    pooled_conn = self._new_pooled_connection()
                    self._pool.put(pooled_conn)
                except Exception as e:
                    logger.error(f"Failed to create initial connection: {e}")
                    self._count_error("initialization")

            self._update_metrics()

    def _create_connection(self) -> Any:
        """Create a new database connection. Must be implemented by subclasses."""
        raise NotImplementedError

    def _is_connection_healthy(self, conn: Any) -> bool:
        """Check if connection is healthy. Must be implemented by subclasses."""
        raise NotImplementedError

    def _close_connection(self, conn: Any) -> None:
        """Close a database connection. Must be implemented by subclasses."""
        raise NotImplementedError

    def _get_db_type(self) -> str:
        """Get database type for metrics. Must be implemented by subclasses."""
        raise NotImplementedError

    def _new_pooled_connection(self) -> PooledConnection:
        conn = self._create_connection()
        now = _now()
        pooled_conn = PooledConnection(connection=conn, created_at=now, last_used=now)
        self._all_connections.append(pooled_conn)
        return pooled_conn

    def _count_error(self, error_type: str) -> None:
        CONNECTION_POOL_ERRORS.labels(
            database_type=self._get_db_type(),
            pool_name=self.pool_name,
            error_type=error_type,
        ).inc()

    def _check_connection_health(self, pooled_conn: PooledConnection) -> bool:
        """
        Check if a pooled connection is usable.

        A connection is recycled when it exceeded its lifetime, sat idle for
        too long, or fails the subclass health query.
        """
        now = _now()

        if now - pooled_conn.created_at > self.max_lifetime:
            logger.debug("Connection exceeded max lifetime, recycling")
            return False

        if now - pooled_conn.last_used > self.max_idle_time:
            logger.debug("Connection exceeded max idle time, recycling")
            return False

        try:
            is_healthy = self._is_connection_healthy(pooled_conn.connection)
        except Exception as e:
            logger.warning(f"Health check failed: {e}")
            self._count_error("health_check")
            is_healthy = False

        pooled_conn.is_healthy = is_healthy
        return is_healthy

    def _recycle_connection(self, pooled_conn: PooledConnection) -> None:
        """Close and forget a connection."""
        try:
            self._close_connection(pooled_conn.connection)
        except Exception as e:
            logger.warning(f"Error closing connection: {e}")
        finally:
            with self._lock:
                if pooled_conn in self._all_connections:
                    self._all_connections.remove(pooled_conn)

    def _health_check_worker(self) -> None:
        """Background worker that recycles unhealthy idle connections."""
        while not self._stop_event.wait(self.health_check_interval):
            try:
                self._perform_health_checks()
            except Exception as e:
                logger.error(f"Health check worker error: {e}")

    def _perform_health_checks(self) -> None:
        """Check idle connections and top the pool back up to min_size."""
        if self._closed:
            return

        idle: list[PooledConnection] = []
        while True:
            try:
                idle.append(self._pool.get_nowait())
            except Empty:
                break

        for pooled_conn in idle:
            if self._check_connection_health(pooled_conn):
                self._pool.put_nowait(pooled_conn)
            else:
                self._recycle_connection(pooled_conn)
                logger.info("Recycled unhealthy connection")

        with self._lock:
            needed = self.min_size - len(self._all_connections)
            for _ in range(max(0, needed)):
                try:
                    self._pool.put(self._new_pooled_connection())
                except Exception as e:
                    logger.error(f"Failed to create replacement connection: {e}")
                    self._count_error("replenishment")

            self._update_metrics()

    def _update_metrics(self) -> None:
        with self._lock:
            CONNECTION_POOL_SIZE.labels(
                database_type=self._get_db_type(), pool_name=self.pool_name
            ).set(len(self._all_connections))

            CONNECTION_POOL_IDLE.labels(
                database_type=self._get_db_type(), pool_name=self.pool_name
            ).set(self._pool.qsize())

    def _checkout(self, start_time: float) -> PooledConnection:
        """Take an idle healthy connection, or open a new one while below max_size."""
        while True:
            elapsed = time.time() - start_time
            if elapsed >= self.acquire_timeout:
                raise PoolExhaustedError(
                    f"No connection available within {self.acquire_timeout}s"
                )

            pooled_conn: PooledConnection | None = None
            try:
                pooled_conn = self._pool.get(timeout=0.1)
            except Empty:
                with self._lock:
                    if len(self._all_connections) < self.max_size:
                        try:
                            pooled_conn = self._new_pooled_connection()
                            logger.debug("Created new connection for pool")
                        except Exception as e:
                            logger.error(f"Failed to create new connection: {e}")
                            self._count_error("creation")
                            raise ConnectionPoolError(
                                f"Could not open a connection: {e}"
                            ) from e

            if pooled_conn is None:
                continue

            if not self._check_connection_health(pooled_conn):
                logger.info("Connection unhealthy, recycling and retrying")
                self._recycle_connection(pooled_conn)
                continue

            return pooled_conn

    @contextmanager
    def acquire(self) -> Iterator[Any]:
        """
        Acquire a connection from the pool.

        Yields:
            Database connection

        Raises:
            PoolClosedError: If pool is closed
            PoolExhaustedError: If no connection available within timeout
            ConnectionPoolError: If a new connection cannot be opened
        """
        if self._closed:
            raise PoolClosedError("Connection pool is closed")

        start_time = time.time()

        with trace_operation(
            "db_pool_acquire",
            kind=trace.SpanKind.CLIENT,
            database_type=self._get_db_type(),
            pool_name=self.pool_name,
        ):
            pooled_conn = self._checkout(start_time)
            pooled_conn.mark_used()
            self._update_metrics()

            CONNECTION_ACQUIRE_TIME.labels(
                database_type=self._get_db_type(), pool_name=self.pool_name
            ).observe(time.time() - start_time)

            try:
                yield pooled_conn.connection
            finally:
                if self._closed:
                    self._recycle_connection(pooled_conn)
                else:
                    try:
                        self._pool.put(pooled_conn, timeout=1.0)
                        self._update_metrics()
                    except Exception as e:
                        logger.error(f"Failed to return connection to pool: {e}")
                        self._recycle_connection(pooled_conn)

    def close(self) -> None:
        """Close all connections and shut the pool down. Safe to call twice."""
        if self._closed:
            return

        logger.info(f"Closing connection pool '{self.pool_name}'")
        self._closed = True
        self._stop_event.set()
        # Outside the lock; a running health check takes it
        self._health_check_thread.join(timeout=5.0)

        with self._lock:
            for pooled_conn in self._all_connections:
                try:
                    self._close_connection(pooled_conn.connection)
                except Exception as e:
                    logger.warning(f"Error closing connection: {e}")

            self._all_connections.clear()

            while True:
                try:
                    self._pool.get_nowait()
                except Empty:
                    break

            self._update_metrics()

        logger.info(f"Connection pool '{self.pool_name}' closed")

    @property
    def closed(self) -> bool:
        return self._closed

    def get_stats(self) -> dict[str, Any]:
        """Get pool statistics."""
        with self._lock:
            total_size = len(self._all_connections)
            idle_size = self._pool.qsize()

            return {
                "pool_name": self.pool_name,
                "total_connections": total_size,
                "idle_connections": idle_size,
                "active_connections": total_size - idle_size,
                "min_size": self.min_size,
                "max_size": self.max_size,
                "closed": self._closed,
            }
