"""
Database connection pooling for PostgreSQL.

A pool belongs to exactly one pipeline run: it is created once the target
database exists and closed during the run's cleanup. There are no
process-wide pool instances.
"""

from .base import (
    BaseConnectionPool,
    ConnectionPoolError,
    PoolClosedError,
    PooledConnection,
    PoolExhaustedError,
)
from .postgres import PostgresConnectionPool

__all__ = [
    "BaseConnectionPool",
    "PostgresConnectionPool",
    "PooledConnection",
    "ConnectionPoolError",
    "PoolExhaustedError",
    "PoolClosedError",
]
