"""
Utility modules for the dump anonymizer

Provides:
- retry: exponential backoff decorator and fixed-interval readiness waits
- logging: structured JSON / console logging setup
- db_pool: PostgreSQL connection pooling
- metrics: Prometheus pipeline metrics
- tracing: OpenTelemetry spans
- sql_safety: identifier validation for rule files
"""

__version__ = "1.0.0"
__all__ = ["retry", "logging", "db_pool", "metrics", "tracing", "sql_safety"]
