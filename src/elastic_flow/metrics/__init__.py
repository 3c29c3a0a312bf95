"""
Metrics module for the execution engine.

Provides Prometheus metrics collection for executions, nodes and the
shared resource pool.
"""

from .collector import MetricsCollector

__all__ = [
    "MetricsCollector",
]
